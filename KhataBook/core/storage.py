"""Client-side key-value storage.

Two stores share one interface:
    - DurableStore: JSON file in the config directory, survives restarts.
    - TransientStore: in-memory, lost when the process exits.

Values are strings; callers serialize anything structured themselves.
"""
import json
import logging
import os
import pathlib
import tempfile
import threading
from typing import Dict, Iterable, Optional, Union


class KeyValueStore:
    """Synchronous string key-value storage."""

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> list:
        raise NotImplementedError

    def remove_many(self, keys: Iterable[str]) -> None:
        for key in keys:
            self.remove(key)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None


class TransientStore(KeyValueStore):
    """In-memory store scoped to the running process."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f'Storage values must be strings, got {type(value)}.')
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list:
        return list(self._data.keys())


class DurableStore(KeyValueStore):
    """Key-value store persisted as a JSON object on disk.

    Every write rewrites the whole file through a temporary file and an atomic
    rename so a crash never leaves a half-written store behind.

    Args:
        path: Location of the JSON file. Created on first write.
    """

    def __init__(self, path: Union[str, pathlib.Path]) -> None:
        self.path = pathlib.Path(path)
        self._lock = threading.Lock()
        self._data: Dict[str, str] = self._read()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (ValueError, OSError) as ex:
            logging.error(f'Could not read storage file "{self.path}", starting empty: {ex}')
            return {}
        if not isinstance(data, dict):
            logging.error(f'Storage file "{self.path}" does not contain an object, starting empty.')
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self.path.parent), prefix='.storage-', suffix='.json')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=4, ensure_ascii=False)
            os.replace(tmp, self.path)
        except OSError:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock:
            return self._data.get(key, default)

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError(f'Storage values must be strings, got {type(value)}.')
        with self._lock:
            self._data[key] = value
            self._write()

    def remove(self, key: str) -> None:
        with self._lock:
            if key not in self._data:
                return
            del self._data[key]
            self._write()

    def remove_many(self, keys: Iterable[str]) -> None:
        with self._lock:
            removed = [k for k in keys if self._data.pop(k, None) is not None]
            if removed:
                self._write()

    def keys(self) -> list:
        with self._lock:
            return list(self._data.keys())

    def reload(self) -> None:
        """Re-read the file from disk, discarding in-memory state."""
        with self._lock:
            self._data = self._read()
