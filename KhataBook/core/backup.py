"""Backups to Google Drive, local export/import and document import.

Backups are stored as a single JSON envelope file inside a named Drive
folder (the container). The envelope has the form::

    {
      "version": "2.0.0",
      "exportedAt": "2024-01-01T00:00:00.000Z",
      "appName": "Khata Book",
      "data": ...
    }

Scheduled backups are driven by :func:`schedule_check`, a pure function of
the auto-backup settings and the current time.
"""

import dataclasses
import datetime
import enum
import json
import logging
import os
import pathlib
import threading
from typing import Any, Callable, Dict, List, Optional, Union

import pandas as pd

from .schema import ColumnSchema, SchemaResolver
from .service import FOLDER_MIMETYPE, JSON_MIMETYPE, SPREADSHEET_MIMETYPE, a1
from .store import (
    DocumentDescriptor, Permission, Record, descriptor_from_file, drive_quote, permission_of
)
from ..status import status

AUTO_BACKUP_KEY: str = 'khata_auto_backup'
DEFAULT_EXPORT_NAME: str = 'khata_export.json'
CONTAINER_KEY_PREFIX: str = 'khata_container:'


class Frequency(enum.StrEnum):
    """How often a scheduled backup is due."""
    Daily = enum.auto()
    Weekly = enum.auto()
    Monthly = enum.auto()


FREQUENCY_DAYS: Dict[Frequency, int] = {
    Frequency.Daily: 1,
    Frequency.Weekly: 7,
    Frequency.Monthly: 30,
}


def utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def to_iso(value: datetime.datetime) -> str:
    """Format an instant as ISO-8601 UTC with milliseconds, e.g. ``2024-01-01T00:00:00.000Z``."""
    value = value.astimezone(datetime.timezone.utc)
    return value.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def from_iso(value: str) -> datetime.datetime:
    """Parse an ISO-8601 instant; naive values are taken as UTC."""
    parsed = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


@dataclasses.dataclass
class AutoBackupSettings:
    """Scheduled backup preferences."""
    enabled: bool = False
    frequency: Frequency = Frequency.Weekly
    last_run: Optional[datetime.datetime] = None

    def to_json(self) -> str:
        return json.dumps({
            'enabled': self.enabled,
            'frequency': str(self.frequency),
            'lastRun': to_iso(self.last_run) if self.last_run else None,
        })

    @classmethod
    def from_json(cls, text: str) -> 'AutoBackupSettings':
        """Parse stored settings.

        Raises:
            ValueError: If the text is not valid settings JSON.
        """
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError('Auto-backup settings must be an object.')
        last_run = data.get('lastRun')
        return cls(
            enabled=bool(data.get('enabled', False)),
            frequency=Frequency(data.get('frequency', Frequency.Weekly)),
            last_run=from_iso(last_run) if last_run else None,
        )


@dataclasses.dataclass
class BackupResult:
    """Outcome of a scheduled backup run."""
    performed: bool
    success: bool = False
    error: Optional[str] = None


@dataclasses.dataclass
class BackupStatus:
    """Whether a backup file exists and when it was last written."""
    exists: bool
    last_modified: Optional[str] = None
    error: Optional[str] = None


@dataclasses.dataclass
class ImportedDocument:
    """Contents of a document read for import."""
    id: str
    name: str
    columns: ColumnSchema
    records: List[Record]
    tabs: List[str]
    frames: Dict[str, pd.DataFrame]
    permission: Permission
    url: Optional[str] = None

    @property
    def can_edit(self) -> bool:
        return self.permission in (Permission.Owner, Permission.Editor)


def schedule_check(settings: AutoBackupSettings, now: datetime.datetime) -> bool:
    """Return True if a scheduled backup is due at ``now``.

    A backup is due when enabled and either it never ran or at least
    1, 7 or 30 days (daily, weekly, monthly) have passed since the last run.
    """
    if not settings.enabled:
        return False
    if settings.last_run is None:
        return True
    return now - settings.last_run >= datetime.timedelta(days=FREQUENCY_DAYS[Frequency(settings.frequency)])


def make_envelope(payload: Any, app_name: str, version: str,
                  now: Optional[datetime.datetime] = None) -> Dict[str, Any]:
    return {
        'version': version,
        'exportedAt': to_iso(now or utc_now()),
        'appName': app_name,
        'data': payload,
    }


def dump_envelope(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, indent=2, ensure_ascii=False)


def is_envelope(value: Any) -> bool:
    return isinstance(value, dict) and 'data' in value and 'version' in value


def parse_json(raw: Union[str, bytes]) -> Any:
    """Parse JSON text or UTF-8 bytes.

    Raises:
        status.MalformedDataException: If the input is not valid JSON.
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8-sig')
        return json.loads(raw)
    except (UnicodeDecodeError, ValueError) as ex:
        raise status.MalformedDataException(f'Invalid JSON: {ex}') from ex


def _frame(rows: List[List[str]], names: Optional[List[str]] = None) -> pd.DataFrame:
    """Build a DataFrame from a header row and data rows."""
    if not rows:
        return pd.DataFrame(columns=names or [])
    header = list(rows[0])
    while header and not header[-1].strip():
        header.pop()
    if names is None:
        names = [h.strip() or f'Column {i + 1}' for i, h in enumerate(header)]
    width = len(names)
    data = [(list(r) + [''] * width)[:width] for r in rows[1:]]
    return pd.DataFrame(data, columns=names, index=pd.RangeIndex(2, 2 + len(data), name='row_position'))


class BackupEngine:
    """Moves data in and out of Google Drive and local files.

    Args:
        context: The :class:`~KhataBook.core.context.ClientContext`.
        resolver (SchemaResolver, optional): Defaults to a resolver on the same context.
        clock (callable, optional): Returns the current time as an aware datetime.
    """

    _container_lock = threading.Lock()

    def __init__(self, context: Any, resolver: Optional[SchemaResolver] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None) -> None:
        self.context = context
        self.resolver = resolver or SchemaResolver(context)
        self.clock = clock or utc_now

        self.error: Optional[str] = None
        self.last_backup: Optional[str] = None
        self.backup_file_id: Optional[str] = None

    @property
    def client(self) -> Any:
        return self.context.client

    @property
    def config(self) -> Dict[str, Any]:
        return self.context.section('backup')

    def _fail(self, ex: status.BaseStatusException) -> None:
        self.error = ex.message

    def _envelope(self, payload: Any) -> str:
        app = self.context.section('app')
        return dump_envelope(make_envelope(payload, app['name'], self.config['envelope_version'], self.clock()))

    # Drive

    def get_or_create_container(self, name: Optional[str] = None) -> str:
        """Return the id of the named Drive folder, creating it if needed.

        Lookups are remembered in the context's transient storage, so repeated
        calls in one process never create a second folder. Two processes
        creating the folder at the same moment can still both create one.
        """
        name = name or self.config['container_name']
        with self._container_lock:
            cached = self.context.transient.get(CONTAINER_KEY_PREFIX + name)
            if cached:
                return cached

            try:
                files = self.client.list_files(
                    f"name='{drive_quote(name)}' and mimeType='{FOLDER_MIMETYPE}' and trashed=false",
                    fields='id,name', page_size=10, max_results=1)
                if files:
                    container_id = files[0]['id']
                else:
                    logging.info(f'Creating Drive folder "{name}".')
                    container_id = self.client.create_file({'name': name, 'mimeType': FOLDER_MIMETYPE})['id']
            except status.BaseStatusException as ex:
                self._fail(ex)
                raise

            self.context.transient.set(CONTAINER_KEY_PREFIX + name, container_id)
            return container_id

    def forget_containers(self) -> None:
        """Drop remembered container ids."""
        with self._container_lock:
            transient = self.context.transient
            transient.remove_many([k for k in transient.keys() if k.startswith(CONTAINER_KEY_PREFIX)])

    def find_backup_file(self, container_id: str) -> Optional[Dict[str, Any]]:
        """Return the backup file in the container, or None."""
        file_name = self.config['file_name']
        files = self.client.list_files(
            f"name='{drive_quote(file_name)}' and '{drive_quote(container_id)}' in parents and trashed=false",
            fields='id,name,modifiedTime', page_size=10, max_results=1)
        if not files:
            return None
        file = files[0]
        self.backup_file_id = file['id']
        self.last_backup = file.get('modifiedTime')
        return file

    def save(self, container_id: str, payload: Any) -> Dict[str, Any]:
        """Write ``payload`` to the container's backup file, updating it in place if it exists.

        Returns:
            dict: The Drive file resource.
        """
        self.error = None
        content = self._envelope(payload).encode('utf-8')
        file_name = self.config['file_name']
        try:
            existing = self.find_backup_file(container_id)
            if existing:
                result = self.client.update_file(
                    existing['id'], content, mimetype=JSON_MIMETYPE,
                    metadata={'name': file_name, 'mimeType': JSON_MIMETYPE})
            else:
                result = self.client.create_file(
                    {'name': file_name, 'mimeType': JSON_MIMETYPE, 'parents': [container_id]},
                    content, mimetype=JSON_MIMETYPE)
        except status.BaseStatusException as ex:
            self._fail(ex)
            raise

        self.backup_file_id = result['id']
        self.last_backup = to_iso(self.clock())
        logging.info(f'Backup saved to Drive file "{result["id"]}".')
        return result

    def load(self, container_id: str) -> Optional[Any]:
        """Return the ``data`` of the container's backup, or None if there is no backup.

        Raises:
            status.MalformedDataException: If the backup file is not a valid envelope.
        """
        self.error = None
        try:
            existing = self.find_backup_file(container_id)
            if not existing:
                logging.debug(f'No backup found in "{container_id}".')
                return None
            envelope = parse_json(self.client.download_file(existing['id']))
            if not is_envelope(envelope):
                raise status.MalformedDataException('The backup file is not a backup envelope.')
        except status.BaseStatusException as ex:
            self._fail(ex)
            raise
        return envelope['data']

    def check_backup_status(self) -> BackupStatus:
        """Report whether a backup exists. Failures are reported, not raised."""
        try:
            container_id = self.get_or_create_container()
            file = self.find_backup_file(container_id)
        except status.BaseStatusException as ex:
            return BackupStatus(exists=False, error=ex.message)
        if not file:
            return BackupStatus(exists=False)
        return BackupStatus(exists=True, last_modified=file.get('modifiedTime'))

    # Local files

    def export_local(self, payload: Any, filename: Union[str, os.PathLike] = DEFAULT_EXPORT_NAME) -> pathlib.Path:
        """Write ``payload`` as an envelope to a local JSON file.

        Returns:
            pathlib.Path: The written file.
        """
        path = pathlib.Path(filename)
        if path.parent and not path.parent.exists():
            path.parent.mkdir(parents=True, exist_ok=True)
        with path.open('w', encoding='utf-8') as f:
            f.write(self._envelope(payload))
        logging.info(f'Exported data to "{path}".')
        return path

    def import_local(self, source: Any) -> Any:
        """Read a local export.

        Args:
            source: A path (``os.PathLike``), JSON text (``str``), UTF-8 bytes
                or a readable file object.

        Returns:
            The envelope's ``data``, or the parsed JSON itself when it is not an envelope.

        Raises:
            status.MalformedDataException: If the input cannot be read or is not valid JSON.
        """
        try:
            if hasattr(source, 'read'):
                raw = source.read()
            elif isinstance(source, (str, bytes)):
                raw = source
            elif isinstance(source, os.PathLike):
                raw = pathlib.Path(source).read_bytes()
            else:
                raise TypeError(f'Cannot import from {type(source)}.')
        except OSError as ex:
            raise status.MalformedDataException(f'Could not read "{source}": {ex}') from ex

        value = parse_json(raw)
        return value['data'] if is_envelope(value) else value

    # Documents

    def list_candidate_documents(self, include_shared: bool = True) -> List[DocumentDescriptor]:
        """List spreadsheets that can be imported, most recently modified first."""
        query = f"mimeType='{SPREADSHEET_MIMETYPE}' and trashed=false"
        if not include_shared:
            query += " and 'me' in owners"
        try:
            files = self.client.list_files(query, order_by='modifiedTime desc', page_size=100)
        except status.BaseStatusException as ex:
            self._fail(ex)
            raise
        return [descriptor_from_file(f) for f in files]

    def import_document(self, document_id: str, permission: Optional[Permission] = None) -> ImportedDocument:
        """Read a document's schema and all of its data tabs.

        The default tab is the first tab that is not the hidden settings tab.

        Args:
            document_id (str): Spreadsheet id.
            permission (Permission, optional): Known permission. Looked up when omitted.
        """
        self.error = None
        settings_tab = self.context.section('app')['settings_tab']
        try:
            metadata = self.client.get_spreadsheet(
                document_id, fields='properties(title),spreadsheetUrl,sheets(properties)')
            tabs = self.resolver.tab_titles(metadata)
            data_tabs = [t for t in tabs if t != settings_tab]
            values = self.client.batch_get_values(document_id, [a1(t) for t in data_tabs]) if data_tabs else []

            default_tab = data_tabs[0] if data_tabs else None
            default_rows = values[0] if values else []
            if default_tab:
                schema = self.resolver.resolve(document_id, tab=default_tab, metadata=metadata)
            else:
                schema = self.resolver.default_schema()
            header = default_rows[0] if default_rows else []
            while header and not header[-1].strip():
                header = header[:-1]
            schema = self.resolver.reconcile(schema, list(header))

            if permission is None:
                permission = permission_of(self.client.get_file(document_id))
        except status.BaseStatusException as ex:
            self._fail(ex)
            raise

        names = schema.names
        records = [
            Record(fields={n: (row[i] if i < len(row) else '') for i, n in enumerate(names)}, row_position=2 + offset)
            for offset, row in enumerate(default_rows[1:])
        ]

        frames = {}
        for tab, rows in zip(data_tabs, values):
            frames[tab] = _frame(rows, names if tab == default_tab else None)

        logging.debug(f'Imported {len(records)} records and {len(data_tabs)} tabs from "{document_id}".')
        return ImportedDocument(
            id=document_id,
            name=metadata.get('properties', {}).get('title', ''),
            columns=schema,
            records=records,
            tabs=tabs,
            frames=frames,
            permission=Permission(permission),
            url=metadata.get('spreadsheetUrl'),
        )

    # Scheduling

    def load_auto_backup_settings(self) -> AutoBackupSettings:
        value = self.context.storage.get(AUTO_BACKUP_KEY)
        if not value:
            return AutoBackupSettings()
        try:
            return AutoBackupSettings.from_json(value)
        except ValueError as ex:
            logging.error(f'Invalid auto-backup settings, using defaults: {ex}')
            return AutoBackupSettings()

    def save_auto_backup_settings(self, settings: AutoBackupSettings) -> None:
        self.context.storage.set(AUTO_BACKUP_KEY, settings.to_json())

    def run_if_due(self, payload: Any, now: Optional[datetime.datetime] = None) -> BackupResult:
        """Save a backup if one is due. A failed run is not retried and does not count as a run."""
        now = now or self.clock()
        settings = self.load_auto_backup_settings()
        if not schedule_check(settings, now):
            return BackupResult(performed=False)

        logging.info('Scheduled backup is due.')
        try:
            container_id = self.get_or_create_container()
            self.save(container_id, payload)
        except status.BaseStatusException as ex:
            logging.error(f'Scheduled backup failed: {ex}')
            return BackupResult(performed=True, success=False, error=ex.message)

        settings.last_run = now
        self.save_auto_backup_settings(settings)
        return BackupResult(performed=True, success=True)
