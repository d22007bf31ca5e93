"""Client context shared by the core components.

The context carries the session manager, the settings, client-side storage
and the network client. Components receive it in their constructor instead
of reaching for module-level globals, so tests can hand in fakes.
"""

import logging
import threading
from typing import Any, Optional

import google.oauth2.credentials
from googleapiclient.discovery import build

from . import auth
from . import storage as storage_lib
from .signals import signals


class ClientContext:
    """Holds the collaborators of the record store and backup engine.

    Args:
        session: The :class:`~KhataBook.core.auth.SessionManager`.
        settings: The :class:`~KhataBook.settings.lib.SettingsAPI`.
        storage: Durable key-value storage.
        client (optional): Network client. Defaults to a :class:`~KhataBook.core.service.SheetsClient`.
        sheets_service (optional): A prebuilt Sheets API resource.
        drive_service (optional): A prebuilt Drive API resource.
    """

    def __init__(self, session: Any, settings: Any, storage: Any, client: Any = None,
                 sheets_service: Any = None, drive_service: Any = None) -> None:
        self.session = session
        self.settings = settings
        self.storage = storage
        self.transient = storage_lib.TransientStore()

        self._lock = threading.Lock()
        self._fixed_services = sheets_service is not None or drive_service is not None
        self._sheets_service = sheets_service
        self._drive_service = drive_service
        self._service_token: Optional[str] = None

        if client is None:
            from .service import SheetsClient
            client = SheetsClient(self)
        self.client = client

        signals.configSectionChanged.connect(self._on_config_changed)

    def _on_config_changed(self, section: str) -> None:
        if section == 'client_secret':
            self.clear_services()

    def _ensure_services(self) -> None:
        if self._fixed_services:
            return
        token = self.session.require_token()
        if self._service_token == token and self._sheets_service is not None:
            return

        logging.debug('Building Google Sheets and Drive service clients.')
        creds = google.oauth2.credentials.Credentials(token)
        self._sheets_service = build('sheets', 'v4', credentials=creds, cache_discovery=False)
        self._drive_service = build('drive', 'v3', credentials=creds, cache_discovery=False)
        self._service_token = token

    def sheets(self) -> Any:
        """Return the Sheets v4 resource for the current token."""
        with self._lock:
            self._ensure_services()
            return self._sheets_service

    def drive(self) -> Any:
        """Return the Drive v3 resource for the current token."""
        with self._lock:
            self._ensure_services()
            return self._drive_service

    def clear_services(self) -> None:
        """Drop cached API resources; they are rebuilt on next use."""
        with self._lock:
            if self._fixed_services:
                return
            for service in (self._sheets_service, self._drive_service):
                if service is None:
                    continue
                try:
                    service.close()
                except OSError as ex:
                    logging.debug(f'Failed closing cached service client: {ex}')
            self._sheets_service = None
            self._drive_service = None
            self._service_token = None

    def section(self, name: str) -> Any:
        """Shortcut for ``settings.get_section``."""
        return self.settings.get_section(name)

    @classmethod
    def create(cls, settings: Any = None) -> 'ClientContext':
        """Wire the default collaborators from the settings.

        Args:
            settings (optional): Defaults to the shared :func:`~KhataBook.settings.lib.get_settings`.
        """
        if settings is None:
            from ..settings import lib
            settings = lib.get_settings()

        durable = storage_lib.DurableStore(settings.storage_path)
        config = settings.get_section('session')

        provider = auth.GoogleTokenProvider(settings)
        session = auth.SessionManager(
            provider,
            durable,
            max_session_age=config['max_age_days'] * 24 * 60 * 60,
            refresh_buffer=config['refresh_buffer_seconds'],
            default_token_lifetime=config['default_token_lifetime'],
        )
        return cls(session, settings, durable)
