"""
Google OAuth2 session lifecycle.

Provides the token provider used to obtain Google access tokens and the
session manager that owns the signed-in session: restoring it from durable
storage, interactive sign-in, silent and scheduled refresh, token validation,
sign-out and the hard session-age cap.
"""

import dataclasses
import datetime
import enum
import json
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
import requests
from PySide6 import QtCore

from ..status import status

DEFAULT_SCOPES: List[str] = [
    'https://www.googleapis.com/auth/spreadsheets',
    'https://www.googleapis.com/auth/drive.file',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://www.googleapis.com/auth/userinfo.email',
]

TOKENINFO_URL: str = 'https://www.googleapis.com/oauth2/v1/tokeninfo'
USERINFO_URL: str = 'https://www.googleapis.com/oauth2/v2/userinfo'
REVOKE_URL: str = 'https://oauth2.googleapis.com/revoke'
HTTP_TIMEOUT: int = 20

SESSION_MAX_AGE: float = 7 * 24 * 60 * 60
REFRESH_BUFFER: float = 5 * 60
DEFAULT_TOKEN_LIFETIME: int = 3600


class SessionState(enum.StrEnum):
    """States of the session lifecycle."""
    Unauthenticated = enum.auto()
    Authenticating = enum.auto()
    Authenticated = enum.auto()
    Refreshing = enum.auto()
    Expired = enum.auto()


class PromptMode(enum.StrEnum):
    """How much user interaction a token request may involve."""
    Silent = 'none'
    Auto = ''
    Consent = 'consent'


class StorageKey(enum.StrEnum):
    """Durable storage keys of the persisted session. Instants are epoch milliseconds."""
    AccessToken = 'khata_access_token'
    TokenExpiry = 'khata_token_expiry'
    User = 'khata_user'
    SessionStart = 'khata_session_start'


@dataclasses.dataclass
class Session:
    """The signed-in identity and its current credential. Instants are epoch seconds."""
    user_profile: Optional[Dict[str, Any]] = None
    access_token: Optional[str] = None
    token_expiry: Optional[float] = None
    session_start: Optional[float] = None


@dataclasses.dataclass
class TokenResponse:
    """Result delivered by a token provider callback."""
    access_token: Optional[str] = None
    expires_in: Optional[int] = None
    error: Optional[str] = None


@dataclasses.dataclass
class AuthResult:
    """Tagged result of a sign-in: either ``session`` or ``error`` is set."""
    session: Optional[Session] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.session is not None


def _to_ms(seconds: float) -> str:
    return str(int(round(seconds * 1000)))


def _from_ms(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return int(value) / 1000.0
    except ValueError:
        logging.error(f'Invalid stored instant: "{value}"')
        return None


class GoogleTokenProvider:
    """Obtains access tokens with google-auth and google-auth-oauthlib.

    Authorized-user credentials are cached in ``auth/creds.json`` so that
    later requests can refresh without opening a browser.

    Args:
        settings: The :class:`~KhataBook.settings.lib.SettingsAPI` instance.
        scopes (list[str], optional): OAuth scopes.
        http (requests.Session, optional): HTTP session for token introspection, profile and revocation.
    """

    def __init__(self, settings: Any, scopes: Optional[List[str]] = None,
                 http: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self.scopes = scopes or DEFAULT_SCOPES
        self.http = http or requests.Session()
        self._creds: Optional[google.oauth2.credentials.Credentials] = None
        self._lock = threading.Lock()

    def load(self) -> None:
        """Verify the client secret and load any cached credentials.

        Raises:
            status.ClientSecretNotFoundException: If no client id has been configured.
            status.ClientSecretInvalidException: If the client secret is malformed.
        """
        self.settings.load_client_secret()
        if not self.settings.is_client_secret_configured():
            raise status.ClientSecretNotFoundException

        with self._lock:
            self._creds = self._load_creds()

    def _load_creds(self) -> Optional[google.oauth2.credentials.Credentials]:
        path = self.settings.creds_path
        if not path.exists():
            return None

        try:
            logging.debug(f'Loading credentials from {path}...')
            creds = google.oauth2.credentials.Credentials.from_authorized_user_file(str(path))
        except (ValueError, json.JSONDecodeError) as ex:
            logging.error(f'Failed to load credentials, removing them: {ex}')
            path.unlink()
            return None

        if not set(self.scopes).issubset(set(creds.scopes or [])):
            logging.debug('Cached credentials have mismatched scopes; ignoring them.')
            return None
        return creds

    def _save_creds(self, creds: google.oauth2.credentials.Credentials) -> None:
        with open(self.settings.creds_path, 'w', encoding='utf-8') as token_file:
            token_file.write(creds.to_json())
        logging.debug(f'Credentials saved to {self.settings.creds_path}.')

    def clear_creds(self) -> None:
        """Forget cached credentials, in memory and on disk."""
        with self._lock:
            self._creds = None
            if self.settings.creds_path.exists():
                self.settings.creds_path.unlink()

    def _refresh(self) -> Optional[google.oauth2.credentials.Credentials]:
        if not self._creds or not self._creds.refresh_token:
            return None
        try:
            self._creds.refresh(google.auth.transport.requests.Request())
        except google.auth.exceptions.RefreshError as ex:
            logging.error(f'Refresh failed: {ex}')
            return None
        self._save_creds(self._creds)
        logging.debug('Successfully refreshed credentials.')
        return self._creds

    def _run_flow(self, prompt: PromptMode) -> google.oauth2.credentials.Credentials:
        self.settings.validate_client_secret()
        client_config = self.settings.get_section('client_secret')

        logging.debug(f'Starting OAuth flow (prompt="{prompt}")...')
        flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(client_config, scopes=self.scopes)
        kwargs = {'port': 0}
        if prompt == PromptMode.Consent:
            kwargs['prompt'] = 'consent'
        creds = flow.run_local_server(**kwargs)

        if not creds or not creds.token:
            raise status.CredsInvalidException('Authentication did not complete successfully.')
        self._save_creds(creds)
        return creds

    @staticmethod
    def _lifetime(creds: google.oauth2.credentials.Credentials) -> int:
        if not creds.expiry:
            return DEFAULT_TOKEN_LIFETIME
        # google-auth keeps expiry as naive UTC
        expiry = creds.expiry.replace(tzinfo=datetime.timezone.utc)
        remaining = expiry - datetime.datetime.now(datetime.timezone.utc)
        return max(0, int(remaining.total_seconds()))

    def request_token(self, prompt: PromptMode, callback: Callable[[TokenResponse], None]) -> None:
        """Request an access token and deliver the result to ``callback``.

        The call blocks until the token is available; run it from an
        :class:`~KhataBook.core.service.AsyncWorker` to keep a GUI responsive.

        Args:
            prompt (PromptMode): ``Silent`` only refreshes cached credentials.
                ``Auto`` refreshes when possible and otherwise opens the browser.
                ``Consent`` always opens the browser and forces the consent screen.
            callback: Receives a :class:`TokenResponse`.
        """
        with self._lock:
            try:
                creds = None
                if prompt != PromptMode.Consent:
                    creds = self._refresh()
                if creds is None and prompt == PromptMode.Silent:
                    callback(TokenResponse(error='interaction_required'))
                    return
                if creds is None:
                    creds = self._run_flow(prompt)
                self._creds = creds
            except Exception as ex:
                logging.error(f'Token request failed: {ex}')
                callback(TokenResponse(error=str(ex) or type(ex).__name__))
                return

        callback(TokenResponse(access_token=creds.token, expires_in=self._lifetime(creds)))

    def revoke(self, token: str, callback: Optional[Callable[[bool], None]] = None) -> None:
        """Revoke a token remotely on a daemon thread; the result is only logged."""

        def _revoke() -> None:
            ok = False
            try:
                response = self.http.post(
                    REVOKE_URL,
                    params={'token': token},
                    headers={'content-type': 'application/x-www-form-urlencoded'},
                    timeout=HTTP_TIMEOUT,
                )
                ok = response.ok
                logging.debug(f'Token revoked (HTTP {response.status_code}).')
            except requests.RequestException as ex:
                logging.error(f'Failed to revoke token: {ex}')
            if callback:
                callback(ok)

        threading.Thread(target=_revoke, daemon=True).start()

    def introspect(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the token info, or None if the token is rejected or the request fails."""
        try:
            response = self.http.get(TOKENINFO_URL, params={'access_token': token}, timeout=HTTP_TIMEOUT)
        except requests.RequestException as ex:
            logging.error(f'Token introspection failed: {ex}')
            return None
        if not response.ok:
            logging.debug(f'Token introspection rejected the token (HTTP {response.status_code}).')
            return None
        return response.json()

    def fetch_user_info(self, token: str) -> Optional[Dict[str, Any]]:
        """Return the signed-in user's profile, or None on failure."""
        try:
            response = self.http.get(
                USERINFO_URL,
                headers={'Authorization': f'Bearer {token}'},
                timeout=HTTP_TIMEOUT,
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as ex:
            logging.error(f'Failed to fetch user info: {ex}')
            return None


class SessionManager(QtCore.QObject):
    """Owns the signed-in session.

    The session is authenticated only while a token exists, the token is more
    than ``refresh_buffer`` seconds from expiry, and less than
    ``max_session_age`` has passed since the session started. The age cap holds
    regardless of how often the token is refreshed.

    Args:
        provider: Token provider, see :class:`GoogleTokenProvider`.
        storage: Durable :class:`~KhataBook.core.storage.KeyValueStore`.
        clock (callable, optional): Returns the current time in epoch seconds.
        max_session_age (float): Session-age cap in seconds.
        refresh_buffer (float): Seconds before expiry at which a token stops counting as valid.
        default_token_lifetime (int): Lifetime assumed when a token response carries none.

    Signals:
        stateChanged (str): Emitted with the new :class:`SessionState`.
        sessionChanged (): Emitted when the token or user changes.
    """
    stateChanged = QtCore.Signal(str)
    sessionChanged = QtCore.Signal()

    def __init__(self, provider: Any, storage: Any, clock: Optional[Callable[[], float]] = None,
                 max_session_age: float = SESSION_MAX_AGE, refresh_buffer: float = REFRESH_BUFFER,
                 default_token_lifetime: int = DEFAULT_TOKEN_LIFETIME,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self.provider = provider
        self.storage = storage
        self.clock = clock or time.time
        self.max_session_age = max_session_age
        self.refresh_buffer = refresh_buffer
        self.default_token_lifetime = default_token_lifetime

        self._lock = threading.RLock()
        self._session = Session()
        self._state = SessionState.Unauthenticated

        self._refresh_timer = QtCore.QTimer(self)
        self._refresh_timer.setSingleShot(True)
        self._refresh_timer.timeout.connect(self._on_refresh_timer)
        self._refresh_worker = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session(self) -> Session:
        """A copy of the current session."""
        with self._lock:
            return dataclasses.replace(self._session)

    @property
    def access_token(self) -> Optional[str]:
        return self._session.access_token

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return self._session.user_profile

    def refresh_scheduled(self) -> bool:
        """Return True if an automatic refresh is pending."""
        return self._refresh_timer.isActive()

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        logging.debug(f'Session state: {self._state} -> {state}')
        self._state = state
        self.stateChanged.emit(str(state))

    def _token_valid(self, now: float) -> bool:
        s = self._session
        return bool(s.access_token) and s.token_expiry is not None and now < s.token_expiry - self.refresh_buffer

    def _session_expired(self, now: float) -> bool:
        start = self._session.session_start
        return start is not None and now >= start + self.max_session_age

    def _schedule_refresh(self, seconds: float) -> None:
        self._refresh_timer.stop()
        if seconds <= 0:
            return
        logging.debug(f'Scheduling token refresh in {int(seconds)}s')
        self._refresh_timer.start(int(seconds * 1000))

    def _clear(self) -> None:
        self._refresh_timer.stop()
        self._session = Session()
        self.storage.remove_many([k.value for k in StorageKey])
        self.sessionChanged.emit()

    def _persist(self) -> None:
        s = self._session
        self.storage.set(StorageKey.AccessToken.value, s.access_token)
        self.storage.set(StorageKey.TokenExpiry.value, _to_ms(s.token_expiry))
        self.storage.set(StorageKey.SessionStart.value, _to_ms(s.session_start))
        if s.user_profile is not None:
            self.storage.set(StorageKey.User.value, json.dumps(s.user_profile))

    def _request_token(self, prompt: PromptMode) -> TokenResponse:
        """Adapt the provider's callback to a returned result."""
        responses: List[TokenResponse] = []
        try:
            self.provider.request_token(prompt, responses.append)
        except status.BaseStatusException as ex:
            return TokenResponse(error=ex.message)
        if not responses:
            return TokenResponse(error='The token provider did not respond.')
        return responses[0]

    def _adopt(self, response: TokenResponse) -> None:
        """Take a successful token response into the session."""
        now = self.clock()
        expires_in = response.expires_in or self.default_token_lifetime
        with self._lock:
            self._session.access_token = response.access_token
            self._session.token_expiry = now + expires_in
            if self._session.session_start is None:
                self._session.session_start = now
            self._persist()
            self._schedule_refresh(expires_in - self.refresh_buffer)
            self._set_state(SessionState.Authenticated)
        self.sessionChanged.emit()

    def _fetch_profile(self) -> None:
        profile = self.provider.fetch_user_info(self._session.access_token)
        if profile is None:
            logging.error('Could not fetch the user profile.')
            return
        with self._lock:
            self._session.user_profile = profile
            self.storage.set(StorageKey.User.value, json.dumps(profile))
        self.sessionChanged.emit()

    def initialize(self) -> None:
        """Load the token provider and restore a persisted session, if any."""
        try:
            self.provider.load()
        except (status.ClientSecretNotFoundException, status.ClientSecretInvalidException) as ex:
            logging.error(f'Token provider not ready: {ex}')
        self._restore()

    def _restore(self) -> None:
        token = self.storage.get(StorageKey.AccessToken.value)
        expiry = _from_ms(self.storage.get(StorageKey.TokenExpiry.value))
        user = self.storage.get(StorageKey.User.value)
        if not (token and expiry and user):
            logging.debug('No stored session to restore.')
            return

        now = self.clock()
        start = _from_ms(self.storage.get(StorageKey.SessionStart.value))
        if start is None:
            start = now

        if now >= start + self.max_session_age:
            logging.info('Session expired, clearing storage.')
            with self._lock:
                self._clear()
            return

        try:
            profile = json.loads(user)
        except ValueError:
            logging.error('Stored user profile is not valid JSON; ignoring it.')
            profile = None

        with self._lock:
            self._session = Session(user_profile=profile, session_start=start)
            if now < expiry - self.refresh_buffer:
                self._session.access_token = token
                self._session.token_expiry = expiry
                self._schedule_refresh(expiry - self.refresh_buffer - now)
                self._set_state(SessionState.Authenticated)
                logging.debug('Restored session from storage.')
                self.sessionChanged.emit()
                return

        logging.debug('Stored token expired, trying silent refresh.')
        self.silent_refresh()

    def sign_in(self) -> AuthResult:
        """Request a token interactively.

        Consent is forced only when no user has signed in on this machine before.

        Returns:
            AuthResult: The new session or an error message.
        """
        with self._lock:
            self._set_state(SessionState.Authenticating)
            prompt = PromptMode.Auto if self.storage.get(StorageKey.User.value) else PromptMode.Consent

        response = self._request_token(prompt)
        if response.error or not response.access_token:
            error = response.error or 'No access token received.'
            logging.error(f'Sign-in failed: {error}')
            with self._lock:
                now = self.clock()
                if self._token_valid(now) and not self._session_expired(now):
                    self._set_state(SessionState.Authenticated)
                else:
                    self._set_state(SessionState.Unauthenticated)
            return AuthResult(error=error)

        self._adopt(response)
        self._fetch_profile()
        return AuthResult(session=self.session)

    def sign_out(self) -> None:
        """Cancel the refresh timer, forget the session and revoke the token."""
        with self._lock:
            token = self._session.access_token
            self._clear()
            self._set_state(SessionState.Unauthenticated)

        if token:
            self.provider.revoke(token)

    def silent_refresh(self) -> bool:
        """Try to get a new token without user interaction. Failures are only logged.

        Returns:
            bool: True if a new token was adopted.
        """
        if not self._begin_refresh():
            return False
        return self._finish_refresh(self._request_token(PromptMode.Silent))

    def _begin_refresh(self) -> bool:
        with self._lock:
            if self._session_expired(self.clock()):
                # clears the session and storage
                self.is_authenticated()
                return False
            self._set_state(SessionState.Refreshing)
        return True

    def _on_refresh_timer(self) -> None:
        """Run the scheduled refresh on a worker thread; the result is adopted on this object's thread."""
        if self._refresh_worker is not None and self._refresh_worker.isRunning():
            logging.debug('A scheduled refresh is already running.')
            return
        if not self._begin_refresh():
            return

        from .service import AsyncWorker
        worker = AsyncWorker(self._request_token, PromptMode.Silent)
        worker.resultReady.connect(self._on_refresh_result)
        worker.errorOccurred.connect(self._on_refresh_error)
        self._refresh_worker = worker
        worker.start()

    @QtCore.Slot(object)
    def _on_refresh_result(self, response: TokenResponse) -> None:
        if self._state != SessionState.Refreshing:
            logging.debug(f'Ignoring refresh result, session is now {self._state}.')
            return
        self._finish_refresh(response)

    @QtCore.Slot(object)
    def _on_refresh_error(self, ex: Exception) -> None:
        self._on_refresh_result(TokenResponse(error=str(ex) or type(ex).__name__))

    def _finish_refresh(self, response: TokenResponse) -> bool:
        if response.error or not response.access_token:
            logging.error(f'Silent refresh failed: {response.error}')
            with self._lock:
                if self._token_valid(self.clock()):
                    self._set_state(SessionState.Authenticated)
                else:
                    self._set_state(SessionState.Unauthenticated)
            return False

        self._adopt(response)
        return True

    def validate_token(self) -> bool:
        """Check the current token remotely, refreshing silently when it is unusable."""
        token = self._session.access_token
        if not token:
            return False
        if not self._token_valid(self.clock()):
            self.silent_refresh()
            return False
        if self.provider.introspect(token) is None:
            self.silent_refresh()
            return False
        return True

    def is_authenticated(self) -> bool:
        """Return True if the session may be used.

        Accessing a session past the age cap clears durable storage.
        """
        with self._lock:
            now = self.clock()
            if self._session_expired(now):
                logging.info('Session reached its maximum age, signing out.')
                self._clear()
                self._set_state(SessionState.Expired)
                self._set_state(SessionState.Unauthenticated)
                return False
            return self._token_valid(now)

    def require_token(self) -> str:
        """Return the access token of an authenticated session.

        Raises:
            status.NotAuthenticatedException: If the session is not authenticated.
        """
        if not self.is_authenticated():
            from .signals import signals
            signals.authenticationRequested.emit()
            raise status.NotAuthenticatedException
        return self._session.access_token
