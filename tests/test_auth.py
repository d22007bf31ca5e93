import json
import threading
from unittest.mock import MagicMock, patch

import google.auth.exceptions
import requests
from PySide6 import QtCore

from KhataBook.core import auth
from KhataBook.core import storage
from KhataBook.core.signals import signals
from KhataBook.settings import lib
from KhataBook.status import status
from tests.base import BaseTestCase, FakeClock, FakeTokenProvider

DAY = 24 * 60 * 60


class SessionTestCase(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.clock = FakeClock()
        self.provider = FakeTokenProvider()
        self.storage = storage.TransientStore()
        self.manager = auth.SessionManager(self.provider, self.storage, clock=self.clock)

    def tearDown(self) -> None:
        self.manager.sign_out()
        super().tearDown()

    def sign_in(self, expires_in: int = 3600) -> auth.AuthResult:
        self.provider.queue('token-1', expires_in)
        return self.manager.sign_in()


class TestSignIn(SessionTestCase):

    def test_first_sign_in_forces_consent(self):
        result = self.sign_in()
        self.assertTrue(result.ok)
        self.assertEqual(self.provider.prompts, [auth.PromptMode.Consent])

    def test_returning_user_does_not_force_consent(self):
        self.storage.set(auth.StorageKey.User.value, json.dumps({'name': 'Earlier'}))
        self.sign_in()
        self.assertEqual(self.provider.prompts, [auth.PromptMode.Auto])

    def test_sign_in_persists_session(self):
        self.sign_in(expires_in=3600)

        self.assertTrue(self.manager.is_authenticated())
        self.assertEqual(self.manager.state, auth.SessionState.Authenticated)
        self.assertEqual(self.storage.get(auth.StorageKey.AccessToken.value), 'token-1')
        self.assertEqual(
            int(self.storage.get(auth.StorageKey.TokenExpiry.value)),
            int((self.clock.now + 3600) * 1000))
        self.assertEqual(
            int(self.storage.get(auth.StorageKey.SessionStart.value)),
            int(self.clock.now * 1000))
        self.assertEqual(json.loads(self.storage.get(auth.StorageKey.User.value))['name'], 'Test User')
        self.assertEqual(self.manager.user['email'], 'test@example.com')

    def test_sign_in_schedules_refresh(self):
        self.sign_in()
        self.assertTrue(self.manager.refresh_scheduled())
        self.assertEqual(self.manager._refresh_timer.interval(), (3600 - 300) * 1000)

    def test_sign_in_error_returns_tagged_result(self):
        self.provider.queue_error('access_denied')
        result = self.manager.sign_in()

        self.assertFalse(result.ok)
        self.assertEqual(result.error, 'access_denied')
        self.assertIsNone(result.session)
        self.assertEqual(self.manager.state, auth.SessionState.Unauthenticated)
        self.assertIsNone(self.storage.get(auth.StorageKey.AccessToken.value))

    def test_profile_failure_does_not_fail_sign_in(self):
        self.provider.profile = None
        result = self.sign_in()
        self.assertTrue(result.ok)
        self.assertIsNone(self.manager.user)

    def test_refresh_keeps_session_start(self):
        self.sign_in()
        start = self.manager.session.session_start

        self.clock.advance(3400)
        self.provider.queue('token-2')
        self.assertTrue(self.manager.silent_refresh())

        self.assertEqual(self.manager.access_token, 'token-2')
        self.assertEqual(self.manager.session.session_start, start)
        self.assertEqual(self.provider.prompts[-1], auth.PromptMode.Silent)


class TestSessionAge(SessionTestCase):

    def test_session_past_max_age_is_unauthenticated_and_storage_cleared(self):
        self.sign_in()
        start = self.clock.now

        # Keep the token fresh so only the age cap applies
        self.clock.now = start + 7 * DAY - 10
        self.provider.queue('token-2')
        self.manager.silent_refresh()
        self.assertTrue(self.manager.is_authenticated())

        states = []
        self.manager.stateChanged.connect(states.append)

        self.clock.now = start + 7 * DAY + 1
        self.assertFalse(self.manager.is_authenticated())
        for key in auth.StorageKey:
            self.assertIsNone(self.storage.get(key.value))
        self.assertEqual(states, [str(auth.SessionState.Expired), str(auth.SessionState.Unauthenticated)])
        self.assertFalse(self.manager.refresh_scheduled())

    def test_session_at_exact_max_age_is_unauthenticated(self):
        self.sign_in()
        start = self.clock.now
        self.manager._session.token_expiry = start + 8 * DAY
        self.clock.now = start + 7 * DAY
        self.assertFalse(self.manager.is_authenticated())

    def test_refresh_is_refused_after_max_age(self):
        self.sign_in()
        self.clock.advance(7 * DAY + 1)
        self.provider.queue('token-2')
        self.assertFalse(self.manager.silent_refresh())
        self.assertIsNone(self.manager.access_token)


class TestTokenBuffer(SessionTestCase):

    def test_token_valid_until_buffer(self):
        self.sign_in(expires_in=3600)
        expiry = self.manager.session.token_expiry

        self.clock.now = expiry - 300 - 1
        self.assertTrue(self.manager.is_authenticated())

        self.clock.now = expiry - 300
        self.assertFalse(self.manager.is_authenticated())

        self.clock.now = expiry - 299
        self.assertFalse(self.manager.is_authenticated())

    def test_no_token_is_unauthenticated(self):
        self.assertFalse(self.manager.is_authenticated())

    def test_require_token_raises_and_requests_authentication(self):
        requested = []
        signals.authenticationRequested.connect(lambda: requested.append(True))
        with self.assertRaises(status.NotAuthenticatedException):
            self.manager.require_token()
        self.assertTrue(requested)

    def test_require_token_returns_token(self):
        self.sign_in()
        self.assertEqual(self.manager.require_token(), 'token-1')


class TestRestore(SessionTestCase):

    def _store(self, token_expiry: float, session_start: float) -> None:
        self.storage.set(auth.StorageKey.AccessToken.value, 'stored-token')
        self.storage.set(auth.StorageKey.TokenExpiry.value, str(int(token_expiry * 1000)))
        self.storage.set(auth.StorageKey.SessionStart.value, str(int(session_start * 1000)))
        self.storage.set(auth.StorageKey.User.value, json.dumps({'name': 'Stored'}))

    def test_restores_valid_session(self):
        self._store(self.clock.now + 3600, self.clock.now - DAY)
        self.manager.initialize()

        self.assertTrue(self.provider.loaded)
        self.assertTrue(self.manager.is_authenticated())
        self.assertEqual(self.manager.access_token, 'stored-token')
        self.assertEqual(self.manager.user, {'name': 'Stored'})
        self.assertEqual(self.provider.prompts, [])
        self.assertTrue(self.manager.refresh_scheduled())

    def test_discards_session_past_max_age(self):
        self._store(self.clock.now + 3600, self.clock.now - 7 * DAY - 1)
        self.manager.initialize()

        self.assertFalse(self.manager.is_authenticated())
        self.assertIsNone(self.storage.get(auth.StorageKey.AccessToken.value))
        self.assertIsNone(self.storage.get(auth.StorageKey.User.value))

    def test_expired_token_tries_silent_refresh(self):
        start = self.clock.now - DAY
        self._store(self.clock.now + 60, start)
        self.provider.queue('fresh-token')
        self.manager.initialize()

        self.assertEqual(self.provider.prompts, [auth.PromptMode.Silent])
        self.assertTrue(self.manager.is_authenticated())
        self.assertEqual(self.manager.access_token, 'fresh-token')
        self.assertEqual(self.manager.session.session_start, start)

    def test_failed_silent_refresh_leaves_unauthenticated(self):
        self._store(self.clock.now - 60, self.clock.now - DAY)
        self.manager.initialize()

        self.assertEqual(self.manager.state, auth.SessionState.Unauthenticated)
        self.assertFalse(self.manager.is_authenticated())

    def test_nothing_stored(self):
        self.manager.initialize()
        self.assertEqual(self.provider.prompts, [])
        self.assertEqual(self.manager.state, auth.SessionState.Unauthenticated)


class TestSignOutAndValidate(SessionTestCase):

    def test_sign_out_clears_and_revokes(self):
        self.sign_in()
        self.manager.sign_out()

        self.assertFalse(self.manager.is_authenticated())
        self.assertFalse(self.manager.refresh_scheduled())
        self.assertEqual(self.provider.revoked, ['token-1'])
        for key in auth.StorageKey:
            self.assertIsNone(self.storage.get(key.value))

    def test_validate_without_token(self):
        self.assertFalse(self.manager.validate_token())
        self.assertEqual(self.provider.prompts, [])

    def test_validate_valid_token(self):
        self.sign_in()
        self.assertTrue(self.manager.validate_token())

    def test_validate_expired_token_refreshes(self):
        self.sign_in(expires_in=3600)
        self.clock.advance(3400)
        self.provider.queue('token-2')
        self.assertFalse(self.manager.validate_token())
        self.assertEqual(self.manager.access_token, 'token-2')

    def test_validate_rejected_token_refreshes(self):
        self.sign_in()
        self.provider.introspection = None
        self.assertFalse(self.manager.validate_token())
        self.assertEqual(self.provider.prompts[-1], auth.PromptMode.Silent)


class TestScheduledRefresh(SessionTestCase):

    def run_timer(self) -> None:
        self.manager._on_refresh_timer()
        self.manager._refresh_worker.wait(5000)
        QtCore.QCoreApplication.processEvents()

    def test_timer_refresh_runs_on_worker_thread(self):
        self.sign_in()
        threads = []
        request_token = self.provider.request_token

        def record_thread(prompt, callback):
            threads.append(threading.get_ident())
            request_token(prompt, callback)

        self.provider.request_token = record_thread
        self.provider.queue('token-2')
        self.clock.advance(3300)

        self.run_timer()

        self.assertEqual(len(threads), 1)
        self.assertNotEqual(threads[0], threading.get_ident())
        self.assertEqual(self.manager.access_token, 'token-2')
        self.assertEqual(self.manager.state, auth.SessionState.Authenticated)
        self.assertTrue(self.manager.refresh_scheduled())

    def test_timer_refresh_failure_is_quiet(self):
        self.sign_in()
        self.clock.advance(3400)

        self.run_timer()

        self.assertEqual(self.manager.state, auth.SessionState.Unauthenticated)
        self.assertEqual(self.provider.prompts[-1], auth.PromptMode.Silent)

    def test_result_after_sign_out_is_ignored(self):
        self.sign_in()
        self.provider.queue('token-2')
        self.manager._on_refresh_timer()
        self.manager._refresh_worker.wait(5000)
        self.manager.sign_out()
        QtCore.QCoreApplication.processEvents()

        self.assertIsNone(self.manager.access_token)
        self.assertIsNone(self.storage.get(auth.StorageKey.AccessToken.value))


class TestGoogleTokenProvider(BaseTestCase):

    def setUp(self) -> None:
        super().setUp()
        self.http = MagicMock(spec=requests.Session)
        self.provider = auth.GoogleTokenProvider(lib.settings, http=self.http)

    def _configure_client_secret(self) -> None:
        data = lib.settings.get_section('client_secret')
        data['installed']['client_id'] = 'client-id'
        data['installed']['project_id'] = 'project'
        data['installed']['client_secret'] = 'secret'
        lib.settings.set_section('client_secret', data)

    def test_load_without_client_id_raises(self):
        with self.assertRaises(status.ClientSecretNotFoundException):
            self.provider.load()

    def test_load_removes_corrupt_creds(self):
        self._configure_client_secret()
        lib.settings.creds_path.write_text('not a json', encoding='utf-8')
        self.provider.load()
        self.assertFalse(lib.settings.creds_path.exists())

    def test_silent_request_without_creds_reports_error(self):
        self._configure_client_secret()
        self.provider.load()

        responses = []
        self.provider.request_token(auth.PromptMode.Silent, responses.append)
        self.assertEqual(len(responses), 1)
        self.assertEqual(responses[0].error, 'interaction_required')

    def test_silent_request_refreshes_cached_creds(self):
        creds = MagicMock()
        creds.refresh_token = 'refresh'
        creds.token = 'new-token'
        creds.expiry = None
        creds.to_json.return_value = '{}'
        self.provider._creds = creds

        responses = []
        with patch('google.auth.transport.requests.Request'):
            self.provider.request_token(auth.PromptMode.Silent, responses.append)

        creds.refresh.assert_called_once()
        self.assertEqual(responses[0].access_token, 'new-token')
        self.assertEqual(responses[0].expires_in, auth.DEFAULT_TOKEN_LIFETIME)
        self.assertTrue(lib.settings.creds_path.exists())

    def test_failed_refresh_reports_error(self):
        creds = MagicMock()
        creds.refresh_token = 'refresh'
        creds.refresh.side_effect = google.auth.exceptions.RefreshError('revoked')
        self.provider._creds = creds

        responses = []
        with patch('google.auth.transport.requests.Request'):
            self.provider.request_token(auth.PromptMode.Silent, responses.append)
        self.assertIsNotNone(responses[0].error)

    def test_consent_runs_flow_with_prompt(self):
        self._configure_client_secret()
        creds = MagicMock()
        creds.token = 'flow-token'
        creds.expiry = None
        creds.to_json.return_value = '{}'
        flow = MagicMock()
        flow.run_local_server.return_value = creds

        responses = []
        with patch('google_auth_oauthlib.flow.InstalledAppFlow.from_client_config', return_value=flow):
            self.provider.request_token(auth.PromptMode.Consent, responses.append)

        flow.run_local_server.assert_called_once_with(port=0, prompt='consent')
        self.assertEqual(responses[0].access_token, 'flow-token')

    def test_introspect_rejected(self):
        self.http.get.return_value = MagicMock(ok=False, status_code=400)
        self.assertIsNone(self.provider.introspect('bad'))

    def test_introspect_network_failure(self):
        self.http.get.side_effect = requests.ConnectionError('offline')
        self.assertIsNone(self.provider.introspect('token'))

    def test_fetch_user_info(self):
        response = MagicMock()
        response.json.return_value = {'name': 'A'}
        self.http.get.return_value = response
        self.assertEqual(self.provider.fetch_user_info('token'), {'name': 'A'})
        _, kwargs = self.http.get.call_args
        self.assertEqual(kwargs['headers']['Authorization'], 'Bearer token')
