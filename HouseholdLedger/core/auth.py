"""
Google OAuth2 credential storage and acquisition.

Provides:
    - AccessToken: an access token with its absolute expiry instant
    - CredentialStore: persists the token next to the settings and purges it once expired
    - CredentialProvider: the interface the sync engine uses to obtain tokens
    - GoogleCredentialProvider: interactive sign-in through the installed-app flow and
      silent refresh through the stored refresh token
"""

import dataclasses
import datetime
import json
import logging
import pathlib
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
import google_auth_oauthlib.flow
from PySide6 import QtCore

from ..settings.lib import RemoteConfig
from ..status import status

DEFAULT_SCOPES: List[str] = ['https://www.googleapis.com/auth/spreadsheets', ]
TOKEN_URI: str = 'https://oauth2.googleapis.com/token'

DEFAULT_EXPIRES_IN: int = 3600
REFRESH_WINDOW_SECONDS: int = 300


@dataclasses.dataclass
class AccessToken:
    """An OAuth access token.

    Attributes:
        access_token: The bearer token.
        expires_in: Lifetime in seconds as reported at issue time.
        expiry_instant: Absolute expiry as a POSIX timestamp.
        refresh_token: Optional token used for silent refresh.
        scopes: Granted scopes.
    """
    access_token: str
    expires_in: int = DEFAULT_EXPIRES_IN
    expiry_instant: float = 0.0
    refresh_token: Optional[str] = None
    scopes: List[str] = dataclasses.field(default_factory=list)

    @classmethod
    def from_response(cls, data: Dict[str, Any], now: Optional[float] = None) -> 'AccessToken':
        """Build a token from an OAuth token response.

        ``expiry_instant`` is ``now + expires_in``, with a default lifetime of one hour.

        Raises:
            ValueError: If the response carries no access token.
        """
        if not data.get('access_token'):
            raise ValueError('Token response has no access_token.')
        now = time.time() if now is None else now
        expires_in = int(data.get('expires_in') or DEFAULT_EXPIRES_IN)
        scopes = data.get('scopes') or data.get('scope') or []
        if isinstance(scopes, str):
            scopes = scopes.split()
        return cls(
            access_token=data['access_token'],
            expires_in=expires_in,
            expiry_instant=float(data.get('expiry_instant') or now + expires_in),
            refresh_token=data.get('refresh_token') or None,
            scopes=list(scopes),
        )

    @classmethod
    def from_credentials(cls, creds: google.oauth2.credentials.Credentials,
                         refresh_token: Optional[str] = None,
                         now: Optional[float] = None) -> 'AccessToken':
        """Build a token from google-auth credentials."""
        now = time.time() if now is None else now
        if creds.expiry is not None:
            # google-auth reports expiry as a naive UTC datetime
            expiry = creds.expiry.replace(tzinfo=datetime.timezone.utc).timestamp()
            expires_in = max(0, int(expiry - now))
        else:
            expires_in = DEFAULT_EXPIRES_IN
            expiry = now + expires_in
        return cls(
            access_token=creds.token,
            expires_in=expires_in,
            expiry_instant=expiry,
            refresh_token=creds.refresh_token or refresh_token,
            scopes=list(creds.scopes or DEFAULT_SCOPES),
        )

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expiry_instant

    def time_remaining(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, self.expiry_instant - now)

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


class CredentialStore:
    """Persists the current access token and its expiry instant.

    A token is usable only while ``now < expiry_instant``. Once expired it is
    purged on the next read: the access token is dropped, and the refresh token,
    if any, is kept so a silent refresh can still succeed.

    Args:
        path: Token file. Defaults to ``settings.creds_path``.
        clock: Returns the current POSIX time.
    """

    def __init__(self, path: Optional[pathlib.Path] = None,
                 clock: Callable[[], float] = time.time) -> None:
        self._path = path
        self._clock = clock
        self._lock = threading.RLock()

    @property
    def path(self) -> pathlib.Path:
        if self._path is not None:
            return self._path
        from ..settings import lib
        return lib.settings.creds_path

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with self.path.open('r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as ex:
            logging.error(f'Stored credentials are unreadable, removing them: {ex}')
            self._unlink()
            return None
        if not isinstance(data, dict):
            self._unlink()
            return None
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open('w', encoding='utf-8') as f:
            json.dump(data, f, indent=4)

    def _unlink(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as ex:
            logging.error(f'Failed to remove {self.path}: {ex}')

    def get_saved_token(self) -> Optional[AccessToken]:
        """Return the stored token, or None if absent or expired.

        Expired tokens are purged as a side effect.
        """
        with self._lock:
            data = self._read()
            if not data or not data.get('access_token'):
                return None

            try:
                token = AccessToken.from_response(data)
            except (TypeError, ValueError) as ex:
                logging.error(f'Stored token is invalid, removing it: {ex}')
                self._unlink()
                return None

            if token.is_expired(self._clock()):
                logging.debug('Stored access token expired, purging it.')
                self._purge(token)
                return None
            return token

    def _purge(self, token: AccessToken) -> None:
        if token.refresh_token:
            self._write({'refresh_token': token.refresh_token, 'expiry_instant': token.expiry_instant})
        else:
            self._unlink()

    def get_refresh_token(self) -> Optional[str]:
        with self._lock:
            data = self._read()
            return (data or {}).get('refresh_token') or None

    def save_token(self, token: AccessToken) -> None:
        """Persist a token. Tokens without an access token are ignored."""
        if not token or not token.access_token:
            logging.warning('Refusing to save an empty token.')
            return
        with self._lock:
            data = token.to_dict()
            if not data.get('refresh_token'):
                data['refresh_token'] = self.get_refresh_token()
            self._write(data)
        logging.debug(f'Token saved. Expires in {int(token.time_remaining(self._clock()))} seconds.')

    def clear_token(self) -> None:
        """Remove the stored token and refresh token."""
        with self._lock:
            if self.path.exists():
                self._unlink()
                logging.debug('Stored credentials removed.')

    def _expiry_instant(self) -> Optional[float]:
        data = self._read()
        if not data or 'expiry_instant' not in data:
            return None
        try:
            return float(data['expiry_instant'])
        except (TypeError, ValueError):
            return None

    def time_remaining(self) -> int:
        """Whole seconds until the stored token expires, never negative."""
        with self._lock:
            expiry = self._expiry_instant()
            if expiry is None:
                return 0
            return max(0, int(expiry - self._clock()))

    def is_within_refresh_window(self, threshold: int = REFRESH_WINDOW_SECONDS) -> bool:
        """True when a token expiry is recorded and falls within ``threshold`` seconds."""
        with self._lock:
            expiry = self._expiry_instant()
            if expiry is None:
                return False
            return (expiry - self._clock()) < threshold


class CredentialProvider:
    """Token acquisition as seen by the sync engine."""

    def acquire_interactive(self) -> AccessToken:
        """Obtain a token with user interaction.

        Raises:
            status.AuthExpiredException: If sign-in fails or is cancelled.
        """
        raise NotImplementedError

    def acquire_silent(self) -> AccessToken:
        """Obtain a fresh token without user interaction.

        Raises:
            status.AuthExpiredException: If a silent refresh is not possible.
        """
        raise NotImplementedError

    def current_token(self) -> Optional[AccessToken]:
        """Return the currently usable token, if any."""
        raise NotImplementedError

    def sign_out(self) -> None:
        """Forget all credentials."""
        raise NotImplementedError

    def is_within_refresh_window(self) -> bool:
        raise NotImplementedError

    def configure(self, config: RemoteConfig) -> None:
        """Use another OAuth client for future acquisitions."""


class GoogleCredentialProvider(CredentialProvider):
    """Credential provider backed by google-auth and google-auth-oauthlib.

    Args:
        store: Where tokens are persisted.
        config: The remote link configuration providing the OAuth client.
    """

    def __init__(self, store: CredentialStore, config: Optional[RemoteConfig] = None) -> None:
        self.store = store
        self.config = config or RemoteConfig()
        self._lock = threading.Lock()

    def configure(self, config: RemoteConfig) -> None:
        self.config = config

    def acquire_interactive(self) -> AccessToken:
        """Run the installed-app OAuth flow. Must be called on the main thread."""
        app = QtCore.QCoreApplication.instance()
        if app is not None and QtCore.QThread.currentThread() != app.thread():
            raise RuntimeError('acquire_interactive must be called from the main thread')
        if not self.config.client_id:
            raise status.RemoteNotConfiguredException('Client ID is required to sign in.')

        logging.debug('Starting OAuth flow...')
        flow = google_auth_oauthlib.flow.InstalledAppFlow.from_client_config(
            self.config.client_config(), scopes=DEFAULT_SCOPES
        )
        try:
            creds = flow.run_local_server(port=0)
        except Exception as ex:
            logging.error(f'OAuth flow error: {ex}')
            raise status.AuthExpiredException(f'OAuth flow failed: {ex}') from ex

        if not creds or not creds.token:
            raise status.AuthExpiredException('Authentication was cancelled or no credentials obtained.')

        token = AccessToken.from_credentials(creds)
        self.store.save_token(token)
        logging.info('Signed in to Google.')
        return token

    def acquire_silent(self) -> AccessToken:
        """Refresh the access token with the stored refresh token."""
        with self._lock:
            refresh_token = self.store.get_refresh_token()
            if not refresh_token:
                raise status.AuthExpiredException('No refresh token; interactive sign-in required.')

            creds = google.oauth2.credentials.Credentials(
                token=None,
                refresh_token=refresh_token,
                token_uri=TOKEN_URI,
                client_id=self.config.client_id,
                client_secret=self.config.client_secret or None,
                scopes=DEFAULT_SCOPES,
            )
            try:
                creds.refresh(google.auth.transport.requests.Request())
            except google.auth.exceptions.RefreshError as ex:
                raise status.AuthExpiredException(f'Silent refresh was rejected: {ex}') from ex
            except google.auth.exceptions.TransportError as ex:
                raise status.NetworkTransientException(f'Silent refresh failed: {ex}') from ex

            token = AccessToken.from_credentials(creds, refresh_token=refresh_token)
            self.store.save_token(token)
            logging.debug('Access token refreshed silently.')
            return token

    def current_token(self) -> Optional[AccessToken]:
        return self.store.get_saved_token()

    def sign_out(self) -> None:
        self.store.clear_token()
        logging.info('Signed out of Google.')

    def is_within_refresh_window(self) -> bool:
        return self.store.is_within_refresh_window()


def ensure_fresh_token(provider: CredentialProvider) -> Optional[AccessToken]:
    """Refresh the token silently when it is inside the refresh window.

    Refresh failures are logged and swallowed: the caller proceeds with whatever
    token is still current and lets the remote call decide.

    Returns:
        Optional[AccessToken]: The token to use, or None if there is none.
    """
    if provider.is_within_refresh_window():
        try:
            return provider.acquire_silent()
        except status.BaseStatusException as ex:
            logging.warning(f'Proactive token refresh failed: {ex}')
    return provider.current_token()
