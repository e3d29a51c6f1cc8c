"""Unittest base class and fakes for creating a clean test environment."""
import copy
import logging
import shutil
import tempfile
import time
import unittest
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from PySide6 import QtCore

from HouseholdLedger.core import database
from HouseholdLedger.core.auth import AccessToken, CredentialProvider
from HouseholdLedger.core.tables import TABLE_NAMES
from HouseholdLedger.core.worker import TaskRunner
from HouseholdLedger.settings import lib

_app: Optional[QtCore.QCoreApplication] = None

TEST_CONFIG = lib.RemoteConfig(
    client_id='client-id.apps.googleusercontent.com',
    api_key='api-key',
    spreadsheet_id='spreadsheet-id',
    client_secret='client-secret',
)


@contextmanager
def mute_ui_signals():
    from HouseholdLedger.ui.actions import signals
    blocker = QtCore.QSignalBlocker(signals)  # blocks every signal in `signals`
    try:
        yield
    finally:
        blocker.unblock()


def make_token(value: str = 'token-1', lifetime: float = 3600.0,
               refresh_token: Optional[str] = 'refresh-1') -> AccessToken:
    now = time.time()
    return AccessToken(
        access_token=value,
        expires_in=int(lifetime),
        expiry_instant=now + lifetime,
        refresh_token=refresh_token,
    )


class FakeTransport:
    """In-memory stand-in for :class:`SheetsTransport`.

    ``write_errors`` and ``read_errors`` are consumed one per call; ``read_error``
    is raised on every read while set.
    """

    def __init__(self, config: Optional[lib.RemoteConfig] = None) -> None:
        self.config = config or lib.RemoteConfig()
        self.tables: Dict[str, List[List[Any]]] = {n: [] for n in TABLE_NAMES}
        self.token: Optional[AccessToken] = None

        self.reads = 0
        self.write_attempts = 0
        self.writes: List[Dict[str, List[List[Any]]]] = []

        self.read_error: Optional[BaseException] = None
        self.read_errors: List[BaseException] = []
        self.write_errors: List[BaseException] = []

    def configure(self, config: lib.RemoteConfig) -> None:
        self.config = config

    def get_token(self) -> Optional[AccessToken]:
        return self.token

    def set_token(self, token: Optional[AccessToken]) -> None:
        self.token = token

    def read_tables(self, names: Optional[Iterable[str]] = None) -> Dict[str, List[List[Any]]]:
        self.reads += 1
        if self.read_errors:
            raise self.read_errors.pop(0)
        if self.read_error is not None:
            raise self.read_error
        return {n: copy.deepcopy(self.tables.get(n, [])) for n in (names or TABLE_NAMES)}

    def write_tables(self, tables: Dict[str, List[List[Any]]]) -> None:
        self.write_attempts += 1
        if self.write_errors:
            raise self.write_errors.pop(0)
        self.writes.append(copy.deepcopy(tables))
        self.tables.update(copy.deepcopy(tables))


class FakeProvider(CredentialProvider):
    """Credential provider with scripted outcomes."""

    def __init__(self, token: Optional[AccessToken] = None) -> None:
        self.token: Optional[AccessToken] = token if token is not None else make_token()
        self.silent_error: Optional[BaseException] = None
        self.interactive_error: Optional[BaseException] = None
        self.refresh_window = False

        self.silent_calls = 0
        self.interactive_calls = 0
        self.sign_outs = 0
        self.config: Optional[lib.RemoteConfig] = None

    def configure(self, config: lib.RemoteConfig) -> None:
        self.config = config

    def acquire_interactive(self) -> AccessToken:
        self.interactive_calls += 1
        if self.interactive_error is not None:
            raise self.interactive_error
        self.token = make_token(f'interactive-{self.interactive_calls}')
        return self.token

    def acquire_silent(self) -> AccessToken:
        self.silent_calls += 1
        if self.silent_error is not None:
            raise self.silent_error
        self.token = make_token(f'silent-{self.silent_calls}')
        self.refresh_window = False
        return self.token

    def current_token(self) -> Optional[AccessToken]:
        return self.token

    def sign_out(self) -> None:
        self.sign_outs += 1
        self.token = None

    def is_within_refresh_window(self) -> bool:
        return self.refresh_window


class ImmediateRunner(TaskRunner):
    """Runs tasks synchronously and reports the outcome straight away."""

    def __init__(self) -> None:
        self.submitted = 0

    def submit(self, func: Callable[[], Any], on_result: Callable[[Any], None],
               on_error: Callable[[BaseException], None]) -> None:
        self.submitted += 1
        try:
            result = func()
        except Exception as ex:
            on_error(ex)
        else:
            on_result(result)


class DeferredRunner(TaskRunner):
    """Queues tasks until the test decides to run them."""

    def __init__(self) -> None:
        self.tasks: List[Tuple[Callable[[], Any], Callable[[Any], None], Callable[[BaseException], None]]] = []

    @property
    def pending(self) -> int:
        return len(self.tasks)

    def submit(self, func: Callable[[], Any], on_result: Callable[[Any], None],
               on_error: Callable[[BaseException], None]) -> None:
        self.tasks.append((func, on_result, on_error))

    def run_next(self, index: int = 0) -> None:
        func, on_result, on_error = self.tasks.pop(index)
        try:
            result = func()
        except Exception as ex:
            on_error(ex)
        else:
            on_result(result)

    def run_all(self) -> None:
        while self.tasks:
            self.run_next()


class BaseTestCase(unittest.TestCase):
    """Base test case that points the settings and the cache at a fresh temporary directory."""

    temp_dir: str

    def setUp(self) -> None:
        """Set up a clean data directory and reinitialize all APIs."""
        global _app
        if not QtCore.QCoreApplication.instance():
            _app = QtCore.QCoreApplication([])  # type: ignore
            logging.debug('QtCore.QCoreApplication initialized for tests.')

        self.temp_dir = tempfile.mkdtemp(prefix='householdledger_test_')
        logging.debug(f'Created test data directory at {self.temp_dir}')

        # Reinitialize settings API
        self._settings = lib.settings
        lib.settings = lib.SettingsAPI(root=self.temp_dir)
        logging.debug('SettingsAPI reinitialized.')

        # Reinitialize database API
        self.database = database.DatabaseAPI()
        logging.debug('DatabaseAPI reinitialized.')

    def tearDown(self) -> None:
        """Restore the module settings and remove the test data directory."""
        lib.settings = self._settings
        shutil.rmtree(self.temp_dir, ignore_errors=True)
        logging.debug(f'Removed test data directory {self.temp_dir}')


