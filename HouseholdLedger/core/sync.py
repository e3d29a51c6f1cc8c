"""Background synchronisation between the local ledger and the remote spreadsheet.

The engine runs three cooperating schedules on the event loop:

    - :class:`PushScheduler`: debounces local mutations and writes every
      worksheet once the user stops editing. Network failures are retried a
      bounded number of times with an increasing delay.
    - :class:`PullScheduler`: polls the spreadsheet on a fixed interval and
      replaces the local ledger with the remote state, unless the user started
      editing while the read was in flight.
    - :class:`CredentialRefresher`: periodically refreshes the access token
      before it expires.

Remote calls never block the event loop; they are submitted to a
:class:`~.worker.TaskRunner`. All coordination state lives in a single
:class:`~.coordinator.SyncCoordinator` and the user-visible status in a
:class:`~.coordinator.SyncState`.

"""
import dataclasses
import datetime
import logging
from typing import Any, Dict, List, Optional

from PySide6 import QtCore

from .auth import AccessToken, CredentialProvider, ensure_fresh_token
from .coordinator import Debouncer, PushGuard, SyncCoordinator, SyncState
from .database import DatabaseAPI
from .ledger import LedgerStore
from .service import SheetsTransport
from .tables import TABLE_NAMES, decode_snapshot, encode_snapshot, is_remote_empty
from .worker import TaskRunner, ThreadedRunner
from ..settings.lib import RemoteConfig
from ..status import status
from ..status.status import FailureKind, SyncStatus
from ..ui.actions import signals

DEBOUNCE_MS: int = 2000
POLL_INTERVAL_MS: int = 30000
TOKEN_CHECK_INTERVAL_MS: int = 240000
REMOTE_UPDATE_SETTLE_MS: int = 500
RETRY_BASE_MS: int = 3000
MAX_RETRIES: int = 3

AUTH_LOST_MESSAGE: str = 'Authentication expired. Please reconnect your Google account.'
NOT_FOUND_MESSAGE: str = 'Spreadsheet not found. Check the spreadsheet ID and its sharing settings.'
NOT_AUTHENTICATED_MESSAGE: str = 'Not authenticated. Please reconnect your Google account.'
RETRIES_EXHAUSTED_MESSAGE: str = 'Network error. Automatic retries exhausted, use Sync now to try again.'


@dataclasses.dataclass
class SyncTimings:
    """Intervals used by the sync engine, in milliseconds."""
    debounce_ms: int = DEBOUNCE_MS
    poll_interval_ms: int = POLL_INTERVAL_MS
    token_check_interval_ms: int = TOKEN_CHECK_INTERVAL_MS
    remote_update_settle_ms: int = REMOTE_UPDATE_SETTLE_MS
    retry_base_ms: int = RETRY_BASE_MS
    max_retries: int = MAX_RETRIES


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class PushScheduler(QtCore.QObject):
    """Debounced, retried writes of the whole ledger to the spreadsheet.

    Args:
        engine: The owning engine.
    """

    def __init__(self, engine: 'SyncEngine') -> None:
        super().__init__(engine)
        self.engine = engine

        self.debouncer = Debouncer(engine.timings.debounce_ms, self)
        self.debouncer.fired.connect(self.push)

        self._retry_timer = QtCore.QTimer(self)
        self._retry_timer.setSingleShot(True)
        self._retry_timer.timeout.connect(self.push)

        self._pull_after = False
        self._generation = 0

    def arm(self) -> None:
        """Start or restart the quiet period."""
        self.engine.state.transition(SyncStatus.Saving)
        self.debouncer.trigger()

    def is_retry_scheduled(self) -> bool:
        return self._retry_timer.isActive()

    def schedule_retry(self, delay_ms: int) -> None:
        logging.info(f'Retrying push in {delay_ms} ms (attempt {self.engine.coordinator.retry_count}).')
        self._retry_timer.start(delay_ms)

    def cancel(self) -> None:
        """Cancel the pending quiet period and any scheduled retry."""
        self.debouncer.cancel()
        self._retry_timer.stop()

    def invalidate(self) -> None:
        """Cancel everything scheduled and discard the outcome of a push in flight."""
        self.cancel()
        self._pull_after = False
        self._generation += 1

    def push_now(self, pull_after: bool = False) -> None:
        """Push immediately, bypassing the quiet period.

        Args:
            pull_after: Pull once the push has succeeded.
        """
        self._pull_after = self._pull_after or pull_after
        self.cancel()
        self.push()

    @QtCore.Slot()
    def push(self) -> None:
        """Write the current ledger to every worksheet."""
        engine = self.engine
        coordinator = engine.coordinator

        if not engine.is_connected:
            logging.debug('Push skipped: remote link is not connected.')
            return
        if not coordinator.try_begin_push():
            logging.debug('Push already in flight, marking a pending edit.')
            coordinator.mark_pending_edit()
            return

        self._retry_timer.stop()
        engine.state.transition(SyncStatus.Saving)

        token = engine.provider.current_token()
        if token is None:
            coordinator.end_push()
            logging.error('Push aborted: no access token.')
            engine.handle_auth_lost(NOT_AUTHENTICATED_MESSAGE)
            return

        tables = encode_snapshot(engine.store.snapshot())
        provider = engine.provider
        transport = engine.transport

        def task() -> datetime.datetime:
            fresh = ensure_fresh_token(provider) or token
            transport.set_token(fresh)
            transport.write_tables(tables)
            return _utcnow()

        generation = self._generation
        logging.debug(f'Pushing {len(tables)} worksheet(s)...')
        engine.runner.submit(
            task,
            lambda when: self._on_push_result(generation, when),
            lambda ex: self._on_push_error(generation, ex),
        )

    def _on_push_result(self, generation: int, when: datetime.datetime) -> None:
        engine = self.engine
        if generation != self._generation:
            logging.debug('Discarding push result: remote link changed while writing.')
            return
        engine.coordinator.end_push()
        engine.coordinator.reset_retries()
        if not engine.is_connected:
            return

        engine.record_sync(when)
        logging.info('Ledger pushed to the spreadsheet.')

        if engine.coordinator.take_pending_edit():
            self.arm()
            return
        if self._pull_after:
            self._pull_after = False
            engine.puller.pull()

    def _on_push_error(self, generation: int, ex: BaseException) -> None:
        engine = self.engine
        if generation != self._generation:
            logging.debug(f'Ignoring push failure from a previous remote link: {ex}')
            return
        engine.coordinator.end_push()
        self._pull_after = False
        if not engine.is_connected:
            logging.debug(f'Ignoring push failure after disconnect: {ex}')
            return

        kind = status.classify_error(ex)
        logging.error(f'Push failed ({kind}): {ex}')

        if kind == FailureKind.AuthExpired:
            engine.handle_auth_lost(AUTH_LOST_MESSAGE)
            return

        if kind == FailureKind.RemoteNotFound:
            engine.fail(NOT_FOUND_MESSAGE)
        elif kind == FailureKind.NetworkTransient:
            delay = engine.coordinator.register_network_failure()
            if delay is None:
                engine.fail(RETRIES_EXHAUSTED_MESSAGE)
            else:
                engine.state.transition(
                    SyncStatus.Error,
                    f'{status.get_message(status.Status.NetworkTransient)} '
                    f'(attempt {engine.coordinator.retry_count} of {engine.coordinator.max_retries})'
                )
                self.schedule_retry(delay)
        else:
            engine.fail(str(ex) or status.get_message(status.Status.Unclassified))

        if engine.coordinator.take_pending_edit():
            self.arm()


class PullScheduler(QtCore.QObject):
    """Periodic reads of the spreadsheet into the local ledger.

    Args:
        engine: The owning engine.
    """

    def __init__(self, engine: 'SyncEngine') -> None:
        super().__init__(engine)
        self.engine = engine

        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(engine.timings.poll_interval_ms)
        self._timer.timeout.connect(self.pull)

        self._settle_timer = QtCore.QTimer(self)
        self._settle_timer.setSingleShot(True)
        self._settle_timer.setInterval(engine.timings.remote_update_settle_ms)
        self._settle_timer.timeout.connect(engine.coordinator.end_remote_update)

        self._generation = 0
        self._seed_check = False

    def is_active(self) -> bool:
        return self._timer.isActive()

    def start(self, immediate: bool = True) -> None:
        """Start polling.

        The first pull after a connect seeds an empty spreadsheet with the local
        ledger instead of wiping the local data.
        """
        self._seed_check = True
        self._timer.start()
        if immediate:
            self.pull()

    def stop(self) -> None:
        """Stop polling. Results of a pull still in flight are discarded."""
        self._timer.stop()
        self._generation += 1

    @QtCore.Slot()
    def pull(self) -> None:
        engine = self.engine
        coordinator = engine.coordinator

        if not engine.is_connected:
            return
        previous = engine.state.status
        previous_error = engine.state.last_error
        if not coordinator.try_begin_pull(previous):
            logging.debug(f'Pull skipped (status: {previous}, push in flight: {coordinator.push_in_flight}).')
            return

        token = engine.provider.current_token()
        if token is None:
            coordinator.end_pull()
            logging.warning('Pull aborted: no access token.')
            engine.recover_auth(previous, previous_error)
            return

        engine.state.transition(SyncStatus.Fetching)
        generation = self._generation
        provider = engine.provider
        transport = engine.transport

        def task() -> Dict[str, List[List[Any]]]:
            fresh = ensure_fresh_token(provider) or token
            transport.set_token(fresh)
            return transport.read_tables(TABLE_NAMES)

        engine.runner.submit(
            task,
            lambda tables: self._on_pull_result(generation, tables),
            lambda ex: self._on_pull_error(generation, previous, previous_error, ex),
        )

    def _on_pull_result(self, generation: int, tables: Dict[str, List[List[Any]]]) -> None:
        engine = self.engine
        coordinator = engine.coordinator
        coordinator.end_pull()
        if generation != self._generation or not engine.is_connected:
            logging.debug('Discarding pull result: remote link changed while reading.')
            return

        if coordinator.pull_result_is_stale(engine.state.status):
            logging.debug('Discarding pull result: local edits started while reading.')
            if engine.state.status == SyncStatus.Fetching:
                engine.state.transition(SyncStatus.Synced)
            return

        seed_check, self._seed_check = self._seed_check, False
        if seed_check and is_remote_empty(tables) and not engine.store.snapshot().is_empty():
            logging.info('Spreadsheet is empty, seeding it with the local ledger.')
            engine.pusher.push_now()
            return

        snapshot = decode_snapshot(tables)
        coordinator.begin_remote_update()
        try:
            engine.store.replace(snapshot)
        finally:
            self._settle_timer.start()

        if engine.state.status in (SyncStatus.Fetching, SyncStatus.Synced):
            engine.record_sync(_utcnow())
        logging.debug(f'Pulled {len(snapshot.transactions)} transactions from the spreadsheet.')

    def _on_pull_error(self, generation: int, previous: SyncStatus, previous_error: str,
                       ex: BaseException) -> None:
        engine = self.engine
        engine.coordinator.end_pull()
        if generation != self._generation or not engine.is_connected:
            return

        kind = status.classify_error(ex)
        if kind == FailureKind.AuthExpired:
            logging.warning(f'Pull was rejected, attempting a silent refresh: {ex}')
            engine.recover_auth(previous, previous_error)
            return

        # Poll failures are not surfaced
        logging.error(f'Pull failed ({kind}): {ex}')
        if engine.state.status == SyncStatus.Fetching:
            engine.state.transition(previous, previous_error)


class CredentialRefresher(QtCore.QObject):
    """Refreshes the access token shortly before it expires.

    Failures are logged only; the next remote call decides whether the link
    is still usable.
    """

    def __init__(self, engine: 'SyncEngine') -> None:
        super().__init__(engine)
        self.engine = engine

        self._timer = QtCore.QTimer(self)
        self._timer.setInterval(engine.timings.token_check_interval_ms)
        self._timer.timeout.connect(self.check)
        self._in_flight = False

    def is_active(self) -> bool:
        return self._timer.isActive()

    def start(self) -> None:
        self._timer.start()
        self.check()

    def stop(self) -> None:
        self._timer.stop()

    @QtCore.Slot()
    def check(self) -> None:
        engine = self.engine
        if not engine.is_connected or self._in_flight:
            return
        if not engine.provider.is_within_refresh_window():
            return

        logging.debug('Access token is about to expire, refreshing...')
        self._in_flight = True
        engine.runner.submit(engine.provider.acquire_silent, self._on_refreshed, self._on_failed)

    def _on_refreshed(self, token: AccessToken) -> None:
        self._in_flight = False
        if self.engine.is_connected:
            self.engine.transport.set_token(token)

    def _on_failed(self, ex: BaseException) -> None:
        self._in_flight = False
        logging.warning(f'Scheduled token refresh failed: {ex}')


class SyncEngine(QtCore.QObject):
    """Keeps a :class:`LedgerStore` and the remote spreadsheet in step.

    Args:
        store: The authoritative local ledger.
        transport: The spreadsheet transport.
        provider: Where access tokens come from.
        runner: Executes remote calls off the event loop. Defaults to a :class:`ThreadedRunner`.
        timings: Interval overrides.

    Signals:
        statusChanged (str): The sync status changed.
        errorChanged (str): The error message changed ('' when cleared).
        lastSyncedChanged (str): A sync completed, with its ISO timestamp.
        linkChanged (bool): The remote link was connected or disconnected.
    """
    statusChanged = QtCore.Signal(str)
    errorChanged = QtCore.Signal(str)
    lastSyncedChanged = QtCore.Signal(str)
    linkChanged = QtCore.Signal(bool)

    def __init__(self, store: LedgerStore, transport: SheetsTransport, provider: CredentialProvider,
                 runner: Optional[TaskRunner] = None, timings: Optional[SyncTimings] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self.store = store
        self.transport = transport
        self.provider = provider
        self.timings = timings or SyncTimings()
        self.runner: TaskRunner = runner or ThreadedRunner(self)

        self.coordinator = SyncCoordinator(self.timings.max_retries, self.timings.retry_base_ms)
        self.state = SyncState(parent=self)

        self._connected = False
        self._auth_lost = False

        self.pusher = PushScheduler(self)
        self.puller = PullScheduler(self)
        self.refresher = CredentialRefresher(self)

        self._connect_signals()

    def _connect_signals(self) -> None:
        self.state.statusChanged.connect(self.statusChanged)
        self.state.statusChanged.connect(signals.syncStatusChanged)
        self.state.errorChanged.connect(self.errorChanged)
        self.state.lastSyncedChanged.connect(self.lastSyncedChanged)
        self.store.changed.connect(self.on_ledger_changed)

    @property
    def status(self) -> SyncStatus:
        return self.state.status

    @property
    def last_error(self) -> str:
        return self.state.last_error

    @property
    def last_synced_at(self) -> Optional[datetime.datetime]:
        return self.state.last_synced_at

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _set_connected(self, value: bool) -> None:
        if value == self._connected:
            return
        self._connected = value
        self.linkChanged.emit(value)
        signals.remoteLinkChanged.emit(value)

    def connect_remote(self, config: Optional[RemoteConfig] = None,
                       interactive: bool = True, initial_pull: bool = True) -> bool:
        """Link the engine to a spreadsheet and start the schedules.

        Uses the stored token when it is still valid, then a silent refresh, and
        finally the interactive sign-in when ``interactive`` is set.

        Args:
            config: The remote link. Defaults to the transport's current one.
            interactive: Allow the interactive sign-in.
            initial_pull: Pull immediately instead of waiting one poll interval.

        Returns:
            bool: Whether the link is connected.
        """
        config = config or self.transport.config
        if not config.is_complete():
            logging.warning(f'Cannot connect, missing: {", ".join(config.missing_keys())}')
            self._teardown()
            self.state.transition(SyncStatus.Offline)
            return False

        if self._connected:
            self._teardown()

        self.transport.configure(config)
        self.provider.configure(config)

        try:
            token = self._acquire_token(interactive)
        except status.BaseStatusException as ex:
            logging.error(f'Could not connect the remote link: {ex}')
            self.fail(ex.status_message)
            return False

        self.transport.set_token(token)
        self.coordinator.reset()
        self._auth_lost = False
        self._set_connected(True)
        logging.info(f'Connected to spreadsheet {config.spreadsheet_id}.')

        self.refresher.start()
        self.puller.start(immediate=initial_pull)
        return True

    def _acquire_token(self, interactive: bool) -> AccessToken:
        token = self.provider.current_token()
        if token is not None:
            return token
        try:
            return self.provider.acquire_silent()
        except status.AuthExpiredException:
            if not interactive:
                raise
        return self.provider.acquire_interactive()

    def _teardown(self) -> None:
        self.pusher.invalidate()
        self.puller.stop()
        self.refresher.stop()
        self.coordinator.reset()
        self._set_connected(False)

    def disconnect_remote(self, sign_out: bool = False) -> None:
        """Unlink the spreadsheet and stop every schedule.

        A pending push is dropped; call :meth:`manual_sync` first to flush it.

        Args:
            sign_out: Also forget the stored credentials.
        """
        self._teardown()
        self.transport.set_token(None)
        if sign_out:
            self.provider.sign_out()
        self._auth_lost = False
        self.state.transition(SyncStatus.Offline)
        logging.info('Remote link disconnected.')

    def shutdown(self, msecs: int = 30000) -> None:
        """Stop the schedules and wait for running remote calls."""
        self._teardown()
        if isinstance(self.runner, ThreadedRunner):
            self.runner.wait(msecs)

    def manual_sync(self) -> bool:
        """Push the ledger now and pull afterwards.

        Cancels the quiet period and any scheduled retry, resets the retry
        counter and reconnects with the stored credentials when unlinked.

        Returns:
            bool: Whether a sync was started.
        """
        self.pusher.cancel()
        self.coordinator.reset_retries()
        if not self._connected and not self.connect_remote(initial_pull=False):
            return False
        self.pusher.push_now(pull_after=True)
        return True

    @QtCore.Slot(str)
    def on_ledger_changed(self, collection: str) -> None:
        """React to a local mutation of ``collection``."""
        guard = self.coordinator.push_guard(self._connected)
        if guard == PushGuard.RemoteUpdate:
            return

        self.coordinator.note_local_edit()
        if guard == PushGuard.Unlinked:
            if not self._auth_lost:
                self.state.transition(SyncStatus.Offline)
            return
        if guard == PushGuard.PushInFlight:
            logging.debug(f'"{collection}" changed while pushing, will push again.')
            self.coordinator.mark_pending_edit()
            return
        self.pusher.arm()

    def record_sync(self, when: datetime.datetime) -> None:
        self.state.mark_synced(when)
        try:
            DatabaseAPI.set_last_sync(when.isoformat())
        except status.CacheInvalidException as ex:
            logging.error(f'Could not record the sync time: {ex}')

    def fail(self, message: str) -> None:
        """Enter the error state and surface ``message``."""
        self.state.transition(SyncStatus.Error, message)
        signals.error.emit(message)

    def handle_auth_lost(self, message: str = AUTH_LOST_MESSAGE) -> None:
        """Disconnect after the credentials were rejected.

        The token is cleared, every schedule stops and automatic remote calls
        cease until the link is connected again.
        """
        self._teardown()
        self.transport.set_token(None)
        self.provider.sign_out()
        self._auth_lost = True
        self.fail(message)
        signals.authenticationRequested.emit()

    def recover_auth(self, previous: SyncStatus, previous_error: str = '') -> None:
        """Try one silent refresh after a pull was rejected, disconnecting if it fails."""

        def on_result(token: AccessToken) -> None:
            if not self._connected:
                return
            self.transport.set_token(token)
            logging.info('Access token refreshed after a rejected pull.')
            if self.state.status == SyncStatus.Fetching:
                self.state.transition(previous, previous_error)

        def on_error(ex: BaseException) -> None:
            if not self._connected:
                return
            logging.error(f'Silent refresh failed, disconnecting: {ex}')
            self.handle_auth_lost(AUTH_LOST_MESSAGE)

        self.runner.submit(self.provider.acquire_silent, on_result, on_error)
