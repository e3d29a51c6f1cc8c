"""Coordination primitives for the sync engine.

- :class:`Debouncer`: a cancellable quiet-period timer with supersede semantics.
- :class:`SyncState`: the sync status as an explicit state machine.
- :class:`SyncCoordinator`: owns the in-flight flags, the edit epoch and the
  retry counter, and exposes them only through intention-revealing methods.
"""
import datetime
import enum
import logging
from typing import Dict, FrozenSet, Optional

from PySide6 import QtCore

from ..status.status import SyncStatus


class Debouncer(QtCore.QObject):
    """Single-shot timer that restarts on every trigger.

    However many times :meth:`trigger` is called within the quiet period,
    :attr:`fired` is emitted once, ``interval_ms`` after the last call.

    Signals:
        fired (): Emitted when the quiet period elapses.
    """
    fired = QtCore.Signal()

    def __init__(self, interval_ms: int, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self._timer = QtCore.QTimer(self)
        self._timer.setSingleShot(True)
        self._timer.setInterval(interval_ms)
        self._timer.timeout.connect(self.fired)

    @property
    def interval(self) -> int:
        return self._timer.interval()

    def trigger(self) -> None:
        """Cancel any pending fire and start a new quiet period."""
        self._timer.start()

    def cancel(self) -> None:
        self._timer.stop()

    def is_pending(self) -> bool:
        return self._timer.isActive()

    def flush(self) -> bool:
        """Fire now if a fire is pending.

        Returns:
            bool: Whether :attr:`fired` was emitted.
        """
        if not self._timer.isActive():
            return False
        self._timer.stop()
        self.fired.emit()
        return True


ALLOWED_TRANSITIONS: Dict[SyncStatus, FrozenSet[SyncStatus]] = {
    SyncStatus.Offline: frozenset({
        SyncStatus.Offline, SyncStatus.Saving, SyncStatus.Fetching, SyncStatus.Error,
    }),
    SyncStatus.Synced: frozenset(SyncStatus),
    SyncStatus.Saving: frozenset({
        SyncStatus.Saving, SyncStatus.Synced, SyncStatus.Error, SyncStatus.Offline,
    }),
    SyncStatus.Fetching: frozenset({
        SyncStatus.Fetching, SyncStatus.Saving, SyncStatus.Synced, SyncStatus.Error, SyncStatus.Offline,
    }),
    SyncStatus.Error: frozenset({
        SyncStatus.Error, SyncStatus.Saving, SyncStatus.Fetching, SyncStatus.Offline,
    }),
}


class IllegalTransitionError(ValueError):
    """Raised when the sync status is asked to make a transition the state machine forbids."""


class SyncState(QtCore.QObject):
    """The single sync status value, with its error message and last sync time.

    Transitions are checked against :data:`ALLOWED_TRANSITIONS`; a push that is
    saving can never be reported as fetching.

    Signals:
        statusChanged (str): Emitted with the new status when it changes.
        errorChanged (str): Emitted with the new error message ('' when cleared).
        lastSyncedChanged (str): Emitted with the ISO timestamp of a successful sync.
    """
    statusChanged = QtCore.Signal(str)
    errorChanged = QtCore.Signal(str)
    lastSyncedChanged = QtCore.Signal(str)

    def __init__(self, initial: SyncStatus = SyncStatus.Offline,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)
        self._status: SyncStatus = initial
        self._last_error: str = ''
        self._last_synced_at: Optional[datetime.datetime] = None

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def last_error(self) -> str:
        return self._last_error

    @property
    def last_synced_at(self) -> Optional[datetime.datetime]:
        return self._last_synced_at

    def can_transition(self, new: SyncStatus) -> bool:
        return SyncStatus(new) in ALLOWED_TRANSITIONS[self._status]

    def transition(self, new: SyncStatus, error: Optional[str] = None) -> None:
        """Move to ``new``. Non-error states clear the error message.

        Args:
            new: The target status.
            error: Error message to record. Only used for the error state.

        Raises:
            IllegalTransitionError: If the transition is not allowed.
        """
        new = SyncStatus(new)
        if not self.can_transition(new):
            raise IllegalTransitionError(f'Illegal sync status transition: {self._status} -> {new}')

        if new == SyncStatus.Error:
            self._set_error(error or self._last_error)
        else:
            self._set_error('')

        if new == self._status:
            return
        logging.debug(f'Sync status: {self._status} -> {new}')
        self._status = new
        self.statusChanged.emit(new.value)

    def _set_error(self, message: str) -> None:
        if message == self._last_error:
            return
        self._last_error = message
        self.errorChanged.emit(message)

    def mark_synced(self, when: Optional[datetime.datetime] = None) -> None:
        """Record a successful sync and move to synced."""
        self._last_synced_at = when or datetime.datetime.now(datetime.timezone.utc)
        self.transition(SyncStatus.Synced)
        self.lastSyncedChanged.emit(self._last_synced_at.isoformat())


class PushGuard(enum.StrEnum):
    """Outcome of asking whether a local mutation should arm a push."""
    Arm = enum.auto()
    Unlinked = enum.auto()
    RemoteUpdate = enum.auto()
    PushInFlight = enum.auto()


class SyncCoordinator:
    """Owns the flags that keep push, pull and remote-originated updates apart.

    All access happens on the event-loop thread, so the flags need no locking.

    Args:
        max_retries: Automatic retries allowed for consecutive network failures.
        retry_base_ms: Retry ``n`` is scheduled ``retry_base_ms * n`` after the failure.
    """

    def __init__(self, max_retries: int = 3, retry_base_ms: int = 3000) -> None:
        self.max_retries = max_retries
        self.retry_base_ms = retry_base_ms

        self._push_in_flight = False
        self._pull_in_flight = False
        self._remote_update = False
        self._pending_edit = False
        self._retry_count = 0

        self._edit_epoch = 0
        self._pull_epoch = 0
        self._push_epoch = 0
        self._pull_push_epoch = 0

    @property
    def push_in_flight(self) -> bool:
        return self._push_in_flight

    @property
    def pull_in_flight(self) -> bool:
        return self._pull_in_flight

    @property
    def retry_count(self) -> int:
        return self._retry_count

    def is_remote_update(self) -> bool:
        return self._remote_update

    def push_guard(self, linked: bool) -> PushGuard:
        """Decide what a local mutation should do about pushing."""
        if not linked:
            return PushGuard.Unlinked
        if self._remote_update:
            return PushGuard.RemoteUpdate
        if self._push_in_flight:
            return PushGuard.PushInFlight
        return PushGuard.Arm

    def note_local_edit(self) -> None:
        """Record a user mutation. Invalidates any pull that is in flight."""
        self._edit_epoch += 1

    def try_begin_push(self) -> bool:
        if self._push_in_flight:
            return False
        self._push_in_flight = True
        self._push_epoch += 1
        return True

    def end_push(self) -> None:
        self._push_in_flight = False

    def try_begin_pull(self, status: SyncStatus) -> bool:
        """Claim the pull slot unless a pull is running or local edits are being saved."""
        if self._pull_in_flight or self._push_in_flight or status == SyncStatus.Saving:
            return False
        self._pull_in_flight = True
        self._pull_epoch = self._edit_epoch
        self._pull_push_epoch = self._push_epoch
        return True

    def end_pull(self) -> None:
        self._pull_in_flight = False

    def pull_result_is_stale(self, status: SyncStatus) -> bool:
        """True when local edits or a push began after the pull's read was issued."""
        return (
                self._push_in_flight
                or status == SyncStatus.Saving
                or self._edit_epoch != self._pull_epoch
                or self._push_epoch != self._pull_push_epoch
        )

    def begin_remote_update(self) -> None:
        self._remote_update = True

    def end_remote_update(self) -> None:
        self._remote_update = False

    def mark_pending_edit(self) -> None:
        self._pending_edit = True

    def take_pending_edit(self) -> bool:
        """Return and clear the pending-edit marker."""
        pending, self._pending_edit = self._pending_edit, False
        return pending

    def register_network_failure(self) -> Optional[int]:
        """Count a network failure.

        Returns:
            Optional[int]: Delay before the next automatic retry in milliseconds,
            or None once the retry cap is reached.
        """
        if self._retry_count >= self.max_retries:
            return None
        self._retry_count += 1
        return self.retry_base_ms * self._retry_count

    def reset_retries(self) -> None:
        self._retry_count = 0

    def reset(self) -> None:
        """Forget every flag. Used when the remote link is torn down."""
        self._push_in_flight = False
        self._pull_in_flight = False
        self._remote_update = False
        self._pending_edit = False
        self._retry_count = 0
