"""Application session wiring the ledger, the local cache and the sync engine together.

The session owns one instance of every collaborator and reacts to the
application-wide signals: initialization starts it, remote configuration
changes re-target the engine and turning sync off disconnects it.
"""
import logging
from typing import Any, Optional

from PySide6 import QtCore

from .auth import CredentialStore, GoogleCredentialProvider
from .database import DatabaseAPI
from .ledger import LedgerStore
from .service import SheetsTransport
from .sync import SyncEngine, SyncTimings
from .worker import TaskRunner
from ..settings import lib
from ..ui.actions import signals


class Session(QtCore.QObject):
    """Builds the collaborators and drives the application lifecycle.

    Args:
        runner: Task runner handed to the sync engine.
        timings: Interval overrides handed to the sync engine.
    """

    def __init__(self, runner: Optional[TaskRunner] = None, timings: Optional[SyncTimings] = None,
                 parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent)

        self.database = DatabaseAPI(self)
        self.store = LedgerStore.from_cache(parent=self)

        config = lib.settings.remote_config()
        self.credentials = CredentialStore()
        self.provider = GoogleCredentialProvider(self.credentials, config)
        self.transport = SheetsTransport(config)

        self.engine = SyncEngine(
            self.store, self.transport, self.provider,
            runner=runner, timings=timings, parent=self
        )

        self._connect_signals()

    def _connect_signals(self) -> None:
        signals.initializationRequested.connect(self.start)
        signals.configSectionChanged.connect(self.on_config_section_changed)
        signals.preferenceChanged.connect(self.on_preference_changed)

    def has_saved_credentials(self) -> bool:
        return self.provider.current_token() is not None or bool(self.credentials.get_refresh_token())

    @QtCore.Slot()
    def start(self) -> bool:
        """Materialize due recurring transactions and reconnect when sync is enabled.

        Returns:
            bool: Whether the remote link was connected.
        """
        generated = self.store.process_recurring()
        if generated:
            logging.info(f'Generated {generated} recurring transaction(s).')

        if not lib.settings['setup_complete']:
            logging.info('Setup is not complete, working offline.')
            return False
        if not lib.settings['sync_enabled']:
            logging.info('Sync is disabled, working offline.')
            return False

        config = lib.settings.remote_config()
        if not config.is_complete():
            logging.warning(f'Sync is enabled but the remote link is incomplete: {", ".join(config.missing_keys())}')
            return False
        if not self.has_saved_credentials():
            logging.info('No saved credentials, waiting for the user to connect.')
            return False

        return self.engine.connect_remote(config, interactive=False)

    def complete_setup(self, config: Optional[lib.RemoteConfig] = None, currency: Optional[str] = None) -> bool:
        """Finish first-run setup.

        Args:
            config: The remote link to connect. Local-only use when None.
            currency: Display currency code.

        Returns:
            bool: Whether the remote link was connected.
        """
        lib.settings.block_signals(True)
        try:
            if currency:
                lib.settings['currency'] = currency
            if config is not None:
                lib.settings.set_remote_config(config)
            lib.settings['sync_enabled'] = config is not None
            lib.settings['setup_complete'] = True
        finally:
            lib.settings.block_signals(False)

        if config is None:
            logging.info('Setup complete, local-only mode.')
            return False
        return self.engine.connect_remote(config, interactive=True)

    def clear_all_data(self) -> None:
        """Disconnect, sign out, empty the ledger and restore the default settings."""
        self.engine.disconnect_remote(sign_out=True)
        self.store.clear()
        lib.settings.block_signals(True)
        try:
            lib.settings.revert_section('remote')
            lib.settings.revert_section('preferences')
        finally:
            lib.settings.block_signals(False)
        logging.info('All local data cleared.')

    @QtCore.Slot(str)
    def on_config_section_changed(self, section: str) -> None:
        if section != 'remote':
            return
        config = lib.settings.remote_config()
        if self.engine.is_connected:
            logging.info('Remote link changed, reconnecting...')
            self.engine.connect_remote(config, interactive=False)
            return
        self.transport.configure(config)
        self.provider.configure(config)

    @QtCore.Slot(str, object)
    def on_preference_changed(self, key: str, value: Any) -> None:
        if key != 'sync_enabled':
            return
        if not value and self.engine.is_connected:
            self.engine.disconnect_remote()

    @QtCore.Slot()
    def shutdown(self) -> None:
        """Stop syncing and detach from the application-wide signals."""
        self.engine.shutdown()
        signals.initializationRequested.disconnect(self.start)
        signals.configSectionChanged.disconnect(self.on_config_section_changed)
        signals.preferenceChanged.disconnect(self.on_preference_changed)
