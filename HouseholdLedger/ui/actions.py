"""Application-wide Qt signals for HouseholdLedger.

The :data:`signals` instance is the collaboration bus between the settings,
the ledger, the sync engine and whatever front end is attached: configuration
changes, ledger mutations, sync status, authentication requests, errors and
log display.
"""
from PySide6 import QtCore


class Signals(QtCore.QObject):
    """Centralized Qt signals for application config, ledger and sync events."""
    initializationRequested = QtCore.Signal()

    authenticationRequested = QtCore.Signal()

    configSectionChanged = QtCore.Signal(str)  # Section
    preferenceChanged = QtCore.Signal(str, object)

    ledgerChanged = QtCore.Signal(str)  # Collection name
    syncStatusChanged = QtCore.Signal(str)
    remoteLinkChanged = QtCore.Signal(bool)

    showLogs = QtCore.Signal()

    error = QtCore.Signal(str)


signals = Signals()
