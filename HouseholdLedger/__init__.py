"""
HouseholdLedger: household finance ledger mirrored to a Google Sheets spreadsheet.

This package provides:

- :mod:`HouseholdLedger.core` – The ledger store, local cache, Google authentication and the sync engine.
- :mod:`HouseholdLedger.settings` – Settings management with schema validation.
- :mod:`HouseholdLedger.status` – Status codes, exceptions and sync failure classification.
- :mod:`HouseholdLedger.log` – In-app logging.
- :mod:`HouseholdLedger.ui` – Application-wide signals.

Use :func:`HouseholdLedger.exec_` to run the session headless.
"""

import sys

from PySide6 import QtCore

# Fail on Python < 3.11
if not (sys.version_info.major == 3 and sys.version_info.minor >= 11):
    raise RuntimeError('HouseholdLedger requires Python 3.11 or higher.')

__version__ = '0.1.0'
__license__ = 'GPL-3.0'
__description__ = 'HouseholdLedger: household finance ledger with Google Sheets synchronization.'

from .log import log

log.setup_logging()


def exec_() -> None:
    """Run a session on a headless Qt event loop until the application quits."""
    from .core.session import Session
    from .settings import lib
    from .ui.actions import signals

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)
    app.setApplicationName(lib.app_name)
    app.setApplicationVersion(__version__)

    session = Session()
    app.aboutToQuit.connect(session.shutdown)

    # Ask components to load their data
    QtCore.QTimer.singleShot(100, signals.initializationRequested)

    sys.exit(app.exec())


if __name__ == '__main__':
    exec_()
