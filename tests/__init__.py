"""Test package for HouseholdLedger.

The data directory and the Qt platform are pinned before the package is
imported so the module-level settings never touch the real application data.
"""
import os
import tempfile

os.environ.setdefault('QT_QPA_PLATFORM', 'offscreen')
os.environ.setdefault('HOUSEHOLD_LEDGER_DATA_DIR', tempfile.mkdtemp(prefix='householdledger_session_'))
