"""
Qt signal bus shared between the ledger, the sync engine and any presentation layer.

- :mod:`HouseholdLedger.ui.actions` – the :data:`signals` singleton.
"""
