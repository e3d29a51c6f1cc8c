"""
Core package for HouseholdLedger providing the ledger and its synchronization.

This package includes:

- :mod:`HouseholdLedger.core.ledger` – Ledger entities and the authoritative in-memory store.
- :mod:`HouseholdLedger.core.database` – Local SQLite cache of the ledger snapshot.
- :mod:`HouseholdLedger.core.auth` – Google OAuth2 token storage, sign-in and silent refresh.
- :mod:`HouseholdLedger.core.service` – Google Sheets transport with per-table read, write and clear.
- :mod:`HouseholdLedger.core.tables` – Mapping between ledger collections and worksheets.
- :mod:`HouseholdLedger.core.coordinator` – Debounce, sync status state machine and push/pull coordination.
- :mod:`HouseholdLedger.core.sync` – Push and pull schedules, token refresh and the sync engine.
- :mod:`HouseholdLedger.core.session` – Application session wiring everything together.
"""
