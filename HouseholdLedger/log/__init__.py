"""
Logging subsystem.

- :mod:`HouseholdLedger.log.log` – root logger setup, the in-memory TankHandler and the Qt message bridge.
"""
