"""
Settings package.

- :mod:`HouseholdLedger.settings.lib` – schema, paths and the :data:`settings` singleton.
"""
