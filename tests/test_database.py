"""
Integration tests for HouseholdLedger.core.database
(using unittest, not pytest).

Run: python -m unittest tests.test_database
"""
import sqlite3
from pathlib import Path
from unittest.mock import patch

from HouseholdLedger.core.database import CacheState, DatabaseAPI, StorageKey, Table
from HouseholdLedger.settings import lib
from HouseholdLedger.status import status
from tests.base import BaseTestCase, TEST_CONFIG

SNAPSHOT = {
    'transactions': [
        {'id': 't1', 'amount': 12.5, 'description': 'Café'},
        {'id': 't2', 'amount': 100, 'description': 'Rent'},
    ],
    'wallets': [{'id': 'main', 'name': 'Main'}],
}


class DatabaseAPITests(BaseTestCase):

    def test_new_cache_is_uninitialized(self):
        self.assertTrue(lib.settings.db_path.exists())
        self.assertEqual(DatabaseAPI.state(), CacheState.Uninitialized)
        self.assertIsNone(DatabaseAPI.last_sync())
        self.assertEqual(DatabaseAPI.load_snapshot(), {})

    def test_get_set_round_trip(self):
        DatabaseAPI.set('answer', {'value': 42, 'items': [1, 2]})
        self.assertEqual(DatabaseAPI.get('answer'), {'value': 42, 'items': [1, 2]})
        self.assertEqual(DatabaseAPI.state(), CacheState.Valid)

        DatabaseAPI.set('answer', 43)
        self.assertEqual(DatabaseAPI.get('answer'), 43)

    def test_get_missing_returns_default(self):
        self.assertIsNone(DatabaseAPI.get('missing'))
        self.assertEqual(DatabaseAPI.get('missing', []), [])

    def test_get_ignores_invalid_json(self):
        conn = DatabaseAPI.connection()
        conn.execute(
            f'INSERT INTO {Table.Store.value} (key, value, updated) VALUES (?, ?, ?)',
            ('broken', '{not json', '')
        )
        conn.commit()
        conn.close()

        self.assertEqual(DatabaseAPI.get('broken', 'fallback'), 'fallback')

    def test_snapshot_round_trip(self):
        DatabaseAPI.save_snapshot(SNAPSHOT)
        data = DatabaseAPI.load_snapshot()

        self.assertEqual(data, SNAPSHOT)
        self.assertNotIn(StorageKey.Goals.value, data)

    def test_save_snapshot_rejects_unknown_collection(self):
        with self.assertRaises(ValueError):
            DatabaseAPI.save_snapshot({'bogus': []})

    def test_load_snapshot_skips_non_list_values(self):
        DatabaseAPI.set(StorageKey.Budgets.value, {'not': 'a list'})
        self.assertEqual(DatabaseAPI.load_snapshot(), {})

    def test_remove(self):
        DatabaseAPI.set_many({'a': 1, 'b': 2})
        DatabaseAPI.remove(['a'])
        self.assertIsNone(DatabaseAPI.get('a'))
        self.assertEqual(DatabaseAPI.get('b'), 2)

    def test_last_sync_records_spreadsheet(self):
        lib.settings.block_signals(True)
        lib.settings.set_remote_config(TEST_CONFIG)
        lib.settings.block_signals(False)

        DatabaseAPI.set_last_sync('2025-01-01T00:00:00+00:00')
        self.assertEqual(DatabaseAPI.last_sync(), '2025-01-01T00:00:00+00:00')

        conn = DatabaseAPI.connection()
        row = conn.execute(f'SELECT spreadsheet_id FROM {Table.Meta.value} WHERE meta_id=1').fetchone()
        conn.close()
        self.assertEqual(row[0], TEST_CONFIG.spreadsheet_id)

    def test_clear(self):
        DatabaseAPI.save_snapshot(SNAPSHOT)
        DatabaseAPI.set_last_sync()

        DatabaseAPI.clear()

        self.assertEqual(DatabaseAPI.load_snapshot(), {})
        self.assertIsNone(DatabaseAPI.last_sync())
        self.assertEqual(DatabaseAPI.state(), CacheState.Empty)

    def test_invalid_state_reads_as_error(self):
        conn = DatabaseAPI.connection()
        conn.execute(f'UPDATE {Table.Meta.value} SET state=? WHERE meta_id=1', ('bogus',))
        conn.commit()
        conn.close()

        self.assertEqual(DatabaseAPI.state(), CacheState.Error)

    def test_missing_table_is_recreated(self):
        DatabaseAPI.save_snapshot(SNAPSHOT)

        conn = DatabaseAPI.connection()
        conn.execute(f'DROP TABLE {Table.Meta.value}')
        conn.commit()
        conn.close()

        DatabaseAPI()
        self.assertEqual(DatabaseAPI.state(), CacheState.Uninitialized)
        self.assertEqual(DatabaseAPI.load_snapshot(), {})

    def test_missing_column_is_recreated(self):
        conn = DatabaseAPI.connection()
        conn.execute(f'DROP TABLE {Table.Store.value}')
        conn.execute(f'CREATE TABLE {Table.Store.value} (key TEXT PRIMARY KEY)')
        conn.commit()
        conn.close()

        DatabaseAPI()
        DatabaseAPI.set('a', 1)
        self.assertEqual(DatabaseAPI.get('a'), 1)

    def test_sqlite_errors_are_wrapped(self):
        conn = DatabaseAPI.connection()
        conn.execute(f'DROP TABLE {Table.Store.value}')
        conn.commit()
        conn.close()

        with self.assertRaises(status.CacheInvalidException) as cm:
            DatabaseAPI.get('a')
        self.assertIsInstance(cm.exception.__cause__, sqlite3.Error)

        with self.assertRaises(status.CacheInvalidException):
            DatabaseAPI.set('a', 1)

    def test_delete_retries(self):
        DatabaseAPI.save_snapshot(SNAPSHOT)
        target = lib.settings.db_path

        side_effects = [PermissionError, PermissionError, None]
        original_unlink = Path.unlink

        def flaky_unlink(self, *args, **kwargs):
            effect = side_effects.pop(0)
            if effect is None:
                original_unlink(self, *args, **kwargs)
            else:
                raise effect

        with patch.object(Path, 'unlink', flaky_unlink), \
                patch('HouseholdLedger.core.database.time.sleep'):
            DatabaseAPI.delete()

        self.assertFalse(target.exists())

    def test_delete_gives_up(self):
        with patch.object(Path, 'unlink', side_effect=PermissionError), \
                patch('HouseholdLedger.core.database.time.sleep'):
            with self.assertRaises(status.CacheInvalidException):
                DatabaseAPI.delete()
