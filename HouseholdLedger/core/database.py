"""
Local SQLite cache for the ledger snapshot.

Every collection of the ledger is stored as one JSON document in a key/value
table. The metadata table records the last successful sync and the cache state.
The schema is verified on start-up and recreated if it is missing or invalid.
"""

import datetime
import enum
import json
import logging
import sqlite3
import time
from typing import Any, Dict, Iterable, Optional

from PySide6 import QtCore

from ..settings import lib
from ..status import status

# Expected schema for the tables
META_SCHEMA: Dict[str, str] = {
    'meta_id': 'INTEGER PRIMARY KEY',
    'last_sync': 'TEXT',
    'state': 'TEXT',
    'spreadsheet_id': 'TEXT',
}

STORE_SCHEMA: Dict[str, str] = {
    'key': 'TEXT PRIMARY KEY',
    'value': 'TEXT',
    'updated': 'TEXT',
}


class Table(enum.StrEnum):
    """Enum for database tables."""
    Meta = 'metatable'
    Store = 'store'


class StorageKey(enum.StrEnum):
    """Stable keys of the persisted ledger collections."""
    Transactions = 'transactions'
    Recurring = 'recurring'
    Goals = 'goals'
    Budgets = 'budgets'
    Wallets = 'wallets'
    Categories = 'categories'
    Members = 'members'


class CacheState(enum.StrEnum):
    """Enum for cache state values."""
    Uninitialized = 'cache is uninitialized'
    Empty = 'cache is empty'
    Error = 'cache has error'
    Valid = 'cache is valid'


def now_str() -> str:
    """Return current UTC date and time as an ISO 8601 string.

    Returns:
        str: Current UTC date and time in ISO 8601 format.
    """
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


class DatabaseAPI(QtCore.QObject):
    """Database API for the ledger cache. Handles schema creation, validation and data access."""

    def __init__(self, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._initialize_schema_if_needed()

    @classmethod
    def _schema_is_valid(cls, conn: sqlite3.Connection, table: Table, schema: Dict[str, str]) -> bool:
        if not cls._table_exists_in_conn(conn, table.value):
            return False
        cursor = conn.execute(f'PRAGMA table_info({table.value})')
        current_columns = {row[1] for row in cursor.fetchall()}
        missing = set(schema.keys()) - current_columns
        if missing:
            logging.warning(f'Table "{table.value}" is missing columns {missing}. Schema will be recreated.')
            return False
        return True

    def _initialize_schema_if_needed(self) -> None:
        """
        Make sure the database file and both tables are valid, recreating them if not.

        Raises:
            status.CacheInvalidException: If the schema cannot be recreated even after deleting the file.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            db_file_exists = lib.settings.db_path.exists()
            conn = self.connection()

            meta_valid = db_file_exists and self._schema_is_valid(conn, Table.Meta, META_SCHEMA)
            store_valid = db_file_exists and self._schema_is_valid(conn, Table.Store, STORE_SCHEMA)

            if meta_valid and store_valid:
                logging.debug('Existing database schema is valid.')
                return

            logging.info(
                f'Recreating database schema (DB exists: {db_file_exists}, '
                f'meta valid: {meta_valid}, store valid: {store_valid}).'
            )
            conn.execute(f'DROP TABLE IF EXISTS {Table.Meta.value}')
            conn.execute(f'DROP TABLE IF EXISTS {Table.Store.value}')

            for table, schema in ((Table.Meta, META_SCHEMA), (Table.Store, STORE_SCHEMA)):
                cols_sql = ', '.join(f'"{name}" {typedef}' for name, typedef in schema.items())
                conn.execute(f'CREATE TABLE {table.value} ({cols_sql})')

            conn.execute(
                f'INSERT INTO {Table.Meta.value} (meta_id, state, last_sync, spreadsheet_id) VALUES (1, ?, ?, ?)',
                (CacheState.Uninitialized.name, '', lib.settings.get_section('remote').get('spreadsheet_id', ''))
            )
            conn.commit()
            logging.info('Database schema recreated successfully.')

        except sqlite3.Error as e:
            logging.error(f'SQLite error during schema initialization: {e}. Attempting recovery.', exc_info=True)
            if conn:
                conn.close()
                conn = None

            try:
                self.delete()
                self._initialize_schema_if_needed()
                logging.info('Database schema forcefully recreated after an error and delete.')
            except Exception as final_e:
                logging.critical(f'Failed to recover database schema even after delete: {final_e}', exc_info=True)
                raise status.CacheInvalidException(f'Unrecoverable DB schema error: {final_e}') from final_e
        finally:
            if conn:
                conn.close()

    @classmethod
    def connection(cls) -> sqlite3.Connection:
        """Return a new connection to the cache database.

        Returns:
            sqlite3.Connection: Database connection object.
        """
        lib.settings.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(lib.settings.db_path), timeout=2.0)
        conn.set_progress_handler(lambda: logging.debug('Waiting on DB lock…'), 1000)
        return conn

    @classmethod
    def _table_exists_in_conn(cls, conn: sqlite3.Connection, table_name: str) -> bool:
        """Check if a table exists using an existing connection."""
        cursor = conn.execute(
            """SELECT name FROM sqlite_master WHERE type='table' AND name=?""",
            (table_name,)
        )
        return cursor.fetchone() is not None

    @classmethod
    def _update_state_in_conn(cls, conn: sqlite3.Connection, state: CacheState) -> None:
        conn.execute(f'UPDATE {Table.Meta.value} SET state=? WHERE meta_id=1', (state.name,))

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        """Return the decoded value stored under ``key``.

        Args:
            key: The storage key.
            default: Returned when the key is absent or its value cannot be decoded.

        Raises:
            status.CacheInvalidException: On SQLite errors.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            row = conn.execute(
                f'SELECT value FROM {Table.Store.value} WHERE key=?', (str(key),)
            ).fetchone()
        except sqlite3.Error as e:
            raise status.CacheInvalidException(f'Failed to read "{key}": {e}') from e
        finally:
            if conn:
                conn.close()

        if row is None:
            return default
        try:
            return json.loads(row[0])
        except (TypeError, json.JSONDecodeError) as e:
            logging.warning(f'Stored value for "{key}" is not valid JSON, ignoring it: {e}')
            return default

    @classmethod
    def set(cls, key: str, value: Any) -> None:
        """Store ``value`` as JSON under ``key``.

        Raises:
            status.CacheInvalidException: On SQLite errors.
        """
        cls.set_many({key: value})

    @classmethod
    def set_many(cls, items: Dict[str, Any]) -> None:
        """Store several keys in a single transaction.

        Raises:
            status.CacheInvalidException: On SQLite errors.
        """
        updated = now_str()
        rows = [(str(k), json.dumps(v, ensure_ascii=False), updated) for k, v in items.items()]

        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            conn.executemany(
                f'INSERT OR REPLACE INTO {Table.Store.value} (key, value, updated) VALUES (?, ?, ?)',
                rows
            )
            cls._update_state_in_conn(conn, CacheState.Valid)
            conn.commit()
        except sqlite3.Error as e:
            if conn:
                conn.rollback()
            raise status.CacheInvalidException(f'Failed to write {list(items.keys())}: {e}') from e
        finally:
            if conn:
                conn.close()

    @classmethod
    def remove(cls, keys: Iterable[str]) -> None:
        """Delete keys from the store.

        Raises:
            status.CacheInvalidException: On SQLite errors.
        """
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            conn.executemany(f'DELETE FROM {Table.Store.value} WHERE key=?', [(str(k),) for k in keys])
            conn.commit()
        except sqlite3.Error as e:
            raise status.CacheInvalidException(f'Failed to remove keys: {e}') from e
        finally:
            if conn:
                conn.close()

    @classmethod
    def save_snapshot(cls, data: Dict[str, Any]) -> None:
        """Persist every collection of a ledger snapshot dictionary at once.

        Args:
            data: Collection name to list of records, as produced by ``LedgerSnapshot.to_dict()``.

        Raises:
            status.CacheInvalidException: On SQLite errors.
        """
        cls.set_many({StorageKey(k).value: v for k, v in data.items()})
        logging.debug(f'Cached ledger snapshot ({", ".join(f"{k}={len(v)}" for k, v in data.items())}).')

    @classmethod
    def load_snapshot(cls) -> Dict[str, Any]:
        """Return the cached collections. Missing collections are left out.

        Raises:
            status.CacheInvalidException: On SQLite errors.
        """
        data: Dict[str, Any] = {}
        for key in StorageKey:
            value = cls.get(key.value)
            if isinstance(value, list):
                data[key.value] = value
        return data

    @classmethod
    def set_last_sync(cls, timestamp: Optional[str] = None) -> None:
        """Record the time of the last successful sync."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            conn.execute(
                f'UPDATE {Table.Meta.value} SET last_sync=?, spreadsheet_id=? WHERE meta_id=1',
                (timestamp or now_str(), lib.settings.get_section('remote').get('spreadsheet_id', ''))
            )
            conn.commit()
        except sqlite3.Error as e:
            raise status.CacheInvalidException(f'Failed to record last sync: {e}') from e
        finally:
            if conn:
                conn.close()

    @classmethod
    def last_sync(cls) -> Optional[str]:
        """Return the last recorded sync time, or None if the cache was never synced."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            row = conn.execute(f'SELECT last_sync FROM {Table.Meta.value} WHERE meta_id=1').fetchone()
        except sqlite3.Error as e:
            raise status.CacheInvalidException(f'Failed to read last sync: {e}') from e
        finally:
            if conn:
                conn.close()
        return row[0] if row and row[0] else None

    @classmethod
    def state(cls) -> CacheState:
        """Return the recorded cache state."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            row = conn.execute(f'SELECT state FROM {Table.Meta.value} WHERE meta_id=1').fetchone()
        except sqlite3.Error as e:
            raise status.CacheInvalidException(f'Failed to read cache state: {e}') from e
        finally:
            if conn:
                conn.close()
        if not row or row[0] not in CacheState.__members__:
            return CacheState.Error
        return CacheState[row[0]]

    @classmethod
    def clear(cls) -> None:
        """Remove every stored key and mark the cache as empty."""
        conn: Optional[sqlite3.Connection] = None
        try:
            conn = cls.connection()
            conn.execute(f'DELETE FROM {Table.Store.value}')
            cls._update_state_in_conn(conn, CacheState.Empty)
            conn.execute(f'UPDATE {Table.Meta.value} SET last_sync=? WHERE meta_id=1', ('',))
            conn.commit()
            logging.info('Local cache cleared.')
        except sqlite3.Error as e:
            raise status.CacheInvalidException(f'Failed to clear cache: {e}') from e
        finally:
            if conn:
                conn.close()

    @classmethod
    def delete(cls) -> None:
        """Delete the local cache database file, retrying on failure.

        Raises:
            status.CacheInvalidException: If unable to remove the database file after retries.
        """
        db_file = lib.settings.db_path
        if not db_file.exists():
            logging.debug('No cache database found to delete.')
            return

        max_attempts = 5
        wait_seconds = 0.2

        for attempt in range(1, max_attempts + 1):
            try:
                db_file.unlink()
                logging.info(f'Cache database removed: {db_file}')
                return
            except OSError as ex:
                logging.error(f'Error removing cache DB (attempt {attempt}/{max_attempts}): {ex}')
                if attempt < max_attempts:
                    time.sleep(wait_seconds)

        raise status.CacheInvalidException(f'Could not delete cache database: {db_file}')
