"""Mapping between ledger collections and remote worksheets.

Each collection lives in its own worksheet with a header row. Encoding turns a
:class:`LedgerSnapshot` into ``{worksheet: rows}``; decoding goes the other way,
skipping the header row and rows that cannot be parsed.
"""
import dataclasses
import logging
from typing import Any, Dict, List, Optional, Tuple

from .database import StorageKey
from .ledger import (
    COLLECTIONS,
    DEFAULT_PAYMENT_METHOD,
    DEFAULT_WALLET_ID,
    LedgerSnapshot,
    default_wallets,
)

# Column kinds
STR = 'str'
OPT_STR = 'optional'
FLOAT = 'float'
BOOL = 'bool'


@dataclasses.dataclass(frozen=True)
class TableSpec:
    """A remote worksheet holding one ledger collection.

    Attributes:
        name: Worksheet title.
        collection: The ledger collection stored in the worksheet.
        columns: ``(header, field, kind)`` triples in column order.
        id_prefix: When set, the worksheet has no id column and ids are generated on decode.
    """
    name: str
    collection: str
    columns: Tuple[Tuple[str, str, str], ...]
    id_prefix: Optional[str] = None

    @property
    def headers(self) -> List[str]:
        return [c[0] for c in self.columns]

    @property
    def last_column(self) -> str:
        return idx_to_col(len(self.columns) - 1)

    @property
    def range(self) -> str:
        return f'{quote_sheet_name(self.name)}!A:{self.last_column}'


TABLES: Tuple[TableSpec, ...] = (
    TableSpec('Transactions', StorageKey.Transactions.value, (
        ('ID', 'id', STR),
        ('Date', 'date', STR),
        ('Type', 'type', STR),
        ('Description', 'description', STR),
        ('Category', 'category', STR),
        ('Member', 'member', STR),
        ('Amount', 'amount', FLOAT),
        ('Recurrence', 'recurrence', OPT_STR),
        ('Payment Method', 'payment_method', STR),
        ('Transfer To', 'transfer_to_wallet_id', OPT_STR),
        ('Wallet ID', 'wallet_id', STR),
    )),
    TableSpec('Recurring', StorageKey.Recurring.value, (
        ('ID', 'id', STR),
        ('Description', 'description', STR),
        ('Category', 'category', STR),
        ('Amount', 'amount', FLOAT),
        ('Member', 'member', STR),
        ('Frequency', 'frequency', STR),
        ('Next Due Date', 'next_due_date', STR),
        ('Active', 'active', BOOL),
        ('Type', 'type', STR),
        ('Payment Method', 'payment_method', STR),
        ('Wallet ID', 'wallet_id', STR),
    )),
    TableSpec('Goals', StorageKey.Goals.value, (
        ('ID', 'id', STR),
        ('Name', 'name', STR),
        ('Target', 'target_amount', FLOAT),
        ('Current', 'current_amount', FLOAT),
        ('Deadline', 'deadline', STR),
        ('Color', 'color', STR),
        ('Wallet ID', 'wallet_id', STR),
    )),
    TableSpec('Budgets', StorageKey.Budgets.value, (
        ('ID', 'id', STR),
        ('Category', 'category', STR),
        ('Limit', 'limit', FLOAT),
        ('Period', 'period', STR),
    )),
    TableSpec('Ref_Wallets', StorageKey.Wallets.value, (
        ('ID', 'id', STR),
        ('Name', 'name', STR),
        ('Type', 'type', STR),
    )),
    TableSpec('Categories', StorageKey.Categories.value, (
        ('Name', 'name', STR),
        ('Type', 'type', STR),
        ('Color', 'color', STR),
    ), id_prefix='cat_'),
    TableSpec('Members', StorageKey.Members.value, (
        ('Name', 'name', STR),
        ('Color', 'color', STR),
    ), id_prefix='mem_'),
)

TABLE_NAMES: List[str] = [t.name for t in TABLES]

# Defaults for fields left blank in the sheet
FIELD_DEFAULTS: Dict[str, Any] = {
    'wallet_id': DEFAULT_WALLET_ID,
    'payment_method': DEFAULT_PAYMENT_METHOD,
}


def idx_to_col(idx: int) -> str:
    """Convert zero-based column index to spreadsheet letter(s).

    Args:
        idx: The zero-based column index.

    Returns:
        The spreadsheet column letter(s) (e.g., A, B, AA).
    """
    letters = ''
    while idx >= 0:
        letters = chr((idx % 26) + ord('A')) + letters
        idx = idx // 26 - 1
    return letters


def quote_sheet_name(name: str) -> str:
    """Quote a worksheet title for A1 notation when it contains spaces or symbols."""
    if name.startswith("'") and name.endswith("'"):
        return name
    if any(not (c.isalnum() or c == '_') for c in name):
        return "'" + name.replace("'", "''") + "'"
    return name


def table_for(name: str) -> TableSpec:
    """Return the spec of a worksheet by title.

    Raises:
        KeyError: If no table has that title.
    """
    for spec in TABLES:
        if spec.name == name:
            return spec
    raise KeyError(f'Unknown table: {name}')


def _encode_value(value: Any, kind: str) -> Any:
    if kind == BOOL:
        return 'TRUE' if value else 'FALSE'
    if kind == FLOAT:
        return float(value or 0.0)
    if value is None:
        return ''
    return str(value)


def _decode_value(value: Any, kind: str) -> Any:
    if kind == FLOAT:
        if value in (None, ''):
            return 0.0
        if isinstance(value, (int, float)):
            return float(value)
        return float(str(value).replace(',', '').strip())
    if kind == BOOL:
        if isinstance(value, bool):
            return value
        return str(value).strip().upper() not in ('FALSE', '0', 'NO', '')
    if kind == OPT_STR:
        return str(value) if value not in (None, '') else None
    return '' if value is None else str(value)


def encode_table(spec: TableSpec, records: List[Dict[str, Any]]) -> List[List[Any]]:
    """Return the header row followed by one row per record."""
    rows: List[List[Any]] = [spec.headers]
    for record in records:
        rows.append([_encode_value(record.get(field), kind) for _, field, kind in spec.columns])
    return rows


def decode_table(spec: TableSpec, rows: List[List[Any]]) -> List[Dict[str, Any]]:
    """Parse worksheet rows into record dictionaries.

    A leading header row and blank rows are skipped. Rows whose values cannot be
    coerced are logged and dropped.
    """
    if rows and rows[0] and str(rows[0][0]) == spec.columns[0][0]:
        rows = rows[1:]

    records: List[Dict[str, Any]] = []
    for idx, row in enumerate(rows, start=1):
        if not row or not any(str(c).strip() for c in row):
            continue
        padded = list(row) + [''] * (len(spec.columns) - len(row))
        try:
            record = {
                field: _decode_value(padded[i], kind)
                for i, (_, field, kind) in enumerate(spec.columns)
            }
        except (TypeError, ValueError) as ex:
            logging.warning(f'Skipping malformed row {idx} in "{spec.name}": {ex}')
            continue

        if spec.id_prefix:
            record['id'] = f'{spec.id_prefix}{idx}'
        elif not record.get('id'):
            logging.warning(f'Skipping row {idx} in "{spec.name}": missing ID.')
            continue

        for field, default in FIELD_DEFAULTS.items():
            if field in record and not record[field] and spec.collection != StorageKey.Goals.value:
                record[field] = default
        records.append(record)
    return records


def encode_snapshot(snapshot: LedgerSnapshot) -> Dict[str, List[List[Any]]]:
    """Encode every collection of a snapshot into worksheet rows."""
    data = snapshot.to_dict()
    return {spec.name: encode_table(spec, data[spec.collection]) for spec in TABLES}


def decode_snapshot(tables: Dict[str, List[List[Any]]]) -> LedgerSnapshot:
    """Decode worksheet rows into a snapshot.

    Worksheets missing from ``tables`` decode to empty collections, except
    wallets which fall back to the default wallet.
    """
    data: Dict[str, List[Dict[str, Any]]] = {name: [] for name in COLLECTIONS}
    for spec in TABLES:
        data[spec.collection] = decode_table(spec, tables.get(spec.name) or [])

    snapshot = LedgerSnapshot.from_dict(data)
    if not snapshot.wallets:
        snapshot.wallets = default_wallets()
    return snapshot


def is_remote_empty(tables: Dict[str, List[List[Any]]]) -> bool:
    """True when no worksheet holds any data row."""
    for spec in TABLES:
        rows = tables.get(spec.name) or []
        if decode_table(spec, rows):
            return False
    return True
