"""
Tests for HouseholdLedger.core.tables, the mapping between ledger collections
and remote worksheets.

Run: python -m unittest tests.test_tables
"""
import unittest

from HouseholdLedger.core import tables
from HouseholdLedger.core.ledger import (
    DEFAULT_PAYMENT_METHOD,
    DEFAULT_WALLET_ID,
    Goal,
    LedgerSnapshot,
    RecurringRule,
    Transaction,
)
from HouseholdLedger.core.tables import (
    TABLE_NAMES,
    decode_snapshot,
    decode_table,
    encode_snapshot,
    idx_to_col,
    is_remote_empty,
    quote_sheet_name,
    table_for,
)


class HelperTests(unittest.TestCase):

    def test_idx_to_col(self):
        self.assertEqual(idx_to_col(0), 'A')
        self.assertEqual(idx_to_col(25), 'Z')
        self.assertEqual(idx_to_col(26), 'AA')
        self.assertEqual(idx_to_col(27), 'AB')
        self.assertEqual(idx_to_col(701), 'ZZ')
        self.assertEqual(idx_to_col(702), 'AAA')

    def test_quote_sheet_name(self):
        self.assertEqual(quote_sheet_name('Transactions'), 'Transactions')
        self.assertEqual(quote_sheet_name('Ref_Wallets'), 'Ref_Wallets')
        self.assertEqual(quote_sheet_name('My Sheet'), "'My Sheet'")
        self.assertEqual(quote_sheet_name("Bob's"), "'Bob''s'")
        self.assertEqual(quote_sheet_name("'Quoted'"), "'Quoted'")

    def test_table_ranges(self):
        self.assertEqual(table_for('Transactions').range, 'Transactions!A:K')
        self.assertEqual(table_for('Members').range, 'Members!A:B')
        with self.assertRaises(KeyError):
            table_for('Bogus')


class EncodeTests(unittest.TestCase):

    def test_every_table_has_a_header_row(self):
        encoded = encode_snapshot(LedgerSnapshot())
        self.assertEqual(sorted(encoded), sorted(TABLE_NAMES))
        for name, rows in encoded.items():
            self.assertEqual(rows[0], table_for(name).headers)

    def test_transaction_row(self):
        snapshot = LedgerSnapshot(transactions=[Transaction(
            id='t1', date='2025-01-10', description='Lunch', category='Food', amount=12,
            member='Admin', type='Expense', wallet_id='main',
        )])
        row = encode_snapshot(snapshot)['Transactions'][1]
        self.assertEqual(row, [
            't1', '2025-01-10', 'Expense', 'Lunch', 'Food', 'Admin', 12.0, '', 'Cash', '', 'main',
        ])

    def test_bool_cells(self):
        snapshot = LedgerSnapshot(recurring=[RecurringRule(id='r1', active=False)])
        row = encode_snapshot(snapshot)['Recurring'][1]
        self.assertIn('FALSE', row)


class DecodeTests(unittest.TestCase):

    def test_header_row_is_skipped(self):
        spec = table_for('Budgets')
        records = decode_table(spec, [spec.headers, ['b1', 'Food', '150', 'MONTHLY']])
        self.assertEqual(records, [{'id': 'b1', 'category': 'Food', 'limit': 150.0, 'period': 'MONTHLY'}])

    def test_short_and_blank_rows(self):
        spec = table_for('Transactions')
        records = decode_table(spec, [
            ['t1', '2025-01-01', 'Income', 'Salary', 'Salary', 'Admin', '1,200.50'],
            [],
            ['', '  '],
        ])
        self.assertEqual(len(records), 1)
        record = records[0]
        self.assertEqual(record['amount'], 1200.5)
        self.assertIsNone(record['recurrence'])
        self.assertEqual(record['wallet_id'], DEFAULT_WALLET_ID)
        self.assertEqual(record['payment_method'], DEFAULT_PAYMENT_METHOD)

    def test_malformed_rows_are_dropped(self):
        spec = table_for('Transactions')
        with self.assertLogs(level='WARNING'):
            records = decode_table(spec, [
                ['t1', '2025-01-01', 'Expense', 'x', 'Food', 'Admin', 'not a number'],
                ['', '2025-01-01', 'Expense', 'no id', 'Food', 'Admin', '5'],
                ['t3', '2025-01-01', 'Expense', 'ok', 'Food', 'Admin', 5],
            ])
        self.assertEqual([r['id'] for r in records], ['t3'])

    def test_reference_lists_get_generated_ids(self):
        records = decode_table(table_for('Categories'), [
            ['Name', 'Type', 'Color'],
            ['Food', 'Expense', '#FF6B6B'],
            ['Salary', 'Income', '#88D8B0'],
        ])
        self.assertEqual([r['id'] for r in records], ['cat_1', 'cat_2'])

        members = decode_table(table_for('Members'), [['Alice', '#000000']])
        self.assertEqual(members[0]['id'], 'mem_1')

    def test_bool_cells(self):
        spec = table_for('Recurring')
        row = ['r1', 'Rent', 'Utilities', '800', 'Admin', 'Monthly', '2025-02-01']
        for cell, expected in (('TRUE', True), ('false', False), ('0', False), ('yes', True), (True, True)):
            record = decode_table(spec, [row + [cell]])[0]
            self.assertIs(record['active'], expected)

    def test_goal_wallet_is_not_defaulted(self):
        records = decode_table(table_for('Goals'), [['g1', 'Car', '5000', '100', '', '#fff', '']])
        self.assertEqual(records[0]['wallet_id'], '')

    def test_decode_snapshot(self):
        original = LedgerSnapshot(
            transactions=[Transaction(id='t1', date='2025-01-10', amount=3.5, category='Food')],
            goals=[Goal(id='g1', name='Car', target_amount=5000.0)],
        )
        snapshot = decode_snapshot(encode_snapshot(original))

        self.assertEqual(snapshot.transactions, original.transactions)
        self.assertEqual(snapshot.goals, original.goals)
        self.assertEqual([c.name for c in snapshot.categories], [c.name for c in original.categories])

    def test_missing_worksheets(self):
        snapshot = decode_snapshot({})
        self.assertEqual(snapshot.transactions, [])
        self.assertEqual(snapshot.categories, [])
        self.assertEqual([w.id for w in snapshot.wallets], [DEFAULT_WALLET_ID])


class RemoteEmptyTests(unittest.TestCase):

    def test_empty(self):
        self.assertTrue(is_remote_empty({}))
        self.assertTrue(is_remote_empty({name: [table_for(name).headers] for name in TABLE_NAMES}))

    def test_not_empty(self):
        self.assertFalse(is_remote_empty({'Members': [['Name', 'Color'], ['Alice', '#000']]}))
        self.assertFalse(is_remote_empty({'Transactions': [['t1', '2025-01-01']]}))


if __name__ == '__main__':
    unittest.main()
