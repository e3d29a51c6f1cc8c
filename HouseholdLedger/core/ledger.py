"""
Ledger entities and the in-memory Local Ledger Store.

The store holds the authoritative snapshot of the six synchronized collections
(transactions, recurring rules, goals, budgets, wallets, and the categories and
members reference lists). Every mutation is written to the local cache
synchronously and then announced through :attr:`LedgerStore.changed`, which the
sync engine listens to.
"""
import copy
import dataclasses
import datetime
import enum
import logging
import random
import string
import time
from typing import Any, Dict, List, Optional, Type, TypeVar

import pandas as pd
from PySide6 import QtCore
from dateutil.relativedelta import relativedelta

from .database import DatabaseAPI, StorageKey
from ..status import status

DATE_FORMAT = '%Y-%m-%d'

DEFAULT_WALLET_ID = 'main'
DEFAULT_PAYMENT_METHOD = 'Cash'
DEFAULT_MEMBER = 'Admin'

RECURRING_SUFFIX = ' (Recurring)'
INITIAL_DEPOSIT_DESCRIPTION = 'Initial Deposit'
TRANSFER_CATEGORY = 'Transfer'


class TransactionType(enum.StrEnum):
    Income = 'Income'
    Expense = 'Expense'
    Transfer = 'Transfer'


class RecurrenceFrequency(enum.StrEnum):
    Daily = 'Daily'
    Weekly = 'Weekly'
    Monthly = 'Monthly'
    Yearly = 'Yearly'


class WalletType(enum.StrEnum):
    Main = 'MAIN'
    Savings = 'SAVINGS'
    Goal = 'GOAL'


class BudgetPeriod(enum.StrEnum):
    Monthly = 'MONTHLY'


RECURRENCE_STEP: Dict[RecurrenceFrequency, relativedelta] = {
    RecurrenceFrequency.Daily: relativedelta(days=1),
    RecurrenceFrequency.Weekly: relativedelta(weeks=1),
    RecurrenceFrequency.Monthly: relativedelta(months=1),
    RecurrenceFrequency.Yearly: relativedelta(years=1),
}


def new_id() -> str:
    """Return a new record id: a millisecond timestamp followed by a random suffix."""
    suffix = ''.join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f'{int(time.time() * 1000)}{suffix}'


def today_str() -> str:
    return datetime.date.today().strftime(DATE_FORMAT)


def next_due_date(date_str: str, frequency: RecurrenceFrequency) -> str:
    """Advance an ISO date by one recurrence step.

    Month and year steps clamp to the last day of a shorter month.

    Args:
        date_str: Date in ``YYYY-MM-DD`` format.
        frequency: The recurrence frequency.

    Returns:
        str: The next date in ``YYYY-MM-DD`` format.
    """
    date = datetime.datetime.strptime(date_str, DATE_FORMAT).date()
    return (date + RECURRENCE_STEP[RecurrenceFrequency(frequency)]).strftime(DATE_FORMAT)


T = TypeVar('T', bound='Record')


@dataclasses.dataclass
class Record:
    """Base for ledger records. Subclasses are plain dataclasses with an ``id``."""
    id: str

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclasses.dataclass
class Transaction(Record):
    date: str = ''
    description: str = ''
    category: str = ''
    amount: float = 0.0
    member: str = ''
    type: str = TransactionType.Expense.value
    wallet_id: str = DEFAULT_WALLET_ID
    recurrence: Optional[str] = None
    payment_method: str = DEFAULT_PAYMENT_METHOD
    transfer_to_wallet_id: Optional[str] = None


@dataclasses.dataclass
class RecurringRule(Record):
    description: str = ''
    category: str = ''
    amount: float = 0.0
    member: str = ''
    frequency: str = RecurrenceFrequency.Monthly.value
    next_due_date: str = ''
    active: bool = True
    type: str = TransactionType.Expense.value
    payment_method: str = DEFAULT_PAYMENT_METHOD
    wallet_id: str = DEFAULT_WALLET_ID


@dataclasses.dataclass
class Goal(Record):
    name: str = ''
    target_amount: float = 0.0
    current_amount: float = 0.0
    deadline: str = ''
    color: str = '#4ECDC4'
    wallet_id: str = ''


@dataclasses.dataclass
class Budget(Record):
    category: str = ''
    limit: float = 0.0
    period: str = BudgetPeriod.Monthly.value


@dataclasses.dataclass
class Wallet(Record):
    name: str = ''
    type: str = WalletType.Main.value
    balance: float = 0.0


@dataclasses.dataclass
class CategoryItem(Record):
    name: str = ''
    type: str = TransactionType.Expense.value
    color: str = '#D4A5A5'


@dataclasses.dataclass
class MemberItem(Record):
    name: str = ''
    color: str = '#45B7D1'


def default_wallets() -> List[Wallet]:
    return [Wallet(id=DEFAULT_WALLET_ID, name='Main Wallet', type=WalletType.Main.value)]


def default_categories() -> List[CategoryItem]:
    items = [
        ('Salary', TransactionType.Income, '#88D8B0'),
        ('Profit', TransactionType.Income, '#98D7C2'),
        ('Investment', TransactionType.Income, '#2F4858'),
        ('Other', TransactionType.Income, '#D4A5A5'),
        ('Food', TransactionType.Expense, '#FF6B6B'),
        ('Transport', TransactionType.Expense, '#4ECDC4'),
        ('Utilities', TransactionType.Expense, '#45B7D1'),
        ('Entertainment', TransactionType.Expense, '#96CEB4'),
        ('Health', TransactionType.Expense, '#FFCC5C'),
        ('Education', TransactionType.Expense, '#FFEEAD'),
        ('Other', TransactionType.Expense, '#D4A5A5'),
    ]
    return [
        CategoryItem(id=f'cat_{i}', name=name, type=_type.value, color=color)
        for i, (name, _type, color) in enumerate(items, start=1)
    ]


def default_members() -> List[MemberItem]:
    return [MemberItem(id='mem_1', name=DEFAULT_MEMBER)]


# Collection name -> record class, in push/pull order
COLLECTIONS: Dict[str, Type[Record]] = {
    StorageKey.Transactions.value: Transaction,
    StorageKey.Recurring.value: RecurringRule,
    StorageKey.Goals.value: Goal,
    StorageKey.Budgets.value: Budget,
    StorageKey.Wallets.value: Wallet,
    StorageKey.Categories.value: CategoryItem,
    StorageKey.Members.value: MemberItem,
}


@dataclasses.dataclass
class LedgerSnapshot:
    """The full set of synchronized collections, pushed and pulled as one unit."""
    transactions: List[Transaction] = dataclasses.field(default_factory=list)
    recurring: List[RecurringRule] = dataclasses.field(default_factory=list)
    goals: List[Goal] = dataclasses.field(default_factory=list)
    budgets: List[Budget] = dataclasses.field(default_factory=list)
    wallets: List[Wallet] = dataclasses.field(default_factory=default_wallets)
    categories: List[CategoryItem] = dataclasses.field(default_factory=default_categories)
    members: List[MemberItem] = dataclasses.field(default_factory=default_members)

    def copy(self) -> 'LedgerSnapshot':
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {name: [r.to_dict() for r in getattr(self, name)] for name in COLLECTIONS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerSnapshot':
        """Build a snapshot from a collections dictionary.

        Collections missing from ``data`` keep their defaults. Records that cannot
        be parsed are skipped.
        """
        snapshot = cls()
        for name, record_cls in COLLECTIONS.items():
            if name not in data:
                continue
            records = []
            for item in data[name] or []:
                try:
                    records.append(record_cls.from_dict(item))
                except (TypeError, AttributeError) as ex:
                    logging.warning(f'Skipping malformed {name} record {item!r}: {ex}')
            setattr(snapshot, name, records)
        if not snapshot.wallets:
            snapshot.wallets = default_wallets()
        return snapshot

    def is_empty(self) -> bool:
        """True when the snapshot holds no user data beyond the defaults."""
        if self.transactions or self.recurring or self.goals or self.budgets:
            return False
        return all(w.id == DEFAULT_WALLET_ID for w in self.wallets)


class LedgerStore(QtCore.QObject):
    """In-memory authoritative ledger.

    Mutations are synchronous. Each one persists the full snapshot to the local
    cache and then emits :attr:`changed` with the name of the collection that
    changed. Cache failures are logged and never stop the in-memory store.

    Signals:
        changed (str): Emitted after every mutation with the collection name.
        replaced (): Emitted after the whole snapshot was replaced.
    """
    changed = QtCore.Signal(str)
    replaced = QtCore.Signal()

    def __init__(self, snapshot: Optional[LedgerSnapshot] = None,
                 persist: bool = True, parent: Optional[QtCore.QObject] = None) -> None:
        super().__init__(parent=parent)
        self._snapshot: LedgerSnapshot = snapshot.copy() if snapshot else LedgerSnapshot()
        self._persist_enabled = persist

    @classmethod
    def from_cache(cls, parent: Optional[QtCore.QObject] = None) -> 'LedgerStore':
        """Create a store from the local cache, falling back to an empty ledger."""
        try:
            data = DatabaseAPI.load_snapshot()
        except status.CacheInvalidException as ex:
            logging.error(f'Could not load the cached ledger, starting empty: {ex}')
            data = {}
        snapshot = LedgerSnapshot.from_dict(data)
        logging.debug(f'Loaded ledger from cache: {len(snapshot.transactions)} transactions.')
        return cls(snapshot, parent=parent)

    def snapshot(self) -> LedgerSnapshot:
        """Return a deep copy of the current snapshot."""
        return self._snapshot.copy()

    @property
    def transactions(self) -> List[Transaction]:
        return list(self._snapshot.transactions)

    @property
    def recurring(self) -> List[RecurringRule]:
        return list(self._snapshot.recurring)

    @property
    def goals(self) -> List[Goal]:
        return list(self._snapshot.goals)

    @property
    def budgets(self) -> List[Budget]:
        return list(self._snapshot.budgets)

    @property
    def wallets(self) -> List[Wallet]:
        return list(self._snapshot.wallets)

    @property
    def categories(self) -> List[CategoryItem]:
        return list(self._snapshot.categories)

    @property
    def members(self) -> List[MemberItem]:
        return list(self._snapshot.members)

    def _persist(self) -> None:
        if not self._persist_enabled:
            return
        try:
            DatabaseAPI.save_snapshot(self._snapshot.to_dict())
        except status.CacheInvalidException as ex:
            logging.error(f'Failed to write the ledger to the local cache: {ex}')

    def _commit(self, collection: str) -> None:
        self._persist()
        self.changed.emit(collection)

        from ..ui.actions import signals
        signals.ledgerChanged.emit(collection)

    def _add(self, collection: str, record: Record) -> Record:
        if not record.id:
            record.id = new_id()
        getattr(self._snapshot, collection).append(copy.deepcopy(record))
        logging.debug(f'Added {collection} record "{record.id}".')
        self._commit(collection)
        return record

    def _update(self, collection: str, record: Record) -> None:
        items = getattr(self._snapshot, collection)
        for idx, item in enumerate(items):
            if item.id == record.id:
                items[idx] = copy.deepcopy(record)
                logging.debug(f'Updated {collection} record "{record.id}".')
                self._commit(collection)
                return
        raise KeyError(f'No {collection} record with id "{record.id}"')

    def _delete(self, collection: str, record_id: str) -> None:
        items = getattr(self._snapshot, collection)
        remaining = [r for r in items if r.id != record_id]
        if len(remaining) == len(items):
            raise KeyError(f'No {collection} record with id "{record_id}"')
        setattr(self._snapshot, collection, remaining)
        logging.debug(f'Deleted {collection} record "{record_id}".')
        self._commit(collection)

    def _find(self, collection: str, record_id: str) -> Optional[Record]:
        return next((r for r in getattr(self._snapshot, collection) if r.id == record_id), None)

    # Transactions

    def add_transaction(self, transaction: Transaction) -> Transaction:
        return self._add(StorageKey.Transactions.value, transaction)

    def update_transaction(self, transaction: Transaction) -> None:
        self._update(StorageKey.Transactions.value, transaction)

    def delete_transaction(self, transaction_id: str) -> None:
        self._delete(StorageKey.Transactions.value, transaction_id)

    def transfer(self, source_id: str, destination_id: str, amount: float,
                 date: Optional[str] = None, description: str = 'Transfer') -> Transaction:
        """Move money between wallets or goals.

        Records a single transfer transaction. When the source or the destination
        is a savings goal, its current amount is adjusted as well.

        Returns:
            Transaction: The recorded transfer.
        """
        if amount <= 0:
            raise ValueError('Transfer amount must be positive.')
        if source_id == destination_id:
            raise ValueError('Cannot transfer to the same wallet.')

        member = self._snapshot.members[0].name if self._snapshot.members else DEFAULT_MEMBER
        transaction = Transaction(
            id=new_id(),
            date=date or today_str(),
            description=description,
            category=TRANSFER_CATEGORY,
            amount=float(amount),
            member=member,
            type=TransactionType.Transfer.value,
            wallet_id=source_id,
            transfer_to_wallet_id=destination_id,
        )
        self._snapshot.transactions.append(transaction)

        for goal in self._snapshot.goals:
            if goal.id == source_id:
                goal.current_amount -= amount
            elif goal.id == destination_id:
                goal.current_amount += amount

        self._commit(StorageKey.Transactions.value)
        return copy.deepcopy(transaction)

    # Recurring rules

    def add_recurring(self, rule: RecurringRule) -> RecurringRule:
        rule = self._add(StorageKey.Recurring.value, rule)
        self.process_recurring()
        return rule

    def update_recurring(self, rule: RecurringRule) -> None:
        self._update(StorageKey.Recurring.value, rule)

    def delete_recurring(self, rule_id: str) -> None:
        self._delete(StorageKey.Recurring.value, rule_id)

    def process_recurring(self, today: Optional[str] = None) -> int:
        """Materialize every due occurrence of the active recurring rules.

        Each occurrence on or before ``today`` becomes a transaction and the
        rule's next due date is advanced past it.

        Args:
            today: ISO date to evaluate against. Defaults to the current date.

        Returns:
            int: The number of transactions generated.
        """
        today = today or today_str()
        generated: List[Transaction] = []

        for rule in self._snapshot.recurring:
            if not rule.active or not rule.next_due_date:
                continue
            while rule.next_due_date <= today:
                generated.append(Transaction(
                    id=new_id(),
                    date=rule.next_due_date,
                    description=f'{rule.description}{RECURRING_SUFFIX}',
                    category=rule.category,
                    amount=rule.amount,
                    member=rule.member,
                    type=rule.type or TransactionType.Expense.value,
                    wallet_id=rule.wallet_id or DEFAULT_WALLET_ID,
                    recurrence=rule.frequency,
                    payment_method=rule.payment_method,
                ))
                rule.next_due_date = next_due_date(rule.next_due_date, rule.frequency)

        if not generated:
            return 0

        self._snapshot.transactions = sorted(
            generated + self._snapshot.transactions,
            key=lambda t: t.date,
            reverse=True
        )
        logging.info(f'Generated {len(generated)} recurring transaction(s).')
        self._commit(StorageKey.Transactions.value)
        return len(generated)

    # Goals

    def add_goal(self, goal: Goal) -> Goal:
        return self._add(StorageKey.Goals.value, goal)

    def update_goal(self, goal: Goal) -> None:
        self._update(StorageKey.Goals.value, goal)

    def delete_goal(self, goal_id: str) -> None:
        self._delete(StorageKey.Goals.value, goal_id)

    # Budgets

    def add_budget(self, budget: Budget) -> Budget:
        return self._add(StorageKey.Budgets.value, budget)

    def update_budget(self, budget: Budget) -> None:
        self._update(StorageKey.Budgets.value, budget)

    def delete_budget(self, budget_id: str) -> None:
        self._delete(StorageKey.Budgets.value, budget_id)

    # Wallets

    def add_wallet(self, wallet: Wallet, initial_deposit: float = 0.0) -> Wallet:
        """Add a wallet, recording an opening deposit when one is given."""
        wallet.balance = 0.0
        wallet = self._add(StorageKey.Wallets.value, wallet)
        if initial_deposit > 0:
            member = self._snapshot.members[0].name if self._snapshot.members else DEFAULT_MEMBER
            self.add_transaction(Transaction(
                id=new_id(),
                date=today_str(),
                description=INITIAL_DEPOSIT_DESCRIPTION,
                category='Other',
                amount=float(initial_deposit),
                member=member,
                type=TransactionType.Income.value,
                wallet_id=wallet.id,
            ))
        return wallet

    def update_wallet(self, wallet: Wallet) -> None:
        self._update(StorageKey.Wallets.value, wallet)

    def delete_wallet(self, wallet_id: str) -> None:
        if wallet_id == DEFAULT_WALLET_ID:
            raise ValueError('The main wallet cannot be deleted.')
        self._delete(StorageKey.Wallets.value, wallet_id)

    # Categories and members

    def add_category(self, category: CategoryItem) -> CategoryItem:
        return self._add(StorageKey.Categories.value, category)

    def update_category(self, category: CategoryItem) -> None:
        """Update a category. A changed name is propagated to every record using it."""
        current = self._find(StorageKey.Categories.value, category.id)
        if current is None:
            raise KeyError(f'No categories record with id "{category.id}"')
        old_name = current.name
        self._update(StorageKey.Categories.value, category)
        if old_name != category.name:
            self.rename_category(old_name, category.name)

    def delete_category(self, category_id: str) -> None:
        self._delete(StorageKey.Categories.value, category_id)

    def set_categories(self, categories: List[CategoryItem]) -> None:
        self._snapshot.categories = copy.deepcopy(list(categories))
        self._commit(StorageKey.Categories.value)

    def rename_category(self, old_name: str, new_name: str) -> int:
        """Rename a category on every transaction, recurring rule and budget.

        Returns:
            int: The number of records touched.
        """
        count = 0
        for collection in (self._snapshot.transactions, self._snapshot.recurring, self._snapshot.budgets):
            for record in collection:
                if record.category == old_name:
                    record.category = new_name
                    count += 1
        if count:
            logging.debug(f'Renamed category "{old_name}" to "{new_name}" on {count} record(s).')
            self._commit(StorageKey.Transactions.value)
        return count

    def add_member(self, member: MemberItem) -> MemberItem:
        return self._add(StorageKey.Members.value, member)

    def update_member(self, member: MemberItem) -> None:
        self._update(StorageKey.Members.value, member)

    def delete_member(self, member_id: str) -> None:
        self._delete(StorageKey.Members.value, member_id)

    def set_members(self, members: List[MemberItem]) -> None:
        self._snapshot.members = copy.deepcopy(list(members))
        self._commit(StorageKey.Members.value)

    # Whole-snapshot operations

    def replace(self, snapshot: LedgerSnapshot) -> None:
        """Replace the whole ledger, e.g. with the result of a pull.

        Emits :attr:`changed` once per collection and :attr:`replaced` once.
        Reference collections that come back empty keep their local value.
        """
        incoming = snapshot.copy()
        if not incoming.categories:
            incoming.categories = self._snapshot.categories
        if not incoming.members:
            incoming.members = self._snapshot.members
        if not incoming.wallets:
            incoming.wallets = default_wallets()

        self._snapshot = incoming
        self._persist()

        from ..ui.actions import signals
        for name in COLLECTIONS:
            self.changed.emit(name)
            signals.ledgerChanged.emit(name)
        self.replaced.emit()

    def clear(self) -> None:
        """Reset the ledger to its defaults and drop the local cache."""
        self._snapshot = LedgerSnapshot()
        if self._persist_enabled:
            try:
                DatabaseAPI.clear()
            except status.CacheInvalidException as ex:
                logging.error(f'Failed to clear the local cache: {ex}')
        logging.info('Ledger cleared.')
        self._commit(StorageKey.Transactions.value)

    # Analytics

    def transactions_frame(self) -> pd.DataFrame:
        """Return the transactions as a DataFrame with a parsed ``date`` column."""
        columns = [f.name for f in dataclasses.fields(Transaction)]
        df = pd.DataFrame([t.to_dict() for t in self._snapshot.transactions], columns=columns)
        df['date'] = pd.to_datetime(df['date'], format=DATE_FORMAT, errors='coerce')
        df['amount'] = pd.to_numeric(df['amount'], errors='coerce').fillna(0.0)
        return df

    def wallet_balances(self) -> Dict[str, float]:
        """Compute each wallet's balance from the transactions.

        Income adds to its wallet, expenses subtract, and transfers move the
        amount from the source to the destination. Transactions referencing
        unknown wallets are ignored.
        """
        wallet_ids = [w.id for w in self._snapshot.wallets]
        balances = pd.Series(0.0, index=wallet_ids)

        df = self.transactions_frame()
        if df.empty:
            return balances.to_dict()

        regular = df[df['type'] != TransactionType.Transfer.value]
        signed = regular['amount'].where(regular['type'] == TransactionType.Income.value, -regular['amount'])
        outgoing = signed.groupby(regular['wallet_id']).sum()
        transfers = df[df['type'] == TransactionType.Transfer.value]
        sent = transfers.groupby('wallet_id')['amount'].sum()
        received = transfers.groupby('transfer_to_wallet_id')['amount'].sum()

        balances = balances.add(outgoing.reindex(wallet_ids, fill_value=0.0), fill_value=0.0)
        balances = balances.sub(sent.reindex(wallet_ids, fill_value=0.0), fill_value=0.0)
        balances = balances.add(received.reindex(wallet_ids, fill_value=0.0), fill_value=0.0)
        return {k: float(v) for k, v in balances.items()}

    def wallets_with_balances(self) -> List[Wallet]:
        balances = self.wallet_balances()
        wallets = copy.deepcopy(self._snapshot.wallets)
        for w in wallets:
            w.balance = balances.get(w.id, 0.0)
        return wallets
