"""
Account Store Module

Owns account records (authoritative balance plus an optimistic version
counter) and provides ordered multi-account locking. All multi-account
acquisitions use the same total order, ascending account id, so two
transfers over overlapping accounts can never wait on each other in a cycle.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
from contextlib import contextmanager
import threading
import uuid

from .amounts import AmountLike, MAX_AMOUNT, ZERO, format_amount, to_amount
from .context import RequestContext
from .errors import (
    AlreadyExistsError, ConcurrencyConflictError, InsufficientFundsError,
    NotFoundError, ValidationError
)
from .logging_config import get_logger, log_action
from .storage import DuplicateRecordError, StorageInterface, StorageRecord


AccountIdLike = Union[str, int]


def normalize_account_id(account_id: Optional[AccountIdLike], field: str = "account_id") -> str:
    """Account ids are strings; integers are accepted and converted"""
    if account_id is None or isinstance(account_id, bool):
        raise ValidationError(f"{field} cannot be null")
    normalized = str(account_id).strip()
    if not normalized:
        raise ValidationError(f"{field} cannot be empty")
    return normalized


def lock_order_key(account_id: str) -> Tuple[int, int, str]:
    """
    Global lock order: ASCII-numeric ids ascending by value, then all other ids
    ascending lexicographically. Ids with the same numeric value ("7", "007")
    fall back to their text, so no two distinct ids compare equal.
    """
    if account_id.isascii() and account_id.isdigit():
        return (0, int(account_id), account_id)
    return (1, 0, account_id)


@dataclass
class Account(StorageRecord):
    """
    Account with an authoritative cached balance.
    balance >= 0 holds at every observable point.
    """
    balance: Decimal
    version: int = 0

    def to_dict(self):
        result = super().to_dict()
        result['balance'] = format_amount(self.balance)
        return result

    @classmethod
    def from_dict(cls, data) -> 'Account':
        account = super().from_dict(data)
        account.balance = Decimal(account.balance)
        return account


class _AccountLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class _LockRegistry:
    """
    One process-wide exclusive lock per account id.

    Entries are reference counted: an id's lock lives only while some thread
    holds it or waits for it, so the registry never outgrows the set of
    accounts currently in use.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, _AccountLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def acquire(self, account_id: str, timeout: float) -> bool:
        with self._guard:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = _AccountLock()
                self._locks[account_id] = entry
            entry.users += 1

        if entry.lock.acquire(timeout=timeout):
            return True

        with self._guard:
            self._forget(account_id, entry)
        return False

    def release(self, account_id: str) -> None:
        with self._guard:
            entry = self._locks[account_id]
            entry.lock.release()
            self._forget(account_id, entry)

    def is_held(self, account_id: str) -> bool:
        with self._guard:
            entry = self._locks.get(account_id)
            return entry is not None and entry.lock.locked()

    def _forget(self, account_id: str, entry: _AccountLock) -> None:
        entry.users -= 1
        if entry.users == 0:
            del self._locks[account_id]


class AccountStore:
    """
    Persistence collaborator for accounts.

    Writes go through save(), which is a compare-and-swap on the version the
    caller read; a mismatch means another writer got there first.
    """

    def __init__(self, storage: StorageInterface, lock_timeout_seconds: float = 5.0):
        self.storage = storage
        self.lock_timeout_seconds = lock_timeout_seconds
        self.table_name = "accounts"
        self.logger = get_logger("ledger.accounts")
        self._locks = _LockRegistry()

    def create(
        self,
        initial_balance: AmountLike,
        account_id: Optional[AccountIdLike] = None,
        ctx: Optional[RequestContext] = None
    ) -> Account:
        """
        Persist a new account with version 0.

        The seed-credit journal entry for a positive opening balance is the
        coordinator's job, not this store's.

        Raises:
            ValidationError: If initial_balance is negative or malformed
            AlreadyExistsError: If account_id is already taken
        """
        balance = to_amount(initial_balance, "initial_balance")
        if balance < ZERO:
            raise ValidationError("Initial balance must be non-negative")

        if account_id is None:
            account_id = str(uuid.uuid4())
        else:
            account_id = normalize_account_id(account_id)

        now = datetime.now(timezone.utc)
        account = Account(
            id=account_id,
            created_at=now,
            updated_at=now,
            balance=balance,
            version=0
        )

        try:
            self.storage.insert(self.table_name, account.id, account.to_dict())
        except DuplicateRecordError:
            raise AlreadyExistsError(f"Account already exists: {account_id}")

        log_action(
            self.logger, "info", f"Account created: {account.id}",
            ctx=ctx, action="create_account", resource=f"account:{account.id}",
            extra={"initial_balance": format_amount(balance)}
        )
        return account

    def get(self, account_id: AccountIdLike) -> Account:
        """Load an account; raises NotFoundError if absent"""
        account_id = normalize_account_id(account_id)
        data = self.storage.load(self.table_name, account_id)
        if not data:
            raise NotFoundError(f"Account not found: {account_id}", account_id=account_id)
        return Account.from_dict(data)

    def exists(self, account_id: AccountIdLike) -> bool:
        return self.storage.exists(self.table_name, normalize_account_id(account_id))

    def all_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    @contextmanager
    def lock_accounts_ordered(
        self,
        account_ids: Iterable[AccountIdLike],
        exclusive: bool = True
    ) -> Iterator[Dict[str, Account]]:
        """
        Acquire accounts in ascending id order and yield them keyed by id.

        With exclusive=True each account's lock is held until the block
        exits, on every exit path. With exclusive=False accounts are only
        read in the same order; writers then rely on save() version checks.

        Raises:
            NotFoundError: A requested account does not exist. No lock is
                taken in that case.
            ConcurrencyConflictError: A lock wait exceeded the timeout. Locks
                taken before the failure are released.
        """
        ordered = sorted({normalize_account_id(a) for a in account_ids}, key=lock_order_key)

        # Accounts are never deleted, so checking before locking is enough and
        # unknown ids never reach the lock registry
        for account_id in ordered:
            if not self.exists(account_id):
                raise NotFoundError(f"Account not found: {account_id}", account_id=account_id)

        held: List[str] = []
        try:
            if exclusive:
                for account_id in ordered:
                    if not self._locks.acquire(account_id, self.lock_timeout_seconds):
                        raise ConcurrencyConflictError(
                            f"Timed out after {self.lock_timeout_seconds}s waiting for account {account_id}"
                        )
                    held.append(account_id)

            # Read only once every lock is held
            yield {account_id: self.get(account_id) for account_id in ordered}
        finally:
            for account_id in reversed(held):
                self._locks.release(account_id)

    def debit(self, account: Account, amount: AmountLike) -> Account:
        """
        Subtract amount from the account in memory.

        Raises:
            ValidationError: If amount <= 0
            InsufficientFundsError: If the balance would go negative
        """
        amount = self._positive_amount(amount, "Debit amount")
        if account.balance < amount:
            raise InsufficientFundsError(
                f"Insufficient funds: available {format_amount(account.balance)}, "
                f"requested {format_amount(amount)}",
                available=account.balance,
                requested=amount
            )
        account.balance = account.balance - amount
        self._touch(account)
        return account

    def credit(self, account: Account, amount: AmountLike) -> Account:
        """
        Add amount to the account in memory.

        Raises:
            ValidationError: If amount <= 0 or the balance would overflow
        """
        amount = self._positive_amount(amount, "Credit amount")
        new_balance = account.balance + amount
        if new_balance > MAX_AMOUNT:
            raise ValidationError(f"Balance of account {account.id} would exceed {MAX_AMOUNT}")
        account.balance = new_balance
        self._touch(account)
        return account

    def save(self, account: Account, expected_version: int) -> None:
        """
        Persist a mutated account if nobody else changed it since it was read.

        Raises:
            ConcurrencyConflictError: The stored version is not expected_version
        """
        if account.balance < ZERO:
            raise ValidationError(f"Refusing to persist negative balance for account {account.id}")
        saved = self.storage.save_if_version(
            self.table_name, account.id, account.to_dict(), expected_version
        )
        if not saved:
            raise ConcurrencyConflictError(
                f"Account {account.id} was modified concurrently (expected version {expected_version})"
            )

    @staticmethod
    def _positive_amount(amount: AmountLike, label: str) -> Decimal:
        amount = to_amount(amount)
        if amount <= ZERO:
            raise ValidationError(f"{label} must be positive")
        return amount

    @staticmethod
    def _touch(account: Account) -> None:
        account.updated_at = datetime.now(timezone.utc)
        account.version += 1
