"""
Double-Entry Journal Module

Append-only store of signed ledger entries. Entries are immutable once
written: the journal exposes no update or delete. Every ordinary transfer
writes two legs that sum to zero; the only single-leg entry is the seed
credit written when an account opens with a positive balance.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from enum import Enum
import uuid

from .amounts import ZERO, format_amount
from .context import RequestContext
from .errors import InternalError, ValidationError
from .logging_config import get_logger, log_action
from .storage import DuplicateRecordError, StorageInterface


SEED_TRANSFER_PREFIX = "seed:"


def seed_transfer_id(account_id: str) -> str:
    """Transfer id carried by an account's seed-credit entry"""
    return f"{SEED_TRANSFER_PREFIX}{account_id}"


class EntryKind(Enum):
    """Kinds of journal entries"""
    DEBIT = "DEBIT"              # Negative amount, money leaves the account
    CREDIT = "CREDIT"            # Positive amount, money enters the account
    SEED_CREDIT = "SEED_CREDIT"  # Opening balance, single unbalanced leg


@dataclass(frozen=True)
class LedgerEntry:
    """
    One leg of a transfer's effect on one account.
    Amount is signed: negative for DEBIT, positive for CREDIT and SEED_CREDIT.
    """
    id: str
    transfer_id: str
    account_id: str
    amount: Decimal
    kind: EntryKind
    created_at: datetime
    sequence: int = 0

    def __post_init__(self):
        if self.kind == EntryKind.DEBIT and self.amount >= ZERO:
            raise ValidationError("Debit entry amount must be negative")
        if self.kind in (EntryKind.CREDIT, EntryKind.SEED_CREDIT) and self.amount <= ZERO:
            raise ValidationError(f"{self.kind.value} entry amount must be positive")

    @classmethod
    def debit(cls, transfer_id: str, account_id: str, amount: Decimal,
              created_at: Optional[datetime] = None, sequence: int = 0) -> 'LedgerEntry':
        """Debit leg for a positive transfer amount"""
        return cls(
            id=str(uuid.uuid4()),
            transfer_id=transfer_id,
            account_id=account_id,
            amount=-amount,
            kind=EntryKind.DEBIT,
            created_at=created_at or datetime.now(timezone.utc),
            sequence=sequence
        )

    @classmethod
    def credit(cls, transfer_id: str, account_id: str, amount: Decimal,
               created_at: Optional[datetime] = None, sequence: int = 0) -> 'LedgerEntry':
        """Credit leg for a positive transfer amount"""
        return cls(
            id=str(uuid.uuid4()),
            transfer_id=transfer_id,
            account_id=account_id,
            amount=amount,
            kind=EntryKind.CREDIT,
            created_at=created_at or datetime.now(timezone.utc),
            sequence=sequence
        )

    @classmethod
    def seed_credit(cls, account_id: str, amount: Decimal) -> 'LedgerEntry':
        """Opening-balance entry for a newly created account"""
        return cls(
            id=str(uuid.uuid4()),
            transfer_id=seed_transfer_id(account_id),
            account_id=account_id,
            amount=amount,
            kind=EntryKind.SEED_CREDIT,
            created_at=datetime.now(timezone.utc)
        )

    @property
    def is_seed(self) -> bool:
        return self.kind == EntryKind.SEED_CREDIT

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'transfer_id': self.transfer_id,
            'account_id': self.account_id,
            'amount': format_amount(self.amount),
            'kind': self.kind.value,
            'created_at': self.created_at.isoformat(),
            'sequence': self.sequence
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'LedgerEntry':
        return cls(
            id=data['id'],
            transfer_id=data['transfer_id'],
            account_id=data['account_id'],
            amount=Decimal(data['amount']),
            kind=EntryKind(data['kind']),
            created_at=datetime.fromisoformat(data['created_at']),
            sequence=data.get('sequence', 0)
        )


def _creation_order(entry: LedgerEntry):
    return (entry.created_at, entry.sequence)


class LedgerJournal:
    """
    Journal collaborator: atomic appends plus read-only queries.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "ledger_entries"
        self.logger = get_logger("ledger.journal")
        self.storage.ensure_index(self.table_name, "transfer_id")
        self.storage.ensure_index(self.table_name, "account_id")

    def exists_for_transfer(self, transfer_id: str) -> bool:
        return bool(self.storage.find(self.table_name, {"transfer_id": transfer_id}))

    def append_entries(self, entries: Sequence[LedgerEntry],
                       ctx: Optional[RequestContext] = None) -> None:
        """
        Write entries as one all-or-nothing unit.

        Args:
            entries: Ordered entries to append

        Raises:
            ValidationError: If entries is empty
            InternalError: If any write fails; no entry from the batch stays
                committed
        """
        if not entries:
            raise ValidationError("Cannot append an empty batch of entries")

        try:
            with self.storage.atomic():
                for entry in entries:
                    self.storage.insert(self.table_name, entry.id, entry.to_dict())
        except DuplicateRecordError as e:
            raise InternalError(f"Ledger entry {e.record_id} already written") from e
        except InternalError:
            raise
        except Exception as e:
            raise InternalError(f"Failed to append ledger entries: {e}") from e

        log_action(
            self.logger, "debug", f"Appended {len(entries)} ledger entries",
            ctx=ctx, action="append_entries",
            resource=f"transfer:{entries[0].transfer_id}",
            extra={"entry_ids": [entry.id for entry in entries]}
        )

    def entries_for_transfer(self, transfer_id: str) -> List[LedgerEntry]:
        """Entries of one transfer, oldest first"""
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {"transfer_id": transfer_id})
        ]
        entries.sort(key=_creation_order)
        return entries

    def entries_for_account(self, account_id: str, newest_first: bool = False) -> List[LedgerEntry]:
        """Entries touching one account ordered by creation time"""
        entries = [
            LedgerEntry.from_dict(data)
            for data in self.storage.find(self.table_name, {"account_id": account_id})
        ]
        entries.sort(key=_creation_order, reverse=newest_first)
        return entries

    def all_entries(self) -> List[LedgerEntry]:
        entries = [LedgerEntry.from_dict(data) for data in self.storage.load_all(self.table_name)]
        entries.sort(key=_creation_order)
        return entries

    def sum_by_transfer_and_kind(self, transfer_id: str, kind: EntryKind) -> Decimal:
        """Signed sum of one kind of leg for a transfer"""
        total = ZERO
        for data in self.storage.find(self.table_name, {"transfer_id": transfer_id}):
            if data['kind'] == kind.value:
                total += Decimal(data['amount'])
        return total

    def is_transfer_balanced(self, transfer_id: str) -> bool:
        """
        Check the double-entry law for one transfer from the journal alone.
        A transfer with no entries is trivially balanced.
        """
        debits = self.sum_by_transfer_and_kind(transfer_id, EntryKind.DEBIT)
        credits = self.sum_by_transfer_and_kind(transfer_id, EntryKind.CREDIT)
        return debits + credits == ZERO

    def balance_for_account(self, account_id: str) -> Decimal:
        """Balance derived from the journal, seed credits included"""
        total = ZERO
        for entry in self.entries_for_account(account_id):
            total += entry.amount
        return total
