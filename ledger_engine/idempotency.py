"""
Idempotency Guard Module

Turns "has this transfer id been applied? if not, apply it" into a single
compare-and-insert. A claim row keyed by transfer id is inserted in the same
atomic unit as the transfer's account and journal writes; the storage
primary key guarantees at most one claim survives. The loser of a race sees
its insert rejected, its whole unit rolled back, and reports AlreadyProcessed.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Optional

from .amounts import format_amount
from .errors import LedgerError
from .storage import DuplicateRecordError, StorageInterface


class TransferAlreadyClaimedError(LedgerError):
    """
    Another caller already holds the claim for this transfer id.
    Internal signal: the coordinator converts it to an AlreadyProcessed result.
    """

    def __init__(self, transfer_id: str):
        super().__init__(f"Transfer already processed: {transfer_id}")
        self.transfer_id = transfer_id


@dataclass(frozen=True)
class TransferClaim:
    """Record of the arguments a transfer id was first applied with"""
    transfer_id: str
    from_account_id: str
    to_account_id: str
    amount: Decimal
    claimed_at: datetime

    def matches(self, from_account_id: str, to_account_id: str, amount: Decimal) -> bool:
        return (self.from_account_id == from_account_id
                and self.to_account_id == to_account_id
                and self.amount == amount)

    def to_dict(self):
        return {
            'id': self.transfer_id,
            'from_account_id': self.from_account_id,
            'to_account_id': self.to_account_id,
            'amount': format_amount(self.amount),
            'claimed_at': self.claimed_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data) -> 'TransferClaim':
        return cls(
            transfer_id=data['id'],
            from_account_id=data['from_account_id'],
            to_account_id=data['to_account_id'],
            amount=Decimal(data['amount']),
            claimed_at=datetime.fromisoformat(data['claimed_at'])
        )


class IdempotencyGuard:
    """Exactly-once gate keyed by transfer id"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transfer_claims"

    def is_applied(self, transfer_id: str) -> bool:
        """Fast-path check; only claim() is authoritative"""
        return self.storage.exists(self.table_name, transfer_id)

    def get_claim(self, transfer_id: str) -> Optional[TransferClaim]:
        data = self.storage.load(self.table_name, transfer_id)
        if data:
            return TransferClaim.from_dict(data)
        return None

    def claim(self, transfer_id: str, from_account_id: str, to_account_id: str,
              amount: Decimal) -> TransferClaim:
        """
        Atomically insert the claim for transfer_id.

        Must run inside the same storage.atomic() block as the transfer's
        writes, so a failed commit also releases the claim.

        Raises:
            TransferAlreadyClaimedError: The transfer id was claimed before
        """
        claim = TransferClaim(
            transfer_id=transfer_id,
            from_account_id=from_account_id,
            to_account_id=to_account_id,
            amount=amount,
            claimed_at=datetime.now(timezone.utc)
        )
        try:
            self.storage.insert(self.table_name, transfer_id, claim.to_dict())
        except DuplicateRecordError:
            raise TransferAlreadyClaimedError(transfer_id)
        return claim
