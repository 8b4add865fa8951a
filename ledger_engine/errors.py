"""
Error Taxonomy Module

Exceptions raised across the ledger core. Business failures (insufficient
funds) are reported to transfer callers as a Failure result, not raised.
"""

from decimal import Decimal
from typing import Optional


class LedgerError(Exception):
    """Base class for all ledger errors"""


class ValidationError(LedgerError, ValueError):
    """Bad input, always rejected before any side effect"""


class NotFoundError(LedgerError, LookupError):
    """Referenced account does not exist"""

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class AlreadyExistsError(LedgerError):
    """Account id is already taken"""


class InsufficientFundsError(LedgerError):
    """Debit would leave an account with a negative balance"""

    def __init__(self, message: str, available: Decimal, requested: Decimal):
        super().__init__(message)
        self.available = available
        self.requested = requested


class ConcurrencyConflictError(LedgerError):
    """
    Concurrent writer changed an account, or a lock wait timed out.
    Retryable: the coordinator retries it up to the configured bound.
    """


class InternalError(LedgerError):
    """Storage failure during commit; nothing from the attempt was persisted"""


class IntegrityError(LedgerError):
    """Account balance and journal disagree"""
