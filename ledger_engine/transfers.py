"""
Transfer Coordination Module

Orchestrates validation, deduplication, ordered locking, balance mutation
and journal writes into one atomic unit per transfer. The coordinator is
the only writer of account balances and ledger entries.

State machine per call:

    VALIDATING -> DEDUPLICATING -> LOCKING -> CHECKING -> MUTATING -> COMMITTING
        -> SUCCEEDED | FAILED_BUSINESS | REJECTED | ABORTED

A ConcurrencyConflictError (version mismatch or lock timeout) restarts the
attempt from DEDUPLICATING with fresh reads, up to max_retries times.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum
import time

from .accounts import Account, AccountIdLike, AccountStore, normalize_account_id
from .amounts import AmountLike, ZERO, format_amount, to_amount
from .context import RequestContext, ensure_context
from .errors import (
    ConcurrencyConflictError, InsufficientFundsError, InternalError,
    NotFoundError, ValidationError
)
from .idempotency import IdempotencyGuard, TransferAlreadyClaimedError
from .journal import SEED_TRANSFER_PREFIX, LedgerEntry, LedgerJournal
from .logging_config import get_logger, log_action
from .storage import StorageInterface


class TransferOutcome(Enum):
    """Outcomes reported to callers"""
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"


class TransferState(Enum):
    """States a transfer call passes through"""
    VALIDATING = "validating"
    DEDUPLICATING = "deduplicating"
    LOCKING = "locking"
    CHECKING = "checking"
    MUTATING = "mutating"
    COMMITTING = "committing"
    SUCCEEDED = "succeeded"
    FAILED_BUSINESS = "failed_business"
    REJECTED = "rejected"
    ABORTED = "aborted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TransferResult:
    """
    Result of one apply_transfer call. Balances are present only for
    SUCCESS and ALREADY_PROCESSED.
    """
    transfer_id: str
    outcome: TransferOutcome
    message: str
    from_balance_after: Optional[Decimal] = None
    to_balance_after: Optional[Decimal] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def success(cls, transfer_id: str, from_balance: Decimal, to_balance: Decimal) -> 'TransferResult':
        return cls(transfer_id, TransferOutcome.SUCCESS, "Transfer completed successfully",
                   from_balance, to_balance)

    @classmethod
    def failure(cls, transfer_id: str, message: str) -> 'TransferResult':
        return cls(transfer_id, TransferOutcome.FAILURE, message)

    @classmethod
    def already_processed(cls, transfer_id: str, from_balance: Decimal, to_balance: Decimal) -> 'TransferResult':
        return cls(transfer_id, TransferOutcome.ALREADY_PROCESSED, "Transfer already processed",
                   from_balance, to_balance)

    @property
    def is_successful(self) -> bool:
        """True for SUCCESS and ALREADY_PROCESSED"""
        return self.outcome != TransferOutcome.FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfer_id": self.transfer_id,
            "outcome": self.outcome.value,
            "success": self.is_successful,
            "message": self.message,
            "from_balance_after": format_amount(self.from_balance_after) if self.from_balance_after is not None else None,
            "to_balance_after": format_amount(self.to_balance_after) if self.to_balance_after is not None else None,
            "timestamp": self.timestamp.isoformat()
        }


class TransferCoordinator:
    """
    Applies transfers exactly once with double-entry journal writes.
    """

    def __init__(
        self,
        storage: StorageInterface,
        account_store: AccountStore,
        journal: LedgerJournal,
        idempotency_guard: IdempotencyGuard,
        enable_optimistic_locking: bool = False,
        max_retries: int = 3,
        retry_backoff_seconds: float = 0.01
    ):
        self.storage = storage
        self.account_store = account_store
        self.journal = journal
        self.idempotency_guard = idempotency_guard
        self.enable_optimistic_locking = enable_optimistic_locking
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self.logger = get_logger("ledger.transfers")

    def open_account(
        self,
        initial_balance: AmountLike,
        account_id: Optional[AccountIdLike] = None,
        ctx: Optional[RequestContext] = None
    ) -> Account:
        """
        Create an account and, for a positive opening balance, its seed-credit
        entry, in one atomic unit.

        Raises:
            ValidationError: Negative or malformed initial balance
            AlreadyExistsError: account_id is taken
            InternalError: The seed entry could not be written
        """
        ctx = ensure_context(ctx)
        with self.storage.atomic():
            account = self.account_store.create(initial_balance, account_id, ctx)
            if account.balance > ZERO:
                seed = LedgerEntry.seed_credit(account.id, account.balance)
                self.journal.append_entries([seed], ctx)
        return account

    def apply_transfer(
        self,
        transfer_id: str,
        from_account_id: AccountIdLike,
        to_account_id: AccountIdLike,
        amount: AmountLike,
        ctx: Optional[RequestContext] = None
    ) -> TransferResult:
        """
        Move amount from one account to another exactly once.

        Args:
            transfer_id: Idempotency key
            from_account_id: Account to debit
            to_account_id: Account to credit
            amount: Positive amount with at most two fractional digits
            ctx: Request context for log correlation

        Returns:
            TransferResult with SUCCESS, ALREADY_PROCESSED, or FAILURE for
            insufficient funds

        Raises:
            ValidationError: Bad input; nothing was locked or written
            NotFoundError: An account does not exist
            ConcurrencyConflictError: Conflicts persisted past max_retries
            InternalError: Commit failed; nothing from the attempt persisted
        """
        ctx = ensure_context(ctx)
        self._enter(ctx, transfer_id, TransferState.VALIDATING)
        try:
            transfer_id, from_id, to_id, amount = self._validate(
                transfer_id, from_account_id, to_account_id, amount
            )
        except ValidationError as e:
            self._reject(ctx, transfer_id, e)
            raise

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._attempt(ctx, transfer_id, from_id, to_id, amount, attempt)
            except (ValidationError, NotFoundError) as e:
                self._reject(ctx, transfer_id, e)
                raise
            except ConcurrencyConflictError as e:
                if attempt > self.max_retries:
                    log_action(
                        self.logger, "error",
                        f"Transfer {transfer_id} gave up after {attempt} attempts: {e}",
                        ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}",
                        extra={"state": TransferState.ABORTED.value, "attempts": attempt}
                    )
                    raise ConcurrencyConflictError(
                        f"Transfer {transfer_id} failed after {attempt} attempts: {e}"
                    ) from e
                log_action(
                    self.logger, "warning",
                    f"Concurrency conflict on transfer {transfer_id}, retrying: {e}",
                    ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}",
                    extra={"attempt": attempt, "max_retries": self.max_retries}
                )
                if self.retry_backoff_seconds:
                    time.sleep(self.retry_backoff_seconds * attempt)

    def _validate(self, transfer_id, from_account_id, to_account_id, amount):
        if not isinstance(transfer_id, str) or not transfer_id.strip():
            raise ValidationError("Transfer ID cannot be null or empty")
        if transfer_id.startswith(SEED_TRANSFER_PREFIX):
            raise ValidationError(f"Transfer ID prefix '{SEED_TRANSFER_PREFIX}' is reserved")

        from_id = normalize_account_id(from_account_id, "from_account_id")
        to_id = normalize_account_id(to_account_id, "to_account_id")
        if from_id == to_id:
            raise ValidationError("Cannot transfer to the same account")

        amount = to_amount(amount)
        if amount <= ZERO:
            raise ValidationError("Transfer amount must be positive")

        return transfer_id, from_id, to_id, amount

    def _attempt(self, ctx: RequestContext, transfer_id: str, from_id: str, to_id: str,
                 amount: Decimal, attempt: int) -> TransferResult:
        self._enter(ctx, transfer_id, TransferState.DEDUPLICATING, attempt)
        if self.idempotency_guard.is_applied(transfer_id):
            return self._already_processed(ctx, transfer_id, from_id, to_id, amount)

        self._enter(ctx, transfer_id, TransferState.LOCKING, attempt)
        exclusive = not self.enable_optimistic_locking
        with self.account_store.lock_accounts_ordered([from_id, to_id], exclusive=exclusive) as accounts:
            return self._apply_locked(
                ctx, transfer_id, accounts[from_id], accounts[to_id], amount, attempt
            )

    def _apply_locked(self, ctx: RequestContext, transfer_id: str, from_account: Account,
                      to_account: Account, amount: Decimal, attempt: int) -> TransferResult:
        # A racing caller may have committed while we waited for the locks
        if self.idempotency_guard.is_applied(transfer_id):
            return self._already_processed(ctx, transfer_id, from_account.id, to_account.id, amount)

        self._enter(ctx, transfer_id, TransferState.CHECKING, attempt)
        if from_account.balance < amount:
            return self._business_failure(
                ctx, transfer_id,
                f"Insufficient funds: available {format_amount(from_account.balance)}, "
                f"requested {format_amount(amount)}"
            )

        self._enter(ctx, transfer_id, TransferState.MUTATING, attempt)
        from_version = from_account.version
        to_version = to_account.version
        try:
            self.account_store.debit(from_account, amount)
        except InsufficientFundsError as e:
            return self._business_failure(ctx, transfer_id, str(e))
        self.account_store.credit(to_account, amount)

        now = _utcnow()
        entries = [
            LedgerEntry.debit(transfer_id, from_account.id, amount, created_at=now, sequence=0),
            LedgerEntry.credit(transfer_id, to_account.id, amount, created_at=now, sequence=1),
        ]

        self._enter(ctx, transfer_id, TransferState.COMMITTING, attempt)
        try:
            with self.storage.atomic():
                self.idempotency_guard.claim(transfer_id, from_account.id, to_account.id, amount)
                self.journal.append_entries(entries, ctx)
                self.account_store.save(from_account, from_version)
                self.account_store.save(to_account, to_version)
        except TransferAlreadyClaimedError:
            return self._already_processed(ctx, transfer_id, from_account.id, to_account.id, amount)
        except ConcurrencyConflictError:
            raise
        except Exception as e:
            log_action(
                self.logger, "error", f"Transfer {transfer_id} aborted during commit: {e}",
                ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}",
                extra={"state": TransferState.ABORTED.value, "attempt": attempt},
                exc_info=True
            )
            raise InternalError(f"Transfer {transfer_id} aborted: {e}") from e

        self._enter(ctx, transfer_id, TransferState.SUCCEEDED, attempt)
        log_action(
            self.logger, "info", f"Transfer {transfer_id} completed",
            ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}",
            extra={
                "from_account": from_account.id,
                "to_account": to_account.id,
                "amount": format_amount(amount),
                "from_balance_after": format_amount(from_account.balance),
                "to_balance_after": format_amount(to_account.balance)
            }
        )
        return TransferResult.success(transfer_id, from_account.balance, to_account.balance)

    def _already_processed(self, ctx: RequestContext, transfer_id: str, from_id: str,
                           to_id: str, amount: Decimal) -> TransferResult:
        claim = self.idempotency_guard.get_claim(transfer_id)
        if claim is not None:
            if not claim.matches(from_id, to_id, amount):
                log_action(
                    self.logger, "warning",
                    f"Transfer {transfer_id} replayed with different arguments",
                    ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}",
                    extra={
                        "original": claim.to_dict(),
                        "replayed": {"from_account_id": from_id, "to_account_id": to_id,
                                     "amount": format_amount(amount)}
                    }
                )
            # Report the accounts the transfer actually moved money between
            from_id, to_id = claim.from_account_id, claim.to_account_id

        from_account = self.account_store.get(from_id)
        to_account = self.account_store.get(to_id)
        log_action(
            self.logger, "info", f"Transfer {transfer_id} already processed",
            ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}"
        )
        return TransferResult.already_processed(transfer_id, from_account.balance, to_account.balance)

    def _business_failure(self, ctx: RequestContext, transfer_id: str, message: str) -> TransferResult:
        self._enter(ctx, transfer_id, TransferState.FAILED_BUSINESS)
        log_action(
            self.logger, "warning", f"Transfer {transfer_id} failed: {message}",
            ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}"
        )
        return TransferResult.failure(transfer_id, message)

    def _reject(self, ctx: RequestContext, transfer_id: Any, error: Exception) -> None:
        self._enter(ctx, transfer_id, TransferState.REJECTED)
        log_action(
            self.logger, "warning", f"Transfer {transfer_id} rejected: {error}",
            ctx=ctx, action="apply_transfer", resource=f"transfer:{transfer_id}",
            extra={"error": type(error).__name__}
        )

    def _enter(self, ctx: RequestContext, transfer_id: Any, state: TransferState,
               attempt: Optional[int] = None) -> None:
        log_action(
            self.logger, "debug", f"Transfer {transfer_id} -> {state.value}",
            ctx=ctx, action="transfer_state", resource=f"transfer:{transfer_id}",
            extra={"state": state.value, "attempt": attempt}
        )
