"""
Ledger System Module

Wires storage, account store, journal, idempotency guard and transfer
coordinator together, and exposes the caller-facing operations.

Account.balance is the authoritative balance; the journal is the audit
trail. Reconciliation compares the two and treats any divergence as an
integrity error rather than silently trusting either side.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountIdLike, AccountStore, normalize_account_id
from .amounts import AmountLike, ZERO, format_amount
from .config import LedgerConfig, get_config
from .context import RequestContext, ensure_context
from .errors import IntegrityError
from .idempotency import IdempotencyGuard
from .journal import EntryKind, LedgerEntry, LedgerJournal
from .logging_config import get_logger, log_action
from .storage import StorageInterface, create_storage
from .transfers import TransferCoordinator, TransferResult


@dataclass(frozen=True)
class ReconciliationReport:
    """Cached balance versus journal-derived balance for one account"""
    account_id: str
    balance: Decimal
    journal_balance: Decimal

    @property
    def consistent(self) -> bool:
        return self.balance == self.journal_balance

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "balance": format_amount(self.balance),
            "journal_balance": format_amount(self.journal_balance),
            "consistent": self.consistent
        }


class LedgerSystem:
    """Ledger core with all components initialized"""

    def __init__(self, storage: Optional[StorageInterface] = None,
                 config: Optional[LedgerConfig] = None):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.logger = get_logger("ledger.system")

        self.account_store = AccountStore(self.storage, self.config.lock_timeout_seconds)
        self.journal = LedgerJournal(self.storage)
        self.idempotency_guard = IdempotencyGuard(self.storage)
        self.coordinator = TransferCoordinator(
            self.storage, self.account_store, self.journal, self.idempotency_guard,
            enable_optimistic_locking=self.config.enable_optimistic_locking,
            max_retries=self.config.max_retries,
            retry_backoff_seconds=self.config.retry_backoff_seconds
        )

    def create_account(self, initial_balance: AmountLike,
                       account_id: Optional[AccountIdLike] = None,
                       ctx: Optional[RequestContext] = None) -> Account:
        """Open an account; a generated id is used when account_id is None"""
        return self.coordinator.open_account(initial_balance, account_id, ctx)

    def get_account(self, account_id: AccountIdLike,
                    ctx: Optional[RequestContext] = None) -> Account:
        """
        Get an account by id.

        Raises:
            NotFoundError: Unknown account
            IntegrityError: reconcile_on_read is enabled and the balance
                disagrees with the journal
        """
        if not self.config.reconcile_on_read:
            return self.account_store.get(account_id)

        account, report = self._reconcile(account_id)
        if not report.consistent:
            self._report_divergence(ensure_context(ctx), report)
            raise IntegrityError(
                f"Account {report.account_id} balance {format_amount(report.balance)} "
                f"does not match journal balance {format_amount(report.journal_balance)}"
            )
        return account

    def apply_transfer(self, transfer_id: str, from_account_id: AccountIdLike,
                       to_account_id: AccountIdLike, amount: AmountLike,
                       ctx: Optional[RequestContext] = None) -> TransferResult:
        return self.coordinator.apply_transfer(transfer_id, from_account_id, to_account_id, amount, ctx)

    def entries_for_transfer(self, transfer_id: str) -> List[LedgerEntry]:
        return self.journal.entries_for_transfer(transfer_id)

    def entries_for_account(self, account_id: AccountIdLike,
                            newest_first: bool = False) -> List[LedgerEntry]:
        """Account history; raises NotFoundError for unknown accounts"""
        account = self.account_store.get(account_id)
        return self.journal.entries_for_account(account.id, newest_first=newest_first)

    def is_transfer_balanced(self, transfer_id: str) -> bool:
        return self.journal.is_transfer_balanced(transfer_id)

    def reconcile_account(self, account_id: AccountIdLike,
                          ctx: Optional[RequestContext] = None) -> ReconciliationReport:
        """Compare an account's balance with the sum of its journal entries"""
        _, report = self._reconcile(account_id)
        if not report.consistent:
            self._report_divergence(ensure_context(ctx), report)
        return report

    def _reconcile(self, account_id: AccountIdLike):
        account_id = normalize_account_id(account_id)
        # One transaction so a concurrent commit cannot land between the reads
        with self.storage.atomic():
            account = self.account_store.get(account_id)
            journal_balance = self.journal.balance_for_account(account_id)
        return account, ReconciliationReport(account.id, account.balance, journal_balance)

    def _report_divergence(self, ctx: RequestContext, report: ReconciliationReport) -> None:
        log_action(
            self.logger, "error", f"Balance divergence on account {report.account_id}",
            ctx=ctx, action="reconcile_account", resource=f"account:{report.account_id}",
            extra=report.to_dict()
        )

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify every account against the journal and every transfer against
        the double-entry law.

        Returns:
            Dictionary with integrity check results
        """
        with self.storage.atomic():
            accounts = self.account_store.all_accounts()
            entries = self.journal.all_entries()

        journal_balances: Dict[str, Decimal] = {}
        transfers: Dict[str, List[LedgerEntry]] = {}
        for entry in entries:
            journal_balances[entry.account_id] = journal_balances.get(entry.account_id, ZERO) + entry.amount
            if not entry.is_seed:
                transfers.setdefault(entry.transfer_id, []).append(entry)

        result = {
            'valid': True,
            'total_accounts': len(accounts),
            'total_entries': len(entries),
            'total_transfers': len(transfers),
            'divergent_accounts': [],
            'negative_balances': [],
            'unbalanced_transfers': []
        }

        for account in accounts:
            report = ReconciliationReport(
                account.id, account.balance, journal_balances.get(account.id, ZERO)
            )
            if not report.consistent:
                result['valid'] = False
                result['divergent_accounts'].append(report.to_dict())
            if account.balance < ZERO:
                result['valid'] = False
                result['negative_balances'].append(account.id)

        for transfer_id, legs in transfers.items():
            total = sum((leg.amount for leg in legs), ZERO)
            kinds = sorted(leg.kind.value for leg in legs)
            if total != ZERO or kinds != [EntryKind.CREDIT.value, EntryKind.DEBIT.value]:
                result['valid'] = False
                result['unbalanced_transfers'].append({
                    'transfer_id': transfer_id,
                    'entry_count': len(legs),
                    'sum': format_amount(total)
                })

        return result

    def close(self) -> None:
        self.storage.close()
