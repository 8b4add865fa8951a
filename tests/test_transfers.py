"""
Test suite for transfer coordination

Tests validation, insufficient funds, idempotent replay, retry on
concurrency conflicts and all-or-nothing commits. Validates that every
committed transfer leaves two journal legs summing to zero.
"""

import pytest
import logging
from decimal import Decimal

from ledger_engine.config import LedgerConfig
from ledger_engine.context import RequestContext
from ledger_engine.storage import InMemoryStorage
from ledger_engine.system import LedgerSystem
from ledger_engine.journal import EntryKind, seed_transfer_id
from ledger_engine.transfers import TransferOutcome, TransferState
from ledger_engine.errors import (
    AlreadyExistsError, ConcurrencyConflictError, InternalError, NotFoundError, ValidationError
)


class ConflictingStorage(InMemoryStorage):
    """Storage whose versioned saves report a conflict a fixed number of times"""

    def __init__(self, conflicts):
        super().__init__()
        self.conflicts = conflicts
        self.attempted_saves = 0

    def save_if_version(self, table, record_id, data, expected_version):
        self.attempted_saves += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            return False
        return super().save_if_version(table, record_id, data, expected_version)


class FailingJournalStorage(InMemoryStorage):
    """Storage that cannot write ledger entries once armed"""

    armed = False

    def insert(self, table, record_id, data):
        if self.armed and table == "ledger_entries":
            raise OSError("journal unavailable")
        super().insert(table, record_id, data)


def make_system(storage=None, **overrides):
    settings = {"max_retries": 3, "retry_backoff_seconds": 0}
    settings.update(overrides)
    return LedgerSystem(storage or InMemoryStorage(), LedgerConfig(**settings))


class TestTransferCoordinator:
    """Test transfer processing functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = make_system()
        self.system.create_account(Decimal("1000.00"), account_id=1)
        self.system.create_account(Decimal("500.00"), account_id=2)
        self.system.create_account(Decimal("50.00"), account_id=3)
        self.system.create_account(Decimal("0.00"), account_id=4)

    def test_successful_transfer(self):
        result = self.system.apply_transfer("T1", 1, 2, Decimal("100"))

        assert result.outcome == TransferOutcome.SUCCESS
        assert result.is_successful
        assert result.from_balance_after == Decimal("900.00")
        assert result.to_balance_after == Decimal("600.00")

        assert self.system.get_account(1).balance == Decimal("900.00")
        assert self.system.get_account(2).balance == Decimal("600.00")

        entries = self.system.entries_for_transfer("T1")
        assert len(entries) == 2
        assert sum(e.amount for e in entries) == Decimal("0.00")
        assert {(e.account_id, e.kind) for e in entries} == {("1", EntryKind.DEBIT), ("2", EntryKind.CREDIT)}
        assert self.system.is_transfer_balanced("T1")

    def test_versions_bump_once_per_transfer(self):
        self.system.apply_transfer("T1", 1, 2, "1.00")

        assert self.system.get_account(1).version == 1
        assert self.system.get_account(2).version == 1

    def test_insufficient_funds_is_failure_result(self):
        result = self.system.apply_transfer("T1", 3, 4, Decimal("100"))

        assert result.outcome == TransferOutcome.FAILURE
        assert not result.is_successful
        assert "insufficient funds" in result.message.lower()
        assert result.from_balance_after is None
        assert result.to_balance_after is None

        assert self.system.get_account(3).balance == Decimal("50.00")
        assert self.system.entries_for_transfer("T1") == []
        assert not self.system.idempotency_guard.is_applied("T1")

    def test_failed_transfer_id_can_be_retried(self):
        assert self.system.apply_transfer("T1", 3, 4, "100.00").outcome == TransferOutcome.FAILURE

        self.system.create_account("100.00", account_id=5)
        self.system.apply_transfer("T0", 5, 3, "50.00")

        result = self.system.apply_transfer("T1", 3, 4, "100.00")
        assert result.outcome == TransferOutcome.SUCCESS
        assert result.from_balance_after == Decimal("0.00")

    def test_self_transfer_rejected(self):
        with pytest.raises(ValidationError):
            self.system.apply_transfer("T1", 1, 1, Decimal("100"))

        assert self.system.get_account(1).balance == Decimal("1000.00")
        assert self.system.entries_for_transfer("T1") == []

    def test_invalid_input_rejected(self):
        invalid = [
            ("", 1, 2, "10.00"),
            ("   ", 1, 2, "10.00"),
            (None, 1, 2, "10.00"),
            ("T1", 1, 2, "0"),
            ("T1", 1, 2, "-5.00"),
            ("T1", 1, 2, "1.005"),
            ("T1", 1, 2, "abc"),
            ("T1", None, 2, "10.00"),
            (seed_transfer_id("1"), 1, 2, "10.00"),
        ]
        for transfer_id, from_id, to_id, amount in invalid:
            with pytest.raises(ValidationError):
                self.system.apply_transfer(transfer_id, from_id, to_id, amount)

        assert self.system.get_account(1).version == 0
        assert self.system.idempotency_guard.get_claim("T1") is None

    def test_missing_account(self):
        with pytest.raises(NotFoundError):
            self.system.apply_transfer("T1", 1, 99, "10.00")

        assert self.system.get_account(1).balance == Decimal("1000.00")
        assert self.system.entries_for_transfer("T1") == []

    def test_unknown_accounts_leave_no_locks_behind(self):
        for n in range(100):
            with pytest.raises(NotFoundError):
                self.system.apply_transfer(f"G{n}", 1, f"ghost-{n}", "1.00")

        assert len(self.system.account_store._locks) == 0
        assert self.system.get_account(1).version == 0

    def test_non_ascii_digit_account_id(self):
        self.system.create_account("10.00", account_id="²")

        result = self.system.apply_transfer("T1", "²", 1, "4.00")

        assert result.outcome == TransferOutcome.SUCCESS
        assert result.from_balance_after == Decimal("6.00")
        assert self.system.get_account(1).balance == Decimal("1004.00")

    def test_idempotent_replay(self):
        first = self.system.apply_transfer("T1", 1, 2, Decimal("100"))
        second = self.system.apply_transfer("T1", 1, 2, Decimal("100"))

        assert first.outcome == TransferOutcome.SUCCESS
        assert second.outcome == TransferOutcome.ALREADY_PROCESSED
        assert second.is_successful
        assert second.from_balance_after == first.from_balance_after
        assert second.to_balance_after == first.to_balance_after

        assert len(self.system.entries_for_transfer("T1")) == 2
        assert self.system.get_account(1).balance == Decimal("900.00")

    def test_replay_with_different_arguments(self, caplog):
        self.system.apply_transfer("T1", 1, 2, "100.00")

        with caplog.at_level(logging.WARNING, logger="ledger.transfers"):
            result = self.system.apply_transfer("T1", 1, 2, "250.00")

        assert result.outcome == TransferOutcome.ALREADY_PROCESSED
        assert self.system.get_account(1).balance == Decimal("900.00")
        assert any("different arguments" in record.getMessage() for record in caplog.records)

    def test_replay_naming_unknown_account(self):
        self.system.apply_transfer("T1", 1, 2, "100.00")

        result = self.system.apply_transfer("T1", 1, 99, "100.00")

        # Balances come from the accounts the original transfer used
        assert result.outcome == TransferOutcome.ALREADY_PROCESSED
        assert result.from_balance_after == Decimal("900.00")
        assert result.to_balance_after == Decimal("600.00")

    def test_seed_entry_for_opening_balance(self):
        entries = self.system.entries_for_transfer(seed_transfer_id("1"))

        assert len(entries) == 1
        assert entries[0].kind == EntryKind.SEED_CREDIT
        assert entries[0].amount == Decimal("1000.00")

        # Zero opening balance writes no entry
        assert self.system.entries_for_transfer(seed_transfer_id("4")) == []

    def test_account_history(self):
        self.system.apply_transfer("T1", 1, 2, "10.00")
        self.system.apply_transfer("T2", 2, 1, "5.00")

        history = self.system.entries_for_account(1, newest_first=True)
        assert [e.transfer_id for e in history] == ["T2", "T1", seed_transfer_id("1")]

        with pytest.raises(NotFoundError):
            self.system.entries_for_account("missing")

    def test_context_correlation_id_logged(self, caplog):
        ctx = RequestContext.new("corr-123")

        with caplog.at_level(logging.INFO, logger="ledger.transfers"):
            self.system.apply_transfer("T1", 1, 2, "10.00", ctx=ctx)

        completed = [r for r in caplog.records if "completed" in r.getMessage()]
        assert completed
        assert completed[0].correlation_id == "corr-123"

    def test_state_transitions_logged(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="ledger.transfers"):
            self.system.apply_transfer("T1", 1, 2, "10.00")

        states = [
            r.extra["state"] for r in caplog.records
            if getattr(r, "action", None) == "transfer_state"
        ]
        assert states == [
            TransferState.VALIDATING.value,
            TransferState.DEDUPLICATING.value,
            TransferState.LOCKING.value,
            TransferState.CHECKING.value,
            TransferState.MUTATING.value,
            TransferState.COMMITTING.value,
            TransferState.SUCCEEDED.value,
        ]


class TestAccountOpening:
    """Test caller-facing account creation"""

    def setup_method(self):
        """Set up test fixtures"""
        self.system = make_system()

    def test_negative_opening_balance(self):
        with pytest.raises(ValidationError):
            self.system.create_account(Decimal("-5"), account_id="acc_1")

        assert self.system.storage.count("accounts") == 0
        assert self.system.storage.count("ledger_entries") == 0

    def test_duplicate_id_leaves_no_seed_entry(self):
        self.system.create_account("10.00", account_id="acc_1")

        with pytest.raises(AlreadyExistsError):
            self.system.create_account("99.00", account_id="acc_1")

        assert len(self.system.entries_for_transfer(seed_transfer_id("acc_1"))) == 1

    def test_seed_failure_rolls_back_account(self):
        storage = FailingJournalStorage()
        storage.armed = True
        system = make_system(storage)

        with pytest.raises(InternalError):
            system.create_account("10.00", account_id="acc_1")

        assert storage.count("accounts") == 0


class TestRetryAndAbort:
    """Test concurrency retries and commit failures"""

    def _open(self, system):
        system.create_account("100.00", account_id="a")
        system.create_account("0.00", account_id="b")

    def test_conflict_retried_then_succeeds(self):
        storage = ConflictingStorage(conflicts=0)
        system = make_system(storage, max_retries=3)
        self._open(system)
        storage.conflicts = 2

        result = system.apply_transfer("T1", "a", "b", "40.00")

        assert result.outcome == TransferOutcome.SUCCESS
        assert system.get_account("a").balance == Decimal("60.00")
        assert system.get_account("b").balance == Decimal("40.00")
        assert len(system.entries_for_transfer("T1")) == 2

    def test_conflict_retried_in_optimistic_mode(self):
        storage = ConflictingStorage(conflicts=0)
        system = make_system(storage, max_retries=2, enable_optimistic_locking=True)
        self._open(system)
        storage.conflicts = 1

        result = system.apply_transfer("T1", "a", "b", "40.00")

        assert result.outcome == TransferOutcome.SUCCESS
        assert system.get_account("a").balance == Decimal("60.00")

    def test_retries_exhausted(self):
        storage = ConflictingStorage(conflicts=0)
        system = make_system(storage, max_retries=2)
        self._open(system)
        storage.conflicts = 100
        storage.attempted_saves = 0

        with pytest.raises(ConcurrencyConflictError):
            system.apply_transfer("T1", "a", "b", "40.00")

        # One failed save per attempt: first attempt plus two retries
        assert storage.attempted_saves == 3
        assert system.get_account("a").balance == Decimal("100.00")
        assert system.entries_for_transfer("T1") == []
        assert not system.idempotency_guard.is_applied("T1")

    def test_zero_retries(self):
        storage = ConflictingStorage(conflicts=0)
        system = make_system(storage, max_retries=0)
        self._open(system)
        storage.conflicts = 1

        with pytest.raises(ConcurrencyConflictError):
            system.apply_transfer("T1", "a", "b", "40.00")

    def test_commit_failure_aborts_without_partial_state(self):
        storage = FailingJournalStorage()
        system = make_system(storage)
        self._open(system)
        storage.armed = True

        with pytest.raises(InternalError) as exc_info:
            system.apply_transfer("T1", "a", "b", "40.00")

        assert exc_info.value.__cause__ is not None
        assert system.get_account("a").balance == Decimal("100.00")
        assert system.get_account("a").version == 0
        assert system.get_account("b").balance == Decimal("0.00")
        assert not system.idempotency_guard.is_applied("T1")

        # Storage recovered: the same transfer id applies normally
        storage.armed = False
        assert system.apply_transfer("T1", "a", "b", "40.00").outcome == TransferOutcome.SUCCESS


class TestTransferResult:
    """Test result serialization"""

    def test_to_dict(self):
        system = make_system()
        system.create_account("10.00", account_id="a")
        system.create_account("0", account_id="b")

        body = system.apply_transfer("T1", "a", "b", "2.50").to_dict()

        assert body["outcome"] == "SUCCESS"
        assert body["success"] is True
        assert body["from_balance_after"] == "7.50"
        assert body["to_balance_after"] == "2.50"

        failure = system.apply_transfer("T2", "b", "a", "99.00").to_dict()
        assert failure["success"] is False
        assert failure["from_balance_after"] is None
