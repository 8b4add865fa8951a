"""
Test suite for account store module

Tests account creation, validation, debit/credit rules, versioned saves and
ordered multi-account locking.
"""

import pytest
import threading
from decimal import Decimal

from ledger_engine.storage import InMemoryStorage
from ledger_engine.accounts import AccountStore, lock_order_key, normalize_account_id
from ledger_engine.errors import (
    AlreadyExistsError, ConcurrencyConflictError, InsufficientFundsError,
    NotFoundError, ValidationError
)


class TestAccountCreation:
    """Test account creation and lookup"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.store = AccountStore(self.storage)

    def test_create_account(self):
        account = self.store.create(Decimal("100.00"), account_id="acc_1")

        assert account.id == "acc_1"
        assert account.balance == Decimal("100.00")
        assert account.version == 0

        loaded = self.store.get("acc_1")
        assert loaded.balance == Decimal("100.00")
        assert loaded.version == 0
        assert loaded.created_at == account.created_at

    def test_create_generates_id(self):
        first = self.store.create("0")
        second = self.store.create("0")

        assert first.id != second.id
        assert self.store.exists(first.id)
        assert self.store.exists(second.id)

    def test_integer_ids_are_normalized(self):
        self.store.create("5.00", account_id=1)

        assert self.store.get(1).id == "1"
        assert self.store.get("1").balance == Decimal("5.00")

    def test_negative_initial_balance_rejected(self):
        with pytest.raises(ValidationError):
            self.store.create(Decimal("-5"), account_id="acc_1")

        assert not self.store.exists("acc_1")
        assert self.storage.count("accounts") == 0

    def test_initial_balance_precision_rejected(self):
        with pytest.raises(ValidationError):
            self.store.create("10.001", account_id="acc_1")

        assert not self.store.exists("acc_1")

    def test_duplicate_account_id(self):
        self.store.create("10.00", account_id="acc_1")

        with pytest.raises(AlreadyExistsError):
            self.store.create("20.00", account_id="acc_1")

        assert self.store.get("acc_1").balance == Decimal("10.00")

    def test_get_missing_account(self):
        with pytest.raises(NotFoundError) as exc_info:
            self.store.get("missing")
        assert exc_info.value.account_id == "missing"

    def test_empty_account_id_rejected(self):
        with pytest.raises(ValidationError):
            normalize_account_id("  ")
        with pytest.raises(ValidationError):
            normalize_account_id(None)


class TestBalanceMutation:
    """Test debit, credit and versioned save"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.store = AccountStore(self.storage)
        self.store.create("100.00", account_id="acc_1")

    def test_debit_and_credit_bump_version(self):
        account = self.store.get("acc_1")
        previous_update = account.updated_at

        self.store.debit(account, "30.00")
        assert account.balance == Decimal("70.00")
        assert account.version == 1

        self.store.credit(account, Decimal("5.50"))
        assert account.balance == Decimal("75.50")
        assert account.version == 2
        assert account.updated_at >= previous_update

    def test_non_positive_amounts_rejected(self):
        account = self.store.get("acc_1")

        for amount in ("0", "-1.00"):
            with pytest.raises(ValidationError):
                self.store.debit(account, amount)
            with pytest.raises(ValidationError):
                self.store.credit(account, amount)

        assert account.balance == Decimal("100.00")
        assert account.version == 0

    def test_insufficient_funds(self):
        account = self.store.get("acc_1")

        with pytest.raises(InsufficientFundsError) as exc_info:
            self.store.debit(account, "100.01")

        assert exc_info.value.available == Decimal("100.00")
        assert exc_info.value.requested == Decimal("100.01")
        assert "Insufficient funds" in str(exc_info.value)
        assert account.balance == Decimal("100.00")

    def test_debit_to_zero_allowed(self):
        account = self.store.get("acc_1")
        self.store.debit(account, "100.00")
        assert account.balance == Decimal("0.00")

    def test_save_with_expected_version(self):
        account = self.store.get("acc_1")
        self.store.debit(account, "10.00")
        self.store.save(account, expected_version=0)

        loaded = self.store.get("acc_1")
        assert loaded.balance == Decimal("90.00")
        assert loaded.version == 1

    def test_save_detects_concurrent_writer(self):
        first = self.store.get("acc_1")
        second = self.store.get("acc_1")

        self.store.debit(first, "10.00")
        self.store.save(first, expected_version=0)

        self.store.debit(second, "20.00")
        with pytest.raises(ConcurrencyConflictError):
            self.store.save(second, expected_version=0)

        assert self.store.get("acc_1").balance == Decimal("90.00")


class TestOrderedLocking:
    """Test ordered multi-account acquisition"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.store = AccountStore(self.storage, lock_timeout_seconds=0.2)
        for account_id in ("2", "10", "b", "a"):
            self.store.create("50.00", account_id=account_id)

    def _record_acquisitions(self):
        acquired = []
        registry = self.store._locks
        original_acquire = registry.acquire

        def recording_acquire(account_id, timeout):
            acquired.append(account_id)
            return original_acquire(account_id, timeout)

        registry.acquire = recording_acquire
        return acquired

    def test_lock_order_is_total(self):
        ids = ["b", "10", "a", "2"]
        assert sorted(ids, key=lock_order_key) == ["2", "10", "a", "b"]

    def test_equal_numeric_values_have_distinct_keys(self):
        assert lock_order_key("7") != lock_order_key("007")
        assert sorted(["7", "007", "07"], key=lock_order_key) == ["007", "07", "7"]
        assert sorted(["07", "7", "007"], key=lock_order_key) == ["007", "07", "7"]

    def test_equal_numeric_values_lock_in_one_order(self):
        self.store.create("1.00", account_id="7")
        self.store.create("1.00", account_id="007")
        acquired = self._record_acquisitions()

        with self.store.lock_accounts_ordered(["7", "007"]):
            pass
        with self.store.lock_accounts_ordered(["007", "7"]):
            pass

        assert acquired == ["007", "7", "007", "7"]

    def test_non_ascii_digits_sort_as_text(self):
        # "²".isdigit() is true but int("²") fails
        assert lock_order_key("²") == (1, 0, "²")
        assert sorted(["²", "b", "10"], key=lock_order_key) == ["10", "b", "²"]

    def test_non_ascii_digit_account_can_be_locked(self):
        self.store.create("5.00", account_id="²")

        with self.store.lock_accounts_ordered(["²", "2"]) as accounts:
            assert set(accounts) == {"2", "²"}
            assert accounts["²"].balance == Decimal("5.00")

    def test_returns_accounts_keyed_by_id(self):
        with self.store.lock_accounts_ordered(["10", "2"]) as accounts:
            assert set(accounts) == {"2", "10"}
            assert accounts["10"].balance == Decimal("50.00")

    def test_acquisition_follows_order(self):
        acquired = self._record_acquisitions()

        with self.store.lock_accounts_ordered(["b", "10", "2"]):
            assert self.store._locks.is_held("b")

        assert acquired == ["2", "10", "b"]

    def test_missing_account_takes_no_locks(self):
        acquired = self._record_acquisitions()

        with pytest.raises(NotFoundError):
            with self.store.lock_accounts_ordered(["2", "zzz"]):
                pass

        assert acquired == []
        assert len(self.store._locks) == 0

    def test_registry_is_emptied_after_use(self):
        with self.store.lock_accounts_ordered(["a", "b", "2"]):
            assert len(self.store._locks) == 3

        assert len(self.store._locks) == 0

    def test_unknown_ids_do_not_grow_registry(self):
        for n in range(200):
            with pytest.raises(NotFoundError):
                with self.store.lock_accounts_ordered(["a", f"ghost-{n}"]):
                    pass

        assert len(self.store._locks) == 0

    def test_locks_released_on_exception(self):
        with pytest.raises(RuntimeError):
            with self.store.lock_accounts_ordered(["a", "b"]):
                raise RuntimeError("failure inside section")

        assert not self.store._locks.is_held("a")
        with self.store.lock_accounts_ordered(["a", "b"]) as accounts:
            assert len(accounts) == 2

    def test_lock_timeout_raises_conflict(self):
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with self.store.lock_accounts_ordered(["a"]):
                holding.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            assert holding.wait(5)
            with pytest.raises(ConcurrencyConflictError):
                with self.store.lock_accounts_ordered(["a", "b"]):
                    pass

            # "b" was never taken by the failed acquisition
            assert not self.store._locks.is_held("b")
        finally:
            release.set()
            thread.join(5)

        assert len(self.store._locks) == 0

    def test_non_exclusive_mode_takes_no_locks(self):
        assert self.store._locks.acquire("a", 1.0)
        try:
            with self.store.lock_accounts_ordered(["a", "b"], exclusive=False) as accounts:
                assert set(accounts) == {"a", "b"}
                assert not self.store._locks.is_held("b")
        finally:
            self.store._locks.release("a")
