"""
test_ledger.py - Unit tests for the Ledger

Tests:
- Creation, wallet and unit registration
- Balance reads and test-mode balance writes
- Time management
- Atomic execution of moves and record writes
- Record uniqueness and optimistic concurrency
- Idempotent execution
- Cloning
"""

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from slotledger import (
    Ledger, Move, ExecuteResult, RejectionReason, StateChange, SYSTEM_WALLET,
    UnitNotRegistered, WalletNotRegistered, RecordNotFound, DuplicateRecord, ConcurrentModification,
    build_transaction, empty_pending_transaction, record_insert, record_update, currency,
)

from tests.helpers import START


def _funded_ledger() -> Ledger:
    ledger = Ledger("test", START, test_mode=True)
    ledger.register_unit(currency("KRW", "Korean Won"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    ledger.set_balance("alice", "KRW", Decimal("1000"))
    ledger.set_balance(SYSTEM_WALLET, "KRW", Decimal("-1000"))
    return ledger


class TestLedgerCreation:
    """Tests for Ledger initialization."""

    def test_create_ledger_minimal(self):
        ledger = Ledger("test")
        assert ledger.name == "test"
        assert ledger.current_time == datetime(1970, 1, 1)

    def test_system_wallet_preregistered(self):
        ledger = Ledger("test")
        assert ledger.is_registered(SYSTEM_WALLET)


class TestRegistration:
    """Tests for wallet and unit registration."""

    def test_register_wallet_twice_fails(self, ledger):
        ledger.register_wallet("alice")
        with pytest.raises(ValueError, match="already registered"):
            ledger.register_wallet("alice")

    def test_register_unit_twice_fails(self, krw_ledger):
        with pytest.raises(ValueError, match="already registered"):
            krw_ledger.register_unit(currency("KRW", "Korean Won"))

    def test_list_wallets_is_a_copy(self, ledger):
        wallets = ledger.list_wallets()
        wallets.add("mallory")
        assert not ledger.is_registered("mallory")


class TestBalances:
    """Tests for balance reads."""

    def test_unknown_wallet_reads_zero(self, krw_ledger):
        assert krw_ledger.get_balance("nobody", "KRW") == Decimal("0")

    def test_unknown_unit_raises(self, ledger):
        with pytest.raises(UnitNotRegistered):
            ledger.get_balance("alice", "KRW")

    def test_wallet_balances(self, krw_ledger):
        krw_ledger.register_wallet("alice")
        krw_ledger.set_balance("alice", "KRW", Decimal("500"))
        assert krw_ledger.get_wallet_balances("alice") == {"KRW": Decimal("500")}
        with pytest.raises(WalletNotRegistered):
            krw_ledger.get_wallet_balances("nobody")

    def test_set_balance_requires_test_mode(self):
        ledger = Ledger("prod")
        ledger.register_unit(currency("KRW", "Korean Won"))
        ledger.register_wallet("alice")
        with pytest.raises(RuntimeError, match="test mode"):
            ledger.set_balance("alice", "KRW", Decimal("1"))


class TestTime:
    """Tests for the logical clock."""

    def test_advance_time(self, ledger):
        later = START + timedelta(days=1)
        ledger.advance_time(later)
        assert ledger.current_time == later

    def test_cannot_go_backwards(self, ledger):
        with pytest.raises(ValueError, match="backwards"):
            ledger.advance_time(START - timedelta(seconds=1))


class TestExecute:
    """Tests for atomic execution."""

    def test_moves_applied(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("300"), "KRW", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.APPLIED
        assert ledger.get_balance("alice", "KRW") == Decimal("700")
        assert ledger.get_balance("bob", "KRW") == Decimal("300")
        assert len(ledger.transaction_log) == 1

    def test_overdraft_rejected(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("1001"), "KRW", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert "< min" in ledger.last_rejection
        assert ledger.get_balance("alice", "KRW") == Decimal("1000")

    def test_rejection_discards_record_writes(self):
        ledger = _funded_ledger()
        tx = build_transaction(
            ledger,
            [Move(Decimal("5000"), "KRW", "alice", "bob", "p1")],
            [record_insert("slot:s1", {"id": "s1"})],
        )
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert not ledger.has_record("slot:s1")

    def test_rejection_unregisters_new_wallets(self):
        ledger = _funded_ledger()
        tx = build_transaction(
            ledger,
            [Move(Decimal("5000"), "KRW", "alice", "escrow:s1:buyer", "p1")],
            wallets_to_create=("escrow:s1:buyer",),
        )
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert not ledger.is_registered("escrow:s1:buyer")

    def test_unregistered_wallet_rejected(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("1"), "KRW", "alice", "carol", "p1")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert "not registered" in ledger.last_rejection

    def test_system_wallet_may_go_negative(self, krw_ledger):
        tx = build_transaction(
            krw_ledger, [Move(Decimal("50"), "KRW", SYSTEM_WALLET, "alice", "issue")],
            wallets_to_create=("alice",),
        )
        assert krw_ledger.execute(tx) == ExecuteResult.APPLIED
        assert krw_ledger.get_balance(SYSTEM_WALLET, "KRW") == Decimal("-50")
        assert krw_ledger.total_supply("KRW") == Decimal("0")

    def test_future_timestamp_rejected(self):
        ledger = _funded_ledger()
        later = Ledger("other", START + timedelta(hours=1))
        tx = build_transaction(later, [Move(Decimal("1"), "KRW", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.REJECTED
        assert ledger.last_rejection == "future timestamp"

    @pytest.mark.parametrize("quantity,dest,reason", [
        (Decimal("1001"), "bob", RejectionReason.BELOW_MIN_BALANCE),
        (Decimal("1"), "carol", RejectionReason.WALLET_NOT_REGISTERED),
    ])
    def test_detailed_result_carries_typed_reason(self, quantity, dest, reason):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(quantity, "KRW", "alice", dest, "p1")])
        result, rejection = ledger.execute_detailed(tx)
        assert result == ExecuteResult.REJECTED
        assert rejection.reason == reason
        assert rejection.detail == ledger.last_rejection

    def test_detailed_result_on_success(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("1"), "KRW", "alice", "bob", "p1")])
        assert ledger.execute_detailed(tx) == (ExecuteResult.APPLIED, None)
        assert ledger.execute_detailed(tx) == (ExecuteResult.ALREADY_APPLIED, None)

    def test_inexact_quantity_rejected(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("100.5"), "KRW", "alice", "bob", "p1")])
        result, rejection = ledger.execute_detailed(tx)
        assert result == ExecuteResult.REJECTED
        assert rejection.reason == RejectionReason.INEXACT_QUANTITY
        assert ledger.get_balance("alice", "KRW") == Decimal("1000")
        assert ledger.get_balance("bob", "KRW") == Decimal("0")
        assert ledger.total_supply("KRW") == Decimal("0")

    def test_empty_transaction_is_applied(self, ledger):
        assert ledger.execute(empty_pending_transaction(ledger)) == ExecuteResult.APPLIED
        assert ledger.transaction_log == []


class TestRecords:
    """Tests for versioned records."""

    def test_insert_starts_at_version_one(self, ledger):
        ledger.execute(build_transaction(ledger, [], [record_insert("slot:s1", {"n": 0})]))
        assert ledger.get_record_version("slot:s1") == 1
        assert ledger.get_record_state("slot:s1") == {"n": 0}

    def test_update_bumps_version(self, ledger):
        ledger.execute(build_transaction(ledger, [], [record_insert("slot:s1", {"n": 0})]))
        ledger.execute(build_transaction(ledger, [], [record_update(ledger, "slot:s1", {"n": 1})]))
        assert ledger.get_record_version("slot:s1") == 2
        assert ledger.get_record_state("slot:s1") == {"n": 1}

    def test_duplicate_insert_raises(self, ledger):
        ledger.execute(build_transaction(ledger, [], [record_insert("slot:s1", {"n": 0})]))
        with pytest.raises(DuplicateRecord) as exc_info:
            ledger.execute(build_transaction(ledger, [], [record_insert("slot:s1", {"n": 5})]))
        assert exc_info.value.key == "slot:s1"
        assert ledger.get_record_state("slot:s1") == {"n": 0}

    def test_stale_update_raises(self, ledger):
        """Two writers compute against v1; the second one loses."""
        ledger.execute(build_transaction(ledger, [], [record_insert("slot:s1", {"n": 0})]))
        first = build_transaction(ledger, [], [record_update(ledger, "slot:s1", {"n": 1})])
        second = build_transaction(ledger, [], [record_update(ledger, "slot:s1", {"n": 2})])
        assert ledger.execute(first) == ExecuteResult.APPLIED
        with pytest.raises(ConcurrentModification) as exc_info:
            ledger.execute(second)
        assert exc_info.value.key == "slot:s1"
        assert ledger.get_record_state("slot:s1") == {"n": 1}

    def test_update_of_missing_record_raises(self, ledger):
        tx = build_transaction(ledger, [], [StateChange("slot:zz", {"n": 0}, {"n": 1}, 1)])
        with pytest.raises(RecordNotFound):
            ledger.execute(tx)

    def test_get_missing_record_raises(self, ledger):
        with pytest.raises(RecordNotFound):
            ledger.get_record_state("slot:missing")

    def test_list_records_sorted_by_key(self, ledger):
        ledger.execute(build_transaction(ledger, [], [
            record_insert("message:r1:000002", {"n": 2}),
            record_insert("message:r1:000001", {"n": 1}),
            record_insert("message:r2:000001", {"n": 9}),
        ]))
        keys = [key for key, _ in ledger.list_records("message:r1:")]
        assert keys == ["message:r1:000001", "message:r1:000002"]

    def test_returned_state_is_a_copy(self, ledger):
        ledger.execute(build_transaction(ledger, [], [record_insert("slot:s1", {"tags": ["a"]})]))
        state = ledger.get_record_state("slot:s1")
        state["tags"].append("b")
        assert ledger.get_record_state("slot:s1") == {"tags": ["a"]}


class TestIdempotency:
    """Tests for intent-based deduplication."""

    def test_same_intent_applied_once(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("100"), "KRW", "alice", "bob", "p1")])
        assert ledger.execute(tx) == ExecuteResult.APPLIED
        assert ledger.execute(tx) == ExecuteResult.ALREADY_APPLIED
        assert ledger.get_balance("bob", "KRW") == Decimal("100")
        assert len(ledger.transaction_log) == 1


class TestClone:
    """Tests for ledger cloning."""

    def test_clone_is_independent(self):
        ledger = _funded_ledger()
        clone = ledger.clone()
        clone.execute(build_transaction(clone, [Move(Decimal("100"), "KRW", "alice", "bob", "p1")]))
        assert clone.get_balance("bob", "KRW") == Decimal("100")
        assert ledger.get_balance("bob", "KRW") == Decimal("0")

    def test_clone_shares_seen_intents(self):
        ledger = _funded_ledger()
        tx = build_transaction(ledger, [Move(Decimal("100"), "KRW", "alice", "bob", "p1")])
        ledger.execute(tx)
        assert ledger.clone().execute(tx) == ExecuteResult.ALREADY_APPLIED


class TestDoubleEntry:
    """Tests for conservation checks."""

    def test_verify_double_entry_valid(self):
        ledger = _funded_ledger()
        result = ledger.verify_double_entry(expected_supplies={"KRW": Decimal("0")})
        assert result['valid']

    def test_verify_double_entry_detects_discrepancy(self):
        ledger = _funded_ledger()
        ledger.set_balance("bob", "KRW", Decimal("5"))
        result = ledger.verify_double_entry(expected_supplies={"KRW": Decimal("0")})
        assert not result['valid']
        assert result['discrepancies'][0]['actual'] == Decimal("5")
