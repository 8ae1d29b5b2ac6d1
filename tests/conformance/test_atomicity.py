"""
Atomicity Conformance Tests

INVARIANT: Operations are all-or-nothing.

    ∀ operation O:
        O succeeds ⟹ every move and every record write of O is applied
        O fails ⟹ balances, records and the transaction log are unchanged

A slot never exists without its escrow, and a settlement never exists
without its transfer.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

import pytest

from slotledger import (
    ExecuteResult, FinalTerms, LedgerError, RequestTerms, SlotStatus,
    AlreadyConfirmedToday, ConcurrentModification, InsufficientFunds,
)
from slotledger.guarantee import compute_rank_confirmation, compute_refund_resolution
from slotledger.records import holding_key, slot_key

from tests.helpers import (
    BUYER, CAMPAIGN_ID, SELLER, make_engine, next_day, open_active_slot, snapshot,
)


class TestAtomicityProperties:
    """Property-based atomicity tests."""

    @given(st.integers(min_value=0, max_value=200), st.integers(min_value=50, max_value=200))
    @settings(max_examples=50, deadline=None)
    def test_purchase_all_or_nothing(self, deposit_thousands, daily_hundreds):
        """
        PROPERTY: A purchase either creates slot, holding and escrow
        together, or changes nothing at all.
        """
        engine = make_engine()
        if deposit_thousands:
            engine.deposit(BUYER, Decimal(deposit_thousands * 1000))
        request = engine.create_request(CAMPAIGN_ID, BUYER, RequestTerms(3, 10))
        engine.accept_negotiation(request.id, SELLER, FinalTerms(Decimal(daily_hundreds * 100), 10))
        before = snapshot(engine.ledger)
        balance = engine.get_paid_balance(BUYER)

        try:
            slot = engine.purchase_slot(request.id, BUYER)
        except InsufficientFunds:
            assert snapshot(engine.ledger) == before
            assert not engine.ledger.list_records("slot:")
            return

        assert engine.get_paid_balance(BUYER) == balance - slot.total_amount
        assert engine.ledger.has_record(slot_key(slot.id))
        assert engine.ledger.has_record(holding_key(slot.id))
        assert engine.get_holding(slot.id).buyer_holding_amount == slot.total_amount
        assert len(engine.ledger.transaction_log) == before[2] + 1

    @given(st.lists(st.integers(min_value=1, max_value=10), min_size=1, max_size=10))
    @settings(max_examples=50, deadline=None)
    def test_settlement_record_matches_transfer(self, ranks):
        """
        PROPERTY: The seller side equals the sum of settlement amounts;
        every settlement's money moved in the same transaction.
        """
        engine = make_engine()
        slot = open_active_slot(engine)
        for rank in ranks:
            try:
                engine.confirm_rank_achievement(slot.id, SELLER, rank)
            except LedgerError:
                pass
            next_day(engine.ledger)

        settled = sum((s.amount for s in engine.get_settlements(slot.id)), Decimal("0"))
        assert engine.get_holding(slot.id).seller_holding_amount == settled

    @given(st.integers(min_value=1, max_value=10))
    @settings(max_examples=30, deadline=None)
    def test_stale_confirmation_changes_nothing(self, rank):
        """
        PROPERTY: A confirmation computed before a rival one committed
        fails without touching balances or records.
        """
        engine = make_engine()
        slot = open_active_slot(engine)
        stale = compute_rank_confirmation(engine.ledger, slot.id, SELLER, rank, "st-a", "h-a", "KRW")
        engine.confirm_rank_achievement(slot.id, SELLER, 1)
        before = snapshot(engine.ledger)

        with pytest.raises(LedgerError):
            engine._commit(stale)
        assert snapshot(engine.ledger) == before


class TestAtomicityExamples:

    def test_same_day_rival_reports_already_confirmed(self):
        engine = make_engine()
        slot = open_active_slot(engine)
        rival = compute_rank_confirmation(engine.ledger, slot.id, SELLER, 5, "st-a", "h-a", "KRW")
        mine = compute_rank_confirmation(engine.ledger, slot.id, SELLER, 1, "st-b", "h-b", "KRW")
        assert engine.ledger.execute(rival) == ExecuteResult.APPLIED
        with pytest.raises(ConcurrentModification):
            engine._commit(mine)
        with pytest.raises(AlreadyConfirmedToday):
            engine.confirm_rank_achievement(slot.id, SELLER, 1)

    def test_refund_resolution_against_drained_escrow_rejected(self):
        """Approval that would overdraw both escrow sides is rejected whole."""
        engine = make_engine()
        slot = open_active_slot(engine)
        refund = engine.request_refund(slot.id, BUYER, "rank dropped")
        pending = compute_refund_resolution(engine.ledger, slot.id, refund.id, SELLER, True, "h-x", "KRW")
        engine.ledger.set_balance(f"escrow:{slot.id}:buyer", "KRW", Decimal("1000"))
        before = snapshot(engine.ledger)

        with pytest.raises(InsufficientFunds):
            engine._commit(pending)
        assert snapshot(engine.ledger) == before
        assert engine.get_slot(slot.id).status == SlotStatus.REFUND_REQUESTED
