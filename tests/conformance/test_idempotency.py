"""
Idempotency Conformance Tests

INVARIANT: Duplicate execution is detected and prevented.

    ∀ pending transaction T:
        execute(T) = APPLIED ⟹ execute(T) again = ALREADY_APPLIED
        state after second execute = state after first execute

Retrying a settlement, purchase or refund can never move money twice.
"""

from hypothesis import given, settings
from hypothesis import strategies as st
from decimal import Decimal

from slotledger import ExecuteResult, FinalTerms, RequestTerms
from slotledger.guarantee import compute_purchase, compute_rank_confirmation, compute_refund_request

from tests.helpers import (
    BUYER, CAMPAIGN_ID, SELLER, make_engine, next_day, open_active_slot, snapshot,
)


class TestIdempotencyProperties:
    """Property-based idempotency tests."""

    @given(st.integers(min_value=1, max_value=10), st.integers(min_value=2, max_value=5))
    @settings(max_examples=50, deadline=None)
    def test_repeated_confirmation_applies_once(self, rank, repeats):
        """
        PROPERTY: Re-executing one confirmation any number of times
        leaves the state of the first execution.
        """
        engine = make_engine()
        slot = open_active_slot(engine)
        pending = compute_rank_confirmation(engine.ledger, slot.id, SELLER, rank, "st-1", "h-1", "KRW")

        assert engine.ledger.execute(pending) == ExecuteResult.APPLIED
        after_first = snapshot(engine.ledger)
        for _ in range(repeats):
            assert engine.ledger.execute(pending) == ExecuteResult.ALREADY_APPLIED
        assert snapshot(engine.ledger) == after_first

    @given(st.integers(min_value=50, max_value=500), st.integers(min_value=1, max_value=10))
    @settings(max_examples=50, deadline=None)
    def test_repeated_purchase_escrows_once(self, hundreds, count):
        """
        PROPERTY: A purchase replayed after success debits the buyer once.
        """
        engine = make_engine()
        engine.deposit(BUYER, Decimal("1000000"))
        request = engine.create_request(CAMPAIGN_ID, BUYER, RequestTerms(3, count))
        engine.accept_negotiation(request.id, SELLER, FinalTerms(Decimal(hundreds * 100), count))
        pending = compute_purchase(engine.ledger, request.id, BUYER, "slot-1", "h-1", "KRW")

        assert engine.ledger.execute(pending) == ExecuteResult.APPLIED
        balance = engine.get_paid_balance(BUYER)
        assert engine.ledger.execute(pending) == ExecuteResult.ALREADY_APPLIED
        assert engine.get_paid_balance(BUYER) == balance
        assert engine.get_holding("slot-1").buyer_holding_amount == Decimal("1000000") - balance

    @given(st.integers(min_value=0, max_value=9))
    @settings(max_examples=30, deadline=None)
    def test_replay_through_engine_skips_side_effects(self, confirmed_days):
        """
        PROPERTY: The engine reports a replayed intent as not applied,
        so no notification is published for it.
        """
        engine = make_engine()
        slot = open_active_slot(engine)
        for day in range(confirmed_days):
            engine.confirm_rank_achievement(slot.id, SELLER, 1)
            next_day(engine.ledger)

        pending = compute_refund_request(engine.ledger, slot.id, BUYER, "f-1", "rank dropped", "KRW")
        assert engine._commit(pending) is True
        queued = engine.outbox.pending_count()
        assert engine._commit(pending) is False
        assert engine.outbox.pending_count() == queued
        assert len(engine.get_refund_requests(slot.id)) == 1


class TestIntentIdentity:
    """What counts as the same intent."""

    def test_same_confirmation_next_day_is_new_intent(self):
        engine = make_engine()
        slot = open_active_slot(engine)
        today = compute_rank_confirmation(engine.ledger, slot.id, SELLER, 1, "st-1", "h-1", "KRW")
        engine.ledger.execute(today)
        next_day(engine.ledger)
        tomorrow = compute_rank_confirmation(engine.ledger, slot.id, SELLER, 1, "st-2", "h-2", "KRW")
        assert tomorrow.intent_id != today.intent_id
        assert engine.ledger.execute(tomorrow) == ExecuteResult.APPLIED
        assert engine.get_slot(slot.id).completed_count == 2

    def test_identical_deposits_are_distinct_intents(self):
        engine = make_engine()
        engine.deposit(BUYER, Decimal("100"))
        engine.deposit(BUYER, Decimal("100"))
        assert engine.get_paid_balance(BUYER) == Decimal("200")
        assert len(engine.ledger.transaction_log) == 2
