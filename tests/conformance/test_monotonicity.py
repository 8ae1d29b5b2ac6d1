"""
Monotonicity Conformance Tests

INVARIANT: Delivery progress only moves forward.

    ∀ slot s, ∀ t1 < t2:
        completed_count(s, t1) ≤ completed_count(s, t2) ≤ guarantee_count(s)
        settlements(s, t1) ⊆ settlements(s, t2)
        |{settlement of s on day d}| ≤ 1 for every day d

INVARIANT: Refunded slots are final; completed slots keep their count.

    status(s, t1) = refunded ⟹ state(s, t2) = state(s, t1)
    status(s, t1) = completed ⟹ completed_count(s, t2) = guarantee_count(s)
"""

from hypothesis import given, settings, note
from hypothesis import strategies as st

from slotledger import SlotStatus

from tests.conformance.strategies import apply_action, daily_amount, slot_action
from tests.helpers import SELLER, make_engine, next_day, open_active_slot


class TestMonotonicityProperties:

    @given(daily_amount(), st.integers(min_value=1, max_value=10), st.lists(slot_action(), max_size=30))
    @settings(max_examples=50, deadline=None)
    def test_progress_never_regresses(self, daily, count, actions):
        """
        PROPERTY: completed_count is non-decreasing and bounded by
        guarantee_count; settlements are append-only, one per day.
        """
        engine = make_engine()
        slot = open_active_slot(engine, daily, count)
        completed = 0
        settlement_ids = []

        for action in actions:
            outcome = apply_action(engine, slot.id, action)
            note(f"{action} -> {outcome}")
            current = engine.get_slot(slot.id)
            assert completed <= current.completed_count <= current.guarantee_count
            completed = current.completed_count

            settlements = engine.get_settlements(slot.id)
            ids = [s.id for s in settlements]
            assert ids[:len(settlement_ids)] == settlement_ids
            settlement_ids = ids
            dates = [s.confirmed_date for s in settlements]
            assert len(dates) == len(set(dates))

    @given(daily_amount(), st.integers(min_value=1, max_value=10), st.lists(slot_action(), max_size=30))
    @settings(max_examples=50, deadline=None)
    def test_refunded_slot_is_final(self, daily, count, actions):
        """
        PROPERTY: Once refunded, no operation changes the slot's status,
        its count or its escrow. Once completed, the count stays full.
        """
        engine = make_engine()
        slot = open_active_slot(engine, daily, count)
        frozen = None

        for action in actions:
            apply_action(engine, slot.id, action)
            current = engine.get_slot(slot.id)
            holding = engine.get_holding(slot.id)
            state = (
                current.status, current.completed_count,
                holding.buyer_holding_amount, holding.seller_holding_amount, holding.refunded_amount,
            )
            if frozen is not None:
                assert state == frozen
            elif current.status == SlotStatus.REFUNDED:
                frozen = state
            if current.completed_at is not None:
                assert current.completed_count == current.guarantee_count

    @given(st.lists(st.booleans(), min_size=1, max_size=12))
    @settings(max_examples=50, deadline=None)
    def test_count_tracks_met_days(self, outcomes):
        """
        PROPERTY: completed_count equals the number of met days, capped
        at guarantee_count.
        """
        engine = make_engine()
        slot = open_active_slot(engine, count=5, target_rank=3)
        met_days = 0
        for met in outcomes:
            if engine.get_slot(slot.id).status != SlotStatus.ACTIVE:
                break
            engine.confirm_rank_achievement(slot.id, SELLER, 2 if met else 8)
            met_days += int(met)
            next_day(engine.ledger)

        assert engine.get_slot(slot.id).completed_count == min(met_days, 5)
