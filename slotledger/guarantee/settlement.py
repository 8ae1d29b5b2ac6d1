"""
settlement.py - Pure Functions for Daily Settlement and Slot Completion

Each calendar day an active slot can be confirmed at most once. When the
achieved rank meets the target (achieved <= target, lower is better) one
day's amount moves from the buyer-side escrow to the seller-side escrow and
completed_count advances; reaching guarantee_count completes the slot.

The settlement record key is (slot, day), so a second confirmation on the
same day collides with the first inside the ledger even when both callers
read the same state.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from typing import List, Optional

from ..amounts import require_unit_precision, split_refund
from ..core import (
    LedgerView, Move, PendingTransaction, StateChange, TransactionOrigin, OriginType,
    AlreadyConfirmedToday, InvalidAmount, SlotNotActive, Unauthorized,
    build_transaction, record_insert, record_update,
)
from ..records import (
    BalanceEntryType, BalanceHistoryEntry, GuaranteeSlot, HoldingStatus, Role, Settlement, SlotStatus,
    escrow_wallet, history_key, holding_key, load_holding, load_slot, settlement_key, slot_key,
)

_ZERO = Decimal("0")


def _origin(seller_id: str, slot_id: str, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=seller_id,
        record_key=slot_key(slot_id),
        event_type=event_type,
    )


def _active_slot_for_seller(view: LedgerView, slot_id: str, seller_id: str) -> GuaranteeSlot:
    slot = load_slot(view, slot_id)
    if slot.seller_id != seller_id:
        raise Unauthorized(f"{seller_id} is not the seller of slot {slot_id}")
    if slot.status != SlotStatus.ACTIVE:
        raise SlotNotActive(f"Slot {slot_id} is {slot.status.value}, not active")
    return slot


def compute_rank_confirmation(
    view: LedgerView,
    slot_id: str,
    seller_id: str,
    achieved_rank: int,
    settlement_id: str,
    history_id: str,
    unit_symbol: str,
    note: str = "",
) -> PendingTransaction:
    """
    Record today's rank observation and settle one day if the target was met.

    The amount moved is min(daily_guarantee_amount, buyer-side escrow), at the
    currency's precision; any difference is stored as the settlement's shortfall.

    Args:
        view: Read-only ledger view (its clock decides "today")
        slot_id: Active slot being confirmed
        seller_id: Seller confirming the rank
        achieved_rank: Observed search rank (1 = top)
        settlement_id: Identifier for the settlement record
        history_id: Identifier for the seller's balance-history entry
        unit_symbol: Paid currency of the escrow
        note: Optional free text

    Raises:
        Unauthorized: Actor is not the slot's seller
        SlotNotActive: Slot is not active
        AlreadyConfirmedToday: A settlement for today already exists
        ValueError: achieved_rank < 1
    """
    if achieved_rank < 1:
        raise ValueError(f"achieved_rank must be >= 1, got {achieved_rank}")
    slot = _active_slot_for_seller(view, slot_id, seller_id)

    now = view.current_time
    today = now.date()
    key = settlement_key(slot_id, today)
    if view.has_record(key):
        raise AlreadyConfirmedToday(f"Slot {slot_id} was already confirmed on {today.isoformat()}")

    met = achieved_rank <= slot.target_rank
    buyer_escrow = escrow_wallet(slot_id, Role.BUYER)
    seller_escrow = escrow_wallet(slot_id, Role.SELLER)

    moved = _ZERO
    shortfall = _ZERO
    if met:
        due = view.get_unit(unit_symbol).round(slot.daily_guarantee_amount)
        available = view.get_balance(buyer_escrow, unit_symbol)
        moved = min(due, available)
        shortfall = due - moved

    settlement = Settlement(
        id=settlement_id,
        slot_id=slot_id,
        confirmed_date=today,
        confirmed_by=seller_id,
        target_rank=slot.target_rank,
        achieved_rank=achieved_rank,
        guarantee_met=met,
        amount=moved,
        created_at=now,
        note=note,
        shortfall=shortfall,
    )
    moves: List[Move] = []
    changes: List[StateChange] = [record_insert(key, settlement.to_state())]

    if moved > 0:
        moves.append(Move(moved, unit_symbol, buyer_escrow, seller_escrow, f"settlement_{slot_id}_{today.isoformat()}"))
        seller_side = view.get_balance(seller_escrow, unit_symbol)
        history = BalanceHistoryEntry(
            id=history_id,
            user_id=seller_id,
            slot_id=slot_id,
            entry_type=BalanceEntryType.SETTLEMENT,
            amount=moved,
            balance_before=seller_side,
            balance_after=seller_side + moved,
            created_at=now,
            description=f"Rank {achieved_rank} met target {slot.target_rank} on {today.isoformat()}",
        )
        changes.append(record_insert(history_key(slot_id, history_id), history.to_state()))

    if met:
        completed = slot.completed_count + 1
        if completed >= slot.guarantee_count:
            updated = replace(
                slot, completed_count=slot.guarantee_count, status=SlotStatus.COMPLETED,
                completed_at=now, updated_at=now,
            )
            holding = load_holding(view, slot_id, unit_symbol)
            changes.append(record_update(
                view, holding_key(slot_id), replace(holding, status=HoldingStatus.COMPLETED).to_state(),
            ))
        else:
            updated = replace(slot, completed_count=completed, updated_at=now)
        changes.append(record_update(view, slot_key(slot_id), updated.to_state()))

    return build_transaction(view, moves, changes, _origin(seller_id, slot_id, "SETTLEMENT"))


def compute_completion(
    view: LedgerView,
    slot_id: str,
    seller_id: str,
    memo: str,
    history_id: str,
    unit_symbol: str,
    refund_amount: Optional[Decimal] = None,
) -> PendingTransaction:
    """
    Manually complete an active slot, optionally refunding part of the escrow.

    The refund is drawn from the buyer-side escrow first. Whatever remains on
    the buyer side is then released to the seller side, and completed_count
    jumps to guarantee_count.

    Raises:
        Unauthorized: Actor is not the slot's seller
        SlotNotActive: Slot is not active
        InvalidAmount: Negative, too precise, or above the escrowed amount
        ValueError: Empty memo
    """
    if not memo or not memo.strip():
        raise ValueError("A completion memo is required")
    slot = _active_slot_for_seller(view, slot_id, seller_id)
    refund = refund_amount if refund_amount is not None else _ZERO
    if refund < 0:
        raise InvalidAmount(f"refund amount cannot be negative: {refund}")
    require_unit_precision(refund, view.get_unit(unit_symbol), "refund amount")

    now = view.current_time
    holding = load_holding(view, slot_id, unit_symbol)
    from_buyer, from_seller = split_refund(refund, holding.buyer_holding_amount, holding.seller_holding_amount)
    buyer_escrow = escrow_wallet(slot_id, Role.BUYER)
    seller_escrow = escrow_wallet(slot_id, Role.SELLER)
    contract_id = f"completion_{slot_id}"

    moves: List[Move] = []
    if from_buyer > 0:
        moves.append(Move(from_buyer, unit_symbol, buyer_escrow, slot.buyer_id, contract_id))
    if from_seller > 0:
        moves.append(Move(from_seller, unit_symbol, seller_escrow, slot.buyer_id, contract_id))
    release = holding.buyer_holding_amount - from_buyer
    if release > 0:
        moves.append(Move(release, unit_symbol, buyer_escrow, seller_escrow, contract_id))

    updated_slot = replace(
        slot, status=SlotStatus.COMPLETED, completed_count=slot.guarantee_count,
        completion_memo=memo, completed_at=now, updated_at=now,
    )
    updated_holding = replace(
        holding, status=HoldingStatus.COMPLETED, refunded_amount=holding.refunded_amount + refund,
    )
    changes: List[StateChange] = [
        record_update(view, slot_key(slot_id), updated_slot.to_state()),
        record_update(view, holding_key(slot_id), updated_holding.to_state()),
    ]
    if refund > 0:
        paid = view.get_balance(slot.buyer_id, unit_symbol)
        history = BalanceHistoryEntry(
            id=history_id,
            user_id=slot.buyer_id,
            slot_id=slot_id,
            entry_type=BalanceEntryType.REFUND,
            amount=refund,
            balance_before=paid,
            balance_after=paid + refund,
            created_at=now,
            description=f"Refund on completion: {memo}",
        )
        changes.append(record_insert(history_key(slot_id, history_id), history.to_state()))

    return build_transaction(
        view, moves, changes, _origin(seller_id, slot_id, "COMPLETE"),
        wallets_to_create=(slot.buyer_id,),
    )
