"""
escrow.py - Pure Functions for Funding and Approving Guarantee Slots

Funding a slot moves the VAT-inclusive total from the buyer's paid balance
into the slot's buyer-side escrow wallet, in the same transaction that
creates the slot, its holding, and the buyer's balance-history entry and
marks the request purchased. Either all of it commits or none of it does.

Approval and rejection move no money.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal

from ..amounts import Rounder, round_up_to_currency_unit, vat_inclusive_total
from ..core import (
    DEFAULT_VAT_RATE,
    LedgerView, Move, PendingTransaction, TransactionOrigin, OriginType,
    InsufficientFunds, RecordNotFound, RequestNotFundable, SlotNotActive, Unauthorized,
    build_transaction, record_insert, record_update,
)
from ..records import (
    BalanceEntryType, BalanceHistoryEntry, GuaranteeSlot, Holding, HoldingStatus,
    Rejection, RequestStatus, Role, SlotStatus,
    escrow_wallet, history_key, holding_key, load_request, load_slot, request_key, slot_key,
)


def _slot_origin(actor_id: str, slot_id: str, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=actor_id,
        record_key=slot_key(slot_id),
        event_type=event_type,
    )


def compute_purchase(
    view: LedgerView,
    request_id: str,
    buyer_id: str,
    slot_id: str,
    history_id: str,
    unit_symbol: str,
    vat_rate: Decimal = DEFAULT_VAT_RATE,
    rounder: Rounder = round_up_to_currency_unit,
    purchase_reason: str = "",
) -> PendingTransaction:
    """
    Fund an accepted request and create its slot.

    total = roundUp(final_daily_amount * guarantee_count * (1 + vat_rate))

    Args:
        view: Read-only ledger view
        request_id: Accepted request to fund
        buyer_id: Buyer paying for the slot (must own the request)
        slot_id: Identifier for the new slot
        history_id: Identifier for the buyer's balance-history entry
        unit_symbol: Paid currency the escrow is denominated in
        vat_rate: Surcharge rate
        rounder: Rounding to the smallest currency unit
        purchase_reason: Optional free text from the buyer

    Returns:
        PendingTransaction debiting the buyer and creating slot, holding,
        history entry and the purchased request state.

    Raises:
        RequestNotFundable: Request missing, not owned, not accepted, or
            without final terms
        InsufficientFunds: Paid balance below the total
    """
    try:
        request = load_request(view, request_id)
    except RecordNotFound as exc:
        raise RequestNotFundable(f"Request {request_id} not found") from exc
    if request.buyer_id != buyer_id:
        raise RequestNotFundable(f"Request {request_id} does not belong to {buyer_id}")
    if request.status != RequestStatus.ACCEPTED:
        raise RequestNotFundable(f"Request {request_id} is {request.status.value}, not accepted")
    if request.final_daily_amount is None or not request.guarantee_count:
        raise RequestNotFundable(f"Request {request_id} has no final terms")

    total = vat_inclusive_total(request.final_daily_amount, request.guarantee_count, vat_rate, rounder)
    paid = view.get_balance(buyer_id, unit_symbol)
    if paid < total:
        raise InsufficientFunds(f"Paid balance {paid} is below slot total {total}")

    now = view.current_time
    buyer_escrow = escrow_wallet(slot_id, Role.BUYER)
    seller_escrow = escrow_wallet(slot_id, Role.SELLER)

    slot = GuaranteeSlot(
        id=slot_id,
        request_id=request.id,
        campaign_id=request.campaign_id,
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        target_rank=request.target_rank,
        guarantee_count=request.guarantee_count,
        daily_guarantee_amount=request.final_daily_amount,
        total_amount=total,
        status=SlotStatus.PENDING,
        created_at=now,
        updated_at=now,
        guarantee_period=request.guarantee_period,
        keyword_id=request.keyword_id,
        keywords=request.keywords,
        purchase_reason=purchase_reason,
    )
    holding = Holding(
        slot_id=slot_id,
        buyer_id=request.buyer_id,
        seller_id=request.seller_id,
        total_amount=total,
        status=HoldingStatus.HOLDING,
    )
    history = BalanceHistoryEntry(
        id=history_id,
        user_id=buyer_id,
        slot_id=slot_id,
        entry_type=BalanceEntryType.PURCHASE,
        amount=total,
        balance_before=paid,
        balance_after=paid - total,
        created_at=now,
        description=f"Guarantee slot purchase ({request.guarantee_count} days)",
    )
    purchased = replace(request, status=RequestStatus.PURCHASED, updated_at=now)

    moves = [Move(total, unit_symbol, buyer_id, buyer_escrow, f"purchase_{slot_id}")]
    changes = [
        record_insert(slot_key(slot_id), slot.to_state()),
        record_insert(holding_key(slot_id), holding.to_state()),
        record_insert(history_key(slot_id, history_id), history.to_state()),
        record_update(view, request_key(request_id), purchased.to_state()),
    ]
    return build_transaction(
        view, moves, changes,
        _slot_origin(buyer_id, slot_id, "PURCHASE"),
        wallets_to_create=(buyer_escrow, seller_escrow),
    )


def _require_seller(slot: GuaranteeSlot, seller_id: str) -> None:
    if slot.seller_id != seller_id:
        raise Unauthorized(f"{seller_id} is not the seller of slot {slot.id}")


def compute_slot_approval(view: LedgerView, slot_id: str, seller_id: str) -> PendingTransaction:
    """
    Approve a pending slot, or reverse a rejection.

    pending  -> active (approved_at stamped)
    rejected -> pending (rejection metadata cleared)

    Raises:
        Unauthorized: Actor is not the slot's seller
        SlotNotActive: Slot is in any other status
    """
    slot = load_slot(view, slot_id)
    _require_seller(slot, seller_id)
    now = view.current_time

    if slot.status == SlotStatus.REJECTED:
        updated = replace(slot, status=SlotStatus.PENDING, rejection=None, updated_at=now)
        event_type = "REVERSE_REJECTION"
    elif slot.status == SlotStatus.PENDING:
        updated = replace(slot, status=SlotStatus.ACTIVE, approved_at=now, updated_at=now)
        event_type = "APPROVE"
    else:
        raise SlotNotActive(f"Slot {slot_id} is {slot.status.value}; only pending or rejected slots can be approved")

    return build_transaction(
        view, [], [record_update(view, slot_key(slot_id), updated.to_state())],
        _slot_origin(seller_id, slot_id, event_type),
    )


def compute_slot_rejection(view: LedgerView, slot_id: str, seller_id: str, reason: str) -> PendingTransaction:
    """
    Reject a pending slot. No money moves; the funds stay in escrow.

    Raises:
        Unauthorized: Actor is not the slot's seller
        SlotNotActive: Slot is not pending
        ValueError: Empty reason
    """
    if not reason or not reason.strip():
        raise ValueError("A rejection reason is required")
    slot = load_slot(view, slot_id)
    _require_seller(slot, seller_id)
    if slot.status != SlotStatus.PENDING:
        raise SlotNotActive(f"Slot {slot_id} is {slot.status.value}; only pending slots can be rejected")

    now = view.current_time
    updated = replace(
        slot,
        status=SlotStatus.REJECTED,
        rejection=Rejection(reason=reason, actor_id=seller_id, rejected_at=now),
        updated_at=now,
    )
    return build_transaction(
        view, [], [record_update(view, slot_key(slot_id), updated.to_state())],
        _slot_origin(seller_id, slot_id, "REJECT"),
    )
