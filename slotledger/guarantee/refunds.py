"""
refunds.py - Pure Functions for the Two-Party Refund Workflow

Refund paths:
    Seller-initiated: active/completed -> refund_requested, awaits the buyer
    Buyer-initiated:  active/completed -> refund_requested, awaits the seller

Funds move only when the awaited party approves. Rejection restores the
slot status that was in force when the refund was opened.

The two paths compute their default amounts differently (see amounts.py):
the seller path charges completed days at the VAT-inclusive daily price,
the buyer path pro-rates the total over the guarantee period.
"""

from __future__ import annotations
from dataclasses import replace
from decimal import Decimal
from typing import List, Optional

from ..amounts import (
    Rounder, buyer_refund_amount, require_unit_precision, round_up_to_currency_unit,
    seller_refund_amount, split_refund,
)
from ..core import (
    DEFAULT_VAT_RATE,
    LedgerView, Move, PendingTransaction, StateChange, TransactionOrigin, OriginType,
    InvalidAmount, NothingToRefund, RequestNotPending, SlotNotActive, Unauthorized,
    build_transaction, record_insert, record_update,
)
from ..records import (
    BalanceEntryType, BalanceHistoryEntry, GuaranteeSlot, HoldingStatus, RefundRequest,
    RefundStatus, Role, SlotStatus,
    escrow_wallet, history_key, holding_key, load_holding, load_refund, load_slot,
    refund_key, slot_key,
)

REFUNDABLE_STATUSES = frozenset({SlotStatus.ACTIVE, SlotStatus.COMPLETED})


def _origin(actor_id: str, slot_id: str, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=actor_id,
        record_key=slot_key(slot_id),
        event_type=event_type,
    )


def _refundable_slot(view: LedgerView, slot_id: str, actor_id: str, role: Role) -> GuaranteeSlot:
    slot = load_slot(view, slot_id)
    if slot.role_of(actor_id) != role:
        raise Unauthorized(f"{actor_id} is not the {role.value} of slot {slot_id}")
    if slot.status not in REFUNDABLE_STATUSES:
        raise SlotNotActive(f"Slot {slot_id} is {slot.status.value}; refunds need an active or completed slot")
    return slot


def _open_refund(
    view: LedgerView,
    slot: GuaranteeSlot,
    refund_id: str,
    requested_by: Role,
    requester_id: str,
    reason: str,
    amount: Decimal,
    unit_symbol: str,
) -> PendingTransaction:
    require_unit_precision(amount, view.get_unit(unit_symbol), "refund amount")
    holding = load_holding(view, slot.id, unit_symbol)
    if amount > holding.escrowed:
        raise InvalidAmount(f"refund {amount} exceeds escrowed {holding.escrowed}")

    now = view.current_time
    status = (
        RefundStatus.PENDING_USER_CONFIRMATION if requested_by == Role.SELLER
        else RefundStatus.PENDING_SELLER_APPROVAL
    )
    refund = RefundRequest(
        id=refund_id,
        slot_id=slot.id,
        requested_by=requested_by,
        requester_id=requester_id,
        reason=reason,
        amount=amount,
        status=status,
        requested_at=now,
        previous_slot_status=slot.status,
    )
    updated = replace(slot, status=SlotStatus.REFUND_REQUESTED, updated_at=now)
    changes = [
        record_insert(refund_key(slot.id, refund_id), refund.to_state()),
        record_update(view, slot_key(slot.id), updated.to_state()),
    ]
    return build_transaction(view, [], changes, _origin(requester_id, slot.id, f"REFUND_BY_{requested_by.name}"))


def compute_refund_initiation(
    view: LedgerView,
    slot_id: str,
    seller_id: str,
    refund_id: str,
    reason: str,
    unit_symbol: str,
    amount: Optional[Decimal] = None,
    vat_rate: Decimal = DEFAULT_VAT_RATE,
    rounder: Rounder = round_up_to_currency_unit,
) -> PendingTransaction:
    """
    Seller proposes a refund; the buyer must confirm it before money moves.

    Default amount: total - roundUp(daily * completed * (1 + vat_rate)), clamped at 0.

    Raises:
        Unauthorized: Actor is not the slot's seller
        SlotNotActive: Slot is not active or completed
        NothingToRefund: Refund amount is zero
        InvalidAmount: Negative or too precise amount, or above the total or escrow
        ValueError: Empty reason
    """
    if not reason or not reason.strip():
        raise ValueError("A refund reason is required")
    slot = _refundable_slot(view, slot_id, seller_id, Role.SELLER)

    if amount is None:
        amount = seller_refund_amount(
            slot.total_amount, slot.daily_guarantee_amount, slot.completed_count, vat_rate, rounder,
        )
    if amount < 0:
        raise InvalidAmount(f"refund amount cannot be negative: {amount}")
    if amount == 0:
        raise NothingToRefund(f"Slot {slot_id} has nothing left to refund")
    if amount > slot.total_amount:
        raise InvalidAmount(f"refund {amount} exceeds slot total {slot.total_amount}")

    return _open_refund(view, slot, refund_id, Role.SELLER, seller_id, reason, amount, unit_symbol)


def compute_refund_request(
    view: LedgerView,
    slot_id: str,
    buyer_id: str,
    refund_id: str,
    reason: str,
    unit_symbol: str,
    rounder: Rounder = round_up_to_currency_unit,
) -> PendingTransaction:
    """
    Buyer asks for the unearned share back; the seller must approve.

    Amount: total - roundUp(total * completed / (guarantee_period or guarantee_count)).

    Raises:
        Unauthorized: Actor is not the slot's buyer
        SlotNotActive: Slot is not active or completed
        NothingToRefund: Refund amount is zero
        ValueError: Empty reason
    """
    if not reason or not reason.strip():
        raise ValueError("A refund reason is required")
    slot = _refundable_slot(view, slot_id, buyer_id, Role.BUYER)

    amount = buyer_refund_amount(
        slot.total_amount, slot.completed_count, slot.guarantee_count, slot.guarantee_period, rounder,
    )
    if amount == 0:
        raise NothingToRefund(f"Slot {slot_id} has nothing left to refund")

    return _open_refund(view, slot, refund_id, Role.BUYER, buyer_id, reason, amount, unit_symbol)


def compute_refund_resolution(
    view: LedgerView,
    slot_id: str,
    refund_id: str,
    actor_id: str,
    approve: bool,
    history_id: str,
    unit_symbol: str,
    notes: str = "",
) -> PendingTransaction:
    """
    Approve or reject an open refund request as the awaited party.

    On approval the amount leaves escrow (buyer side first, then seller side)
    for the buyer's paid balance, the slot and holding become ``refunded``,
    and a refund history entry is written. On rejection ``notes`` is the
    mandatory reason and the slot returns to its previous status.

    Raises:
        Unauthorized: Actor is not a party to the slot
        RequestNotPending: Request already resolved, or it awaits the other party
        InvalidAmount: Escrow no longer covers the amount
        ValueError: Rejection without a reason
    """
    slot = load_slot(view, slot_id)
    role = slot.role_of(actor_id)
    if role is None:
        raise Unauthorized(f"{actor_id} is not a party to slot {slot_id}")
    refund = load_refund(view, slot_id, refund_id)
    if refund.awaiting != role:
        raise RequestNotPending(
            f"Refund {refund_id} is {refund.status.value}; nothing awaits the {role.value}"
        )
    if slot.status != SlotStatus.REFUND_REQUESTED:
        raise RequestNotPending(f"Slot {slot_id} is {slot.status.value}, not refund_requested")

    now = view.current_time
    moves: List[Move] = []
    changes: List[StateChange] = []

    if approve:
        holding = load_holding(view, slot_id, unit_symbol)
        from_buyer, from_seller = split_refund(
            refund.amount, holding.buyer_holding_amount, holding.seller_holding_amount,
        )
        contract_id = f"refund_{slot_id}_{refund_id}"
        if from_buyer > 0:
            moves.append(Move(from_buyer, unit_symbol, escrow_wallet(slot_id, Role.BUYER), slot.buyer_id, contract_id))
        if from_seller > 0:
            moves.append(Move(from_seller, unit_symbol, escrow_wallet(slot_id, Role.SELLER), slot.buyer_id, contract_id))

        resolved = replace(
            refund, status=RefundStatus.APPROVED, resolved_at=now, resolver_id=actor_id, approval_notes=notes,
        )
        paid = view.get_balance(slot.buyer_id, unit_symbol)
        history = BalanceHistoryEntry(
            id=history_id,
            user_id=slot.buyer_id,
            slot_id=slot_id,
            entry_type=BalanceEntryType.REFUND,
            amount=refund.amount,
            balance_before=paid,
            balance_after=paid + refund.amount,
            created_at=now,
            description=f"Guarantee slot refund: {refund.reason}",
        )
        changes.extend([
            record_update(view, slot_key(slot_id), replace(slot, status=SlotStatus.REFUNDED, updated_at=now).to_state()),
            record_update(view, holding_key(slot_id), replace(
                holding, status=HoldingStatus.REFUNDED, refunded_amount=holding.refunded_amount + refund.amount,
            ).to_state()),
            record_insert(history_key(slot_id, history_id), history.to_state()),
        ])
        event_type = "REFUND_APPROVED"
    else:
        if not notes or not notes.strip():
            raise ValueError("A rejection reason is required")
        resolved = replace(
            refund, status=RefundStatus.REJECTED, resolved_at=now, resolver_id=actor_id, rejection_reason=notes,
        )
        restored = replace(slot, status=refund.previous_slot_status, updated_at=now)
        changes.append(record_update(view, slot_key(slot_id), restored.to_state()))
        event_type = "REFUND_REJECTED"

    changes.append(record_update(view, refund_key(slot_id, refund_id), resolved.to_state()))
    return build_transaction(
        view, moves, changes, _origin(actor_id, slot_id, event_type),
        wallets_to_create=(slot.buyer_id,) if approve else (),
    )
