"""
negotiation.py - Pure Functions for the Request/Negotiation Lifecycle

Request lifecycle:
    requested -> negotiating (any negotiating message) -> accepted -> purchased
    requested/negotiating/accepted -> rejected (seller) | cancelled (buyer)

All functions are pure: they take LedgerView (read-only) and return a
PendingTransaction. Identifiers are supplied by the caller.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from ..amounts import require_unit_precision
from ..collaborators import CampaignTerms
from ..core import (
    LedgerView, PendingTransaction, StateChange, TransactionOrigin, OriginType,
    InvalidAmount, InvalidCampaign, NotNegotiable, Unauthorized,
    build_transaction, empty_pending_transaction, record_insert, record_update,
)
from ..records import (
    BudgetType, GuaranteeSlotRequest, MessageKind, NegotiationMessage, Proposal,
    RequestStatus, Role, NEGOTIATING_KINDS,
    load_messages, load_request, message_key, request_key,
)


@dataclass(frozen=True)
class RequestTerms:
    """What a buyer asks for when opening a quote request."""
    target_rank: int
    guarantee_count: int
    initial_budget: Optional[Decimal] = None
    budget_type: BudgetType = BudgetType.DAILY
    guarantee_period: Optional[int] = None
    keyword_id: Optional[str] = None
    keywords: Tuple[str, ...] = ()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: str = ""
    additional_requirements: str = ""


@dataclass(frozen=True)
class FinalTerms:
    """
    Terms fixed by acceptance.

    total_amount defaults to daily_amount * guarantee_count (before VAT).
    target_rank and guarantee_period, when given, replace the requested ones.
    """
    daily_amount: Decimal
    guarantee_count: int
    budget_type: BudgetType = BudgetType.DAILY
    total_amount: Optional[Decimal] = None
    target_rank: Optional[int] = None
    guarantee_period: Optional[int] = None

    def resolved_total(self) -> Decimal:
        if self.total_amount is not None:
            return self.total_amount
        return self.daily_amount * self.guarantee_count


def _origin(actor_id: str, request_id: str, event_type: str) -> TransactionOrigin:
    return TransactionOrigin(
        origin_type=OriginType.USER_ACTION,
        source_id=actor_id,
        record_key=request_key(request_id),
        event_type=event_type,
    )


def _require_party(request: GuaranteeSlotRequest, actor_id: str) -> Role:
    role = request.role_of(actor_id)
    if role is None:
        raise Unauthorized(f"{actor_id} is not a party to request {request.id}")
    return role


def _message_change(
    view: LedgerView,
    request: GuaranteeSlotRequest,
    message_id: str,
    sender_id: str,
    sender_role: Role,
    kind: MessageKind,
    body: str,
    proposal: Optional[Proposal] = None,
) -> StateChange:
    sequence = len(load_messages(view, request.id)) + 1
    message = NegotiationMessage(
        id=message_id,
        request_id=request.id,
        sequence=sequence,
        sender_id=sender_id,
        sender_role=sender_role,
        kind=kind,
        body=body,
        created_at=view.current_time,
        proposal=proposal,
    )
    return record_insert(message_key(request.id, sequence), message.to_state())


def create_request(
    view: LedgerView,
    request_id: str,
    campaign: Optional[CampaignTerms],
    buyer_id: str,
    terms: RequestTerms,
    message_id: Optional[str] = None,
    message: str = "",
) -> PendingTransaction:
    """
    Open a quote request against a guarantee campaign.

    Args:
        view: Read-only ledger view
        request_id: Identifier for the new request
        campaign: Terms from the catalog (None when the lookup found nothing)
        buyer_id: Requesting buyer
        terms: Requested rank, count, budget and keywords
        message_id: Identifier for the opening message, if message is given
        message: Optional opening message text

    Raises:
        InvalidCampaign: Campaign missing or not guarantee-typed
        Unauthorized: The buyer owns the campaign
        InvalidAmount: A daily budget outside the campaign's price bounds
        ValueError: Malformed terms (rank < 1, count <= 0, ...)
    """
    if campaign is None:
        raise InvalidCampaign("Campaign not found")
    if not campaign.is_guarantee:
        raise InvalidCampaign(f"Campaign {campaign.campaign_id} is not a guarantee campaign")
    if buyer_id == campaign.seller_id:
        raise Unauthorized("Sellers cannot request a slot on their own campaign")
    if terms.initial_budget is not None:
        if terms.initial_budget <= 0:
            raise InvalidAmount(f"initial budget must be positive, got {terms.initial_budget}")
        if terms.budget_type == BudgetType.DAILY and not campaign.price_in_bounds(terms.initial_budget):
            raise InvalidAmount(
                f"daily budget {terms.initial_budget} outside "
                f"{campaign.min_guarantee_price}..{campaign.max_guarantee_price}"
            )

    now = view.current_time
    request = GuaranteeSlotRequest(
        id=request_id,
        campaign_id=campaign.campaign_id,
        buyer_id=buyer_id,
        seller_id=campaign.seller_id,
        target_rank=terms.target_rank,
        guarantee_count=terms.guarantee_count,
        budget_type=terms.budget_type,
        status=RequestStatus.REQUESTED,
        created_at=now,
        updated_at=now,
        initial_budget=terms.initial_budget,
        guarantee_period=terms.guarantee_period,
        keyword_id=terms.keyword_id,
        keywords=terms.keywords,
        start_date=terms.start_date,
        end_date=terms.end_date,
        reason=terms.reason,
        additional_requirements=terms.additional_requirements,
    )
    changes: List[StateChange] = [record_insert(request_key(request_id), request.to_state())]
    if message:
        if not message_id:
            raise ValueError("message_id is required with an opening message")
        opening = NegotiationMessage(
            id=message_id,
            request_id=request_id,
            sequence=1,
            sender_id=buyer_id,
            sender_role=Role.BUYER,
            kind=MessageKind.MESSAGE,
            body=message,
            created_at=now,
        )
        changes.append(record_insert(message_key(request_id, 1), opening.to_state()))

    return build_transaction(view, [], changes, _origin(buyer_id, request_id, "CREATE_REQUEST"))


def post_message(
    view: LedgerView,
    request_id: str,
    message_id: str,
    sender_id: str,
    kind: MessageKind,
    body: str,
    proposal: Optional[Proposal] = None,
) -> PendingTransaction:
    """
    Append a message to a request's negotiation log.

    Negotiating kinds (price proposal, counter offer, renegotiation request)
    move the request to ``negotiating``. Plain messages never change status
    and are accepted in any status.

    Raises:
        RecordNotFound: Unknown request
        Unauthorized: Sender is neither buyer nor seller
        NotNegotiable: Negotiating kind on a terminal request
        ValueError: kind is ACCEPTANCE (use accept_offer)
    """
    if kind == MessageKind.ACCEPTANCE:
        raise ValueError("Acceptance messages are written by accept_offer")
    request = load_request(view, request_id)
    role = _require_party(request, sender_id)
    negotiating = kind in NEGOTIATING_KINDS
    if negotiating and request.is_terminal:
        raise NotNegotiable(f"Request {request_id} is {request.status.value}")

    changes = [_message_change(view, request, message_id, sender_id, role, kind, body, proposal)]
    if negotiating and request.status != RequestStatus.NEGOTIATING:
        updated = replace(request, status=RequestStatus.NEGOTIATING, updated_at=view.current_time)
        changes.append(record_update(view, request_key(request_id), updated.to_state()))

    return build_transaction(view, [], changes, _origin(sender_id, request_id, "POST_MESSAGE"))


def accept_offer(
    view: LedgerView,
    request_id: str,
    actor_id: str,
    message_id: str,
    final: FinalTerms,
    body: str = "",
    unit_symbol: Optional[str] = None,
    campaign: Optional[CampaignTerms] = None,
) -> PendingTransaction:
    """
    Fix the final terms of a request and mark it ``accepted``.

    Either party may accept. Accepting again before purchase overwrites the
    final terms. An ``acceptance`` message recording the terms is appended.

    When unit_symbol is given, the daily amount and total must be exact at
    that unit's precision. When campaign is given, a daily amount must lie
    within its guarantee price bounds.

    Raises:
        Unauthorized: Actor is neither buyer nor seller
        NotNegotiable: Request is purchased, rejected or cancelled
        InvalidAmount: Non-positive, too precise or out-of-bounds amount
        ValueError: Non-positive count
    """
    request = load_request(view, request_id)
    role = _require_party(request, actor_id)
    if request.is_terminal:
        raise NotNegotiable(f"Request {request_id} is {request.status.value}")
    if final.daily_amount <= 0:
        raise InvalidAmount(f"final daily amount must be positive, got {final.daily_amount}")
    total = final.resolved_total()
    if total <= 0:
        raise InvalidAmount(f"final total must be positive, got {total}")
    if unit_symbol is not None:
        unit = view.get_unit(unit_symbol)
        require_unit_precision(final.daily_amount, unit, "final daily amount")
        require_unit_precision(total, unit, "final total")
    if campaign is not None and not campaign.price_in_bounds(final.daily_amount):
        raise InvalidAmount(
            f"final daily amount {final.daily_amount} outside "
            f"{campaign.min_guarantee_price}..{campaign.max_guarantee_price}"
        )

    accepted = replace(
        request,
        status=RequestStatus.ACCEPTED,
        final_daily_amount=final.daily_amount,
        final_total_amount=total,
        final_budget_type=final.budget_type,
        guarantee_count=final.guarantee_count,
        target_rank=final.target_rank if final.target_rank is not None else request.target_rank,
        guarantee_period=(
            final.guarantee_period if final.guarantee_period is not None else request.guarantee_period
        ),
        updated_at=view.current_time,
    )
    proposal = Proposal(
        daily_amount=final.daily_amount,
        guarantee_count=accepted.guarantee_count,
        guarantee_period=accepted.guarantee_period,
        target_rank=accepted.target_rank,
        total_amount=total,
        budget_type=final.budget_type,
    )
    changes = [
        record_update(view, request_key(request_id), accepted.to_state()),
        _message_change(view, request, message_id, actor_id, role, MessageKind.ACCEPTANCE, body, proposal),
    ]
    return build_transaction(view, [], changes, _origin(actor_id, request_id, "ACCEPT"))


def _close_request(
    view: LedgerView,
    request_id: str,
    actor_id: str,
    required_role: Role,
    status: RequestStatus,
    reason: str,
) -> PendingTransaction:
    request = load_request(view, request_id)
    if request.role_of(actor_id) != required_role:
        raise Unauthorized(f"Only the {required_role.value} may mark request {request_id} {status.value}")
    if request.is_terminal:
        raise NotNegotiable(f"Request {request_id} is {request.status.value}")
    closed = replace(request, status=status, status_reason=reason, updated_at=view.current_time)
    return build_transaction(
        view, [], [record_update(view, request_key(request_id), closed.to_state())],
        _origin(actor_id, request_id, status.name),
    )


def reject_request(view: LedgerView, request_id: str, seller_id: str, reason: str = "") -> PendingTransaction:
    """Seller declines the request. Terminal."""
    return _close_request(view, request_id, seller_id, Role.SELLER, RequestStatus.REJECTED, reason)


def cancel_request(view: LedgerView, request_id: str, buyer_id: str, reason: str = "") -> PendingTransaction:
    """Buyer withdraws the request before purchase. Terminal."""
    return _close_request(view, request_id, buyer_id, Role.BUYER, RequestStatus.CANCELLED, reason)


def mark_messages_read(view: LedgerView, request_id: str, reader_id: str) -> PendingTransaction:
    """Flag every unread message from the other party as read."""
    request = load_request(view, request_id)
    _require_party(request, reader_id)

    changes = []
    for message in load_messages(view, request_id):
        if message.sender_id == reader_id or message.is_read:
            continue
        key = message_key(request_id, message.sequence)
        changes.append(record_update(view, key, replace(message, is_read=True).to_state()))

    if not changes:
        return empty_pending_transaction(view)
    return build_transaction(view, [], changes, _origin(reader_id, request_id, "MARK_READ"))
