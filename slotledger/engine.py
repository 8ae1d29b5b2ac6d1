"""
engine.py - Guarantee Slot Engine

Façade over the pure workflow functions. Every operation follows the same
three steps:
1. Compute a PendingTransaction against the ledger (read-only)
2. Commit it with Ledger.execute (all-or-nothing)
3. Publish side effects to the outbox, then dispatch them

Side effects are published only after a successful commit, and their
failures are logged by the outbox, never raised to the caller.
"""

from __future__ import annotations
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional
import logging
import uuid

from .collaborators import CampaignCatalog, CampaignTerms, InquiryThreads, Notifier, RankChecker
from .config import EngineConfig
from .core import (
    Move, PendingTransaction, TransactionOrigin, OriginType, ExecuteResult, RejectionReason,
    SYSTEM_WALLET,
    AlreadyConfirmedToday, BalanceConstraintViolation, ConcurrentModification,
    DuplicateRecord, InsufficientFunds, InvalidAmount, InvalidCampaign, Unauthorized,
    build_transaction, record_insert,
)
from .guarantee import (
    RequestTerms, FinalTerms,
    create_request, post_message, accept_offer, reject_request, cancel_request, mark_messages_read,
    compute_purchase, compute_slot_approval, compute_slot_rejection,
    compute_rank_confirmation, compute_completion,
    compute_refund_initiation, compute_refund_request, compute_refund_resolution,
)
from .ledger import Ledger
from .outbox import ACTION_INQUIRY_THREAD, ACTION_NOTIFY, ACTION_RANK_CHECK, Outbox, create_default_outbox
from .records import (
    BalanceEntryType, BalanceHistoryEntry, GuaranteeSlot, GuaranteeSlotRequest, Holding, MessageKind,
    NegotiationMessage, Proposal, RefundRequest, Settlement, SlotStatus,
    history_key, load_history, load_holding, load_messages, load_refund, load_refunds, load_request,
    load_settlements, load_slot, settlement_prefix,
)

logger = logging.getLogger(__name__)


class BalanceBucket(Enum):
    PAID = "paid"
    FREE = "free"


def _uuid_id() -> str:
    return uuid.uuid4().hex


class GuaranteeEngine:
    """
    Negotiation, escrow, settlement and refund operations for guarantee slots.

    Features:
    - Every financial operation is one atomic ledger transaction
    - Typed errors for every precondition failure, raised before anything commits
    - Optimistic concurrency: stale writes raise ConcurrentModification
    - Post-commit notifications, rank checks and inquiry threads via the outbox
    """

    def __init__(
        self,
        ledger: Ledger,
        catalog: CampaignCatalog,
        notifier: Optional[Notifier] = None,
        rank_checker: Optional[RankChecker] = None,
        inquiry_threads: Optional[InquiryThreads] = None,
        config: Optional[EngineConfig] = None,
        id_factory: Optional[Callable[[], str]] = None,
        outbox: Optional[Outbox] = None,
    ):
        """
        Initialize the engine.

        Args:
            ledger: The ledger holding balances and records
            catalog: Source of campaign terms
            notifier: Receives user notifications (optional)
            rank_checker: Triggered once when a slot with keywords is approved (optional)
            inquiry_threads: Ensures a buyer/seller thread per approved slot (optional)
            config: Currency, VAT and dispatch settings (defaults to EngineConfig())
            id_factory: Generator of record identifiers (defaults to uuid4 hex)
            outbox: Pre-built outbox (created from the collaborators if not provided)
        """
        self.ledger = ledger
        self.catalog = catalog
        self.config = config or EngineConfig()
        self.id_factory = id_factory or _uuid_id
        self.outbox = outbox or create_default_outbox(notifier, rank_checker, inquiry_threads)

        for unit in (self.config.paid_unit(), self.config.free_unit()):
            if unit.symbol not in self.ledger.units:
                self.ledger.register_unit(unit)

    # ========================================================================
    # COMMIT AND SIDE EFFECTS
    # ========================================================================

    def _commit(self, pending: PendingTransaction) -> bool:
        """
        Execute a pending transaction.

        Returns True if it was applied now, False if the same intent had
        already been applied (no side effects should be published again).
        """
        try:
            result, rejection = self.ledger.execute_detailed(pending)
        except DuplicateRecord as exc:
            raise ConcurrentModification(
                f"{exc.key} was written concurrently; retry with fresh state", key=exc.key,
            ) from exc

        if result == ExecuteResult.REJECTED:
            if rejection.reason == RejectionReason.BELOW_MIN_BALANCE:
                raise InsufficientFunds(f"Transaction rejected: {rejection.detail}")
            if rejection.reason == RejectionReason.INEXACT_QUANTITY:
                raise InvalidAmount(f"Transaction rejected: {rejection.detail}")
            raise BalanceConstraintViolation(f"Transaction rejected: {rejection.detail}")
        if result == ExecuteResult.ALREADY_APPLIED:
            logger.info("Intent %s was already applied; skipping side effects", pending.intent_id)
            return False
        return True

    def _campaign_terms(self, campaign_id: str) -> Optional[CampaignTerms]:
        try:
            return self.catalog.get_campaign_terms(campaign_id)
        except Exception as exc:
            raise InvalidCampaign(f"Campaign lookup failed for {campaign_id}") from exc

    def _notify(self, recipient: str, subject: str, **params) -> None:
        self.outbox.publish(self.ledger.current_time, ACTION_NOTIFY, recipient, subject, params)

    def _flush(self) -> None:
        if self.config.auto_dispatch:
            self.outbox.dispatch()

    def dispatch(self) -> int:
        """Deliver queued side effects now. Returns the number delivered."""
        return self.outbox.dispatch()

    # ========================================================================
    # FUNDING
    # ========================================================================

    def deposit(self, user_id: str, amount: Decimal, bucket: BalanceBucket = BalanceBucket.PAID) -> Decimal:
        """
        Credit a user's paid or free balance from the system wallet.

        Returns the new balance of the bucket.
        """
        if amount <= 0:
            raise InvalidAmount(f"deposit must be positive, got {amount}")
        unit_symbol = self.config.currency if bucket == BalanceBucket.PAID else self.config.free_currency
        deposit_id = self.id_factory()
        before = self.ledger.get_balance(user_id, unit_symbol)
        history = BalanceHistoryEntry(
            id=deposit_id,
            user_id=user_id,
            slot_id="",
            entry_type=BalanceEntryType.DEPOSIT,
            amount=amount,
            balance_before=before,
            balance_after=before + amount,
            created_at=self.ledger.current_time,
            description=f"Deposit to {bucket.value} balance ({unit_symbol})",
        )
        pending = build_transaction(
            self.ledger,
            [Move(amount, unit_symbol, SYSTEM_WALLET, user_id, f"deposit_{deposit_id}")],
            [record_insert(history_key("", deposit_id), history.to_state())],
            origin=TransactionOrigin(OriginType.SYSTEM, "deposit", event_type="DEPOSIT"),
            wallets_to_create=(user_id,),
        )
        self._commit(pending)
        balance = self.ledger.get_balance(user_id, unit_symbol)
        logger.info("Deposited %s %s to %s (balance %s)", amount, unit_symbol, user_id, balance)
        return balance

    # ========================================================================
    # NEGOTIATION
    # ========================================================================

    def create_request(
        self,
        campaign_id: str,
        buyer_id: str,
        terms: RequestTerms,
        message: str = "",
    ) -> GuaranteeSlotRequest:
        """
        Open a quote request and notify the campaign's seller.

        Raises:
            InvalidCampaign: Lookup failed, or the campaign is not guarantee-typed
        """
        campaign = self._campaign_terms(campaign_id)
        request_id = self.id_factory()
        message_id = self.id_factory() if message else None
        pending = create_request(self.ledger, request_id, campaign, buyer_id, terms, message_id, message)
        self._commit(pending)

        request = load_request(self.ledger, request_id)
        logger.info("Request %s opened by %s on campaign %s", request_id, buyer_id, campaign_id)
        self._notify(request.seller_id, "request_created", request_id=request_id, campaign_id=campaign_id)
        self._flush()
        return request

    def post_message(
        self,
        request_id: str,
        sender_id: str,
        kind: MessageKind,
        body: str = "",
        proposal: Optional[Proposal] = None,
    ) -> NegotiationMessage:
        """Append a message and notify the other party."""
        pending = post_message(self.ledger, request_id, self.id_factory(), sender_id, kind, body, proposal)
        applied = self._commit(pending)
        message = NegotiationMessage.from_state(pending.inserted("message:"))
        if applied:
            request = load_request(self.ledger, request_id)
            self._notify(
                request.counterparty_of(sender_id), "message_posted",
                request_id=request_id, kind=kind.value,
            )
            self._flush()
        return message

    def accept_negotiation(
        self,
        request_id: str,
        actor_id: str,
        final: FinalTerms,
        message: str = "",
    ) -> GuaranteeSlotRequest:
        """
        Fix final terms and tell the buyer the slot can be purchased.

        The daily amount is checked against the campaign's current price bounds.
        """
        campaign = self._campaign_terms(load_request(self.ledger, request_id).campaign_id)
        pending = accept_offer(
            self.ledger, request_id, actor_id, self.id_factory(), final, message,
            unit_symbol=self.config.currency, campaign=campaign,
        )
        applied = self._commit(pending)
        request = load_request(self.ledger, request_id)
        if applied:
            logger.info(
                "Request %s accepted by %s at %s/day x %d",
                request_id, actor_id, request.final_daily_amount, request.guarantee_count,
            )
            self._notify(
                request.buyer_id, "purchase_available",
                request_id=request_id, daily_amount=request.final_daily_amount,
            )
            if actor_id == request.buyer_id:
                self._notify(request.seller_id, "offer_accepted", request_id=request_id)
            self._flush()
        return request

    def reject_request(self, request_id: str, seller_id: str, reason: str = "") -> GuaranteeSlotRequest:
        """Seller declines the negotiation."""
        applied = self._commit(reject_request(self.ledger, request_id, seller_id, reason))
        request = load_request(self.ledger, request_id)
        if applied:
            self._notify(request.buyer_id, "request_rejected", request_id=request_id, reason=reason)
            self._flush()
        return request

    def cancel_request(self, request_id: str, buyer_id: str, reason: str = "") -> GuaranteeSlotRequest:
        """Buyer withdraws the request before purchase."""
        applied = self._commit(cancel_request(self.ledger, request_id, buyer_id, reason))
        request = load_request(self.ledger, request_id)
        if applied:
            self._notify(request.seller_id, "request_cancelled", request_id=request_id, reason=reason)
            self._flush()
        return request

    def mark_messages_read(self, request_id: str, reader_id: str) -> int:
        """Mark the other party's messages read. Returns how many changed."""
        pending = mark_messages_read(self.ledger, request_id, reader_id)
        self._commit(pending)
        return len(pending.state_changes)

    # ========================================================================
    # ESCROW
    # ========================================================================

    def purchase_slot(self, request_id: str, buyer_id: str, purchase_reason: str = "") -> GuaranteeSlot:
        """
        Fund an accepted request into a new pending slot.

        Raises:
            RequestNotFundable: Request not accepted, not owned, or without final terms
            InsufficientFunds: Paid balance below the VAT-inclusive total
        """
        slot_id = self.id_factory()
        history_id = self.id_factory()
        pending = compute_purchase(
            self.ledger, request_id, buyer_id, slot_id, history_id,
            self.config.currency, self.config.vat_rate, self.config.rounder, purchase_reason,
        )
        self._commit(pending)

        slot = load_slot(self.ledger, slot_id)
        logger.info(
            "Slot %s funded: %s %s escrowed from %s",
            slot_id, slot.total_amount, self.config.currency, buyer_id,
        )
        self._notify(
            slot.seller_id, "purchase_pending_approval",
            slot_id=slot_id, request_id=request_id, total_amount=slot.total_amount,
        )
        self._flush()
        return slot

    def approve_slot(self, slot_id: str, seller_id: str) -> GuaranteeSlot:
        """
        Approve a pending slot, or reverse an earlier rejection.

        Approval notifies the buyer, triggers one rank check when the slot
        has keywords, and ensures an inquiry thread. A reversal only returns
        the slot to pending.
        """
        applied = self._commit(compute_slot_approval(self.ledger, slot_id, seller_id))
        slot = load_slot(self.ledger, slot_id)
        if not applied:
            return slot
        if slot.status == SlotStatus.PENDING:
            logger.info("Slot %s rejection reversed by %s", slot_id, seller_id)
            return slot

        logger.info("Slot %s approved by %s", slot_id, seller_id)
        now = self.ledger.current_time
        self._notify(slot.buyer_id, "slot_approved", slot_id=slot_id)
        if slot.has_keywords:
            self.outbox.publish(
                now, ACTION_RANK_CHECK, subject="rank_check",
                params={"slot_id": slot_id, "keywords": slot.keywords, "keyword_id": slot.keyword_id},
                dedup_key=slot_id,
            )
        self.outbox.publish(
            now, ACTION_INQUIRY_THREAD, subject="inquiry_thread",
            params={
                "buyer_id": slot.buyer_id, "seller_id": slot.seller_id,
                "campaign_id": slot.campaign_id, "slot_id": slot_id,
            },
            dedup_key=slot_id,
        )
        self._flush()
        return slot

    def reject_slot(self, slot_id: str, seller_id: str, reason: str) -> GuaranteeSlot:
        """Reject a pending slot. Escrow is untouched and the rejection is reversible."""
        applied = self._commit(compute_slot_rejection(self.ledger, slot_id, seller_id, reason))
        slot = load_slot(self.ledger, slot_id)
        if applied:
            logger.info("Slot %s rejected by %s: %s", slot_id, seller_id, reason)
            self._notify(slot.buyer_id, "slot_rejected", slot_id=slot_id, reason=reason)
            self._flush()
        return slot

    # ========================================================================
    # SETTLEMENT
    # ========================================================================

    def confirm_rank_achievement(
        self,
        slot_id: str,
        seller_id: str,
        achieved_rank: int,
        note: str = "",
    ) -> Settlement:
        """
        Record today's rank and release one day's amount if the target was met.

        Raises:
            SlotNotActive: Slot is not active
            AlreadyConfirmedToday: Today's settlement already exists
        """
        pending = compute_rank_confirmation(
            self.ledger, slot_id, seller_id, achieved_rank,
            self.id_factory(), self.id_factory(), self.config.currency, note,
        )
        try:
            self._commit(pending)
        except ConcurrentModification as exc:
            if exc.key and exc.key.startswith(settlement_prefix(slot_id)):
                raise AlreadyConfirmedToday(
                    f"Slot {slot_id} was confirmed concurrently for today"
                ) from exc
            raise

        settlement = Settlement.from_state(pending.inserted("settlement:"))
        if settlement.shortfall > 0:
            logger.error(
                "Settlement shortfall on slot %s: %s of %s could not be released from escrow",
                slot_id, settlement.shortfall, settlement.amount + settlement.shortfall,
            )
        slot = load_slot(self.ledger, slot_id)
        logger.info(
            "Slot %s rank %d vs target %d on %s: %s moved (%d/%d)",
            slot_id, achieved_rank, slot.target_rank, settlement.confirmed_date,
            settlement.amount, slot.completed_count, slot.guarantee_count,
        )
        self._notify(
            slot.buyer_id, "rank_confirmed",
            slot_id=slot_id, achieved_rank=achieved_rank, guarantee_met=settlement.guarantee_met,
        )
        if slot.status == SlotStatus.COMPLETED:
            self._notify(slot.buyer_id, "slot_completed", slot_id=slot_id)
            self._notify(slot.seller_id, "slot_completed", slot_id=slot_id)
        self._flush()
        return settlement

    def complete_slot(
        self,
        slot_id: str,
        seller_id: str,
        memo: str,
        refund_amount: Optional[Decimal] = None,
    ) -> GuaranteeSlot:
        """Force-complete an active slot, optionally refunding part of the escrow."""
        pending = compute_completion(
            self.ledger, slot_id, seller_id, memo, self.id_factory(), self.config.currency, refund_amount,
        )
        self._commit(pending)
        slot = load_slot(self.ledger, slot_id)
        logger.info("Slot %s completed manually by %s (refund %s)", slot_id, seller_id, refund_amount or 0)
        self._notify(slot.buyer_id, "slot_completed", slot_id=slot_id, refund_amount=refund_amount or Decimal("0"))
        self._flush()
        return slot

    # ========================================================================
    # REFUNDS
    # ========================================================================

    def initiate_refund(
        self,
        slot_id: str,
        seller_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> RefundRequest:
        """
        Seller opens a refund. No funds move until the buyer confirms.

        Raises:
            SlotNotActive: Slot is not active or completed
            NothingToRefund: Nothing unearned remains
        """
        pending = compute_refund_initiation(
            self.ledger, slot_id, seller_id, self.id_factory(), reason,
            self.config.currency, amount, self.config.vat_rate, self.config.rounder,
        )
        self._commit(pending)
        refund = RefundRequest.from_state(pending.inserted("refund:"))
        slot = load_slot(self.ledger, slot_id)
        logger.info("Refund %s of %s opened by seller on slot %s", refund.id, refund.amount, slot_id)
        self._notify(
            slot.buyer_id, "refund_confirmation_required",
            slot_id=slot_id, refund_id=refund.id, amount=refund.amount,
        )
        self._flush()
        return refund

    def request_refund(self, slot_id: str, buyer_id: str, reason: str) -> RefundRequest:
        """Buyer asks for a refund. No funds move until the seller approves."""
        pending = compute_refund_request(
            self.ledger, slot_id, buyer_id, self.id_factory(), reason,
            self.config.currency, self.config.rounder,
        )
        self._commit(pending)
        refund = RefundRequest.from_state(pending.inserted("refund:"))
        slot = load_slot(self.ledger, slot_id)
        logger.info("Refund %s of %s requested by buyer on slot %s", refund.id, refund.amount, slot_id)
        self._notify(
            slot.seller_id, "refund_requested",
            slot_id=slot_id, refund_id=refund.id, amount=refund.amount,
        )
        self._flush()
        return refund

    def confirm_refund(
        self,
        slot_id: str,
        refund_id: str,
        buyer_id: str,
        approve: bool,
        rejection_reason: str = "",
    ) -> RefundRequest:
        """
        Buyer approves or rejects a seller-initiated refund.

        Raises:
            Unauthorized: Actor is not the slot's buyer
            RequestNotPending: The refund is not awaiting the buyer
        """
        slot = load_slot(self.ledger, slot_id)
        if slot.buyer_id != buyer_id:
            raise Unauthorized(f"{buyer_id} is not the buyer of slot {slot_id}")
        return self._resolve_refund(slot, refund_id, buyer_id, approve, rejection_reason)

    def resolve_refund_request(
        self,
        slot_id: str,
        refund_id: str,
        seller_id: str,
        approve: bool,
        notes: str = "",
    ) -> RefundRequest:
        """Seller approves or rejects a buyer-initiated refund."""
        slot = load_slot(self.ledger, slot_id)
        if slot.seller_id != seller_id:
            raise Unauthorized(f"{seller_id} is not the seller of slot {slot_id}")
        return self._resolve_refund(slot, refund_id, seller_id, approve, notes)

    def _resolve_refund(
        self,
        slot: GuaranteeSlot,
        refund_id: str,
        actor_id: str,
        approve: bool,
        notes: str,
    ) -> RefundRequest:
        pending = compute_refund_resolution(
            self.ledger, slot.id, refund_id, actor_id, approve, self.id_factory(), self.config.currency, notes,
        )
        self._commit(pending)
        refund = load_refund(self.ledger, slot.id, refund_id)
        counterparty = slot.seller_id if actor_id == slot.buyer_id else slot.buyer_id
        if approve:
            logger.info("Refund %s approved: %s returned to %s", refund_id, refund.amount, slot.buyer_id)
            self._notify(counterparty, "refund_approved", slot_id=slot.id, refund_id=refund_id, amount=refund.amount)
        else:
            logger.info("Refund %s rejected by %s", refund_id, actor_id)
            self._notify(counterparty, "refund_rejected", slot_id=slot.id, refund_id=refund_id, reason=notes)
        self._flush()
        return refund

    # ========================================================================
    # QUERY METHODS
    # ========================================================================

    def get_request(self, request_id: str) -> GuaranteeSlotRequest:
        return load_request(self.ledger, request_id)

    def get_messages(self, request_id: str) -> List[NegotiationMessage]:
        return load_messages(self.ledger, request_id)

    def get_slot(self, slot_id: str) -> GuaranteeSlot:
        return load_slot(self.ledger, slot_id)

    def get_holding(self, slot_id: str) -> Holding:
        return load_holding(self.ledger, slot_id, self.config.currency)

    def get_settlements(self, slot_id: str) -> List[Settlement]:
        return load_settlements(self.ledger, slot_id)

    def get_refund_requests(self, slot_id: str) -> List[RefundRequest]:
        return load_refunds(self.ledger, slot_id)

    def get_balance_history(self, user_id: Optional[str] = None, slot_id: str = "") -> List[BalanceHistoryEntry]:
        """Balance history, optionally narrowed to one user and/or one slot."""
        entries = load_history(self.ledger, slot_id)
        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]
        return entries

    def get_paid_balance(self, user_id: str) -> Decimal:
        return self.ledger.get_balance(user_id, self.config.currency)

    def get_free_balance(self, user_id: str) -> Decimal:
        return self.ledger.get_balance(user_id, self.config.free_currency)
