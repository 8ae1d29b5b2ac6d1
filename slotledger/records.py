"""
records.py - Guarantee-slot domain records and their storage keys.

Every record is a frozen dataclass that round-trips through a plain-dict
state (enums stored by value) so it can live in the ledger's versioned
record store. Loaders read records back from any LedgerView.

Storage keys:
    request:<request_id>
    message:<request_id>:<sequence>       (sequence zero-padded, ordered)
    slot:<slot_id>
    holding:<slot_id>
    settlement:<slot_id>:<YYYY-MM-DD>     (at most one per slot per day)
    refund:<slot_id>:<refund_id>
    history:<slot_id>:<entry_id>
    history:<entry_id>                    (deposits, not tied to a slot)

Escrow balances live in two wallets per slot, escrow:<slot_id>:buyer and
escrow:<slot_id>:seller, so a Holding's buyer and seller amounts are read
from the ledger rather than stored.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, is_dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Type

from .core import LedgerView, RecordState, QUANTITY_EPSILON


# ============================================================================
# ENUMS
# ============================================================================

class RequestStatus(Enum):
    REQUESTED = "requested"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    PURCHASED = "purchased"


class BudgetType(Enum):
    DAILY = "daily"
    TOTAL = "total"


class MessageKind(Enum):
    MESSAGE = "message"
    PRICE_PROPOSAL = "price_proposal"
    COUNTER_OFFER = "counter_offer"
    RENEGOTIATION_REQUEST = "renegotiation_request"
    ACCEPTANCE = "acceptance"


class SlotStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    REJECTED = "rejected"
    REFUND_REQUESTED = "refund_requested"
    REFUNDED = "refunded"


class HoldingStatus(Enum):
    HOLDING = "holding"
    COMPLETED = "completed"
    REFUNDED = "refunded"


class RefundStatus(Enum):
    PENDING_USER_CONFIRMATION = "pending_user_confirmation"
    PENDING_SELLER_APPROVAL = "pending_seller_approval"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


class BalanceEntryType(Enum):
    PURCHASE = "purchase"
    SETTLEMENT = "settlement"
    REFUND = "refund"
    DEPOSIT = "deposit"


TERMINAL_REQUEST_STATUSES = frozenset({
    RequestStatus.PURCHASED, RequestStatus.REJECTED, RequestStatus.CANCELLED,
})

NEGOTIATING_KINDS = frozenset({
    MessageKind.PRICE_PROPOSAL, MessageKind.COUNTER_OFFER, MessageKind.RENEGOTIATION_REQUEST,
})

# Display labels for status values. Read-only.
STATUS_LABELS: Mapping[Enum, str] = MappingProxyType({
    RequestStatus.REQUESTED: "Quote requested",
    RequestStatus.NEGOTIATING: "Negotiating",
    RequestStatus.ACCEPTED: "Agreed",
    RequestStatus.REJECTED: "Rejected",
    RequestStatus.CANCELLED: "Cancelled",
    RequestStatus.PURCHASED: "Purchased",
    SlotStatus.PENDING: "Awaiting approval",
    SlotStatus.ACTIVE: "In progress",
    SlotStatus.COMPLETED: "Completed",
    SlotStatus.REJECTED: "Rejected",
    SlotStatus.REFUND_REQUESTED: "Refund requested",
    SlotStatus.REFUNDED: "Refunded",
    HoldingStatus.HOLDING: "Held in escrow",
    HoldingStatus.COMPLETED: "Settled",
    HoldingStatus.REFUNDED: "Refunded",
    RefundStatus.PENDING_USER_CONFIRMATION: "Awaiting buyer confirmation",
    RefundStatus.PENDING_SELLER_APPROVAL: "Awaiting seller approval",
    RefundStatus.APPROVED: "Refund approved",
    RefundStatus.REJECTED: "Refund rejected",
})


def label(status: Enum) -> str:
    """Display label for a status value, falling back to its raw value."""
    return STATUS_LABELS.get(status, status.value)


# ============================================================================
# STATE ROUND-TRIP
# ============================================================================

class _StateRecord:
    """
    Mixin giving frozen dataclasses a plain-dict state form.

    Subclasses list enum-typed fields in _ENUM_FIELDS and nested record
    fields in _NESTED_FIELDS; everything else is stored as-is.
    """
    __slots__ = ()

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {}
    _NESTED_FIELDS: ClassVar[Dict[str, Type[Any]]] = {}
    _DERIVED_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def to_state(self) -> RecordState:
        state = {}
        for f in fields(self):
            if f.name in self._DERIVED_FIELDS:
                continue
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            elif is_dataclass(value):
                value = value.to_state()
            state[f.name] = value
        return state

    @classmethod
    def from_state(cls, state: RecordState):
        kwargs = dict(state)
        for name, enum_type in cls._ENUM_FIELDS.items():
            if kwargs.get(name) is not None:
                kwargs[name] = enum_type(kwargs[name])
        for name, nested_type in cls._NESTED_FIELDS.items():
            if kwargs.get(name) is not None:
                kwargs[name] = nested_type.from_state(kwargs[name])
        return cls(**kwargs)


# ============================================================================
# RECORDS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Proposal(_StateRecord):
    """Structured terms attached to a negotiation message. Every field is optional."""
    daily_amount: Optional[Decimal] = None
    guarantee_count: Optional[int] = None
    guarantee_period: Optional[int] = None
    target_rank: Optional[int] = None
    total_amount: Optional[Decimal] = None
    budget_type: Optional[BudgetType] = None

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {"budget_type": BudgetType}


@dataclass(frozen=True, slots=True)
class GuaranteeSlotRequest(_StateRecord):
    """
    A buyer's quote request against a guarantee campaign.

    keyword_id references a stored keyword; manual keyword entry leaves it
    None and carries the text in keywords.
    """
    id: str
    campaign_id: str
    buyer_id: str
    seller_id: str
    target_rank: int
    guarantee_count: int
    budget_type: BudgetType
    status: RequestStatus
    created_at: datetime
    updated_at: datetime
    initial_budget: Optional[Decimal] = None
    guarantee_period: Optional[int] = None
    keyword_id: Optional[str] = None
    keywords: Tuple[str, ...] = ()
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: str = ""
    additional_requirements: str = ""
    final_daily_amount: Optional[Decimal] = None
    final_total_amount: Optional[Decimal] = None
    final_budget_type: Optional[BudgetType] = None
    status_reason: str = ""

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {
        "budget_type": BudgetType,
        "status": RequestStatus,
        "final_budget_type": BudgetType,
    }

    def __post_init__(self):
        if self.target_rank < 1:
            raise ValueError(f"target_rank must be >= 1, got {self.target_rank}")
        if self.guarantee_count <= 0:
            raise ValueError(f"guarantee_count must be positive, got {self.guarantee_count}")
        if self.guarantee_period is not None and self.guarantee_period <= 0:
            raise ValueError(f"guarantee_period must be positive, got {self.guarantee_period}")
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date cannot precede start_date")
        if self.status in (RequestStatus.ACCEPTED, RequestStatus.PURCHASED):
            if self.final_daily_amount is None:
                raise ValueError(f"{self.status.value} request must carry final_daily_amount")
        object.__setattr__(self, 'keywords', tuple(self.keywords))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_REQUEST_STATUSES

    def role_of(self, principal_id: str) -> Optional[Role]:
        if principal_id == self.buyer_id:
            return Role.BUYER
        if principal_id == self.seller_id:
            return Role.SELLER
        return None

    def counterparty_of(self, principal_id: str) -> str:
        return self.seller_id if principal_id == self.buyer_id else self.buyer_id


@dataclass(frozen=True, slots=True)
class NegotiationMessage(_StateRecord):
    id: str
    request_id: str
    sequence: int
    sender_id: str
    sender_role: Role
    kind: MessageKind
    body: str
    created_at: datetime
    proposal: Optional[Proposal] = None
    is_read: bool = False

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {"sender_role": Role, "kind": MessageKind}
    _NESTED_FIELDS: ClassVar[Dict[str, Type[Any]]] = {"proposal": Proposal}


@dataclass(frozen=True, slots=True)
class Rejection(_StateRecord):
    reason: str
    actor_id: str
    rejected_at: datetime


@dataclass(frozen=True, slots=True)
class GuaranteeSlot(_StateRecord):
    """
    A funded guarantee slot created by purchase.

    completed_count only grows, and never exceeds guarantee_count.
    """
    id: str
    request_id: str
    campaign_id: str
    buyer_id: str
    seller_id: str
    target_rank: int
    guarantee_count: int
    daily_guarantee_amount: Decimal
    total_amount: Decimal
    status: SlotStatus
    created_at: datetime
    updated_at: datetime
    completed_count: int = 0
    guarantee_period: Optional[int] = None
    keyword_id: Optional[str] = None
    keywords: Tuple[str, ...] = ()
    purchase_reason: str = ""
    rejection: Optional[Rejection] = None
    approved_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completion_memo: str = ""

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {"status": SlotStatus}
    _NESTED_FIELDS: ClassVar[Dict[str, Type[Any]]] = {"rejection": Rejection}

    def __post_init__(self):
        if self.guarantee_count <= 0:
            raise ValueError(f"guarantee_count must be positive, got {self.guarantee_count}")
        if not 0 <= self.completed_count <= self.guarantee_count:
            raise ValueError(
                f"completed_count {self.completed_count} outside 0..{self.guarantee_count}"
            )
        if self.total_amount < 0 or self.daily_guarantee_amount < 0:
            raise ValueError("slot amounts cannot be negative")
        object.__setattr__(self, 'keywords', tuple(self.keywords))

    def role_of(self, principal_id: str) -> Optional[Role]:
        if principal_id == self.buyer_id:
            return Role.BUYER
        if principal_id == self.seller_id:
            return Role.SELLER
        return None

    @property
    def remaining_count(self) -> int:
        return self.guarantee_count - self.completed_count

    @property
    def has_keywords(self) -> bool:
        return bool(self.keyword_id or self.keywords)


@dataclass(frozen=True, slots=True)
class Holding(_StateRecord):
    """
    Escrow position of one slot.

    buyer_holding_amount and seller_holding_amount are the balances of the
    slot's two escrow wallets. buyer + seller + refunded == total at all times.
    """
    slot_id: str
    buyer_id: str
    seller_id: str
    total_amount: Decimal
    status: HoldingStatus
    refunded_amount: Decimal = Decimal("0")
    buyer_holding_amount: Decimal = Decimal("0")
    seller_holding_amount: Decimal = Decimal("0")

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {"status": HoldingStatus}
    _DERIVED_FIELDS: ClassVar[Tuple[str, ...]] = ("buyer_holding_amount", "seller_holding_amount")

    @property
    def escrowed(self) -> Decimal:
        return self.buyer_holding_amount + self.seller_holding_amount

    @property
    def is_balanced(self) -> bool:
        accounted = self.buyer_holding_amount + self.seller_holding_amount + self.refunded_amount
        return abs(accounted - self.total_amount) < QUANTITY_EPSILON


@dataclass(frozen=True, slots=True)
class Settlement(_StateRecord):
    """One day's rank confirmation. amount is what actually moved (0 if not met)."""
    id: str
    slot_id: str
    confirmed_date: date
    confirmed_by: str
    target_rank: int
    achieved_rank: int
    guarantee_met: bool
    amount: Decimal
    created_at: datetime
    note: str = ""
    shortfall: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class RefundRequest(_StateRecord):
    """
    A refund awaiting, or resolved by, the counterparty.

    Seller-initiated refunds wait for the buyer (pending_user_confirmation);
    buyer-initiated ones wait for the seller (pending_seller_approval).
    """
    id: str
    slot_id: str
    requested_by: Role
    requester_id: str
    reason: str
    amount: Decimal
    status: RefundStatus
    requested_at: datetime
    previous_slot_status: SlotStatus
    resolved_at: Optional[datetime] = None
    resolver_id: Optional[str] = None
    rejection_reason: str = ""
    approval_notes: str = ""

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {
        "requested_by": Role,
        "status": RefundStatus,
        "previous_slot_status": SlotStatus,
    }

    @property
    def is_pending(self) -> bool:
        return self.status in (
            RefundStatus.PENDING_USER_CONFIRMATION, RefundStatus.PENDING_SELLER_APPROVAL,
        )

    @property
    def awaiting(self) -> Optional[Role]:
        """The party whose decision is outstanding, or None once resolved."""
        if self.status == RefundStatus.PENDING_USER_CONFIRMATION:
            return Role.BUYER
        if self.status == RefundStatus.PENDING_SELLER_APPROVAL:
            return Role.SELLER
        return None


@dataclass(frozen=True, slots=True)
class BalanceHistoryEntry(_StateRecord):
    """Audit entry for a balance change caused by a slot operation."""
    id: str
    user_id: str
    slot_id: str
    entry_type: BalanceEntryType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    created_at: datetime
    description: str = ""

    _ENUM_FIELDS: ClassVar[Dict[str, Type[Enum]]] = {"entry_type": BalanceEntryType}


# ============================================================================
# KEYS
# ============================================================================

def request_key(request_id: str) -> str:
    return f"request:{request_id}"


def message_prefix(request_id: str) -> str:
    return f"message:{request_id}:"


def message_key(request_id: str, sequence: int) -> str:
    return f"{message_prefix(request_id)}{sequence:06d}"


def slot_key(slot_id: str) -> str:
    return f"slot:{slot_id}"


def holding_key(slot_id: str) -> str:
    return f"holding:{slot_id}"


def settlement_prefix(slot_id: str) -> str:
    return f"settlement:{slot_id}:"


def settlement_key(slot_id: str, confirmed_date: date) -> str:
    return f"{settlement_prefix(slot_id)}{confirmed_date.isoformat()}"


def refund_prefix(slot_id: str) -> str:
    return f"refund:{slot_id}:"


def refund_key(slot_id: str, refund_id: str) -> str:
    return f"{refund_prefix(slot_id)}{refund_id}"


def history_prefix(slot_id: str = "") -> str:
    return f"history:{slot_id}:" if slot_id else "history:"


def history_key(slot_id: str, entry_id: str) -> str:
    return f"{history_prefix(slot_id)}{entry_id}"


def escrow_wallet(slot_id: str, side: Role) -> str:
    """Wallet holding one side of a slot's escrow."""
    if side not in (Role.BUYER, Role.SELLER):
        raise ValueError(f"escrow side must be buyer or seller, got {side}")
    return f"escrow:{slot_id}:{side.value}"


# ============================================================================
# LOADERS
# ============================================================================

def load_request(view: LedgerView, request_id: str) -> GuaranteeSlotRequest:
    return GuaranteeSlotRequest.from_state(view.get_record_state(request_key(request_id)))


def load_messages(view: LedgerView, request_id: str) -> List[NegotiationMessage]:
    """Messages of a request in the order they were posted."""
    return [
        NegotiationMessage.from_state(state)
        for _, state in view.list_records(message_prefix(request_id))
    ]


def load_slot(view: LedgerView, slot_id: str) -> GuaranteeSlot:
    return GuaranteeSlot.from_state(view.get_record_state(slot_key(slot_id)))


def load_holding(view: LedgerView, slot_id: str, unit_symbol: str) -> Holding:
    """Holding record joined with the current balances of its escrow wallets."""
    holding = Holding.from_state(view.get_record_state(holding_key(slot_id)))
    return replace(
        holding,
        buyer_holding_amount=view.get_balance(escrow_wallet(slot_id, Role.BUYER), unit_symbol),
        seller_holding_amount=view.get_balance(escrow_wallet(slot_id, Role.SELLER), unit_symbol),
    )


def load_settlements(view: LedgerView, slot_id: str) -> List[Settlement]:
    """Settlements of a slot in date order."""
    return [Settlement.from_state(state) for _, state in view.list_records(settlement_prefix(slot_id))]


def load_refund(view: LedgerView, slot_id: str, refund_id: str) -> RefundRequest:
    return RefundRequest.from_state(view.get_record_state(refund_key(slot_id, refund_id)))


def load_refunds(view: LedgerView, slot_id: str) -> List[RefundRequest]:
    """Refund requests of a slot, oldest first."""
    refunds = [RefundRequest.from_state(state) for _, state in view.list_records(refund_prefix(slot_id))]
    return sorted(refunds, key=lambda r: (r.requested_at, r.id))


def load_history(view: LedgerView, slot_id: str = "") -> List[BalanceHistoryEntry]:
    """Balance history for one slot, or for every slot when slot_id is empty."""
    entries = [
        BalanceHistoryEntry.from_state(state)
        for _, state in view.list_records(history_prefix(slot_id))
    ]
    return sorted(entries, key=lambda e: (e.created_at, e.id))
