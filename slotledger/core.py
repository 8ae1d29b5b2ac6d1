"""
Core types and pure functions for the guarantee-slot ledger.

This module provides the foundational data structures and protocols for the ledger:
1. Protocols: LedgerView for read-only access to balances and records
2. Immutable data structures: Move, StateChange, PendingTransaction, Transaction, Unit, Record
3. Exceptions: LedgerError and the domain error taxonomy, each with a stable code
4. Type aliases: BalanceMap, RecordState
5. Record helpers: record_insert / record_update build version-checked state changes
6. Unit factories: Functions to create currency units

All functions in this module are pure and operate on read-only views.
No function can mutate ledger state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_EVEN, getcontext
from enum import Enum
import copy
import hashlib
from typing import (
    Dict, List, Set, Optional, Any, Protocol,
    Tuple, FrozenSet, runtime_checkable,
)


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Money arithmetic must be deterministic. The global context is configured
# once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
# Context parameters:
#   - prec=50: Precision sufficient for VAT and pro-rata calculations
#   - rounding=ROUND_HALF_EVEN: Banker's rounding (unbiased)
#
_LEDGER_DECIMAL_CONTEXT = getcontext()
_LEDGER_DECIMAL_CONTEXT.prec = 50
_LEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance (balance top-ups) and redemption.
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Unit type constants (strings, not enum per design decision).
UNIT_TYPE_CASH = "CASH"            # paid balance bucket
UNIT_TYPE_FREE_CASH = "FREE_CASH"  # free/bonus balance bucket

# Epsilon for Decimal comparisons.
# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-12")

# 10% VAT surcharge applied on top of the negotiated daily amount.
DEFAULT_VAT_RATE = Decimal("0.10")

# Smallest tradable currency unit (1 won).
DEFAULT_CURRENCY_INCREMENT = Decimal("1")

DECIMAL_ROUNDING = {
    UNIT_TYPE_CASH: ROUND_HALF_EVEN,
    UNIT_TYPE_FREE_CASH: ROUND_HALF_EVEN,
}


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from unit symbol to quantity held in a single wallet.
BalanceMap = Dict[str, Decimal]

# Plain-dict state of a stored record (request, slot, settlement, ...).
RecordState = Dict[str, Any]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to ledger state.

    Pure functions (the negotiation, escrow, settlement and refund
    computations) receive a LedgerView and return a PendingTransaction.
    They can query balances and records but cannot modify them.

    The Ledger class implements this protocol but also provides mutation
    methods. For testing, FakeView provides a truly immutable implementation.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Return the balance of a specific unit in a wallet.

        Returns Decimal("0") if the wallet does not exist.
        """
        ...

    def has_record(self, key: str) -> bool:
        """Return True if a record is stored under key."""
        ...

    def get_record_state(self, key: str) -> RecordState:
        """Return a deep copy of the record's state. Raises RecordNotFound."""
        ...

    def get_record_version(self, key: str) -> int:
        """Return the record's version (bumped on every update). Raises RecordNotFound."""
        ...

    def list_records(self, prefix: str) -> List[Tuple[str, RecordState]]:
        """Return (key, state) pairs for every record whose key starts with prefix, sorted by key."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was successfully validated and applied to the ledger.
    ALREADY_APPLIED: Transaction intent was previously processed (idempotent behavior).
    REJECTED: Transaction failed balance validation; nothing was applied.
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class RejectionReason(Enum):
    """Why the ledger refused to apply a transaction."""
    FUTURE_TIMESTAMP = "future_timestamp"
    UNIT_NOT_REGISTERED = "unit_not_registered"
    WALLET_NOT_REGISTERED = "wallet_not_registered"
    INEXACT_QUANTITY = "inexact_quantity"
    BELOW_MIN_BALANCE = "below_min_balance"
    ABOVE_MAX_BALANCE = "above_max_balance"


@dataclass(frozen=True, slots=True)
class LedgerRejection:
    """A refused transaction: the typed reason plus a readable detail."""
    reason: RejectionReason
    detail: str


class OriginType(Enum):
    """
    Classification of where a transaction originated.

    Used for audit trails and reconciliation.
    """
    USER_ACTION = "user_action"   # Buyer or seller action
    SYSTEM = "system"             # Issuance, top-ups, setup
    EXTERNAL = "external"         # Automated callers (scheduled rank checks)


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """
    Base exception for all ledger-related errors.

    Every error carries a stable ``code`` for the transport layer and a
    human-readable ``message``.
    """
    code = "LEDGER_ERROR"
    default_message = "Ledger operation failed."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InsufficientFunds(LedgerError):
    """Raised when a debit would take a wallet below the unit's minimum balance."""
    code = "INSUFFICIENT_FUNDS"
    default_message = "Paid balance is insufficient; nothing was debited."


class BalanceConstraintViolation(LedgerError):
    """Raised when a move would cause a wallet balance to exceed the unit's maximum."""
    code = "BALANCE_CONSTRAINT"
    default_message = "Balance constraint violated; nothing was applied."


class UnitNotRegistered(LedgerError):
    """Raised when attempting to operate on a unit that has not been registered with the ledger."""
    code = "UNIT_NOT_REGISTERED"
    default_message = "Unit not registered."


class WalletNotRegistered(LedgerError):
    """Raised when attempting to operate on a wallet that has not been registered with the ledger."""
    code = "WALLET_NOT_REGISTERED"
    default_message = "Wallet not registered."


class RecordNotFound(LedgerError):
    """Raised when a record key does not exist."""
    code = "RECORD_NOT_FOUND"
    default_message = "Record not found."


class DuplicateRecord(LedgerError):
    """Raised when an insert targets a key that already exists."""
    code = "DUPLICATE_RECORD"
    default_message = "Record already exists."

    def __init__(self, key: str, message: Optional[str] = None):
        self.key = key
        super().__init__(message or f"Record {key} already exists")


class ConcurrentModification(LedgerError):
    """Raised when a record changed between read and write. Retry with fresh state."""
    code = "CONCURRENT_MODIFICATION"
    default_message = "The record was modified concurrently; retry with fresh state."

    def __init__(self, message: Optional[str] = None, key: Optional[str] = None):
        self.key = key
        super().__init__(message)


class InvalidCampaign(LedgerError):
    """Raised when the campaign does not exist or is not guarantee-typed."""
    code = "INVALID_CAMPAIGN"
    default_message = "Campaign is missing or is not a guarantee campaign."


class NotNegotiable(LedgerError):
    """Raised when a request is already terminal (purchased, rejected or cancelled)."""
    code = "NOT_NEGOTIABLE"
    default_message = "The request can no longer be negotiated."


class RequestNotFundable(LedgerError):
    """Raised when a request is not accepted, not owned by the buyer, or lacks final terms."""
    code = "REQUEST_NOT_FUNDABLE"
    default_message = "The request is not in a fundable state; nothing was debited."


class SlotNotActive(LedgerError):
    """Raised when a slot is not in the status the operation requires."""
    code = "SLOT_NOT_ACTIVE"
    default_message = "The slot is not in a state that allows this operation."


class AlreadyConfirmedToday(LedgerError):
    """Raised when a settlement already exists for the slot and calendar day."""
    code = "ALREADY_CONFIRMED_TODAY"
    default_message = "Rank achievement was already confirmed today; nothing was moved."


class NothingToRefund(LedgerError):
    """Raised when the computed refund amount is zero."""
    code = "NOTHING_TO_REFUND"
    default_message = "There is no unearned amount left to refund."


class RequestNotPending(LedgerError):
    """Raised when a refund request is not awaiting the caller's decision."""
    code = "REQUEST_NOT_PENDING"
    default_message = "The refund request is not pending; no funds were moved."


class Unauthorized(LedgerError):
    """Raised when the actor does not own or administer the target entity."""
    code = "UNAUTHORIZED"
    default_message = "The actor is not a party to this entity."


class InvalidAmount(LedgerError):
    """Raised when an amount is outside its permitted bounds."""
    code = "INVALID_AMOUNT"
    default_message = "Amount is outside the permitted bounds."


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source (USER_ACTION, SYSTEM, EXTERNAL)
        source_id: Identifier of the acting principal
        record_key: Key of the aggregate this transaction is about (if applicable)
        event_type: Specific operation (e.g., "PURCHASE", "SETTLEMENT", "REFUND")
    """
    origin_type: OriginType
    source_id: str
    record_key: Optional[str] = None
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.record_key:
            parts.append(f"record={self.record_key}")
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# STATE CHANGE
# ============================================================================

@dataclass(frozen=True, slots=True)
class StateChange:
    """
    Record of one record mutation, with complete before/after snapshots.

    old_state is None for an insert. An insert whose key already exists is a
    uniqueness violation; an update whose base_version or old_state no longer
    matches the stored record is an optimistic-lock conflict.

    Attributes:
        key: Key of the record being written
        old_state: Complete state before the change (None for inserts)
        new_state: Complete state after the change
        base_version: Version the change was computed against (0 for inserts)
    """
    key: str
    old_state: Optional[RecordState]
    new_state: RecordState
    base_version: int = 0

    def __post_init__(self):
        if not self.key or not self.key.strip():
            raise ValueError("StateChange key cannot be empty")
        if not isinstance(self.new_state, dict):
            raise ValueError(f"StateChange new_state must be a dict, got {type(self.new_state)}")
        if self.old_state is None and self.base_version != 0:
            raise ValueError("Inserts must have base_version 0")

    @property
    def is_insert(self) -> bool:
        return self.old_state is None

    def changed_fields(self) -> Dict[str, Tuple[Any, Any]]:
        """
        Compute fields that differ between old and new state.

        Returns:
            Dict mapping field name to (old_value, new_value) tuples.
        """
        old = self.old_state if isinstance(self.old_state, dict) else {}
        new = self.new_state
        changes = {}
        for key in set(old.keys()) | set(new.keys()):
            old_val = old.get(key)
            new_val = new.get(key)
            if old_val != new_val:
                changes[key] = (old_val, new_val)
        return changes


def record_insert(key: str, new_state: RecordState) -> StateChange:
    """Build a StateChange that creates a record under a fresh key."""
    return StateChange(key=key, old_state=None, new_state=new_state, base_version=0)


def record_update(view: LedgerView, key: str, new_state: RecordState) -> StateChange:
    """
    Build a StateChange that replaces the record under key.

    The current state and version are read from the view; the ledger rejects
    the change with ConcurrentModification if either moved in the meantime.
    """
    return StateChange(
        key=key,
        old_state=view.get_record_state(key),
        new_state=new_state,
        base_version=view.get_record_version(key),
    )


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be finite and non-zero).
        unit_symbol: The currency being transferred (e.g., "KRW").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
        metadata: Optional additional information about the move.

    All fields are validated in __post_init__.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str
    metadata: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if self.quantity.is_infinite() or self.quantity.is_nan():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if abs(self.quantity) < QUANTITY_EPSILON:
            raise ValueError("Move quantity is effectively zero")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _canonicalize(value: Any) -> str:
    """
    Produce a canonical string representation of a value for hashing.

    Deterministic regardless of dict insertion order, Decimal representation
    variance, or nesting depth.
    """
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return f"D:{_normalize_decimal(value)}"
    if isinstance(value, (int, float)):
        return f"N:{value}"
    if isinstance(value, str):
        return f"S:{value}"
    if isinstance(value, datetime):
        return f"T:{value.isoformat()}"
    if isinstance(value, date):
        return f"DT:{value.isoformat()}"
    if isinstance(value, Enum):
        return f"E:{value.value}"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        serialized = ",".join(f"{_canonicalize(k)}:{_canonicalize(v)}" for k, v in items)
        return f"{{{serialized}}}"
    if isinstance(value, (list, tuple)):
        serialized = ",".join(_canonicalize(item) for item in value)
        return f"[{serialized}]"
    if isinstance(value, (set, frozenset)):
        serialized = ",".join(_canonicalize(item) for item in sorted(value, key=str))
        return f"<{serialized}>"
    return f"R:{repr(value)}"


def _compute_intent_id(
    moves: Tuple[Move, ...],
    state_changes: Tuple[StateChange, ...],
    origin: TransactionOrigin,
    wallets_to_create: Tuple[str, ...] = (),
) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    The hash covers moves, state changes (including the version each change
    was computed against), origin and wallets to create, NOT timestamps of
    execution. A retried intent built from the same state hashes identically;
    the same edit applied to a newer record version does not.
    """
    sorted_moves = tuple(sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    ))

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.record_key:
        content_parts.append(f"record:{origin.record_key}")
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")

    for wallet in sorted(wallets_to_create):
        content_parts.append(f"wallet_create:{wallet}")

    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    for sc in sorted(state_changes, key=lambda s: s.key):
        old_canonical = _canonicalize(sc.old_state)
        new_canonical = _canonicalize(sc.new_state)
        content_parts.append(f"state_change:{sc.key}@{sc.base_version}|{old_canonical}|{new_canonical}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transaction specification before execution - represents INTENT.

    Created by the pure workflow functions and submitted to the ledger.

    Lifecycle:
    1. A compute_* function builds moves and state changes against a LedgerView
    2. intent_id is auto-computed from content (deterministic hash)
    3. Ledger.execute() validates and applies everything or nothing

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of record writes (at most one per key)
        origin: Who/what created this transaction and why
        timestamp: When this pending transaction was created
        wallets_to_create: Wallets registered as part of this transaction (escrow wallets)
        intent_id: Content-addressable hash of the transaction intent (auto-computed)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[StateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    wallets_to_create: Tuple[str, ...] = ()
    intent_id: str = field(default="")

    def __post_init__(self):
        keys = [sc.key for sc in self.state_changes]
        if len(keys) != len(set(keys)):
            raise ValueError("A transaction may write each record key at most once")
        if not self.intent_id:
            computed_id = _compute_intent_id(
                self.moves, self.state_changes, self.origin, self.wallets_to_create
            )
            object.__setattr__(self, 'intent_id', computed_id)

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves, no state changes, and no wallets to create."""
        return not self.moves and not self.state_changes and not self.wallets_to_create

    def inserted(self, prefix: str) -> Optional[RecordState]:
        """Return the new state of the first inserted record whose key starts with prefix."""
        for sc in self.state_changes:
            if sc.is_insert and sc.key.startswith(prefix):
                return sc.new_state
        return None

    def written(self, key: str) -> Optional[RecordState]:
        """Return the new state written under key, if this transaction writes it."""
        for sc in self.state_changes:
            if sc.key == key:
                return sc.new_state
        return None

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {len(self.state_changes)} changes, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    state_changes: Optional[List[StateChange]] = None,
    origin: Optional[TransactionOrigin] = None,
    wallets_to_create: Optional[Tuple[str, ...]] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves and state changes.

    This is the standard way to create transactions.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: List of moves to include in the transaction
        state_changes: Optional list of StateChange objects
        origin: Transaction origin (defaults to a SYSTEM origin)
        wallets_to_create: Optional wallets to register before executing moves

    Returns:
        A PendingTransaction ready for execution

    Example:
        def compute_top_up(view, user, amount):
            moves = [Move(amount, "KRW", SYSTEM_WALLET, user, "top_up_001")]
            return build_transaction(view, moves, wallets_to_create=(user,))
    """
    if origin is None:
        origin = TransactionOrigin(
            origin_type=OriginType.SYSTEM,
            source_id="system",
        )

    # Deep copy state changes to prevent mutation
    copied_changes: Tuple[StateChange, ...] = ()
    if state_changes:
        copied_changes = tuple(
            StateChange(
                key=sc.key,
                old_state=copy.deepcopy(sc.old_state),
                new_state=copy.deepcopy(sc.new_state),
                base_version=sc.base_version,
            )
            for sc in state_changes
        )

    return PendingTransaction(
        moves=tuple(moves),
        state_changes=copied_changes,
        origin=origin,
        timestamp=view.current_time,
        wallets_to_create=tuple(wallets_to_create or ()),
    )


def empty_pending_transaction(view: LedgerView) -> PendingTransaction:
    """
    Create an empty PendingTransaction (no moves, no state changes).

    Use this when a workflow function has nothing to do.
    """
    return PendingTransaction(
        moves=(),
        state_changes=(),
        origin=TransactionOrigin(OriginType.SYSTEM, "noop"),
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Created by the ledger when executing a PendingTransaction.

    Attributes:
        moves: Tuple of value transfers between wallets
        state_changes: Tuple of record writes
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering)
        wallets_to_create: Wallets registered by this transaction
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    state_changes: Tuple[StateChange, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    wallets_to_create: Tuple[str, ...] = ()
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves and not self.state_changes and not self.wallets_to_create:
            raise ValueError("Transaction must have moves, state_changes, or wallets_to_create")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        w = 100
        bar = "─" * w

        def pad(text: str) -> str:
            if len(text) > w:
                return text[:w-3] + "..."
            return text + " " * (w - len(text))

        lines = [
            "",
            f"┌{bar}┐",
            f"│{pad(' Transaction: ' + self.exec_id)}│",
            f"├{bar}┤",
            f"│{pad('   intent_id      : ' + self.intent_id)}│",
            f"│{pad('   execution_time : ' + str(self.execution_time))}│",
            f"│{pad('   sequence       : ' + str(self.sequence_number))}│",
            f"│{pad('   origin         : ' + str(self.origin))}│",
        ]
        lines.append(f"├{bar}┤")
        lines.append(f"│{pad(' Moves (' + str(len(self.moves)) + '):')}│")
        for i, move in enumerate(self.moves):
            move_str = f"   [{i}] {move.quantity} {move.unit_symbol}: {move.source} → {move.dest}"
            lines.append(f"│{pad(move_str)}│")
        if self.state_changes:
            lines.append(f"├{bar}┤")
            lines.append(f"│{pad(' State Changes (' + str(len(self.state_changes)) + '):')}│")
            for sc in self.state_changes:
                marker = "+" if sc.is_insert else "~"
                lines.append(f"│{pad('   ' + marker + ' [' + sc.key + ']')}│")
                if not sc.is_insert:
                    for field_name, (old_val, new_val) in sc.changed_fields().items():
                        lines.append(f"│{pad(f'      {field_name}: {old_val!r} → {new_val!r}')}│")
        lines.append(f"└{bar}┘")
        return "\n".join(lines)


def _freeze_state(state: Optional[RecordState]) -> Tuple[Tuple[str, Any], ...]:
    """
    Convert a mutable state dict to an immutable frozen representation.

    Returns:
        Tuple of (key, value) pairs, sorted by key for determinism
    """
    if not state:
        return ()
    return tuple(sorted(state.items()))


def _thaw_state(frozen_state: Tuple[Tuple[str, Any], ...]) -> RecordState:
    """Convert a frozen state representation back to a mutable dict."""
    return dict(frozen_state)


@dataclass(frozen=True, slots=True)
class Record:
    """
    A stored record: a versioned, frozen state snapshot under a key.

    Attributes:
        key: Storage key (e.g., "slot:abc", "settlement:abc:2025-01-02")
        version: Starts at 1 on insert, incremented by every update
        _frozen_state: Internal frozen state representation
    """
    key: str
    version: int
    _frozen_state: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)

    @property
    def state(self) -> RecordState:
        """Return a deep copy of the state so callers cannot mutate the record."""
        return copy.deepcopy(_thaw_state(self._frozen_state))


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a currency (balance bucket) in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "KRW", "KRW_FREE").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (CASH or FREE_CASH).
        min_balance: Minimum allowed balance in any wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None

    def round(self, value: Decimal) -> Decimal:
        """
        Round a value to this unit's decimal precision using quantize.

        Returns the value unchanged if decimal_places is None.
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        rounding_mode = DECIMAL_ROUNDING.get(self.unit_type, ROUND_HALF_EVEN)
        return value.quantize(quantizer, rounding=rounding_mode)


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def currency(
    symbol: str,
    name: str,
    decimal_places: int = 0,
    unit_type: str = UNIT_TYPE_CASH,
) -> Unit:
    """
    Create a currency unit for one balance bucket.

    Args:
        symbol: Currency code (e.g., "KRW", "KRW_FREE").
        name: Full name of the currency (e.g., "Korean Won").
        decimal_places: Number of decimal places for amounts (default: 0).
        unit_type: UNIT_TYPE_CASH for the paid bucket, UNIT_TYPE_FREE_CASH for the free bucket.

    Returns:
        A Unit with minimum balance 0: user and escrow wallets cannot be
        overdrawn. Only SYSTEM_WALLET may go negative (issuance).
    """
    if not symbol or not symbol.strip():
        raise ValueError("currency symbol cannot be empty")
    if decimal_places < 0:
        raise ValueError(f"decimal_places must be non-negative, got {decimal_places}")
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=unit_type,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
    )
