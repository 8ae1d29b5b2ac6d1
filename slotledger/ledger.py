"""
ledger.py - Stateful Double-Entry Escrow Ledger

The Ledger class is the central state manager for the guarantee-slot system.
It is the only module that mutates state, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access by pure functions
    - Executes transactions atomically (all moves and record writes succeed or all fail)
    - Maintains wallet balances, currency definitions and versioned records
    - Enforces record uniqueness and optimistic concurrency on every write
    - Always validates and always logs
"""

from __future__ import annotations
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Set, Optional, Tuple, Any
import logging
import threading
from decimal import Decimal

from .core import (
    # Types
    Transaction, Unit, Record,
    PendingTransaction,
    ExecuteResult, LedgerRejection, RejectionReason,
    BalanceMap, RecordState,
    # Constants
    SYSTEM_WALLET,
    # Exceptions
    UnitNotRegistered, WalletNotRegistered, RecordNotFound,
    DuplicateRecord, ConcurrentModification,
    # Helper functions
    _freeze_state,
)

logger = logging.getLogger(__name__)


class Ledger:
    """
    Double-entry ledger with versioned records, full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to pure
    functions that access only read-only methods.

    Design Principles:
        - Always validates: Every transaction is validated against record
          versions, balance constraints and timestamp requirements.
        - Always logs: Every transaction is recorded in the audit trail.

    Thread Safety:
        execute() is serialized by an internal lock, so the read-check-apply
        sequence for one transaction never interleaves with another. Pure
        functions may read concurrently; a stale read surfaces as
        ConcurrentModification or DuplicateRecord at execute time.

    Example:
        ledger = Ledger("main")
        ledger.register_unit(currency("KRW", "Korean Won"))
        ledger.register_wallet("buyer")

        tx = build_transaction(ledger, [
            Move(Decimal("200000"), "KRW", SYSTEM_WALLET, "buyer", "top_up_001")
        ])
        result = ledger.execute(tx)
    """

    def __init__(
        self,
        name: str,
        initial_time: Optional[datetime] = None,
        test_mode: bool = False
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
            test_mode: Enable test mode to allow set_balance() calls (default: False)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.records: Dict[str, Record] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()  # For idempotency (content-based)
        self.transaction_log: List[Transaction] = []
        self.last_rejection: str = ""
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._test_mode = test_mode
        # Monotonic sequence counter for execution ordering
        self._next_sequence: int = 0
        self._lock = threading.RLock()

        # Auto-register the system wallet (used for issuance/redemption)
        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Unknown wallets hold nothing and report zero.

        Raises:
            UnitNotRegistered: If unit_symbol is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        if wallet_id not in self.balances:
            return Decimal("0")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def has_record(self, key: str) -> bool:
        return key in self.records

    def get_record_state(self, key: str) -> RecordState:
        """
        Get a deep copy of the state stored under key.

        Raises:
            RecordNotFound: If no record exists under key
        """
        record = self.records.get(key)
        if record is None:
            raise RecordNotFound(f"Record {key} not found")
        return record.state

    def get_record_version(self, key: str) -> int:
        record = self.records.get(key)
        if record is None:
            raise RecordNotFound(f"Record {key} not found")
        return record.version

    def list_records(self, prefix: str) -> List[Tuple[str, RecordState]]:
        """Return (key, state) pairs for all records under prefix, ordered by key."""
        return [
            (key, self.records[key].state)
            for key in sorted(self.records)
            if key.startswith(prefix)
        ]

    def list_wallets(self) -> Set[str]:
        """Return a copy of all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """Return list of all registered unit symbols."""
        return list(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Get unit definition by symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def get_wallet_balances(self, wallet_id: str) -> BalanceMap:
        """
        Get all balances for a wallet.

        Raises:
            WalletNotRegistered: If wallet_id is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        return dict(self.balances[wallet_id])

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Calculate the total supply of a unit across all wallets.

        For a properly balanced ledger this equals zero: every unit credited
        to a user was debited from SYSTEM_WALLET.

        Raises:
            UnitNotRegistered: If unit is not registered
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("1e-9")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        Double-entry accounting requires that for every unit, the sum of all
        balances across all wallets equals a constant (the total supply).

        Args:
            expected_supplies: Optional dict mapping unit symbols to expected totals.
            tolerance: Maximum allowed difference for decimal comparisons.

        Returns:
            Dict with keys:
            - 'valid': bool - True if all conservation laws hold
            - 'supplies': Dict[str, Decimal] - Current total supply for each unit
            - 'discrepancies': List[Dict] - Details of any conservation violations

        Example:
            result = ledger.verify_double_entry(expected_supplies={"KRW": Decimal("0")})
            assert result['valid'], f"Conservation violated: {result['discrepancies']}"
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply

            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
                difference = abs(current_supply - expected)
                if difference > tolerance:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': current_supply,
                        'difference': difference,
                    })

        if expected_supplies:
            for unit_symbol, expected in expected_supplies.items():
                if unit_symbol not in supplies:
                    discrepancies.append({
                        'unit': unit_symbol,
                        'expected': expected,
                        'actual': Decimal("0"),
                        'difference': abs(expected),
                        'error': 'unit not registered',
                    })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Time can only move forward, never backward. The calendar day of the
        clock decides which settlement day a rank confirmation belongs to.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered
        """
        if wallet_id in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} already registered")
        self.registered_wallets.add(wallet_id)
        self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (currency bucket) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        if unit.symbol in self.units:
            raise ValueError(f"Unit {unit.symbol} already registered")
        self.units[unit.symbol] = unit
        logger.debug("Registered unit %s (%s) [%s]", unit.symbol, unit.name, unit.unit_type)

    def set_balance(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """
        Set a wallet's balance for a unit directly.

        WARNING: This method bypasses double-entry accounting and is only
        available in test mode. For production use, use build_transaction()
        and execute() instead.

        Raises:
            RuntimeError: If not in test mode
            ValueError: If wallet or unit is not registered
        """
        if not self._test_mode:
            raise RuntimeError(
                "set_balance() is only available in test mode. "
                "Use build_transaction() and execute() for production code."
            )
        if wallet_id not in self.registered_wallets:
            raise ValueError(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise ValueError(f"Unit {unit_symbol} not registered")
        self.balances[wallet_id][unit_symbol] = quantity

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """Execute a PendingTransaction atomically. See execute_detailed()."""
        return self.execute_detailed(pending)[0]

    def execute_detailed(
        self, pending: PendingTransaction
    ) -> Tuple[ExecuteResult, Optional[LedgerRejection]]:
        """
        Execute a PendingTransaction atomically and report why it was refused.

        All moves and record writes succeed together or all fail together.
        Execution is idempotent: a pending transaction with the same intent_id
        will not be applied twice.

        All transactions are fully validated against:
        - Record uniqueness and versions (optimistic concurrency)
        - Unit and wallet registration
        - Balance constraints (min/max balance limits)
        - Timestamp requirements

        Returns:
            (ExecuteResult.APPLIED, None) if successful
            (ExecuteResult.ALREADY_APPLIED, None) if transaction was already executed
            (ExecuteResult.REJECTED, rejection) if validation failed; the
              rejection belongs to this call, unlike ``last_rejection``

        Raises:
            DuplicateRecord: An insert targets an existing key
            ConcurrentModification: An update was computed against a stale record
            RecordNotFound: An update targets a missing key
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED, None

        with self._lock:
            if pending.intent_id in self.seen_intent_ids:
                logger.debug("ALREADY_APPLIED: intent_id=%s", pending.intent_id)
                return ExecuteResult.ALREADY_APPLIED, None

            # Record checks come first: nothing has been touched yet.
            self._check_state_changes(pending)

            # Track which wallets we register so we can roll back on failure
            newly_registered_wallets: List[str] = []
            for wallet_id in pending.wallets_to_create:
                if wallet_id not in self.registered_wallets:
                    self.register_wallet(wallet_id)
                    newly_registered_wallets.append(wallet_id)

            rejection = self._validate_pending(pending)
            if rejection is not None:
                for wallet_id in newly_registered_wallets:
                    self.registered_wallets.discard(wallet_id)
                    del self.balances[wallet_id]
                self.last_rejection = rejection.detail
                logger.info("REJECTED %s: %s", pending.origin, rejection.detail)
                return ExecuteResult.REJECTED, rejection

            sequence = self._next_sequence
            self._next_sequence += 1
            exec_id = self._generate_exec_id(sequence)

            tx = Transaction(
                moves=pending.moves,
                state_changes=pending.state_changes,
                origin=pending.origin,
                timestamp=pending.timestamp,
                intent_id=pending.intent_id,
                exec_id=exec_id,
                ledger_name=self.name,
                execution_time=self._current_time,
                sequence_number=sequence,
                wallets_to_create=pending.wallets_to_create,
            )

            self._execute_moves(tx.moves)
            self._apply_state_changes(tx.state_changes)

            # Log transaction (always - audit trail is mandatory)
            self.transaction_log.append(tx)
            self.seen_intent_ids.add(pending.intent_id)

        logger.debug("APPLIED %r", tx)
        return ExecuteResult.APPLIED, None

    def _check_state_changes(self, pending: PendingTransaction) -> None:
        """
        Verify every record write against the stored records.

        Inserts require an absent key. Updates require the stored version and
        state to equal the ones the change was computed against.
        """
        for sc in pending.state_changes:
            existing = self.records.get(sc.key)
            if sc.is_insert:
                if existing is not None:
                    raise DuplicateRecord(sc.key)
                continue
            if existing is None:
                raise RecordNotFound(f"Record {sc.key} not found")
            if existing.version != sc.base_version or existing.state != sc.old_state:
                logger.info(
                    "Stale write to %s: computed against v%d, stored v%d",
                    sc.key, sc.base_version, existing.version,
                )
                raise ConcurrentModification(
                    f"Record {sc.key} changed since it was read", key=sc.key
                )

    def _validate_pending(self, pending: PendingTransaction) -> Optional[LedgerRejection]:
        """
        Validate pending transaction moves against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Quantities exact at the unit's precision
        4. Balance constraint validation (min/max balance limits)

        Returns:
            None if valid, otherwise the LedgerRejection
        """
        if pending.timestamp > self._current_time:
            return LedgerRejection(RejectionReason.FUTURE_TIMESTAMP, "future timestamp")

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return LedgerRejection(
                    RejectionReason.UNIT_NOT_REGISTERED, f"unit not registered: {move.unit_symbol}"
                )
            if not self.is_registered(move.source):
                return LedgerRejection(
                    RejectionReason.WALLET_NOT_REGISTERED, f"wallet not registered: {move.source}"
                )
            if not self.is_registered(move.dest):
                return LedgerRejection(
                    RejectionReason.WALLET_NOT_REGISTERED, f"wallet not registered: {move.dest}"
                )
            unit = self.units[move.unit_symbol]
            if unit.round(move.quantity) != move.quantity:
                return LedgerRejection(
                    RejectionReason.INEXACT_QUANTITY,
                    f"{move.quantity} {move.unit_symbol} is finer than {unit.decimal_places} decimal places",
                )

        # Calculate net balance changes with proper rounding
        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt from balance validation - it can hold any balance
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue

            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                return LedgerRejection(
                    RejectionReason.BELOW_MIN_BALANCE, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
                )
            if proposed > unit.max_balance:
                return LedgerRejection(
                    RejectionReason.ABOVE_MAX_BALANCE, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"
                )

        return None

    def _execute_moves(self, moves) -> None:
        """Apply all moves to wallet balances with unit-specific rounding."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            self.balances[move.source][move.unit_symbol] = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )

    def _apply_state_changes(self, state_changes) -> None:
        """Write new record states, starting inserts at version 1."""
        for sc in state_changes:
            version = sc.base_version + 1
            self.records[sc.key] = Record(
                key=sc.key,
                version=version,
                _frozen_state=_freeze_state(sc.new_state),
            )

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a deep copy of this ledger.

        All state is fully independent: modifications to the clone will not
        affect the original ledger, and vice versa. Records are immutable and
        shared; units are frozen and shared.
        """
        cloned = Ledger.__new__(Ledger)
        cloned.name = self.name
        cloned._current_time = self._current_time
        cloned._test_mode = self._test_mode
        cloned._lock = threading.RLock()
        cloned.last_rejection = self.last_rejection

        cloned.units = dict(self.units)
        cloned.records = dict(self.records)
        cloned.registered_wallets = self.registered_wallets.copy()
        cloned.seen_intent_ids = self.seen_intent_ids.copy()
        cloned.transaction_log = list(self.transaction_log)
        cloned._next_sequence = self._next_sequence

        cloned.balances = {}
        for wallet, bals in self.balances.items():
            cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

        return cloned
