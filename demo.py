#!/usr/bin/env python3
"""
demo.py - Interactive Tutorial: A Guarantee Slot from Quote to Refund

This is a pedagogical walkthrough of the slot ledger. Each step builds on
the previous one. Press Enter to advance.

WHAT YOU'LL LEARN:
  1-3:   Foundation   - The ledger, the engine, funding a buyer
  4-5:   Negotiation  - Quote requests, counter-offers, acceptance
  6-7:   Escrow       - Purchase with VAT, approval side effects
  8-9:   Settlement   - Daily rank confirmation, once per day
  10-11: Refunds      - Seller-initiated refund, buyer confirmation
  12:    Reporting    - Progress and seller statistics

Run:
    python demo.py           # Interactive mode (press Enter for each step)
    python demo.py --quick   # Run all steps without pausing
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
import logging
import sys

from slotledger import (
    Ledger, GuaranteeEngine, EngineConfig,
    CampaignTerms, StaticCampaignCatalog,
    RecordingNotifier, RecordingRankChecker, InMemoryInquiryThreads,
    RequestTerms, FinalTerms, Proposal, MessageKind,
    AlreadyConfirmedToday, InsufficientFunds,
    SYSTEM_WALLET, calculate_progress, estimate_completion_date, label, summarize,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class DemoConfig:
    """Configuration for the tutorial. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 9, 0, 0)

    buyer: str = "buyer"
    seller: str = "seller"
    campaign_id: str = "camp-shoes"

    buyer_deposit: Decimal = Decimal("200000")
    initial_budget: Decimal = Decimal("9000")
    counter_offer: Decimal = Decimal("12000")
    final_daily: Decimal = Decimal("10000")
    guarantee_count: int = 10
    target_rank: int = 3

    days_delivered: int = 3


CONFIG = DemoConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    """Pause for user input unless in quick mode."""
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str, objective: str):
    """Print a step header with learning objective."""
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}")
    print(f"\nObjective: {objective}\n")


def section_header(text: str):
    """Print a section header within a step."""
    print(f"\n--- {text} ---\n")


def show_escrow(engine: GuaranteeEngine, slot_id: str):
    holding = engine.get_holding(slot_id)
    print(f"Buyer side:   {holding.buyer_holding_amount:>10,}")
    print(f"Seller side:  {holding.seller_holding_amount:>10,}")
    print(f"Refunded:     {holding.refunded_amount:>10,}")
    print(f"Total:        {holding.total_amount:>10,}   balanced={holding.is_balanced}")


# ============================================================================
# PHASE 1: FOUNDATION (Steps 1-3)
# ============================================================================

def step_01_ledger():
    """Create the ledger that will hold balances and records."""
    step_header(1, "The Ledger",
        "Balances and records live in one ledger; every change is one atomic transaction.")

    print("""
    The ledger tracks two kinds of state:

    1. BALANCES - who holds how much of each currency
    2. RECORDS  - versioned documents (requests, slots, settlements, refunds)

    A transaction carries both money moves and record writes. Either all of
    it applies, or none of it does.
    """)
    wait_for_enter()

    ledger = Ledger("demo", CONFIG.start_time)
    print(f"Ledger name:        {ledger.name}")
    print(f"Current time:       {ledger.current_time}")
    print(f"Registered wallets: {sorted(ledger.registered_wallets)}")
    return ledger


def step_02_engine(ledger: Ledger):
    """Wire the engine to a catalog and recording collaborators."""
    step_header(2, "The Engine",
        "The engine computes a transaction, commits it, then publishes side effects.")

    catalog = StaticCampaignCatalog([
        CampaignTerms(
            CONFIG.campaign_id, seller_id=CONFIG.seller, name="Running shoes search ads",
            min_guarantee_price=Decimal("5000"), max_guarantee_price=Decimal("50000"),
        ),
    ])
    notifier = RecordingNotifier()
    rank_checker = RecordingRankChecker()
    threads = InMemoryInquiryThreads(clock=lambda: ledger.current_time)
    engine = GuaranteeEngine(
        ledger, catalog,
        notifier=notifier, rank_checker=rank_checker, inquiry_threads=threads,
        config=EngineConfig(),
    )

    section_header("Registered Currencies")
    for symbol in ledger.list_units():
        unit = ledger.get_unit(symbol)
        print(f"{symbol:<10} {unit.name:<20} min_balance={unit.min_balance}")

    section_header("Key Insight")
    print("""
    Notifications, rank checks and inquiry threads run only after a commit
    succeeds. A failing notifier is logged and parked; it never undoes money.
    """)
    return engine, notifier, rank_checker, threads


def step_03_deposit(engine: GuaranteeEngine):
    """Fund the buyer's paid balance."""
    step_header(3, "Funding the Buyer",
        "Money enters through the system wallet, so every supply nets to zero.")
    wait_for_enter()

    print(f">>> engine.deposit({CONFIG.buyer!r}, Decimal('{CONFIG.buyer_deposit}'))")
    engine.deposit(CONFIG.buyer, CONFIG.buyer_deposit)

    print(f"Buyer paid balance: {engine.get_paid_balance(CONFIG.buyer):,}")
    print(f"System wallet:      {engine.ledger.get_balance(SYSTEM_WALLET, 'KRW'):,}")
    print(f"KRW supply:         {engine.ledger.total_supply('KRW')}")


# ============================================================================
# PHASE 2: NEGOTIATION (Steps 4-5)
# ============================================================================

def step_04_request(engine: GuaranteeEngine, notifier: RecordingNotifier):
    """Open a quote request and negotiate."""
    step_header(4, "Quote Request and Counter-Offer",
        "Requests carry the target rank and the number of guaranteed days.")
    wait_for_enter()

    request = engine.create_request(
        CONFIG.campaign_id, CONFIG.buyer,
        RequestTerms(
            target_rank=CONFIG.target_rank, guarantee_count=CONFIG.guarantee_count,
            initial_budget=CONFIG.initial_budget, keywords=("running shoes",),
        ),
        message="Can you keep us in the top 3?",
    )
    engine.post_message(
        request.id, CONFIG.seller, MessageKind.COUNTER_OFFER, "Top 3 costs more.",
        Proposal(daily_amount=CONFIG.counter_offer),
    )

    section_header("Conversation")
    for message in engine.get_messages(request.id):
        print(f"#{message.sequence} {message.sender_id:<7} {message.kind.value:<14} {message.body}")

    section_header("Notifications")
    for user_id, notification in notifier.sent:
        print(f"{user_id:<7} {notification.subject}")

    print(f"\nRequest status: {label(engine.get_request(request.id).status)}")
    return request


def step_05_accept(engine: GuaranteeEngine, request_id: str):
    """Fix the final terms."""
    step_header(5, "Acceptance",
        "Acceptance fixes the final daily price; the buyer may now purchase.")
    wait_for_enter()

    accepted = engine.accept_negotiation(
        request_id, CONFIG.seller, FinalTerms(CONFIG.final_daily, CONFIG.guarantee_count), message="Deal.",
    )
    print(f"Final daily amount: {accepted.final_daily_amount:,}")
    print(f"Guarantee count:    {accepted.guarantee_count}")
    print(f"Status:             {label(accepted.status)}")
    return accepted


# ============================================================================
# PHASE 3: ESCROW (Steps 6-7)
# ============================================================================

def step_06_purchase(engine: GuaranteeEngine, request_id: str):
    """Purchase moves the VAT-inclusive total into escrow."""
    step_header(6, "Purchase into Escrow",
        "The total (daily x count, plus VAT) leaves the buyer in one transaction.")
    wait_for_enter()

    slot = engine.purchase_slot(request_id, CONFIG.buyer, "spring sale")
    print(f"Slot total:          {slot.total_amount:,}")
    print(f"Buyer paid balance:  {engine.get_paid_balance(CONFIG.buyer):,}")
    section_header("Escrow")
    show_escrow(engine, slot.id)
    return slot


def step_07_approve(engine, slot_id, rank_checker, threads):
    """Seller approval activates the slot and triggers side effects."""
    step_header(7, "Approval",
        "Approval activates the slot, triggers one rank check and opens an inquiry thread.")
    wait_for_enter()

    slot = engine.approve_slot(slot_id, CONFIG.seller)
    print(f"Slot status:     {label(slot.status)}")
    print(f"Rank checks:     {rank_checker.triggered}")
    thread = threads.find_open_thread(slot_id)
    print(f"Inquiry thread:  {thread.thread_id if thread else None}")
    return slot


# ============================================================================
# PHASE 4: SETTLEMENT (Steps 8-9)
# ============================================================================

def step_08_daily_settlement(engine: GuaranteeEngine, slot_id: str):
    """Confirm the rank on several days."""
    step_header(8, "Daily Settlement",
        "Each day the target rank is met, one day's amount moves to the seller side.")
    wait_for_enter()

    ranks = [2, 5, 1, 3]
    for day, rank in enumerate(ranks[:CONFIG.days_delivered + 1]):
        if day:
            engine.ledger.advance_time(engine.ledger.current_time + timedelta(days=1))
        settlement = engine.confirm_rank_achievement(slot_id, CONFIG.seller, rank)
        met = "met" if settlement.guarantee_met else "missed"
        print(f"{settlement.confirmed_date}  rank {rank}  {met:<6}  moved {settlement.amount:>7,}")

    section_header("Escrow")
    show_escrow(engine, slot_id)


def step_09_once_per_day(engine: GuaranteeEngine, slot_id: str):
    """A second confirmation on the same day is refused."""
    step_header(9, "Once Per Day",
        "The settlement key includes the date, so a second write for today cannot commit.")
    wait_for_enter()

    log_size = len(engine.ledger.transaction_log)
    try:
        engine.confirm_rank_achievement(slot_id, CONFIG.seller, 1)
    except AlreadyConfirmedToday as exc:
        print(f"Refused: {exc.code}: {exc}")
    print(f"Transactions before/after: {log_size}/{len(engine.ledger.transaction_log)}")


# ============================================================================
# PHASE 5: REFUNDS (Steps 10-11)
# ============================================================================

def step_10_initiate_refund(engine: GuaranteeEngine, slot_id: str):
    """Seller proposes returning the unearned part."""
    step_header(10, "Seller-Initiated Refund",
        "Opening a refund moves no money; the buyer must confirm.")
    wait_for_enter()

    refund = engine.initiate_refund(slot_id, CONFIG.seller, "Keyword no longer sold")
    print(f"Refund amount:  {refund.amount:,}")
    print(f"Refund status:  {label(refund.status)}")
    print(f"Slot status:    {label(engine.get_slot(slot_id).status)}")
    return refund


def step_11_confirm_refund(engine: GuaranteeEngine, slot_id: str, refund_id: str):
    """Buyer confirms; funds return from escrow."""
    step_header(11, "Buyer Confirmation",
        "Approval draws from the buyer side of escrow first, then the seller side.")
    wait_for_enter()

    engine.confirm_refund(slot_id, refund_id, CONFIG.buyer, approve=True)
    print(f"Buyer paid balance: {engine.get_paid_balance(CONFIG.buyer):,}")
    print(f"Slot status:        {label(engine.get_slot(slot_id).status)}")
    section_header("Escrow")
    show_escrow(engine, slot_id)

    section_header("Buyer Balance History")
    for entry in engine.get_balance_history(CONFIG.buyer):
        print(f"{entry.entry_type.value:<10} {entry.amount:>9,}  {entry.balance_before:>9,} -> {entry.balance_after:>9,}")


# ============================================================================
# PHASE 6: REPORTING (Step 12)
# ============================================================================

def step_12_reporting(engine: GuaranteeEngine, slot_id: str):
    """Progress and statistics are read-only views."""
    step_header(12, "Reporting",
        "Progress, completion estimates and seller statistics.")
    wait_for_enter()

    slot = engine.get_slot(slot_id)
    print(f"Progress: {calculate_progress(slot.completed_count, slot.guarantee_count)}%")
    eta = estimate_completion_date(
        slot.approved_at.date(), slot.completed_count, slot.guarantee_count, engine.ledger.current_time.date(),
    )
    print(f"Estimated completion at current pace: {eta}")

    stats = summarize(engine.ledger, CONFIG.seller)
    print(f"Requests:        {stats.total_requests}")
    print(f"Active slots:    {stats.active_slots}")
    print(f"Revenue:         {stats.total_revenue:,}")
    print(f"Avg daily price: {stats.avg_negotiated_price:,}")
    print(f"Success rate:    {stats.success_rate}%")

    section_header("Conservation")
    for symbol in engine.ledger.list_units():
        print(f"{symbol} supply: {engine.ledger.total_supply(symbol)}")

    section_header("Insufficient Funds")
    request = engine.create_request(CONFIG.campaign_id, CONFIG.buyer, RequestTerms(3, 30))
    engine.accept_negotiation(request.id, CONFIG.seller, FinalTerms(Decimal("50000"), 30))
    try:
        engine.purchase_slot(request.id, CONFIG.buyer)
    except InsufficientFunds as exc:
        print(f"Refused: {exc.code}: {exc}")


def main():
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")

    print("=" * 70)
    print("       SLOT LEDGER TUTORIAL")
    print("=" * 70)

    ledger = step_01_ledger()
    engine, notifier, rank_checker, threads = step_02_engine(ledger)
    step_03_deposit(engine)

    request = step_04_request(engine, notifier)
    step_05_accept(engine, request.id)

    slot = step_06_purchase(engine, request.id)
    step_07_approve(engine, slot.id, rank_checker, threads)

    step_08_daily_settlement(engine, slot.id)
    step_09_once_per_day(engine, slot.id)

    refund = step_10_initiate_refund(engine, slot.id)
    step_11_confirm_refund(engine, slot.id, refund.id)

    step_12_reporting(engine, slot.id)

    print("\n" + "=" * 70)
    print("       TUTORIAL COMPLETE!")
    print("=" * 70)
    print("""
    You've learned:

      - Every operation is one atomic ledger transaction
      - Escrow is two wallets per slot; the holding record is derived from them
      - Settlement is once per slot per day, enforced by the record key
      - Refunds need the other party's decision before money moves
      - Side effects run after the commit and never undo it

    Next steps:
      - See slotledger/guarantee/*.py for the workflow functions
      - Run tests: pytest tests/
    """)


if __name__ == "__main__":
    main()
