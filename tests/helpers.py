"""
helpers.py - Shared constants and assertions for slotledger tests
"""

import itertools
from datetime import datetime, timedelta
from decimal import Decimal

from slotledger import (
    Ledger, GuaranteeEngine, EngineConfig,
    CampaignTerms, StaticCampaignCatalog, RequestTerms, FinalTerms,
)


START = datetime(2025, 1, 1, 9)
CAMPAIGN_ID = "camp-1"
SELLER = "seller"
BUYER = "buyer"


def counter_ids(prefix: str = "id"):
    """Deterministic id factory: id-1, id-2, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


def default_catalog() -> StaticCampaignCatalog:
    return StaticCampaignCatalog([
        CampaignTerms(
            CAMPAIGN_ID, seller_id=SELLER, name="Search ads",
            min_guarantee_price=Decimal("5000"), max_guarantee_price=Decimal("50000"),
        ),
        CampaignTerms("camp-standard", seller_id=SELLER, slot_type="standard"),
    ])


def make_engine(ledger=None, catalog=None, notifier=None, rank_checker=None, threads=None, **config):
    """Engine with deterministic ids over a fresh (or given) ledger."""
    return GuaranteeEngine(
        ledger or Ledger("test", START, test_mode=True),
        catalog or default_catalog(),
        notifier=notifier, rank_checker=rank_checker, inquiry_threads=threads,
        config=EngineConfig(**config), id_factory=counter_ids(),
    )


def next_day(ledger: Ledger, days: int = 1) -> datetime:
    """Move the ledger clock forward by whole days and return the new time."""
    new_time = ledger.current_time + timedelta(days=days)
    ledger.advance_time(new_time)
    return new_time


def verify_conservation(ledger: Ledger) -> None:
    """Every unit's supply is zero: all money was issued from the system wallet."""
    result = ledger.verify_double_entry(
        expected_supplies={symbol: Decimal("0") for symbol in ledger.units}
    )
    assert result['valid'], f"Conservation violated: {result['discrepancies']}"


def verify_escrow(engine: GuaranteeEngine, slot_id: str) -> None:
    """Holding record and escrow wallets agree: buyer + seller + refunded == total."""
    holding = engine.get_holding(slot_id)
    assert holding.is_balanced, (
        f"{slot_id}: {holding.buyer_holding_amount} + {holding.seller_holding_amount} "
        f"+ {holding.refunded_amount} != {holding.total_amount}"
    )


def snapshot(ledger: Ledger):
    """Balances and record versions, for asserting that nothing changed."""
    balances = {w: dict(b) for w, b in ledger.balances.items()}
    versions = {key: record.version for key, record in ledger.records.items()}
    return balances, versions, len(ledger.transaction_log)


def open_active_slot(engine: GuaranteeEngine, daily: Decimal = Decimal("10000"), count: int = 10,
                     target_rank: int = 3, funds: Decimal = Decimal("1000000")):
    """Deposit, negotiate, purchase and approve one slot. Returns the active slot."""
    engine.deposit(BUYER, funds)
    request = engine.create_request(CAMPAIGN_ID, BUYER, RequestTerms(target_rank=target_rank, guarantee_count=count))
    engine.accept_negotiation(request.id, SELLER, FinalTerms(daily, count))
    slot = engine.purchase_slot(request.id, BUYER)
    return engine.approve_slot(slot.id, SELLER)
