"""
conftest.py - Shared pytest fixtures for slotledger tests

Provides common fixtures used across unit, functional and conformance tests:
- Ledgers (empty, with currencies registered)
- Collaborators (campaign catalog, recording notifier, rank checker, threads)
- Engine setups at each lifecycle stage (funded buyer, accepted request, active slot)
"""

from decimal import Decimal

import pytest

from slotledger import (
    Ledger,
    RecordingNotifier, RecordingRankChecker, InMemoryInquiryThreads,
    RequestTerms, FinalTerms,
    currency,
)

from tests.helpers import START, CAMPAIGN_ID, SELLER, BUYER, default_catalog, make_engine


@pytest.fixture
def ledger():
    """Empty test-mode ledger at 2025-01-01 09:00."""
    return Ledger("test", START, test_mode=True)


@pytest.fixture
def krw_ledger(ledger):
    """Ledger with the paid KRW currency registered."""
    ledger.register_unit(currency("KRW", "Korean Won"))
    return ledger


@pytest.fixture
def catalog():
    return default_catalog()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rank_checker():
    return RecordingRankChecker()


@pytest.fixture
def threads():
    return InMemoryInquiryThreads(clock=lambda: START)


@pytest.fixture
def engine(ledger, catalog, notifier, rank_checker, threads):
    """Engine wired to recording collaborators, with deterministic ids."""
    return make_engine(ledger, catalog, notifier, rank_checker, threads)


@pytest.fixture
def funded_buyer(engine):
    """The buyer holds 200,000 KRW of paid balance."""
    engine.deposit(BUYER, Decimal("200000"))
    return engine


@pytest.fixture
def accepted_request(funded_buyer):
    """A request accepted at 10,000 KRW/day for 10 days, target rank 3."""
    engine = funded_buyer
    request = engine.create_request(
        CAMPAIGN_ID, BUYER,
        RequestTerms(
            target_rank=3, guarantee_count=10,
            initial_budget=Decimal("9000"), keywords=("running shoes",),
        ),
    )
    return engine.accept_negotiation(request.id, SELLER, FinalTerms(Decimal("10000"), 10))


@pytest.fixture
def active_slot(funded_buyer, accepted_request):
    """A purchased and approved slot (110,000 KRW escrowed)."""
    engine = funded_buyer
    slot = engine.purchase_slot(accepted_request.id, BUYER)
    return engine.approve_slot(slot.id, SELLER)
