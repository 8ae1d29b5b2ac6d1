"""
collaborators.py - Interfaces the engine consumes, with in-memory implementations

The engine borrows campaign terms and delivers side effects through these
protocols. It never owns their state.

Classes:
- CampaignCatalog / CampaignTerms: read-only contract bounds per campaign
- Notifier / Notification: fire-and-forget user notifications
- RankChecker: fire-and-forget search-rank check trigger
- InquiryThreads: 1:1 buyer/seller conversation threads per slot
- StaticCampaignCatalog, RecordingNotifier, RecordingRankChecker,
  InMemoryInquiryThreads: in-process implementations for tests and demos
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

GUARANTEE_SLOT_TYPE = "guarantee"


@dataclass(frozen=True)
class CampaignTerms:
    """
    Contract bounds of a campaign, as published by the catalog.

    seller_id is the campaign owner; only guarantee-typed campaigns accept
    guarantee-slot requests.
    """
    campaign_id: str
    seller_id: str
    name: str = ""
    service_type: str = ""
    slot_type: str = GUARANTEE_SLOT_TYPE
    min_guarantee_price: Optional[Decimal] = None
    max_guarantee_price: Optional[Decimal] = None
    guarantee_unit: str = "daily"

    @property
    def is_guarantee(self) -> bool:
        return self.slot_type == GUARANTEE_SLOT_TYPE

    def price_in_bounds(self, price: Decimal) -> bool:
        if self.min_guarantee_price is not None and price < self.min_guarantee_price:
            return False
        if self.max_guarantee_price is not None and price > self.max_guarantee_price:
            return False
        return True


@dataclass(frozen=True)
class Notification:
    subject: str
    message: str = ""
    params: Dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CampaignCatalog(Protocol):
    """Read-only source of campaign terms. Returns None for unknown campaigns."""

    def get_campaign_terms(self, campaign_id: str) -> Optional[CampaignTerms]:
        ...


@runtime_checkable
class Notifier(Protocol):
    def notify(self, user_id: str, notification: Notification) -> None:
        ...


@runtime_checkable
class RankChecker(Protocol):
    def trigger_rank_check(self, slot_id: str, keywords: Tuple[str, ...], keyword_id: Optional[str]) -> None:
        ...


@runtime_checkable
class InquiryThreads(Protocol):
    def ensure_inquiry_thread(self, buyer_id: str, seller_id: str, campaign_id: str, slot_id: str) -> str:
        """Return the open thread for slot_id, creating it if none exists."""
        ...


class StaticCampaignCatalog:
    """
    Catalog backed by a dict of CampaignTerms.

    Terms can be added or replaced at any time.
    """

    def __init__(self, campaigns: Optional[List[CampaignTerms]] = None):
        self.campaigns: Dict[str, CampaignTerms] = {}
        for terms in campaigns or ():
            self.add(terms)

    def add(self, terms: CampaignTerms) -> None:
        self.campaigns[terms.campaign_id] = terms

    def get_campaign_terms(self, campaign_id: str) -> Optional[CampaignTerms]:
        return self.campaigns.get(campaign_id)

    def __repr__(self):
        return f"StaticCampaignCatalog({len(self.campaigns)} campaigns)"


class RecordingNotifier:
    """Notifier that keeps every delivered notification in memory."""

    def __init__(self):
        self.sent: List[Tuple[str, Notification]] = []

    def notify(self, user_id: str, notification: Notification) -> None:
        self.sent.append((user_id, notification))

    def subjects_for(self, user_id: str) -> List[str]:
        return [n.subject for uid, n in self.sent if uid == user_id]


class RecordingRankChecker:
    """Rank checker that records each trigger instead of calling a search service."""

    def __init__(self):
        self.triggered: List[Tuple[str, Tuple[str, ...], Optional[str]]] = []

    def trigger_rank_check(self, slot_id: str, keywords: Tuple[str, ...], keyword_id: Optional[str]) -> None:
        self.triggered.append((slot_id, tuple(keywords), keyword_id))


@dataclass
class InquiryThread:
    thread_id: str
    buyer_id: str
    seller_id: str
    campaign_id: str
    slot_id: str
    created_at: datetime
    is_open: bool = True


class InMemoryInquiryThreads:
    """Thread store holding at most one open thread per slot."""

    def __init__(self, clock=datetime.now):
        self.threads: Dict[str, InquiryThread] = {}
        self._clock = clock

    def find_open_thread(self, slot_id: str) -> Optional[InquiryThread]:
        for thread in self.threads.values():
            if thread.slot_id == slot_id and thread.is_open:
                return thread
        return None

    def ensure_inquiry_thread(self, buyer_id: str, seller_id: str, campaign_id: str, slot_id: str) -> str:
        existing = self.find_open_thread(slot_id)
        if existing is not None:
            return existing.thread_id
        thread_id = f"thread-{len(self.threads) + 1}"
        self.threads[thread_id] = InquiryThread(
            thread_id=thread_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            campaign_id=campaign_id,
            slot_id=slot_id,
            created_at=self._clock(),
        )
        return thread_id

    def close(self, thread_id: str) -> None:
        self.threads[thread_id].is_open = False
