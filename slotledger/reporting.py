"""
reporting.py - Progress and statistics over guarantee slots

Read-only helpers; nothing here mutates the ledger.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Optional

from .core import LedgerView
from .records import (
    GuaranteeSlot, GuaranteeSlotRequest, RequestStatus, Settlement, SlotStatus,
)


@dataclass(frozen=True, slots=True)
class SlotStats:
    """
    Aggregate figures for one seller (or for everyone).

    Attributes:
        total_requests: Quote requests received
        active_slots: Slots currently in progress
        completed_slots: Slots that reached their guarantee count
        total_revenue: Amount released to sellers by settlements
        avg_negotiated_price: Mean accepted daily amount (0 if none accepted)
        success_rate: Percent of requests that ended in a purchase
    """
    total_requests: int
    active_slots: int
    completed_slots: int
    total_revenue: Decimal
    avg_negotiated_price: Decimal
    success_rate: int


def calculate_progress(completed_count: int, guarantee_count: int) -> int:
    """Completion percentage, rounded to the nearest integer."""
    if guarantee_count <= 0:
        return 0
    percent = Decimal(completed_count) * 100 / Decimal(guarantee_count)
    return int(percent.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def estimate_completion_date(
    start_date: date,
    completed_count: int,
    guarantee_count: int,
    today: date,
) -> Optional[date]:
    """
    Project the completion date from the pace so far.

    Uses the average number of days per confirmed cycle. Returns None until
    the first cycle is confirmed, and today once everything is complete.
    """
    if completed_count <= 0:
        return None
    remaining = guarantee_count - completed_count
    if remaining <= 0:
        return today
    elapsed_days = max((today - start_date).days, 1)
    days_per_cycle = elapsed_days / completed_count
    return today + timedelta(days=round(days_per_cycle * remaining))


def summarize(view: LedgerView, seller_id: Optional[str] = None) -> SlotStats:
    """Compute SlotStats from the records in view, optionally for one seller."""
    requests = [
        GuaranteeSlotRequest.from_state(state) for _, state in view.list_records("request:")
    ]
    slots = [GuaranteeSlot.from_state(state) for _, state in view.list_records("slot:")]
    if seller_id is not None:
        requests = [r for r in requests if r.seller_id == seller_id]
        slots = [s for s in slots if s.seller_id == seller_id]

    slot_ids = {s.id for s in slots}
    settlements = [
        Settlement.from_state(state) for _, state in view.list_records("settlement:")
    ]
    revenue = sum((s.amount for s in settlements if s.slot_id in slot_ids), Decimal("0"))

    prices = [r.final_daily_amount for r in requests if r.final_daily_amount is not None]
    avg_price = Decimal("0")
    if prices:
        avg_price = (sum(prices, Decimal("0")) / len(prices)).quantize(Decimal("0.01"))

    purchased = sum(1 for r in requests if r.status == RequestStatus.PURCHASED)
    success_rate = calculate_progress(purchased, len(requests))

    return SlotStats(
        total_requests=len(requests),
        active_slots=sum(1 for s in slots if s.status == SlotStatus.ACTIVE),
        completed_slots=sum(1 for s in slots if s.status == SlotStatus.COMPLETED),
        total_revenue=revenue,
        avg_negotiated_price=avg_price,
        success_rate=success_rate,
    )
