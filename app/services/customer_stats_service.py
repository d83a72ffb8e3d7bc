from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TypeVar

from app.core.business_time import as_utc, elapsed_days, month_span, to_local
from app.services.segment_service import TicketSubType, infer_ticket_type

T = TypeVar("T")


@dataclass(frozen=True)
class VisitFact:
    visited_at: datetime
    duration_minutes: int | None = None
    seat: str | None = None


@dataclass(frozen=True)
class PurchaseFact:
    purchased_at: datetime
    ticket_name: str
    amount: float


@dataclass(frozen=True)
class CustomerStats:
    avg_duration: int | None
    peak_hour: int | None
    visit_cycle_days: int | None
    purchase_cycle_days: int | None
    monthly_avg_spent: int
    favorite_ticket: str | None
    favorite_ticket_type: TicketSubType | None
    favorite_seat: str | None


def calculate_customer_stats(
    visits: Iterable[VisitFact],
    purchases: Iterable[PurchaseFact],
) -> CustomerStats:
    ordered_visits = sorted(visits, key=lambda item: as_utc(item.visited_at))
    ordered_purchases = sorted(purchases, key=lambda item: as_utc(item.purchased_at))
    return CustomerStats(
        avg_duration=average_duration(ordered_visits),
        peak_hour=peak_hour(ordered_visits),
        visit_cycle_days=cycle_days([item.visited_at for item in ordered_visits]),
        purchase_cycle_days=cycle_days([item.purchased_at for item in ordered_purchases]),
        monthly_avg_spent=monthly_avg_spent(ordered_purchases),
        favorite_ticket=favorite_ticket(ordered_purchases),
        favorite_ticket_type=favorite_ticket_type(ordered_purchases),
        favorite_seat=favorite_seat(ordered_visits),
    )


def most_frequent(values: Iterable[T]) -> T | None:
    """Mode of the values; on a tie the value encountered first wins."""
    counts: dict[T, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1
    if not counts:
        return None
    # sorted() is stable and dicts keep insertion order, so ties keep first-seen order.
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)[0][0]


def average_duration(visits: Sequence[VisitFact]) -> int | None:
    durations = [item.duration_minutes for item in visits if item.duration_minutes is not None and item.duration_minutes > 0]
    if not durations:
        return None
    return round(sum(durations) / len(durations))


def peak_hour(visits: Sequence[VisitFact]) -> int | None:
    return most_frequent(to_local(item.visited_at).hour for item in visits)


def cycle_days(instants: Sequence[datetime]) -> int | None:
    if len(instants) < 2:
        return None
    ordered = sorted(as_utc(item) for item in instants)
    gaps = []
    for previous, current in zip(ordered, ordered[1:]):
        gap = elapsed_days(current, previous)
        if gap > 0:
            gaps.append(gap)
    if not gaps:
        return None
    return round(sum(gaps) / len(gaps))


def monthly_avg_spent(purchases: Sequence[PurchaseFact]) -> int:
    if not purchases:
        return 0
    first = min(as_utc(item.purchased_at) for item in purchases)
    last = max(as_utc(item.purchased_at) for item in purchases)
    total = sum(float(item.amount or 0) for item in purchases)
    return round(total / month_span(first, last))


def favorite_ticket(purchases: Sequence[PurchaseFact]) -> str | None:
    return most_frequent(item.ticket_name for item in purchases if (item.amount or 0) > 0)


def favorite_ticket_type(purchases: Sequence[PurchaseFact]) -> TicketSubType | None:
    return most_frequent(infer_ticket_type(item.ticket_name) for item in purchases if (item.amount or 0) > 0)


def favorite_seat(visits: Sequence[VisitFact]) -> str | None:
    return most_frequent(item.seat for item in visits if item.seat)
