"""
Customer segment classification.

Visit segments and ticket segments are evaluated from ordered rule tables: the
first rule whose predicate matches decides the segment, and the last rule of
each table always matches, so every customer lands in exactly one segment.
"""

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum

from app.core.business_time import elapsed_days, to_instant

CHURN_AFTER_DAYS = 30
AT_RISK_AFTER_DAYS = 7
NEW_CUSTOMER_DAYS = 7
VIP_VISIT_COUNT = 20
REGULAR_VISIT_COUNT = 10
DAY_TICKET_MAX_HOURS = 12


class VisitSegment(str, Enum):
    CHURNED = "churned"
    AT_RISK_7 = "at_risk_7"
    NEW_0_7 = "new_0_7"
    VISIT_OVER20 = "visit_over20"
    VISIT_10_20 = "visit_10_20"
    VISIT_UNDER10 = "visit_under10"


class TicketSegment(str, Enum):
    FIXED_TICKET = "fixed_ticket"
    TERM_TICKET = "term_ticket"
    TIME_TICKET = "time_ticket"
    DAY_TICKET = "day_ticket"


class TicketSubType(str, Enum):
    DAY = "day"
    TIME = "time"
    TERM = "term"
    FIXED = "fixed"


VISIT_SEGMENT_LABELS: dict[VisitSegment, str] = {
    VisitSegment.CHURNED: "이탈",
    VisitSegment.AT_RISK_7: "이탈위험",
    VisitSegment.NEW_0_7: "신규",
    VisitSegment.VISIT_OVER20: "VIP",
    VisitSegment.VISIT_10_20: "단골",
    VisitSegment.VISIT_UNDER10: "일반",
}

TICKET_SEGMENT_LABELS: dict[TicketSegment, str] = {
    TicketSegment.FIXED_TICKET: "고정석",
    TicketSegment.TERM_TICKET: "기간권",
    TicketSegment.TIME_TICKET: "시간권",
    TicketSegment.DAY_TICKET: "당일권",
}


@dataclass(frozen=True)
class VisitFacts:
    last_visit_date: date | datetime | None
    first_visit_date: date | datetime
    recent_visit_count: int
    reference_date: date | datetime
    range_start: date | datetime | None = None


@dataclass(frozen=True)
class TicketFacts:
    has_fixed_seat: bool
    has_term_ticket: bool
    has_time_package: bool


@dataclass(frozen=True)
class SegmentRule:
    priority: int
    name: str
    predicate: Callable
    result: Enum


@dataclass(frozen=True)
class SegmentSnapshot:
    visit_segment: VisitSegment
    ticket_segment: TicketSegment


def _days_since_last_visit(facts: VisitFacts) -> int | None:
    if facts.last_visit_date is None:
        return None
    return elapsed_days(facts.reference_date, facts.last_visit_date)


def _is_churned(facts: VisitFacts) -> bool:
    days = _days_since_last_visit(facts)
    return days is not None and days >= CHURN_AFTER_DAYS


def _is_at_risk(facts: VisitFacts) -> bool:
    days = _days_since_last_visit(facts)
    return days is not None and days >= AT_RISK_AFTER_DAYS


def _is_new(facts: VisitFacts) -> bool:
    if facts.range_start is not None:
        first = to_instant(facts.first_visit_date)
        return to_instant(facts.range_start) <= first <= to_instant(facts.reference_date)
    return elapsed_days(facts.reference_date, facts.first_visit_date) <= NEW_CUSTOMER_DAYS


VISIT_SEGMENT_RULES: tuple[SegmentRule, ...] = (
    SegmentRule(1, "inactive_30_days", _is_churned, VisitSegment.CHURNED),
    SegmentRule(2, "inactive_7_days", _is_at_risk, VisitSegment.AT_RISK_7),
    SegmentRule(3, "first_visit_in_window", _is_new, VisitSegment.NEW_0_7),
    SegmentRule(
        4,
        "recent_visits_20_plus",
        lambda facts: facts.recent_visit_count >= VIP_VISIT_COUNT,
        VisitSegment.VISIT_OVER20,
    ),
    SegmentRule(
        5,
        "recent_visits_10_plus",
        lambda facts: facts.recent_visit_count >= REGULAR_VISIT_COUNT,
        VisitSegment.VISIT_10_20,
    ),
    SegmentRule(6, "fallback", lambda facts: True, VisitSegment.VISIT_UNDER10),
)

TICKET_SEGMENT_RULES: tuple[SegmentRule, ...] = (
    SegmentRule(1, "fixed_seat", lambda facts: facts.has_fixed_seat, TicketSegment.FIXED_TICKET),
    SegmentRule(2, "term_ticket", lambda facts: facts.has_term_ticket, TicketSegment.TERM_TICKET),
    SegmentRule(3, "time_package", lambda facts: facts.has_time_package, TicketSegment.TIME_TICKET),
    SegmentRule(4, "fallback", lambda facts: True, TicketSegment.DAY_TICKET),
)


def _first_match(rules: Iterable[SegmentRule], facts) -> Enum:
    for rule in sorted(rules, key=lambda item: item.priority):
        if rule.predicate(facts):
            return rule.result
    raise RuntimeError("Segment rule table has no fallback rule")


def classify_visit_segment(
    last_visit_date: date | datetime | None,
    first_visit_date: date | datetime,
    recent_visit_count: int,
    reference_date: date | datetime,
    range_start: date | datetime | None = None,
) -> VisitSegment:
    facts = VisitFacts(
        last_visit_date=last_visit_date,
        first_visit_date=first_visit_date,
        recent_visit_count=max(int(recent_visit_count or 0), 0),
        reference_date=reference_date,
        range_start=range_start,
    )
    return _first_match(VISIT_SEGMENT_RULES, facts)


def classify_ticket_segment(has_fixed: bool, has_term: bool, has_time_package: bool) -> TicketSegment:
    facts = TicketFacts(
        has_fixed_seat=bool(has_fixed),
        has_term_ticket=bool(has_term),
        has_time_package=bool(has_time_package),
    )
    return _first_match(TICKET_SEGMENT_RULES, facts)


def segment_snapshot(
    customer,
    *,
    recent_visit_count: int,
    reference_date: date | datetime,
    range_start: date | datetime | None = None,
) -> SegmentSnapshot:
    """Both labels for anything shaped like a Customer row."""
    return SegmentSnapshot(
        visit_segment=classify_visit_segment(
            customer.last_visit_date,
            customer.first_visit_date,
            recent_visit_count,
            reference_date,
            range_start,
        ),
        ticket_segment=classify_ticket_segment(
            customer.has_remaining_fixed_seat,
            customer.has_remaining_term_ticket,
            customer.has_remaining_time_package,
        ),
    )


def summarize_segments(snapshots: Iterable[SegmentSnapshot]) -> dict[str, dict[str, int]]:
    visit_counts = {segment.value: 0 for segment in VisitSegment}
    ticket_counts = {segment.value: 0 for segment in TicketSegment}
    for snapshot in snapshots:
        visit_counts[snapshot.visit_segment.value] += 1
        ticket_counts[snapshot.ticket_segment.value] += 1
    return {"visit": visit_counts, "ticket": ticket_counts}


_FIXED_KEYWORDS = ("고정", "fixed")
_TERM_KEYWORDS = ("기간", "정기", "주간", "월간", "2주", "4주", "weekly", "monthly")
_DAY_KEYWORDS = ("당일", "일일", "1day", "1일")
_HOUR_PATTERN = re.compile(r"(\d+(?:\.\d+)?)\s*(?:시간|hours?|hrs?|h\b)")


def infer_ticket_type(name: str | None) -> TicketSubType:
    lower = (name or "").strip().lower()
    if not lower:
        return TicketSubType.TIME
    if any(keyword in lower for keyword in _FIXED_KEYWORDS):
        return TicketSubType.FIXED
    if any(keyword in lower for keyword in _TERM_KEYWORDS):
        return TicketSubType.TERM
    hour_match = _HOUR_PATTERN.search(lower)
    if hour_match and float(hour_match.group(1)) <= DAY_TICKET_MAX_HOURS:
        return TicketSubType.DAY
    if any(keyword in lower for keyword in _DAY_KEYWORDS):
        return TicketSubType.DAY
    return TicketSubType.TIME
