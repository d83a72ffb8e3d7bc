from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.business_time import as_utc
from app.services.repositories import ActionLogKind, ActionLogRepository


@dataclass(frozen=True)
class DedupResult:
    accepted: list[str]
    skipped: list[str]


def dedup_window_start(now: datetime, deduplicate_days: int) -> datetime:
    return as_utc(now) - timedelta(days=deduplicate_days)


def apply_dedup(
    candidates: Sequence[str],
    *,
    flow_id: str,
    deduplicate_days: int | None,
    log_repository: ActionLogRepository,
    kind: ActionLogKind,
    now: datetime,
) -> DedupResult:
    """Drop candidates this flow already acted on inside the trailing window.

    Only successful log rows of the same flow count; other flows never share
    a window. ``deduplicate_days=None`` passes every candidate through.
    """
    if not deduplicate_days:
        return DedupResult(accepted=list(candidates), skipped=[])

    ordered = list(dict.fromkeys(candidates))
    acted = log_repository.acted_phones(
        flow_id=flow_id,
        kind=kind,
        since=dedup_window_start(now, deduplicate_days),
    )
    accepted = [phone for phone in ordered if phone not in acted]
    skipped = [phone for phone in ordered if phone in acted]
    return DedupResult(accepted=accepted, skipped=skipped)
