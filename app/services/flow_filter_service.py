from dataclasses import dataclass
from datetime import datetime, timedelta

from app.core.business_time import as_utc, elapsed_days, end_of_local_day, start_of_local_day
from app.core.config import settings
from app.schemas.automation import FilterConfig, normalize_phone
from app.services.errors import BranchScopeError
from app.services.repositories import CustomerRecord, CustomerRepository
from app.services.segment_service import SegmentSnapshot, segment_snapshot

ROLE_ADMIN = "ADMIN"
ROLE_BRANCH = "BRANCH"


@dataclass(frozen=True)
class BranchScope:
    role: str
    branch_id: str | None

    def allows(self, branch_id: str) -> bool:
        if self.role == ROLE_ADMIN:
            return True
        return self.role == ROLE_BRANCH and bool(self.branch_id) and self.branch_id == branch_id


@dataclass(frozen=True)
class TargetSelection:
    target_mode: str
    phones: list[str]
    customer_ids: dict[str, str]
    excluded_phones: list[str]


def ensure_branch_scope(scope: BranchScope, branch_id: str) -> None:
    if not scope.allows(branch_id):
        raise BranchScopeError("Branch is outside the caller's scope")


def segment_population(
    customers: list[CustomerRecord],
    *,
    recent_counts: dict[str, int],
    reference: datetime,
    range_start: datetime | None = None,
) -> dict[str, SegmentSnapshot]:
    return {
        customer.id: segment_snapshot(
            customer,
            recent_visit_count=recent_counts.get(customer.id, 0),
            reference_date=reference,
            range_start=range_start,
        )
        for customer in customers
    }


def recent_visit_window(reference: datetime) -> tuple[datetime, datetime]:
    until = as_utc(reference)
    return until - timedelta(days=settings.segment_recent_visit_window_days), until


def customer_segments(
    repository: CustomerRepository,
    customer: CustomerRecord,
    *,
    reference: datetime,
) -> SegmentSnapshot:
    since, until = recent_visit_window(reference)
    recent_counts = repository.recent_visit_counts(customer.main_branch_id, since=since, until=until)
    return segment_population([customer], recent_counts=recent_counts, reference=reference)[customer.id]


def load_branch_segments(
    repository: CustomerRepository,
    *,
    branch_id: str,
    reference: datetime,
    range_start: datetime | None = None,
) -> tuple[list[CustomerRecord], dict[str, SegmentSnapshot]]:
    customers = repository.list_branch_customers(branch_id)
    since, until = recent_visit_window(reference)
    recent_counts = repository.recent_visit_counts(branch_id, since=since, until=until)
    snapshots = segment_population(
        customers,
        recent_counts=recent_counts,
        reference=reference,
        range_start=range_start,
    )
    return customers, snapshots


def _matches_predicates(customer: CustomerRecord, config: FilterConfig, *, reference: datetime) -> bool:
    if config.first_visit_from and as_utc(customer.first_visit_date) < start_of_local_day(config.first_visit_from):
        return False
    if config.first_visit_to and as_utc(customer.first_visit_date) > end_of_local_day(config.first_visit_to):
        return False
    if config.min_visits is not None and customer.total_visits < config.min_visits:
        return False
    if config.max_visits is not None and customer.total_visits > config.max_visits:
        return False
    if config.min_spent is not None and customer.total_spent < config.min_spent:
        return False
    if config.max_spent is not None and customer.total_spent > config.max_spent:
        return False
    if config.inactive_days is not None:
        if customer.last_visit_date is None:
            return False
        if elapsed_days(reference, customer.last_visit_date) < config.inactive_days:
            return False
    if config.genders and customer.gender not in config.genders:
        return False
    if config.age_groups and customer.age_group not in config.age_groups:
        return False
    return True


def _select_manual(
    repository: CustomerRepository,
    config: FilterConfig,
    *,
    branch_id: str,
) -> TargetSelection:
    requested = [normalize_phone(phone) for phone in config.manual_phones]
    requested = [phone for phone in dict.fromkeys(requested) if phone]
    known = {customer.phone: customer for customer in repository.find_by_phones(requested)}
    phones: list[str] = []
    customer_ids: dict[str, str] = {}
    excluded: list[str] = []
    for phone in requested:
        customer = known.get(phone)
        if customer is None or customer.main_branch_id != branch_id:
            excluded.append(phone)
            continue
        phones.append(phone)
        customer_ids[phone] = customer.id
    return TargetSelection(target_mode="manual", phones=phones, customer_ids=customer_ids, excluded_phones=excluded)


def _select_by_condition(
    repository: CustomerRepository,
    config: FilterConfig,
    *,
    branch_id: str,
    reference: datetime,
) -> TargetSelection:
    range_start = start_of_local_day(config.date_range.start) if config.date_range else None
    customers, snapshots = load_branch_segments(
        repository,
        branch_id=branch_id,
        reference=reference,
        range_start=range_start,
    )
    visit_filter = set(config.visit_segments)
    ticket_filter = set(config.ticket_segments)
    phones: list[str] = []
    customer_ids: dict[str, str] = {}
    for customer in customers:
        if customer.main_branch_id != branch_id or customer.phone in customer_ids:
            continue
        snapshot = snapshots[customer.id]
        if visit_filter and snapshot.visit_segment not in visit_filter:
            continue
        if ticket_filter and snapshot.ticket_segment not in ticket_filter:
            continue
        if not _matches_predicates(customer, config, reference=reference):
            continue
        phones.append(customer.phone)
        customer_ids[customer.phone] = customer.id
    return TargetSelection(target_mode="condition", phones=phones, customer_ids=customer_ids, excluded_phones=[])


def resolve_flow_targets(
    repository: CustomerRepository,
    config: FilterConfig,
    *,
    branch_id: str,
    scope: BranchScope,
    reference: datetime,
) -> TargetSelection:
    """Target phones for one execution of a flow owned by ``branch_id``.

    Manual phone lists are intersected with the branch's own customers; phones
    that are unknown or belong to another branch are dropped and reported in
    ``excluded_phones`` instead of raising.
    """
    ensure_branch_scope(scope, branch_id)
    if config.target_mode == "manual" and config.manual_phones:
        return _select_manual(repository, config, branch_id=branch_id)
    return _select_by_condition(repository, config, branch_id=branch_id, reference=reference)
