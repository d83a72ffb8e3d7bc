from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses, http_error
from app.core.business_time import end_of_local_day, local_date, utc_now
from app.core.deps import get_db
from app.core.permissions import require_roles, resolve_branch_id
from app.core.security_current import UserAccess
from app.models.customer import Customer
from app.schemas.common import PaginationMeta
from app.schemas.customer import (
    CustomerListOut,
    CustomerOut,
    CustomerStatsOut,
    EntitlementUpdateIn,
    PurchaseIngestIn,
    PurchaseIngestOut,
    SegmentLabelsOut,
    SegmentSummaryOut,
    VisitIngestIn,
    VisitIngestOut,
)
from app.services.customer_ingest_service import record_purchase, record_visit, update_entitlements
from app.services.customer_stats_service import calculate_customer_stats
from app.services.errors import AutomationError
from app.services.flow_filter_service import customer_segments, load_branch_segments
from app.services.repositories import SqlCustomerRepository, customer_record
from app.services.segment_service import (
    TICKET_SEGMENT_LABELS,
    VISIT_SEGMENT_LABELS,
    SegmentSnapshot,
    TicketSegment,
    VisitSegment,
    summarize_segments,
)

router = APIRouter(prefix="/customers", tags=["customers"])
branch_user = require_roles("ADMIN", "BRANCH")


def _segment_out(snapshot: SegmentSnapshot) -> SegmentLabelsOut:
    return SegmentLabelsOut(
        visit_segment=snapshot.visit_segment,
        visit_segment_label=VISIT_SEGMENT_LABELS[snapshot.visit_segment],
        ticket_segment=snapshot.ticket_segment,
        ticket_segment_label=TICKET_SEGMENT_LABELS[snapshot.ticket_segment],
    )


def _customer_out(customer: Customer, snapshot: SegmentSnapshot) -> CustomerOut:
    return CustomerOut(
        id=customer.id,
        phone=customer.phone,
        main_branch_id=customer.main_branch_id,
        name=customer.name,
        gender=customer.gender,
        age_group=customer.age_group,
        first_visit_date=customer.first_visit_date,
        last_visit_date=customer.last_visit_date,
        total_visits=customer.total_visits,
        total_spent=customer.total_spent,
        has_remaining_term_ticket=customer.has_remaining_term_ticket,
        has_remaining_time_package=customer.has_remaining_time_package,
        has_remaining_fixed_seat=customer.has_remaining_fixed_seat,
        segments=_segment_out(snapshot),
        created_at=customer.created_at,
        updated_at=customer.updated_at,
    )


def _snapshot_for(db: Session, customer: Customer, *, reference: datetime) -> SegmentSnapshot:
    return customer_segments(SqlCustomerRepository(db), customer_record(customer), reference=reference)


def _visible_customer_out(db: Session, customer: Customer, *, access: UserAccess) -> CustomerOut | None:
    # Cross-branch ingestion is recorded but the owner's profile stays hidden.
    if not access.scope.allows(customer.main_branch_id):
        return None
    return _customer_out(customer, _snapshot_for(db, customer, reference=utc_now()))


def _customer_or_404(db: Session, *, access: UserAccess, customer_id: str) -> Customer:
    customer = db.execute(select(Customer).where(Customer.id == customer_id)).scalar_one_or_none()
    if not customer or not access.scope.allows(customer.main_branch_id):
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer


@router.post(
    "/visits",
    response_model=VisitIngestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Record a customer visit",
    description=(
        "Creates the customer on the first visit; that visit's branch becomes the main branch. "
        "The customer profile is omitted when it belongs to a branch outside the caller's scope."
    ),
    responses=error_responses(400, 401, 403, 422, 500),
)
def ingest_visit(
    payload: VisitIngestIn,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    branch_id = resolve_branch_id(access, payload.branch_id)
    result = record_visit(
        db,
        branch_id=branch_id,
        phone=payload.phone,
        visited_at=payload.visited_at,
        duration_minutes=payload.duration_minutes,
        seat=payload.seat,
        name=payload.name,
        gender=payload.gender,
        age_group=payload.age_group,
    )
    db.commit()
    db.refresh(result.customer)
    return VisitIngestOut(
        visit_id=result.visit.id,
        created_customer=result.created_customer,
        customer=_visible_customer_out(db, result.customer, access=access),
    )


@router.post(
    "/purchases",
    response_model=PurchaseIngestOut,
    status_code=status.HTTP_201_CREATED,
    summary="Record a ticket purchase",
    description="Adds to lifetime spend and marks the matching entitlement flag for fixed, term and time tickets.",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def ingest_purchase(
    payload: PurchaseIngestIn,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    branch_id = resolve_branch_id(access, payload.branch_id)
    try:
        result = record_purchase(
            db,
            branch_id=branch_id,
            phone=payload.phone,
            purchased_at=payload.purchased_at,
            ticket_name=payload.ticket_name,
            amount=payload.amount,
            points_used=payload.points_used,
        )
    except AutomationError as exc:
        raise http_error(exc) from exc
    db.commit()
    db.refresh(result.customer)
    return PurchaseIngestOut(
        purchase_id=result.purchase.id,
        ticket_type=result.ticket_type,
        customer=_visible_customer_out(db, result.customer, access=access),
    )


@router.get(
    "",
    response_model=CustomerListOut,
    summary="List customers with segments",
    responses=error_responses(400, 401, 403, 422, 500),
)
def list_customers(
    branch_id: str | None = Query(default=None),
    visit_segment: VisitSegment | None = Query(default=None),
    ticket_segment: TicketSegment | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    target_branch_id = resolve_branch_id(access, branch_id)
    records, snapshots = load_branch_segments(
        SqlCustomerRepository(db),
        branch_id=target_branch_id,
        reference=utc_now(),
    )
    matching = [
        record
        for record in records
        if (visit_segment is None or snapshots[record.id].visit_segment == visit_segment)
        and (ticket_segment is None or snapshots[record.id].ticket_segment == ticket_segment)
    ]
    total = len(matching)
    page_ids = [record.id for record in matching[offset : offset + limit]]
    rows: dict[str, Customer] = {}
    if page_ids:
        rows = {
            row.id: row
            for row in db.execute(select(Customer).where(Customer.id.in_(page_ids))).scalars().all()
        }
    items = [_customer_out(rows[customer_id], snapshots[customer_id]) for customer_id in page_ids]
    count = len(items)
    return CustomerListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        branch_id=target_branch_id,
        visit_segment=visit_segment,
        ticket_segment=ticket_segment,
    )


@router.get(
    "/segments/summary",
    response_model=SegmentSummaryOut,
    summary="Count customers per visit and ticket segment",
    responses=error_responses(400, 401, 403, 422, 500),
)
def segment_summary(
    branch_id: str | None = Query(default=None),
    reference_date: date | None = Query(default=None),
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    target_branch_id = resolve_branch_id(access, branch_id)
    reference = end_of_local_day(reference_date) if reference_date else utc_now()
    records, snapshots = load_branch_segments(
        SqlCustomerRepository(db),
        branch_id=target_branch_id,
        reference=reference,
    )
    summary = summarize_segments(snapshots.values())
    return SegmentSummaryOut(
        branch_id=target_branch_id,
        reference_date=local_date(reference),
        total_customers=len(records),
        visit=summary["visit"],
        ticket=summary["ticket"],
        visit_labels={segment.value: label for segment, label in VISIT_SEGMENT_LABELS.items()},
        ticket_labels={segment.value: label for segment, label in TICKET_SEGMENT_LABELS.items()},
    )


@router.get(
    "/{customer_id}",
    response_model=CustomerOut,
    summary="Get customer with segments",
    responses=error_responses(401, 403, 404, 500),
)
def get_customer(
    customer_id: str,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    customer = _customer_or_404(db, access=access, customer_id=customer_id)
    return _customer_out(customer, _snapshot_for(db, customer, reference=utc_now()))


@router.get(
    "/{customer_id}/stats",
    response_model=CustomerStatsOut,
    summary="Get behavioral stats for a customer",
    responses=error_responses(401, 403, 404, 500),
)
def get_customer_stats(
    customer_id: str,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    customer = _customer_or_404(db, access=access, customer_id=customer_id)
    repository = SqlCustomerRepository(db)
    stats = calculate_customer_stats(
        repository.visit_history(customer.id),
        repository.purchase_history(customer.id),
    )
    return CustomerStatsOut(
        customer_id=customer.id,
        avg_duration=stats.avg_duration,
        peak_hour=stats.peak_hour,
        visit_cycle_days=stats.visit_cycle_days,
        purchase_cycle_days=stats.purchase_cycle_days,
        monthly_avg_spent=stats.monthly_avg_spent,
        favorite_ticket=stats.favorite_ticket,
        favorite_ticket_type=stats.favorite_ticket_type,
        favorite_seat=stats.favorite_seat,
    )


@router.patch(
    "/{customer_id}/entitlements",
    response_model=CustomerOut,
    summary="Update remaining-ticket flags",
    responses=error_responses(400, 401, 403, 404, 422, 500),
)
def patch_entitlements(
    customer_id: str,
    payload: EntitlementUpdateIn,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    customer = _customer_or_404(db, access=access, customer_id=customer_id)
    update_entitlements(
        db,
        customer=customer,
        has_remaining_term_ticket=payload.has_remaining_term_ticket,
        has_remaining_time_package=payload.has_remaining_time_package,
        has_remaining_fixed_seat=payload.has_remaining_fixed_seat,
    )
    db.commit()
    db.refresh(customer)
    return _customer_out(customer, _snapshot_for(db, customer, reference=utc_now()))
