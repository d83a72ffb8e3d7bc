import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.business_time import as_utc
from app.core.observability import log_event
from app.models.customer import Customer, PurchaseRecord, VisitRecord
from app.schemas.automation import normalize_phone
from app.services.errors import CustomerNotFoundError
from app.services.segment_service import TicketSubType, infer_ticket_type

logger = logging.getLogger("studycafe.customers")

_ENTITLEMENT_BY_TICKET_TYPE = {
    TicketSubType.FIXED: "has_remaining_fixed_seat",
    TicketSubType.TERM: "has_remaining_term_ticket",
    TicketSubType.TIME: "has_remaining_time_package",
}


@dataclass(frozen=True)
class VisitIngestResult:
    customer: Customer
    visit: VisitRecord
    created_customer: bool


@dataclass(frozen=True)
class PurchaseIngestResult:
    customer: Customer
    purchase: PurchaseRecord
    ticket_type: TicketSubType


def customer_by_phone(db: Session, phone: str) -> Customer | None:
    normalized = normalize_phone(phone)
    if not normalized:
        return None
    return db.execute(select(Customer).where(Customer.phone == normalized)).scalar_one_or_none()


def _apply_profile(customer: Customer, *, name: str | None, gender: str | None, age_group: str | None) -> None:
    if name:
        customer.name = name
    if gender:
        customer.gender = gender
    if age_group:
        customer.age_group = age_group


def record_visit(
    db: Session,
    *,
    branch_id: str,
    phone: str,
    visited_at: datetime,
    duration_minutes: int | None = None,
    seat: str | None = None,
    name: str | None = None,
    gender: str | None = None,
    age_group: str | None = None,
) -> VisitIngestResult:
    """Append a visit, creating the customer on first sight.

    ``main_branch_id`` is fixed by the first ingested visit and never moves;
    visits at other branches still count toward the lifetime totals.
    """
    normalized = normalize_phone(phone)
    visited_at = as_utc(visited_at)
    customer = customer_by_phone(db, normalized)
    created = customer is None
    if customer is None:
        customer = Customer(
            id=str(uuid.uuid4()),
            phone=normalized,
            main_branch_id=branch_id,
            first_visit_date=visited_at,
            last_visit_date=visited_at,
            total_visits=0,
            total_spent=0,
        )
        db.add(customer)
    else:
        if visited_at < as_utc(customer.first_visit_date):
            customer.first_visit_date = visited_at
        if customer.last_visit_date is None or visited_at > as_utc(customer.last_visit_date):
            customer.last_visit_date = visited_at

    customer.total_visits = int(customer.total_visits or 0) + 1
    _apply_profile(customer, name=name, gender=gender, age_group=age_group)

    visit = VisitRecord(
        id=str(uuid.uuid4()),
        customer_id=customer.id,
        branch_id=branch_id,
        visited_at=visited_at,
        duration_minutes=duration_minutes,
        seat=seat,
    )
    db.add(visit)
    db.flush()

    if created:
        log_event(logger, "customer_created", customer_id=customer.id, main_branch_id=branch_id)
    return VisitIngestResult(customer=customer, visit=visit, created_customer=created)


def record_purchase(
    db: Session,
    *,
    branch_id: str,
    phone: str,
    purchased_at: datetime,
    ticket_name: str,
    amount: float,
    points_used: int = 0,
) -> PurchaseIngestResult:
    customer = customer_by_phone(db, phone)
    if customer is None:
        raise CustomerNotFoundError("Customer not found; record a visit first")

    ticket_type = infer_ticket_type(ticket_name)
    purchase = PurchaseRecord(
        id=str(uuid.uuid4()),
        customer_id=customer.id,
        branch_id=branch_id,
        purchased_at=as_utc(purchased_at),
        ticket_name=ticket_name,
        amount=amount,
        points_used=points_used,
    )
    db.add(purchase)
    customer.total_spent = float(customer.total_spent or 0) + float(amount)
    entitlement = _ENTITLEMENT_BY_TICKET_TYPE.get(ticket_type)
    if entitlement:
        setattr(customer, entitlement, True)
    db.flush()
    return PurchaseIngestResult(customer=customer, purchase=purchase, ticket_type=ticket_type)


def update_entitlements(
    db: Session,
    *,
    customer: Customer,
    has_remaining_term_ticket: bool | None = None,
    has_remaining_time_package: bool | None = None,
    has_remaining_fixed_seat: bool | None = None,
) -> Customer:
    if has_remaining_term_ticket is not None:
        customer.has_remaining_term_ticket = has_remaining_term_ticket
    if has_remaining_time_package is not None:
        customer.has_remaining_time_package = has_remaining_time_package
    if has_remaining_fixed_seat is not None:
        customer.has_remaining_fixed_seat = has_remaining_fixed_seat
    db.flush()
    return customer
