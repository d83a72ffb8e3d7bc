"""
Persistence seams for the segmentation and targeting services.

Services receive these protocols explicitly; the SQLAlchemy implementations
below are what the routers pass in, tests pass in-memory fakes.
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from typing import Literal, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.business_time import as_utc, local_date
from app.models.automation import PointActionLog, SmsSendLog
from app.models.customer import Customer, PurchaseRecord, VisitRecord
from app.services.customer_stats_service import PurchaseFact, VisitFact

ActionLogKind = Literal["sms", "point"]


@dataclass(frozen=True)
class CustomerRecord:
    id: str
    phone: str
    main_branch_id: str
    first_visit_date: datetime
    last_visit_date: datetime | None
    total_visits: int = 0
    total_spent: float = 0.0
    has_remaining_term_ticket: bool = False
    has_remaining_time_package: bool = False
    has_remaining_fixed_seat: bool = False
    gender: str | None = None
    age_group: str | None = None


@dataclass(frozen=True)
class ActionLogEntry:
    flow_id: str
    phone: str
    status: str
    executed_at: datetime
    customer_id: str | None = None
    dispatch_id: str | None = None


class CustomerRepository(Protocol):
    def list_branch_customers(self, branch_id: str) -> list[CustomerRecord]:
        ...

    def find_by_phones(self, phones: Sequence[str]) -> list[CustomerRecord]:
        ...

    def recent_visit_counts(self, branch_id: str, *, since: datetime, until: datetime) -> dict[str, int]:
        ...


class ActionLogRepository(Protocol):
    def acted_phones(self, *, flow_id: str, kind: ActionLogKind, since: datetime) -> set[str]:
        ...


def customer_record(row: Customer) -> CustomerRecord:
    return CustomerRecord(
        id=row.id,
        phone=row.phone,
        main_branch_id=row.main_branch_id,
        first_visit_date=as_utc(row.first_visit_date),
        last_visit_date=as_utc(row.last_visit_date) if row.last_visit_date else None,
        total_visits=int(row.total_visits or 0),
        total_spent=float(row.total_spent or 0),
        has_remaining_term_ticket=bool(row.has_remaining_term_ticket),
        has_remaining_time_package=bool(row.has_remaining_time_package),
        has_remaining_fixed_seat=bool(row.has_remaining_fixed_seat),
        gender=row.gender,
        age_group=row.age_group,
    )


class SqlCustomerRepository:
    def __init__(self, db: Session):
        self.db = db

    def list_branch_customers(self, branch_id: str) -> list[CustomerRecord]:
        rows = self.db.execute(
            select(Customer)
            .where(Customer.main_branch_id == branch_id)
            .order_by(Customer.first_visit_date.asc(), Customer.phone.asc())
        ).scalars().all()
        return [customer_record(row) for row in rows]

    def find_by_phones(self, phones: Sequence[str]) -> list[CustomerRecord]:
        if not phones:
            return []
        rows = self.db.execute(select(Customer).where(Customer.phone.in_(list(phones)))).scalars().all()
        return [customer_record(row) for row in rows]

    def recent_visit_counts(self, branch_id: str, *, since: datetime, until: datetime) -> dict[str, int]:
        """Distinct business-day visit dates per customer inside ``[since, until]``."""
        rows = self.db.execute(
            select(VisitRecord.customer_id, VisitRecord.visited_at)
            .join(Customer, Customer.id == VisitRecord.customer_id)
            .where(
                Customer.main_branch_id == branch_id,
                VisitRecord.visited_at >= since,
                VisitRecord.visited_at <= until,
            )
        ).all()
        visit_dates: dict[str, set[date]] = {}
        for customer_id, visited_at in rows:
            visit_dates.setdefault(customer_id, set()).add(local_date(visited_at))
        return {customer_id: len(dates) for customer_id, dates in visit_dates.items()}

    def visit_history(self, customer_id: str) -> list[VisitFact]:
        rows = self.db.execute(
            select(VisitRecord).where(VisitRecord.customer_id == customer_id).order_by(VisitRecord.visited_at.asc())
        ).scalars().all()
        return [
            VisitFact(visited_at=as_utc(row.visited_at), duration_minutes=row.duration_minutes, seat=row.seat)
            for row in rows
        ]

    def purchase_history(self, customer_id: str) -> list[PurchaseFact]:
        rows = self.db.execute(
            select(PurchaseRecord)
            .where(PurchaseRecord.customer_id == customer_id)
            .order_by(PurchaseRecord.purchased_at.asc())
        ).scalars().all()
        return [
            PurchaseFact(purchased_at=as_utc(row.purchased_at), ticket_name=row.ticket_name, amount=float(row.amount or 0))
            for row in rows
        ]


class SqlActionLogRepository:
    def __init__(self, db: Session):
        self.db = db

    def acted_phones(self, *, flow_id: str, kind: ActionLogKind, since: datetime) -> set[str]:
        if kind == "point":
            stmt = select(PointActionLog.phone).where(
                PointActionLog.flow_id == flow_id,
                PointActionLog.status == "SUCCESS",
                PointActionLog.executed_at >= since,
            )
        else:
            stmt = select(SmsSendLog.phone).where(
                SmsSendLog.flow_id == flow_id,
                SmsSendLog.status == "SUCCESS",
                SmsSendLog.sent_at >= since,
            )
        return set(self.db.execute(stmt.distinct()).scalars().all())

    def logged_phones(self, *, dispatch_id: str, kind: ActionLogKind) -> set[str]:
        model = PointActionLog if kind == "point" else SmsSendLog
        return set(self.db.execute(select(model.phone).where(model.dispatch_id == dispatch_id)).scalars().all())

    def append_point_logs(
        self,
        *,
        flow_id: str,
        dispatch_id: str | None,
        entries: Iterable[dict],
        action: str,
        amount: int,
        reason: str | None,
        expiry_date: datetime | None,
        executed_at: datetime,
    ) -> int:
        created = 0
        for entry in entries:
            self.db.add(
                PointActionLog(
                    id=str(uuid.uuid4()),
                    flow_id=flow_id,
                    dispatch_id=dispatch_id,
                    customer_id=entry.get("customer_id"),
                    phone=entry["phone"],
                    action=action,
                    amount=amount,
                    reason=reason,
                    expiry_date=expiry_date,
                    status=entry["status"],
                    error_message=entry.get("message"),
                    executed_at=executed_at,
                )
            )
            created += 1
        return created

    def append_sms_logs(
        self,
        *,
        flow_id: str,
        dispatch_id: str | None,
        entries: Iterable[dict],
        message: str | None,
        sent_at: datetime,
    ) -> int:
        byte_count = len((message or "").encode("euc-kr", errors="replace"))
        created = 0
        for entry in entries:
            self.db.add(
                SmsSendLog(
                    id=str(uuid.uuid4()),
                    flow_id=flow_id,
                    dispatch_id=dispatch_id,
                    customer_id=entry.get("customer_id"),
                    phone=entry["phone"],
                    message=message,
                    byte_count=byte_count,
                    status=entry["status"],
                    error_message=entry.get("message"),
                    sent_at=sent_at,
                )
            )
            created += 1
        return created
