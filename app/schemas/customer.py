from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.schemas.automation import normalize_phone
from app.schemas.common import PaginationMeta
from app.services.segment_service import TicketSegment, TicketSubType, VisitSegment


def _required_phone(value: str) -> str:
    phone = normalize_phone(value)
    if len(phone) < 8:
        raise ValueError("phone must contain at least 8 digits")
    return phone


def _optional_text(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned or None


class VisitIngestIn(BaseModel):
    phone: str = Field(min_length=1, max_length=40)
    branch_id: str | None = None
    visited_at: datetime
    duration_minutes: int | None = Field(default=None, ge=0, le=24 * 60)
    seat: str | None = Field(default=None, max_length=40)
    name: str | None = Field(default=None, max_length=120)
    gender: str | None = Field(default=None, max_length=10)
    age_group: str | None = Field(default=None, max_length=20)

    @field_validator("phone")
    @classmethod
    def normalize_phone_number(cls, value: str) -> str:
        return _required_phone(value)

    @field_validator("seat", "name", "gender", "age_group")
    @classmethod
    def normalize_optional_text(cls, value: str | None) -> str | None:
        return _optional_text(value)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "phone": "010-1234-5678",
                "visited_at": "2026-10-19T09:30:00+09:00",
                "duration_minutes": 240,
                "seat": "A-12",
                "gender": "F",
                "age_group": "20s",
            }
        }
    )


class PurchaseIngestIn(BaseModel):
    phone: str = Field(min_length=1, max_length=40)
    branch_id: str | None = None
    purchased_at: datetime
    ticket_name: str = Field(min_length=1, max_length=120)
    amount: float = Field(ge=0)
    points_used: int = Field(default=0, ge=0)

    @field_validator("phone")
    @classmethod
    def normalize_phone_number(cls, value: str) -> str:
        return _required_phone(value)

    @field_validator("ticket_name")
    @classmethod
    def validate_ticket_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("ticket_name is required")
        return cleaned

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "phone": "010-1234-5678",
                "purchased_at": "2026-10-19T09:31:00+09:00",
                "ticket_name": "4주 기간권",
                "amount": 120000,
                "points_used": 0,
            }
        }
    )


class EntitlementUpdateIn(BaseModel):
    has_remaining_term_ticket: bool | None = None
    has_remaining_time_package: bool | None = None
    has_remaining_fixed_seat: bool | None = None

    @model_validator(mode="after")
    def validate_any_field_present(self) -> "EntitlementUpdateIn":
        if (
            self.has_remaining_term_ticket is None
            and self.has_remaining_time_package is None
            and self.has_remaining_fixed_seat is None
        ):
            raise ValueError("At least one field must be provided")
        return self


class SegmentLabelsOut(BaseModel):
    visit_segment: VisitSegment
    visit_segment_label: str
    ticket_segment: TicketSegment
    ticket_segment_label: str


class CustomerOut(BaseModel):
    id: str
    phone: str
    main_branch_id: str
    name: str | None = None
    gender: str | None = None
    age_group: str | None = None
    first_visit_date: datetime
    last_visit_date: datetime | None = None
    total_visits: int
    total_spent: float
    has_remaining_term_ticket: bool
    has_remaining_time_package: bool
    has_remaining_fixed_seat: bool
    segments: SegmentLabelsOut
    created_at: datetime
    updated_at: datetime


class CustomerListOut(BaseModel):
    items: list[CustomerOut]
    pagination: PaginationMeta
    branch_id: str
    visit_segment: VisitSegment | None = None
    ticket_segment: TicketSegment | None = None


class VisitIngestOut(BaseModel):
    visit_id: str
    created_customer: bool
    customer: CustomerOut | None = None


class PurchaseIngestOut(BaseModel):
    purchase_id: str
    ticket_type: TicketSubType
    customer: CustomerOut | None = None


class CustomerStatsOut(BaseModel):
    customer_id: str
    avg_duration: int | None = None
    peak_hour: int | None = None
    visit_cycle_days: int | None = None
    purchase_cycle_days: int | None = None
    monthly_avg_spent: int
    favorite_ticket: str | None = None
    favorite_ticket_type: TicketSubType | None = None
    favorite_seat: str | None = None


class SegmentSummaryOut(BaseModel):
    branch_id: str
    reference_date: date
    total_customers: int
    visit: dict[str, int]
    ticket: dict[str, int]
    visit_labels: dict[str, str]
    ticket_labels: dict[str, str]
