import re
from datetime import date, datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.schemas.common import PaginationMeta
from app.services.segment_service import TicketSegment, VisitSegment


FlowType = Literal["SMS", "POINT", "SMS_POINT"]
FlowStatus = Literal["draft", "active", "dispatched", "completed", "failed", "inactive"]
DispatchStatus = Literal["dispatched", "completed", "failed", "expired"]
TriggerType = Literal["scheduled", "recurring", "manual"]
RecurringFrequency = Literal["daily", "weekly", "monthly"]
PointAction = Literal["GRANT", "DEDUCT"]
MessageType = Literal["SMS", "LMS"]
TargetMode = Literal["condition", "manual"]
LogStatus = Literal["SUCCESS", "FAILED"]
JobAction = Literal["message", "point-grant", "point-deduct", "message+point-grant", "message+point-deduct"]

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
_NON_DIGIT_RE = re.compile(r"\D+")


def normalize_phone(value: str | None) -> str:
    return _NON_DIGIT_RE.sub("", value or "")


class RecurringConfig(BaseModel):
    frequency: RecurringFrequency = "daily"
    days_of_week: list[int] = Field(default_factory=list, alias="daysOfWeek")
    day_of_month: int | None = Field(default=None, ge=1, le=31, alias="dayOfMonth")
    end_date: date | None = Field(default=None, alias="endDate")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("days_of_week")
    @classmethod
    def validate_days_of_week(cls, value: list[int]) -> list[int]:
        for day in value:
            if day < 0 or day > 6:
                raise ValueError("daysOfWeek values must be between 0 (Sunday) and 6 (Saturday)")
        return sorted(set(value))

    @model_validator(mode="after")
    def validate_frequency_fields(self) -> "RecurringConfig":
        if self.frequency == "weekly" and not self.days_of_week:
            raise ValueError("weekly recurrence requires daysOfWeek")
        if self.frequency == "monthly" and self.day_of_month is None:
            raise ValueError("monthly recurrence requires dayOfMonth")
        return self


class TriggerConfig(BaseModel):
    type: TriggerType = "manual"
    time: str | None = None
    scheduled_date: date | None = Field(default=None, alias="scheduledDate")
    recurring: RecurringConfig | None = None

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("time")
    @classmethod
    def validate_time(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        if not _TIME_RE.match(cleaned):
            raise ValueError("time must be HH:mm")
        return cleaned

    @model_validator(mode="after")
    def validate_schedule(self) -> "TriggerConfig":
        if self.type == "recurring" and self.recurring is None:
            raise ValueError("recurring trigger requires recurring settings")
        if self.type in {"scheduled", "recurring"} and not self.time:
            raise ValueError(f"{self.type} trigger requires time")
        return self


class DateRange(BaseModel):
    """Start of the new-customer window; the window always ends at execution time."""

    start: date

    model_config = ConfigDict(extra="forbid")


class FilterConfig(BaseModel):
    target_mode: TargetMode = Field(default="condition", alias="targetMode")
    manual_phones: list[str] = Field(default_factory=list, alias="manualPhones")
    visit_segments: list[VisitSegment] = Field(default_factory=list, alias="visitSegments")
    ticket_segments: list[TicketSegment] = Field(default_factory=list, alias="ticketSegments")
    date_range: DateRange | None = Field(default=None, alias="dateRange")
    first_visit_from: date | None = Field(default=None, alias="firstVisitFrom")
    first_visit_to: date | None = Field(default=None, alias="firstVisitTo")
    min_visits: int | None = Field(default=None, ge=0, alias="minVisits")
    max_visits: int | None = Field(default=None, ge=0, alias="maxVisits")
    min_spent: float | None = Field(default=None, ge=0, alias="minSpent")
    max_spent: float | None = Field(default=None, ge=0, alias="maxSpent")
    inactive_days: int | None = Field(default=None, ge=0, alias="inactiveDays")
    genders: list[str] = Field(default_factory=list)
    age_groups: list[str] = Field(default_factory=list, alias="ageGroups")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    @field_validator("manual_phones")
    @classmethod
    def normalize_manual_phones(cls, value: list[str]) -> list[str]:
        out: list[str] = []
        for raw in value:
            phone = normalize_phone(raw)
            if phone and phone not in out:
                out.append(phone)
        return out

    @model_validator(mode="after")
    def validate_mode(self) -> "FilterConfig":
        if self.manual_phones and self.target_mode == "condition":
            # A non-empty phone list always means manual targeting.
            self.target_mode = "manual"
        if self.target_mode == "manual" and not self.manual_phones:
            raise ValueError("manual target mode requires manualPhones")
        if self.min_visits is not None and self.max_visits is not None and self.min_visits > self.max_visits:
            raise ValueError("minVisits must not exceed maxVisits")
        if self.min_spent is not None and self.max_spent is not None and self.min_spent > self.max_spent:
            raise ValueError("minSpent must not exceed maxSpent")
        return self


class PointConfig(BaseModel):
    action: PointAction = "GRANT"
    amount: int = Field(gt=0, le=1_000_000)
    reason: str = Field(min_length=1, max_length=255)
    expiry_days: int | None = Field(default=None, ge=1, le=3650, alias="expiryDays")
    deduplicate_days: int | None = Field(default=None, ge=1, le=3650, alias="deduplicateDays")

    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class _FlowCreateBase(BaseModel):
    name: str = Field(min_length=2, max_length=120)
    branch_id: str | None = None
    is_active: bool = False
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    filter_config: FilterConfig = Field(default_factory=FilterConfig)


class SmsFlowCreateIn(_FlowCreateBase):
    flow_type: Literal["SMS"]
    message_template: str = Field(min_length=1, max_length=2000)
    message_type: MessageType = "SMS"
    message_deduplicate_days: int | None = Field(default=None, ge=1, le=3650)


class PointFlowCreateIn(_FlowCreateBase):
    flow_type: Literal["POINT"]
    point_config: PointConfig


class SmsPointFlowCreateIn(_FlowCreateBase):
    flow_type: Literal["SMS_POINT"]
    message_template: str = Field(min_length=1, max_length=2000)
    message_type: MessageType = "SMS"
    point_config: PointConfig


# Routers declare this as a body with Body(discriminator="flow_type").
AutomationFlowCreateIn = Union[SmsFlowCreateIn, PointFlowCreateIn, SmsPointFlowCreateIn]


class AutomationFlowUpdateIn(BaseModel):
    name: str | None = Field(default=None, min_length=2, max_length=120)
    trigger_config: TriggerConfig | None = None
    filter_config: FilterConfig | None = None
    message_template: str | None = Field(default=None, min_length=1, max_length=2000)
    message_type: MessageType | None = None
    message_deduplicate_days: int | None = Field(default=None, ge=1, le=3650)
    point_config: PointConfig | None = None

    @model_validator(mode="after")
    def validate_has_updates(self) -> "AutomationFlowUpdateIn":
        if not self.model_fields_set:
            raise ValueError("At least one field must be provided")
        return self


class ExecuteResultOut(BaseModel):
    success: bool
    success_count: int = Field(default=0, alias="successCount")
    fail_count: int = Field(default=0, alias="failCount")
    total_count: int = Field(default=0, alias="totalCount")
    error_message: str | None = Field(default=None, alias="errorMessage")
    executed_at: datetime = Field(alias="executedAt")
    dispatch_id: str | None = Field(default=None, alias="dispatchId")

    model_config = ConfigDict(populate_by_name=True)


class AutomationFlowOut(BaseModel):
    id: str
    branch_id: str
    name: str
    flow_type: FlowType
    is_active: bool
    status: FlowStatus
    trigger_config: dict[str, Any]
    filter_config: dict[str, Any]
    message_template: str | None = None
    message_type: MessageType | None = None
    message_deduplicate_days: int | None = None
    point_config: dict[str, Any] | None = None
    last_executed_at: datetime | None = None
    last_execute_result: dict[str, Any] | None = None
    version: int
    created_by_user_id: str
    created_at: datetime
    updated_at: datetime


class AutomationFlowListOut(BaseModel):
    items: list[AutomationFlowOut]
    pagination: PaginationMeta
    branch_id: str | None = None
    is_active: bool | None = None


class FlowTargetPreviewOut(BaseModel):
    flow_id: str
    target_mode: TargetMode
    target_phones: list[str]
    excluded_phones: list[str]
    deduplicated_phones: list[str]
    target_count: int


class JobDescriptionOut(BaseModel):
    dispatch_id: str
    flow_id: str
    branch_id: str
    action: JobAction
    target_phones: list[str]
    payload: dict[str, Any]


class AutomationDispatchOut(BaseModel):
    id: str
    flow_id: str
    branch_id: str
    status: DispatchStatus
    action: str
    worker: str
    target_count: int
    target_phones: list[str]
    skipped_phones: list[str]
    result: dict[str, Any] | None = None
    dispatched_at: datetime
    executed_at: datetime | None = None
    completed_at: datetime | None = None


class AutomationDispatchListOut(BaseModel):
    items: list[AutomationDispatchOut]
    pagination: PaginationMeta
    flow_id: str


class FlowDispatchOut(BaseModel):
    flow: AutomationFlowOut
    dispatch: AutomationDispatchOut
    job: JobDescriptionOut


class SchedulerRunOut(BaseModel):
    evaluated_flows: int
    due_flows: int
    dispatched_flows: int
    failed_flows: int
    jobs: list[JobDescriptionOut]


class CallbackResultItemIn(BaseModel):
    phone: str = Field(min_length=1, max_length=40)
    status: LogStatus
    message: str | None = Field(default=None, max_length=255)

    @field_validator("phone")
    @classmethod
    def normalize(cls, value: str) -> str:
        phone = normalize_phone(value)
        if not phone:
            raise ValueError("phone must contain digits")
        return phone


class AutomationCallbackIn(BaseModel):
    success: bool
    success_count: int = Field(default=0, ge=0, alias="successCount")
    fail_count: int = Field(default=0, ge=0, alias="failCount")
    total_count: int = Field(default=0, ge=0, alias="totalCount")
    error_message: str | None = Field(default=None, max_length=1000, alias="errorMessage")
    executed_at: datetime = Field(alias="executedAt")
    dispatch_id: str | None = Field(default=None, max_length=36, alias="dispatchId")
    results: list[CallbackResultItemIn] = Field(default_factory=list)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "success": True,
                "successCount": 12,
                "failCount": 1,
                "totalCount": 13,
                "errorMessage": None,
                "executedAt": "2026-10-19T09:02:11Z",
                "dispatchId": "2f1b8c4e-6a55-4b8e-9a43-1c3b8f6f0d21",
                "results": [{"phone": "010-1111-2222", "status": "SUCCESS"}],
            }
        },
    )


class CallbackAckOut(BaseModel):
    success: bool = True
    applied: bool = True
    dispatch_id: str | None = None
