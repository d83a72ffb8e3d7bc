from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AutomationFlow(Base):
    __tablename__ = "automation_flows"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    branch_id: Mapped[str] = mapped_column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    flow_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", server_default="draft")
    trigger_config_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    filter_config_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    message_template: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    message_type: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    message_deduplicate_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    point_config_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_by_user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    updated_by_user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint("branch_id", "name", name="uq_automation_flows_branch_name"),
        Index("ix_automation_flows_branch_active", "branch_id", "is_active"),
        Index("ix_automation_flows_active_status", "is_active", "status"),
    )


class AutomationDispatch(Base):
    __tablename__ = "automation_dispatches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    flow_id: Mapped[str] = mapped_column(String(36), ForeignKey("automation_flows.id"), nullable=False, index=True)
    branch_id: Mapped[str] = mapped_column(String(36), ForeignKey("branches.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="dispatched", server_default="dispatched")
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    worker: Mapped[str] = mapped_column(String(40), nullable=False)
    target_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    target_phones_json: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    skipped_phones_json: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    payload_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    result_json: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    dispatched_by_user_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("users.id"), nullable=True)
    dispatched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_automation_dispatches_flow_dispatched_at", "flow_id", "dispatched_at"),
        Index("ix_automation_dispatches_flow_status", "flow_id", "status"),
    )


class SmsSendLog(Base):
    __tablename__ = "sms_send_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    flow_id: Mapped[str] = mapped_column(String(36), ForeignKey("automation_flows.id"), nullable=False, index=True)
    dispatch_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("automation_dispatches.id"),
        nullable=True,
        index=True,
    )
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    message: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)
    byte_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("dispatch_id", "phone", name="uq_sms_send_logs_dispatch_phone"),
        Index("ix_sms_send_logs_flow_phone_sent_at", "flow_id", "phone", "sent_at"),
    )


class PointActionLog(Base):
    __tablename__ = "point_action_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    flow_id: Mapped[str] = mapped_column(String(36), ForeignKey("automation_flows.id"), nullable=False, index=True)
    dispatch_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("automation_dispatches.id"),
        nullable=True,
        index=True,
    )
    customer_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    action: Mapped[str] = mapped_column(String(10), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("dispatch_id", "phone", name="uq_point_action_logs_dispatch_phone"),
        Index("ix_point_action_logs_flow_phone_executed_at", "flow_id", "phone", "executed_at"),
    )
