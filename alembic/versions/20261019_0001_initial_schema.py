"""initial crm and automation schema

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _table_exists(inspector: sa.Inspector, table_name: str) -> bool:
    return table_name in inspector.get_table_names()


def _index_exists(inspector: sa.Inspector, table_name: str, index_name: str) -> bool:
    return index_name in {index["name"] for index in inspector.get_indexes(table_name)}


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


_INDEXES: tuple[tuple[str, str, list[str], bool], ...] = (
    ("users", "ix_users_branch_id", ["branch_id"], False),
    ("customers", "ix_customers_phone", ["phone"], True),
    ("customers", "ix_customers_main_branch_id", ["main_branch_id"], False),
    ("customers", "ix_customers_branch_first_visit", ["main_branch_id", "first_visit_date"], False),
    ("customers", "ix_customers_branch_last_visit", ["main_branch_id", "last_visit_date"], False),
    ("visit_records", "ix_visit_records_customer_id", ["customer_id"], False),
    ("visit_records", "ix_visit_records_branch_id", ["branch_id"], False),
    ("visit_records", "ix_visit_records_customer_visited_at", ["customer_id", "visited_at"], False),
    ("visit_records", "ix_visit_records_branch_visited_at", ["branch_id", "visited_at"], False),
    ("purchase_records", "ix_purchase_records_customer_id", ["customer_id"], False),
    ("purchase_records", "ix_purchase_records_branch_id", ["branch_id"], False),
    ("purchase_records", "ix_purchase_records_customer_purchased_at", ["customer_id", "purchased_at"], False),
    ("purchase_records", "ix_purchase_records_branch_purchased_at", ["branch_id", "purchased_at"], False),
    ("automation_flows", "ix_automation_flows_branch_id", ["branch_id"], False),
    ("automation_flows", "ix_automation_flows_created_by_user_id", ["created_by_user_id"], False),
    ("automation_flows", "ix_automation_flows_branch_active", ["branch_id", "is_active"], False),
    ("automation_flows", "ix_automation_flows_active_status", ["is_active", "status"], False),
    ("automation_dispatches", "ix_automation_dispatches_flow_id", ["flow_id"], False),
    ("automation_dispatches", "ix_automation_dispatches_branch_id", ["branch_id"], False),
    ("automation_dispatches", "ix_automation_dispatches_flow_dispatched_at", ["flow_id", "dispatched_at"], False),
    ("automation_dispatches", "ix_automation_dispatches_flow_status", ["flow_id", "status"], False),
    ("sms_send_logs", "ix_sms_send_logs_flow_id", ["flow_id"], False),
    ("sms_send_logs", "ix_sms_send_logs_dispatch_id", ["dispatch_id"], False),
    ("sms_send_logs", "ix_sms_send_logs_customer_id", ["customer_id"], False),
    ("sms_send_logs", "ix_sms_send_logs_flow_phone_sent_at", ["flow_id", "phone", "sent_at"], False),
    ("point_action_logs", "ix_point_action_logs_flow_id", ["flow_id"], False),
    ("point_action_logs", "ix_point_action_logs_dispatch_id", ["dispatch_id"], False),
    ("point_action_logs", "ix_point_action_logs_customer_id", ["customer_id"], False),
    (
        "point_action_logs",
        "ix_point_action_logs_flow_phone_executed_at",
        ["flow_id", "phone", "executed_at"],
        False,
    ),
)


def upgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "branches"):
        op.create_table(
            "branches",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            _created_at(),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name", name="uq_branches_name"),
        )

    if not _table_exists(inspector, "users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("username", sa.String(length=50), nullable=False),
            sa.Column("hashed_password", sa.String(length=255), nullable=False),
            sa.Column("full_name", sa.String(length=100), nullable=True),
            sa.Column("role", sa.String(length=20), nullable=False, server_default="BRANCH"),
            sa.Column("branch_id", sa.String(length=36), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_username", "users", ["username"], unique=True)
        op.create_index("ux_users_username_lower", "users", [sa.text("lower(username)")], unique=True)

    if not _table_exists(inspector, "customers"):
        op.create_table(
            "customers",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("phone", sa.String(length=20), nullable=False),
            sa.Column("main_branch_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=True),
            sa.Column("gender", sa.String(length=10), nullable=True),
            sa.Column("age_group", sa.String(length=20), nullable=True),
            sa.Column("first_visit_date", sa.DateTime(timezone=True), nullable=False),
            sa.Column("last_visit_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("total_visits", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_spent", sa.Float(), nullable=False, server_default="0"),
            sa.Column("has_remaining_term_ticket", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("has_remaining_time_package", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("has_remaining_fixed_seat", sa.Boolean(), nullable=False, server_default=sa.false()),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["main_branch_id"], ["branches.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "visit_records"):
        op.create_table(
            "visit_records",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("customer_id", sa.String(length=36), nullable=False),
            sa.Column("branch_id", sa.String(length=36), nullable=False),
            sa.Column("visited_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("duration_minutes", sa.Integer(), nullable=True),
            sa.Column("seat", sa.String(length=40), nullable=True),
            _created_at(),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
            sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "purchase_records"):
        op.create_table(
            "purchase_records",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("customer_id", sa.String(length=36), nullable=False),
            sa.Column("branch_id", sa.String(length=36), nullable=False),
            sa.Column("purchased_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("ticket_name", sa.String(length=120), nullable=False),
            sa.Column("amount", sa.Float(), nullable=False, server_default="0"),
            sa.Column("points_used", sa.Integer(), nullable=False, server_default="0"),
            _created_at(),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
            sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "automation_flows"):
        op.create_table(
            "automation_flows",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("branch_id", sa.String(length=36), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("flow_type", sa.String(length=20), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("trigger_config_json", sa.JSON(), nullable=True),
            sa.Column("filter_config_json", sa.JSON(), nullable=True),
            sa.Column("message_template", sa.String(length=2000), nullable=True),
            sa.Column("message_type", sa.String(length=10), nullable=True),
            sa.Column("message_deduplicate_days", sa.Integer(), nullable=True),
            sa.Column("point_config_json", sa.JSON(), nullable=True),
            sa.Column("last_executed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_by_user_id", sa.String(length=36), nullable=False),
            sa.Column("updated_by_user_id", sa.String(length=36), nullable=True),
            _created_at(),
            _updated_at(),
            sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
            sa.ForeignKeyConstraint(["created_by_user_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["updated_by_user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("branch_id", "name", name="uq_automation_flows_branch_name"),
        )

    if not _table_exists(inspector, "automation_dispatches"):
        op.create_table(
            "automation_dispatches",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("flow_id", sa.String(length=36), nullable=False),
            sa.Column("branch_id", sa.String(length=36), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="dispatched"),
            sa.Column("action", sa.String(length=20), nullable=False),
            sa.Column("worker", sa.String(length=40), nullable=False),
            sa.Column("target_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("target_phones_json", sa.JSON(), nullable=True),
            sa.Column("skipped_phones_json", sa.JSON(), nullable=True),
            sa.Column("payload_json", sa.JSON(), nullable=True),
            sa.Column("result_json", sa.JSON(), nullable=True),
            sa.Column("dispatched_by_user_id", sa.String(length=36), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["flow_id"], ["automation_flows.id"]),
            sa.ForeignKeyConstraint(["branch_id"], ["branches.id"]),
            sa.ForeignKeyConstraint(["dispatched_by_user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )

    if not _table_exists(inspector, "sms_send_logs"):
        op.create_table(
            "sms_send_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("flow_id", sa.String(length=36), nullable=False),
            sa.Column("dispatch_id", sa.String(length=36), nullable=True),
            sa.Column("customer_id", sa.String(length=36), nullable=True),
            sa.Column("phone", sa.String(length=20), nullable=False),
            sa.Column("message", sa.String(length=2000), nullable=True),
            sa.Column("byte_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("status", sa.String(length=10), nullable=False),
            sa.Column("error_message", sa.String(length=255), nullable=True),
            sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["flow_id"], ["automation_flows.id"]),
            sa.ForeignKeyConstraint(["dispatch_id"], ["automation_dispatches.id"]),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dispatch_id", "phone", name="uq_sms_send_logs_dispatch_phone"),
        )

    if not _table_exists(inspector, "point_action_logs"):
        op.create_table(
            "point_action_logs",
            sa.Column("id", sa.String(length=36), nullable=False),
            sa.Column("flow_id", sa.String(length=36), nullable=False),
            sa.Column("dispatch_id", sa.String(length=36), nullable=True),
            sa.Column("customer_id", sa.String(length=36), nullable=True),
            sa.Column("phone", sa.String(length=20), nullable=False),
            sa.Column("action", sa.String(length=10), nullable=False),
            sa.Column("amount", sa.Integer(), nullable=False),
            sa.Column("reason", sa.String(length=255), nullable=True),
            sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("status", sa.String(length=10), nullable=False),
            sa.Column("error_message", sa.String(length=255), nullable=True),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["flow_id"], ["automation_flows.id"]),
            sa.ForeignKeyConstraint(["dispatch_id"], ["automation_dispatches.id"]),
            sa.ForeignKeyConstraint(["customer_id"], ["customers.id"]),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dispatch_id", "phone", name="uq_point_action_logs_dispatch_phone"),
        )

    inspector = sa.inspect(bind)
    for table_name, index_name, columns, unique in _INDEXES:
        if not _index_exists(inspector, table_name, index_name):
            op.create_index(index_name, table_name, columns, unique=unique)


def downgrade() -> None:
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table_name, index_name, _, _ in reversed(_INDEXES):
        if _table_exists(inspector, table_name) and _index_exists(inspector, table_name, index_name):
            op.drop_index(index_name, table_name=table_name)

    for table_name in (
        "point_action_logs",
        "sms_send_logs",
        "automation_dispatches",
        "automation_flows",
        "purchase_records",
        "visit_records",
        "customers",
        "users",
        "branches",
    ):
        if _table_exists(inspector, table_name):
            op.drop_table(table_name)
