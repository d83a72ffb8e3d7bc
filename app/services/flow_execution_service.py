import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.business_time import as_utc, to_local, utc_now
from app.core.config import settings
from app.core.observability import log_event
from app.models.automation import AutomationDispatch, AutomationFlow
from app.schemas.automation import (
    AutomationCallbackIn,
    FilterConfig,
    PointConfig,
    TriggerConfig,
)
from app.services.dedup_service import DedupResult, apply_dedup
from app.services.errors import (
    AutomationError,
    ConcurrentUpdateError,
    DispatchNotFoundError,
    FlowConfigError,
    FlowNotFoundError,
    FlowTransitionError,
)
from app.services.execution_worker import ExecutionJob, get_execution_worker
from app.services.flow_filter_service import ROLE_ADMIN, BranchScope, TargetSelection, resolve_flow_targets
from app.services.repositories import SqlActionLogRepository, SqlCustomerRepository

logger = logging.getLogger("studycafe.automation")

STATE_DRAFT = "draft"
STATE_ACTIVE = "active"
STATE_DISPATCHED = "dispatched"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
STATE_INACTIVE = "inactive"

_FLOW_TRANSITIONS: dict[str, dict[str, str]] = {
    "activate": {
        STATE_DRAFT: STATE_ACTIVE,
        STATE_INACTIVE: STATE_ACTIVE,
    },
    "deactivate": {
        STATE_ACTIVE: STATE_INACTIVE,
        STATE_DISPATCHED: STATE_INACTIVE,
        STATE_COMPLETED: STATE_INACTIVE,
        STATE_FAILED: STATE_INACTIVE,
    },
    "dispatch": {
        STATE_ACTIVE: STATE_DISPATCHED,
        STATE_COMPLETED: STATE_DISPATCHED,
        STATE_FAILED: STATE_DISPATCHED,
    },
    "complete": {
        STATE_DISPATCHED: STATE_COMPLETED,
        STATE_COMPLETED: STATE_COMPLETED,
        STATE_FAILED: STATE_COMPLETED,
    },
    "fail": {
        STATE_DISPATCHED: STATE_FAILED,
        STATE_COMPLETED: STATE_FAILED,
        STATE_FAILED: STATE_FAILED,
    },
}

_POINT_FLOW_TYPES = {"POINT", "SMS_POINT"}
_MESSAGE_FLOW_TYPES = {"SMS", "SMS_POINT"}
_CALLBACK_MATCH_WINDOW = 20


@dataclass(frozen=True)
class FlowConfigs:
    trigger: TriggerConfig
    filter: FilterConfig
    point: PointConfig | None


@dataclass(frozen=True)
class FlowTargets:
    selection: TargetSelection
    dedup: DedupResult


@dataclass(frozen=True)
class DispatchOutcome:
    dispatch: AutomationDispatch
    job: ExecutionJob


@dataclass(frozen=True)
class SchedulerSummary:
    evaluated_flows: int
    due_flows: int
    dispatched_flows: int
    failed_flows: int
    jobs: list[ExecutionJob]


@dataclass(frozen=True)
class CallbackOutcome:
    applied: bool
    dispatch_id: str | None
    logs_created: int


def next_state(current: str, event: str) -> str:
    transitions = _FLOW_TRANSITIONS.get(event)
    if transitions is None:
        raise ValueError(f"Unknown flow event '{event}'")
    target = transitions.get(current)
    if target is None:
        raise FlowTransitionError(f"Cannot {event} a flow in state '{current}'")
    return target


def flow_configs(flow: AutomationFlow) -> FlowConfigs:
    try:
        trigger = TriggerConfig.model_validate(_trigger_settings(flow.trigger_config_json))
        filter_config = FilterConfig.model_validate(flow.filter_config_json or {})
        point = PointConfig.model_validate(flow.point_config_json) if flow.point_config_json else None
    except ValidationError as exc:
        raise FlowConfigError(f"Stored flow configuration is invalid: {exc.errors()[0].get('msg')}") from exc

    if flow.flow_type in _POINT_FLOW_TYPES and point is None:
        raise FlowConfigError("Point flows require pointConfig")
    if flow.flow_type in _MESSAGE_FLOW_TYPES and not (flow.message_template or "").strip():
        raise FlowConfigError("Message flows require a message template")
    return FlowConfigs(trigger=trigger, filter=filter_config, point=point)


def last_execute_result(flow: AutomationFlow) -> dict[str, Any] | None:
    trigger = flow.trigger_config_json if isinstance(flow.trigger_config_json, dict) else {}
    result = trigger.get("lastExecuteResult")
    return result if isinstance(result, dict) else None


def _trigger_settings(trigger_json: dict[str, Any] | None) -> dict[str, Any]:
    raw = dict(trigger_json or {})
    raw.pop("lastExecuteResult", None)
    return raw


def create_flow(
    db: Session,
    *,
    branch_id: str,
    actor_user_id: str,
    payload,
) -> AutomationFlow:
    point_config = getattr(payload, "point_config", None)
    flow = AutomationFlow(
        id=str(uuid.uuid4()),
        branch_id=branch_id,
        name=payload.name.strip(),
        flow_type=payload.flow_type,
        is_active=payload.is_active,
        status=STATE_ACTIVE if payload.is_active else STATE_DRAFT,
        trigger_config_json=payload.trigger_config.model_dump(mode="json", by_alias=True, exclude_none=True),
        filter_config_json=payload.filter_config.model_dump(mode="json", by_alias=True, exclude_none=True),
        message_template=getattr(payload, "message_template", None),
        message_type=getattr(payload, "message_type", None),
        message_deduplicate_days=getattr(payload, "message_deduplicate_days", None),
        point_config_json=point_config.model_dump(mode="json", by_alias=True) if point_config else None,
        last_executed_at=None,
        version=1,
        created_by_user_id=actor_user_id,
        updated_by_user_id=actor_user_id,
    )
    db.add(flow)
    db.flush()
    return flow


def update_flow(db: Session, *, flow: AutomationFlow, actor_user_id: str, payload) -> AutomationFlow:
    if flow.status == STATE_DISPATCHED:
        raise FlowTransitionError("Cannot edit a flow while a dispatch is awaiting its callback")
    fields = payload.model_fields_set
    if "name" in fields and payload.name:
        flow.name = payload.name.strip()
    if "trigger_config" in fields and payload.trigger_config is not None:
        trigger_json = payload.trigger_config.model_dump(mode="json", by_alias=True, exclude_none=True)
        previous = last_execute_result(flow)
        if previous is not None:
            trigger_json["lastExecuteResult"] = previous
        flow.trigger_config_json = trigger_json
    if "filter_config" in fields and payload.filter_config is not None:
        flow.filter_config_json = payload.filter_config.model_dump(mode="json", by_alias=True, exclude_none=True)
    if "message_template" in fields:
        flow.message_template = payload.message_template
    if "message_type" in fields:
        flow.message_type = payload.message_type
    if "message_deduplicate_days" in fields:
        flow.message_deduplicate_days = payload.message_deduplicate_days
    if "point_config" in fields:
        flow.point_config_json = (
            payload.point_config.model_dump(mode="json", by_alias=True) if payload.point_config else None
        )
    flow_configs(flow)
    flow.updated_by_user_id = actor_user_id
    flow.version += 1
    db.flush()
    return flow


def activate_flow(db: Session, *, flow: AutomationFlow, actor_user_id: str) -> AutomationFlow:
    flow_configs(flow)
    flow.status = next_state(flow.status, "activate")
    flow.is_active = True
    flow.updated_by_user_id = actor_user_id
    flow.version += 1
    db.flush()
    return flow


def deactivate_flow(db: Session, *, flow: AutomationFlow, actor_user_id: str) -> AutomationFlow:
    flow.status = next_state(flow.status, "deactivate")
    flow.is_active = False
    flow.updated_by_user_id = actor_user_id
    flow.version += 1
    db.flush()
    return flow


def _dedup_settings(flow: AutomationFlow, configs: FlowConfigs) -> tuple[int | None, str]:
    if flow.flow_type in _POINT_FLOW_TYPES and configs.point is not None:
        return configs.point.deduplicate_days, "point"
    return flow.message_deduplicate_days, "sms"


def compute_flow_targets(
    db: Session,
    *,
    flow: AutomationFlow,
    scope: BranchScope,
    now: datetime,
) -> FlowTargets:
    configs = flow_configs(flow)
    selection = resolve_flow_targets(
        SqlCustomerRepository(db),
        configs.filter,
        branch_id=flow.branch_id,
        scope=scope,
        reference=now,
    )
    deduplicate_days, kind = _dedup_settings(flow, configs)
    dedup = apply_dedup(
        selection.phones,
        flow_id=flow.id,
        deduplicate_days=deduplicate_days,
        log_repository=SqlActionLogRepository(db),
        kind=kind,
        now=now,
    )
    return FlowTargets(selection=selection, dedup=dedup)


def _job_action(flow: AutomationFlow, point: PointConfig | None) -> str:
    point_action = None
    if point is not None:
        point_action = "point-grant" if point.action == "GRANT" else "point-deduct"
    if flow.flow_type == "SMS":
        return "message"
    if flow.flow_type == "POINT":
        return point_action or "point-grant"
    return f"message+{point_action or 'point-grant'}"


def _job_payload(flow: AutomationFlow, point: PointConfig | None) -> dict[str, Any]:
    payload: dict[str, Any] = {"flowName": flow.name, "flowType": flow.flow_type}
    if flow.flow_type in _MESSAGE_FLOW_TYPES:
        payload["message"] = {"template": flow.message_template, "type": flow.message_type or "SMS"}
    if point is not None:
        point_json = point.model_dump(mode="json", by_alias=True)
        point_json["expiryDays"] = point.expiry_days or settings.automation_point_expiry_days_default
        payload["point"] = point_json
    return payload


def _open_dispatch(db: Session, *, flow_id: str) -> AutomationDispatch | None:
    return db.execute(
        select(AutomationDispatch)
        .where(
            AutomationDispatch.flow_id == flow_id,
            AutomationDispatch.status == "dispatched",
        )
        .order_by(AutomationDispatch.dispatched_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def _expire_stale_dispatch(db: Session, *, flow: AutomationFlow, now: datetime) -> str:
    """Return the state the next dispatch starts from."""
    if flow.status != STATE_DISPATCHED:
        return flow.status
    open_dispatch = _open_dispatch(db, flow_id=flow.id)
    timeout = timedelta(minutes=settings.automation_dispatch_timeout_minutes)
    if open_dispatch is not None and as_utc(open_dispatch.dispatched_at) + timeout > as_utc(now):
        raise FlowTransitionError("Flow already has a dispatch awaiting its callback")
    if open_dispatch is not None:
        open_dispatch.status = "expired"
        open_dispatch.completed_at = as_utc(now)
    return STATE_ACTIVE if flow.is_active else STATE_INACTIVE


def _claim_flow(db: Session, *, flow: AutomationFlow, expected_version: int, new_status: str) -> None:
    claimed = db.execute(
        update(AutomationFlow)
        .where(
            AutomationFlow.id == flow.id,
            AutomationFlow.version == expected_version,
        )
        .values(
            status=new_status,
            version=expected_version + 1,
            updated_at=utc_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        raise ConcurrentUpdateError("Flow was dispatched or edited concurrently")
    db.refresh(flow)


def dispatch_flow(
    db: Session,
    *,
    flow: AutomationFlow,
    scope: BranchScope,
    now: datetime | None = None,
    actor_user_id: str | None = None,
    worker_name: str | None = None,
) -> DispatchOutcome:
    now = as_utc(now or utc_now())
    if not flow.is_active:
        raise FlowTransitionError("Only active flows can be dispatched")
    configs = flow_configs(flow)
    worker = get_execution_worker(worker_name or settings.automation_execution_worker_default)
    expected_version = flow.version
    current = _expire_stale_dispatch(db, flow=flow, now=now)
    new_status = next_state(current, "dispatch")
    targets = compute_flow_targets(db, flow=flow, scope=scope, now=now)

    _claim_flow(db, flow=flow, expected_version=expected_version, new_status=new_status)
    dispatch = AutomationDispatch(
        id=str(uuid.uuid4()),
        flow_id=flow.id,
        branch_id=flow.branch_id,
        status="dispatched",
        action=_job_action(flow, configs.point),
        worker=worker.name,
        target_count=len(targets.dedup.accepted),
        target_phones_json=targets.dedup.accepted,
        skipped_phones_json=targets.dedup.skipped + targets.selection.excluded_phones,
        payload_json=_job_payload(flow, configs.point),
        result_json=None,
        dispatched_by_user_id=actor_user_id,
        dispatched_at=now,
    )
    db.add(dispatch)
    db.flush()

    job = ExecutionJob(
        dispatch_id=dispatch.id,
        flow_id=flow.id,
        branch_id=flow.branch_id,
        action=dispatch.action,
        target_phones=list(targets.dedup.accepted),
        payload=dict(dispatch.payload_json or {}),
    )
    handoff = worker.hand_off(job)
    log_event(
        logger,
        "automation_flow_dispatched",
        flow_id=flow.id,
        dispatch_id=dispatch.id,
        worker=handoff.worker,
        handoff_id=handoff.handoff_id,
        target_count=dispatch.target_count,
        deduplicated=len(targets.dedup.skipped),
        excluded=len(targets.selection.excluded_phones),
    )
    return DispatchOutcome(dispatch=dispatch, job=job)


def trigger_is_due(trigger: TriggerConfig, now: datetime) -> bool:
    if trigger.type == "manual":
        return False
    local_now = to_local(now)
    if trigger.time:
        hour = int(trigger.time.split(":")[0])
        if hour != local_now.hour:
            return False
    if trigger.type == "scheduled":
        return trigger.scheduled_date is None or trigger.scheduled_date == local_now.date()
    recurring = trigger.recurring
    if recurring is None:
        return True
    if recurring.end_date is not None and local_now.date() > recurring.end_date:
        return False
    if recurring.frequency == "weekly":
        # weekday() is Monday=0; stored days are Sunday=0.
        sunday_based = (local_now.weekday() + 1) % 7
        return sunday_based in recurring.days_of_week
    if recurring.frequency == "monthly":
        return local_now.day == recurring.day_of_month
    return True


def _dispatched_this_hour(db: Session, *, flow_id: str, now: datetime) -> bool:
    latest = db.execute(
        select(AutomationDispatch.dispatched_at)
        .where(AutomationDispatch.flow_id == flow_id)
        .order_by(AutomationDispatch.dispatched_at.desc())
        .limit(1)
    ).scalar_one_or_none()
    if latest is None:
        return False
    local_latest = to_local(latest)
    local_now = to_local(now)
    return local_latest.date() == local_now.date() and local_latest.hour == local_now.hour


def dispatch_due_flows(db: Session, *, now: datetime | None = None) -> SchedulerSummary:
    """Dispatch every active flow whose trigger matches ``now``.

    Each due flow is committed on its own; a flow that fails for any reason is
    rolled back, logged and counted in ``failed_flows`` while the run goes on.
    """
    now = as_utc(now or utc_now())
    flow_ids = db.execute(
        select(AutomationFlow.id)
        .where(AutomationFlow.is_active.is_(True))
        .order_by(AutomationFlow.branch_id.asc(), AutomationFlow.created_at.asc())
    ).scalars().all()

    counts = {"evaluated_flows": 0, "due_flows": 0, "dispatched_flows": 0, "failed_flows": 0}
    jobs: list[ExecutionJob] = []
    system_scope = BranchScope(role=ROLE_ADMIN, branch_id=None)
    for flow_id in flow_ids:
        flow = db.get(AutomationFlow, flow_id)
        if flow is None:
            continue
        counts["evaluated_flows"] += 1
        try:
            trigger = flow_configs(flow).trigger
        except FlowConfigError as exc:
            counts["failed_flows"] += 1
            log_event(logger, "automation_flow_invalid", level=logging.WARNING, flow_id=flow_id, error=exc.message)
            continue
        if not trigger_is_due(trigger, now) or _dispatched_this_hour(db, flow_id=flow_id, now=now):
            continue
        counts["due_flows"] += 1
        try:
            outcome = dispatch_flow(db, flow=flow, scope=system_scope, now=now)
        except AutomationError as exc:
            db.rollback()
            counts["failed_flows"] += 1
            log_event(
                logger, "automation_flow_dispatch_skipped", level=logging.WARNING, flow_id=flow_id, error=exc.message
            )
            continue
        except Exception as exc:  # noqa: BLE001
            db.rollback()
            counts["failed_flows"] += 1
            log_event(
                logger,
                "automation_flow_dispatch_failed",
                level=logging.ERROR,
                exc_info=True,
                flow_id=flow_id,
                error=f"{type(exc).__name__}: {exc}"[:300],
            )
            continue
        db.commit()
        counts["dispatched_flows"] += 1
        jobs.append(outcome.job)

    log_event(logger, "automation_scheduler_run", at=now.isoformat(), **counts)
    return SchedulerSummary(jobs=jobs, **counts)


def _resolve_callback_dispatch(
    db: Session,
    *,
    flow: AutomationFlow,
    dispatch_id: str | None,
    executed_at: datetime,
) -> AutomationDispatch | None:
    """Find the dispatch a report belongs to.

    Without an explicit ``dispatch_id`` a report is matched to the dispatch it
    already settled (a redelivery), then to the open dispatch, then to the
    most recent one.
    """
    if dispatch_id:
        dispatch = db.execute(
            select(AutomationDispatch).where(
                AutomationDispatch.id == dispatch_id,
                AutomationDispatch.flow_id == flow.id,
            )
        ).scalar_one_or_none()
        if dispatch is None:
            raise DispatchNotFoundError("Dispatch not found for flow")
        return dispatch

    recent = db.execute(
        select(AutomationDispatch)
        .where(AutomationDispatch.flow_id == flow.id)
        .order_by(AutomationDispatch.dispatched_at.desc())
        .limit(_CALLBACK_MATCH_WINDOW)
    ).scalars().all()
    for dispatch in recent:
        if dispatch.executed_at is not None and as_utc(dispatch.executed_at) == executed_at:
            return dispatch
    for dispatch in recent:
        if dispatch.status == "dispatched":
            return dispatch
    return recent[0] if recent else None


def _result_json(payload: AutomationCallbackIn, *, dispatch_id: str | None) -> dict[str, Any]:
    return {
        "success": payload.success,
        "successCount": payload.success_count,
        "failCount": payload.fail_count,
        "totalCount": payload.total_count,
        "errorMessage": payload.error_message,
        "executedAt": as_utc(payload.executed_at).isoformat(),
        "dispatchId": dispatch_id,
    }


def _record_action_logs(
    db: Session,
    *,
    flow: AutomationFlow,
    dispatch: AutomationDispatch | None,
    payload: AutomationCallbackIn,
    executed_at: datetime,
) -> int:
    if not payload.results:
        return 0
    if dispatch is None:
        log_event(
            logger,
            "automation_callback_uncorrelated",
            level=logging.WARNING,
            flow_id=flow.id,
            results=len(payload.results),
        )
        return 0
    logs = SqlActionLogRepository(db)
    customers = {
        customer.phone: customer.id
        for customer in SqlCustomerRepository(db).find_by_phones([item.phone for item in payload.results])
    }
    dispatch_id = dispatch.id
    created = 0
    kinds = []
    if flow.flow_type in _POINT_FLOW_TYPES:
        kinds.append("point")
    if flow.flow_type in _MESSAGE_FLOW_TYPES:
        kinds.append("sms")
    for kind in kinds:
        already = logs.logged_phones(dispatch_id=dispatch_id, kind=kind)
        entries = []
        for item in payload.results:
            if item.phone in already:
                continue
            already.add(item.phone)
            entries.append(
                {
                    "phone": item.phone,
                    "status": item.status,
                    "message": item.message,
                    "customer_id": customers.get(item.phone),
                }
            )
        if kind == "point":
            point = PointConfig.model_validate(flow.point_config_json)
            created += logs.append_point_logs(
                flow_id=flow.id,
                dispatch_id=dispatch_id,
                entries=entries,
                action=point.action,
                amount=point.amount,
                reason=point.reason,
                expiry_date=executed_at
                + timedelta(days=point.expiry_days or settings.automation_point_expiry_days_default),
                executed_at=executed_at,
            )
        else:
            created += logs.append_sms_logs(
                flow_id=flow.id,
                dispatch_id=dispatch_id,
                entries=entries,
                message=flow.message_template,
                sent_at=executed_at,
            )
    return created


def _callback_state(flow: AutomationFlow, success: bool) -> str:
    if not flow.is_active:
        return flow.status
    # A callback racing a stale-dispatch expiry still settles the cycle.
    current = STATE_DISPATCHED if flow.status == STATE_ACTIVE else flow.status
    return next_state(current, "complete" if success else "fail")


def _settle_dispatch(
    dispatch: AutomationDispatch | None,
    *,
    result: dict[str, Any],
    executed_at: datetime,
    success: bool,
) -> None:
    if dispatch is None:
        return
    if dispatch.executed_at is not None and as_utc(dispatch.executed_at) > executed_at:
        return
    dispatch.status = "completed" if success else "failed"
    dispatch.result_json = result
    dispatch.executed_at = executed_at
    dispatch.completed_at = utc_now()


def ingest_callback(
    db: Session,
    *,
    flow_id: str,
    payload: AutomationCallbackIn,
) -> CallbackOutcome:
    """Apply one execution report from the worker.

    The flow row is rewritten with a conditional UPDATE on ``version``; if a
    concurrent writer got there first the whole read-merge-write is retried.
    Reports older than the stored ``last_executed_at`` are acknowledged but
    not applied.
    """
    executed_at = as_utc(payload.executed_at)
    for _ in range(settings.automation_callback_max_retries):
        flow = db.execute(
            select(AutomationFlow)
            .where(AutomationFlow.id == flow_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if flow is None:
            raise FlowNotFoundError("Flow not found")
        dispatch = _resolve_callback_dispatch(
            db, flow=flow, dispatch_id=payload.dispatch_id, executed_at=executed_at
        )
        dispatch_id = dispatch.id if dispatch is not None else None
        logs_created = _record_action_logs(db, flow=flow, dispatch=dispatch, payload=payload, executed_at=executed_at)
        result = _result_json(payload, dispatch_id=dispatch_id)
        _settle_dispatch(dispatch, result=result, executed_at=executed_at, success=payload.success)

        previous = flow.last_executed_at
        if previous is not None and as_utc(previous) > executed_at:
            db.flush()
            log_event(
                logger,
                "automation_callback_stale",
                flow_id=flow.id,
                dispatch_id=dispatch_id,
                executed_at=executed_at.isoformat(),
            )
            return CallbackOutcome(applied=False, dispatch_id=dispatch_id, logs_created=logs_created)

        new_status = _callback_state(flow, payload.success)
        trigger_json = dict(flow.trigger_config_json or {})
        trigger_json["lastExecuteResult"] = result
        expected_version = flow.version
        updated = db.execute(
            update(AutomationFlow)
            .where(
                AutomationFlow.id == flow.id,
                AutomationFlow.version == expected_version,
            )
            .values(
                trigger_config_json=trigger_json,
                last_executed_at=executed_at,
                status=new_status,
                version=expected_version + 1,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if updated.rowcount == 1:
            db.expire(flow)
            log_event(
                logger,
                "automation_callback_applied",
                flow_id=flow_id,
                dispatch_id=dispatch_id,
                success=payload.success,
                success_count=payload.success_count,
                fail_count=payload.fail_count,
                status=new_status,
            )
            return CallbackOutcome(applied=True, dispatch_id=dispatch_id, logs_created=logs_created)
        db.rollback()
        log_event(logger, "automation_callback_retry", level=logging.WARNING, flow_id=flow_id)

    raise ConcurrentUpdateError("Flow was updated concurrently; callback not applied")
