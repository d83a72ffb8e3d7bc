from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.api_docs import error_responses, http_error
from app.core.business_time import as_utc, utc_now
from app.core.deps import get_db
from app.core.permissions import require_roles, require_worker_secret, resolve_branch_id
from app.core.security_current import UserAccess
from app.models.automation import AutomationDispatch, AutomationFlow
from app.schemas.automation import (
    AutomationCallbackIn,
    AutomationDispatchListOut,
    AutomationDispatchOut,
    AutomationFlowCreateIn,
    AutomationFlowListOut,
    AutomationFlowOut,
    AutomationFlowUpdateIn,
    CallbackAckOut,
    FlowDispatchOut,
    FlowTargetPreviewOut,
    JobDescriptionOut,
    SchedulerRunOut,
)
from app.schemas.common import PaginationMeta
from app.services.errors import AutomationError
from app.services.execution_worker import ExecutionJob
from app.services.flow_execution_service import (
    activate_flow,
    compute_flow_targets,
    create_flow,
    deactivate_flow,
    dispatch_due_flows,
    dispatch_flow,
    ingest_callback,
    last_execute_result,
    update_flow,
)
from app.services.flow_filter_service import ensure_branch_scope

router = APIRouter(prefix="/automation", tags=["automation"])
branch_user = require_roles("ADMIN", "BRANCH")


def _flow_out(flow: AutomationFlow) -> AutomationFlowOut:
    trigger_config = dict(flow.trigger_config_json or {})
    trigger_config.pop("lastExecuteResult", None)
    return AutomationFlowOut(
        id=flow.id,
        branch_id=flow.branch_id,
        name=flow.name,
        flow_type=flow.flow_type,
        is_active=flow.is_active,
        status=flow.status,
        trigger_config=trigger_config,
        filter_config=flow.filter_config_json or {},
        message_template=flow.message_template,
        message_type=flow.message_type,
        message_deduplicate_days=flow.message_deduplicate_days,
        point_config=flow.point_config_json,
        last_executed_at=flow.last_executed_at,
        last_execute_result=last_execute_result(flow),
        version=flow.version,
        created_by_user_id=flow.created_by_user_id,
        created_at=flow.created_at,
        updated_at=flow.updated_at,
    )


def _dispatch_out(dispatch: AutomationDispatch) -> AutomationDispatchOut:
    return AutomationDispatchOut(
        id=dispatch.id,
        flow_id=dispatch.flow_id,
        branch_id=dispatch.branch_id,
        status=dispatch.status,
        action=dispatch.action,
        worker=dispatch.worker,
        target_count=dispatch.target_count,
        target_phones=list(dispatch.target_phones_json or []),
        skipped_phones=list(dispatch.skipped_phones_json or []),
        result=dispatch.result_json,
        dispatched_at=dispatch.dispatched_at,
        executed_at=dispatch.executed_at,
        completed_at=dispatch.completed_at,
    )


def _job_out(job: ExecutionJob) -> JobDescriptionOut:
    return JobDescriptionOut(
        dispatch_id=job.dispatch_id,
        flow_id=job.flow_id,
        branch_id=job.branch_id,
        action=job.action,
        target_phones=job.target_phones,
        payload=job.payload,
    )


def _flow_or_404(db: Session, *, access: UserAccess, flow_id: str) -> AutomationFlow:
    flow = db.execute(select(AutomationFlow).where(AutomationFlow.id == flow_id)).scalar_one_or_none()
    if not flow:
        raise HTTPException(status_code=404, detail="Automation flow not found")
    try:
        ensure_branch_scope(access.scope, flow.branch_id)
    except AutomationError as exc:
        raise http_error(exc) from exc
    return flow


@router.post(
    "/flows",
    response_model=AutomationFlowOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create automation flow",
    responses=error_responses(400, 401, 403, 409, 422, 500),
)
def create_automation_flow(
    payload: Annotated[AutomationFlowCreateIn, Body(discriminator="flow_type")],
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    branch_id = resolve_branch_id(access, payload.branch_id)
    try:
        flow = create_flow(db, branch_id=branch_id, actor_user_id=access.user.id, payload=payload)
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation flow name already exists") from None
    db.refresh(flow)
    return _flow_out(flow)


@router.get(
    "/flows",
    response_model=AutomationFlowListOut,
    summary="List automation flows",
    responses=error_responses(401, 403, 422, 500),
)
def list_automation_flows(
    branch_id: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    # Admins may list across branches; branch users are pinned to their own.
    target_branch_id = resolve_branch_id(access, branch_id) if (branch_id or not access.is_admin) else None

    count_stmt = select(func.count(AutomationFlow.id))
    data_stmt = select(AutomationFlow)
    if target_branch_id:
        count_stmt = count_stmt.where(AutomationFlow.branch_id == target_branch_id)
        data_stmt = data_stmt.where(AutomationFlow.branch_id == target_branch_id)
    if is_active is not None:
        count_stmt = count_stmt.where(AutomationFlow.is_active.is_(is_active))
        data_stmt = data_stmt.where(AutomationFlow.is_active.is_(is_active))

    total = int(db.execute(count_stmt).scalar_one())
    flows = db.execute(
        data_stmt.order_by(AutomationFlow.created_at.desc(), AutomationFlow.name.asc()).offset(offset).limit(limit)
    ).scalars().all()
    items = [_flow_out(flow) for flow in flows]
    count = len(items)
    return AutomationFlowListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        branch_id=target_branch_id,
        is_active=is_active,
    )


@router.get(
    "/flows/{flow_id}",
    response_model=AutomationFlowOut,
    summary="Get automation flow",
    responses=error_responses(401, 403, 404, 500),
)
def get_automation_flow(
    flow_id: str,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    return _flow_out(_flow_or_404(db, access=access, flow_id=flow_id))


@router.patch(
    "/flows/{flow_id}",
    response_model=AutomationFlowOut,
    summary="Update automation flow",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def update_automation_flow(
    flow_id: str,
    payload: AutomationFlowUpdateIn,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    flow = _flow_or_404(db, access=access, flow_id=flow_id)
    try:
        update_flow(db, flow=flow, actor_user_id=access.user.id, payload=payload)
        db.commit()
    except AutomationError as exc:
        raise http_error(exc) from exc
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Automation flow name already exists") from None
    db.refresh(flow)
    return _flow_out(flow)


@router.post(
    "/flows/{flow_id}/activate",
    response_model=AutomationFlowOut,
    summary="Activate automation flow",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def activate_automation_flow(
    flow_id: str,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    flow = _flow_or_404(db, access=access, flow_id=flow_id)
    try:
        activate_flow(db, flow=flow, actor_user_id=access.user.id)
    except AutomationError as exc:
        raise http_error(exc) from exc
    db.commit()
    db.refresh(flow)
    return _flow_out(flow)


@router.post(
    "/flows/{flow_id}/deactivate",
    response_model=AutomationFlowOut,
    summary="Deactivate automation flow",
    responses=error_responses(401, 403, 404, 409, 500),
)
def deactivate_automation_flow(
    flow_id: str,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    flow = _flow_or_404(db, access=access, flow_id=flow_id)
    try:
        deactivate_flow(db, flow=flow, actor_user_id=access.user.id)
    except AutomationError as exc:
        raise http_error(exc) from exc
    db.commit()
    db.refresh(flow)
    return _flow_out(flow)


@router.post(
    "/flows/{flow_id}/preview",
    response_model=FlowTargetPreviewOut,
    summary="Preview flow targets without dispatching",
    responses=error_responses(401, 403, 404, 422, 500),
)
def preview_automation_flow(
    flow_id: str,
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    flow = _flow_or_404(db, access=access, flow_id=flow_id)
    try:
        targets = compute_flow_targets(db, flow=flow, scope=access.scope, now=utc_now())
    except AutomationError as exc:
        raise http_error(exc) from exc
    return FlowTargetPreviewOut(
        flow_id=flow.id,
        target_mode=targets.selection.target_mode,
        target_phones=targets.dedup.accepted,
        excluded_phones=targets.selection.excluded_phones,
        deduplicated_phones=targets.dedup.skipped,
        target_count=len(targets.dedup.accepted),
    )


@router.post(
    "/flows/{flow_id}/dispatch",
    response_model=FlowDispatchOut,
    summary="Dispatch automation flow now",
    description="Resolves targets, records a dispatch and hands the job to the execution worker.",
    responses=error_responses(401, 403, 404, 409, 422, 500),
)
def dispatch_automation_flow(
    flow_id: str,
    worker: str | None = Query(default=None),
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    flow = _flow_or_404(db, access=access, flow_id=flow_id)
    try:
        outcome = dispatch_flow(
            db,
            flow=flow,
            scope=access.scope,
            actor_user_id=access.user.id,
            worker_name=worker,
        )
    except AutomationError as exc:
        raise http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    db.commit()
    db.refresh(flow)
    db.refresh(outcome.dispatch)
    return FlowDispatchOut(
        flow=_flow_out(flow),
        dispatch=_dispatch_out(outcome.dispatch),
        job=_job_out(outcome.job),
    )


@router.get(
    "/flows/{flow_id}/dispatches",
    response_model=AutomationDispatchListOut,
    summary="List dispatches of a flow",
    responses=error_responses(401, 403, 404, 422, 500),
)
def list_flow_dispatches(
    flow_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    access: UserAccess = Depends(branch_user),
):
    flow = _flow_or_404(db, access=access, flow_id=flow_id)
    total = int(
        db.execute(select(func.count(AutomationDispatch.id)).where(AutomationDispatch.flow_id == flow.id)).scalar_one()
    )
    dispatches = db.execute(
        select(AutomationDispatch)
        .where(AutomationDispatch.flow_id == flow.id)
        .order_by(AutomationDispatch.dispatched_at.desc())
        .offset(offset)
        .limit(limit)
    ).scalars().all()
    items = [_dispatch_out(dispatch) for dispatch in dispatches]
    count = len(items)
    return AutomationDispatchListOut(
        items=items,
        pagination=PaginationMeta(
            total=total,
            limit=limit,
            offset=offset,
            count=count,
            has_next=(offset + count) < total,
        ),
        flow_id=flow.id,
    )


@router.post(
    "/scheduler/run",
    response_model=SchedulerRunOut,
    summary="Dispatch all due flows",
    description="Called by the scheduler worker. Authenticated with the shared worker secret.",
    dependencies=[Depends(require_worker_secret)],
    responses=error_responses(401, 422, 500),
)
def run_scheduler(
    at: datetime | None = Query(default=None, description="Evaluate triggers at this instant instead of now."),
    db: Session = Depends(get_db),
):
    summary = dispatch_due_flows(db, now=as_utc(at) if at else None)
    return SchedulerRunOut(
        evaluated_flows=summary.evaluated_flows,
        due_flows=summary.due_flows,
        dispatched_flows=summary.dispatched_flows,
        failed_flows=summary.failed_flows,
        jobs=[_job_out(job) for job in summary.jobs],
    )


@router.post(
    "/flows/{flow_id}/callback",
    response_model=CallbackAckOut,
    summary="Execution worker callback",
    description=(
        "Reports the outcome of a dispatch. Authenticated with "
        "`Authorization: Bearer <AUTOMATION_CALLBACK_SECRET>`. Replays are idempotent; "
        "reports older than the last applied one are acknowledged with `applied=false`."
    ),
    dependencies=[Depends(require_worker_secret)],
    responses=error_responses(401, 404, 409, 422, 500),
)
def automation_callback(
    flow_id: str,
    payload: AutomationCallbackIn,
    db: Session = Depends(get_db),
):
    try:
        outcome = ingest_callback(db, flow_id=flow_id, payload=payload)
    except AutomationError as exc:
        db.rollback()
        raise http_error(exc) from exc
    db.commit()
    return CallbackAckOut(success=True, applied=outcome.applied, dispatch_id=outcome.dispatch_id)
