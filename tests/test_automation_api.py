from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from app.core.config import settings
from app.models.automation import AutomationDispatch, AutomationFlow, PointActionLog, SmsSendLog
from app.services import flow_execution_service
from app.services.errors import ConcurrentUpdateError
from app.services.flow_execution_service import dispatch_flow
from app.services.flow_filter_service import BranchScope

CHURNED_PHONE = "01010000001"
AT_RISK_PHONE = "01010000002"
HONGDAE_PHONE = "01011111111"


def _ago(days: float = 0) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def _seed_customers(client, login):
    gangnam = login("gangnam_manager")
    for phone, days in ((CHURNED_PHONE, 40), (AT_RISK_PHONE, 10)):
        response = client.post("/customers/visits", json={"phone": phone, "visited_at": _ago(days)}, headers=gangnam)
        assert response.status_code == 201
    response = client.post(
        "/customers/visits",
        json={"phone": HONGDAE_PHONE, "visited_at": _ago(3)},
        headers=login("hongdae_manager"),
    )
    assert response.status_code == 201


def _sms_flow(client, headers, **overrides):
    body = {
        "name": "Win-back message",
        "flow_type": "SMS",
        "is_active": True,
        "message_template": "오랜만이에요! 이번 주 방문 시 1시간 무료",
        "filter_config": {"visitSegments": ["churned"]},
        "trigger_config": {"type": "manual"},
    }
    body.update(overrides)
    return client.post("/automation/flows", json=body, headers=headers)


def _point_flow(client, headers, **overrides):
    body = {
        "name": "Comeback points",
        "flow_type": "POINT",
        "is_active": True,
        "filter_config": {"manualPhones": ["010-1000-0002"]},
        "point_config": {"action": "GRANT", "amount": 500, "reason": "comeback", "deduplicateDays": 7},
    }
    body.update(overrides)
    return client.post("/automation/flows", json=body, headers=headers)


def _callback_body(*, dispatch_id: str | None, executed_at: str, success: bool = True, phones=()):
    return {
        "success": success,
        "successCount": len(phones) if success else 0,
        "failCount": 0 if success else len(phones),
        "totalCount": len(phones),
        "errorMessage": None if success else "gateway timeout",
        "executedAt": executed_at,
        "dispatchId": dispatch_id,
        "results": [{"phone": phone, "status": "SUCCESS" if success else "FAILED"} for phone in phones],
    }


def test_flow_crud_and_validation(seeded_context, login):
    client, _ = seeded_context
    gangnam = login("gangnam_manager")

    created = _sms_flow(client, gangnam)
    assert created.status_code == 201
    flow = created.json()
    assert flow["branch_id"] == "branch-gangnam"
    assert flow["status"] == "active"
    assert flow["version"] == 1
    assert flow["filter_config"]["visitSegments"] == ["churned"]
    assert flow["last_execute_result"] is None

    duplicate = _sms_flow(client, gangnam)
    assert duplicate.status_code == 409

    missing_point = client.post(
        "/automation/flows",
        json={"name": "Broken points", "flow_type": "POINT", "filter_config": {}},
        headers=gangnam,
    )
    assert missing_point.status_code == 422

    unknown_type = _sms_flow(client, gangnam, name="Fax blast", flow_type="FAX")
    assert unknown_type.status_code == 422

    bad_filter = _sms_flow(client, gangnam, name="Typo filter", filter_config={"visitSegmentz": ["churned"]})
    assert bad_filter.status_code == 422

    draft = _point_flow(client, gangnam, is_active=False)
    assert draft.status_code == 201
    assert draft.json()["status"] == "draft"

    patched = client.patch(
        f"/automation/flows/{flow['id']}",
        json={"name": "Win-back v2", "filter_config": {"visitSegments": ["churned", "at_risk_7"]}},
        headers=gangnam,
    )
    assert patched.status_code == 200
    assert patched.json()["name"] == "Win-back v2"
    assert patched.json()["version"] == 2
    assert patched.json()["filter_config"]["visitSegments"] == ["churned", "at_risk_7"]

    listed = client.get("/automation/flows", headers=gangnam)
    assert listed.status_code == 200
    assert listed.json()["pagination"]["total"] == 2

    active_only = client.get("/automation/flows", params={"is_active": True}, headers=gangnam)
    assert [item["name"] for item in active_only.json()["items"]] == ["Win-back v2"]


def test_admin_must_name_branch_when_creating(seeded_context, login):
    client, _ = seeded_context
    admin = login("admin")

    assert _sms_flow(client, admin).status_code == 400
    created = _sms_flow(client, admin, branch_id="branch-hongdae")
    assert created.status_code == 201
    assert created.json()["branch_id"] == "branch-hongdae"

    everything = client.get("/automation/flows", headers=admin)
    assert everything.json()["pagination"]["total"] == 1
    assert everything.json()["branch_id"] is None


def test_flows_of_another_branch_are_forbidden(seeded_context, login):
    client, _ = seeded_context
    flow_id = _sms_flow(client, login("gangnam_manager")).json()["id"]
    hongdae = login("hongdae_manager")

    assert client.get(f"/automation/flows/{flow_id}", headers=hongdae).status_code == 403
    assert client.post(f"/automation/flows/{flow_id}/preview", headers=hongdae).status_code == 403
    assert client.post(f"/automation/flows/{flow_id}/dispatch", headers=hongdae).status_code == 403
    assert client.patch(f"/automation/flows/{flow_id}", json={"name": "Hijack"}, headers=hongdae).status_code == 403
    assert _sms_flow(client, hongdae, name="Cross branch", branch_id="branch-gangnam").status_code == 403

    assert client.get("/automation/flows/does-not-exist", headers=hongdae).status_code == 404
    assert client.get(f"/automation/flows/{flow_id}", headers=login("admin")).status_code == 200


def test_manual_phone_from_another_branch_is_excluded_from_targets(seeded_context, login):
    client, _ = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _sms_flow(
        client,
        gangnam,
        name="Manual outreach",
        filter_config={"manualPhones": ["010-1111-1111"]},
    ).json()["id"]

    preview = client.post(f"/automation/flows/{flow_id}/preview", headers=gangnam)
    assert preview.status_code == 200
    body = preview.json()
    assert body["target_mode"] == "manual"
    assert body["target_phones"] == []
    assert body["excluded_phones"] == [HONGDAE_PHONE]
    assert body["target_count"] == 0


def test_dispatch_and_callback_lifecycle(seeded_context, login, worker_headers):
    client, session_local = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _sms_flow(client, gangnam).json()["id"]

    preview = client.post(f"/automation/flows/{flow_id}/preview", headers=gangnam)
    assert preview.json()["target_phones"] == [CHURNED_PHONE]

    dispatched = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam)
    assert dispatched.status_code == 200
    body = dispatched.json()
    dispatch_id = body["dispatch"]["id"]
    assert body["flow"]["status"] == "dispatched"
    assert body["dispatch"]["status"] == "dispatched"
    assert body["dispatch"]["worker"] == "outbox"
    assert body["job"]["dispatch_id"] == dispatch_id
    assert body["job"]["action"] == "message"
    assert body["job"]["target_phones"] == [CHURNED_PHONE]
    assert body["job"]["payload"]["message"]["type"] == "SMS"

    assert client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).status_code == 409
    assert client.patch(f"/automation/flows/{flow_id}", json={"name": "Edited"}, headers=gangnam).status_code == 409

    executed_at = datetime.now(timezone.utc)
    payload = _callback_body(dispatch_id=dispatch_id, executed_at=executed_at.isoformat(), phones=[CHURNED_PHONE])

    assert client.post(f"/automation/flows/{flow_id}/callback", json=payload).status_code == 401
    wrong_secret = {"Authorization": "Bearer not-the-secret"}
    assert client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=wrong_secret).status_code == 401
    assert client.post("/automation/flows/missing/callback", json=payload, headers=worker_headers).status_code == 404
    unknown_dispatch = {**payload, "dispatchId": "00000000-0000-0000-0000-000000000000"}
    response = client.post(f"/automation/flows/{flow_id}/callback", json=unknown_dispatch, headers=worker_headers)
    assert response.status_code == 404
    invalid = {key: value for key, value in payload.items() if key != "success"}
    response = client.post(f"/automation/flows/{flow_id}/callback", json=invalid, headers=worker_headers)
    assert response.status_code == 422

    applied = client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=worker_headers)
    assert applied.status_code == 200
    assert applied.json() == {"success": True, "applied": True, "dispatch_id": dispatch_id}

    flow = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()
    assert flow["status"] == "completed"
    assert flow["last_execute_result"]["successCount"] == 1
    assert flow["last_execute_result"]["dispatchId"] == dispatch_id
    assert "lastExecuteResult" not in flow["trigger_config"]

    replay = client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=worker_headers)
    assert replay.status_code == 200
    assert replay.json()["applied"] is True

    stale = _callback_body(
        dispatch_id=dispatch_id,
        executed_at=(executed_at - timedelta(minutes=5)).isoformat(),
        success=False,
        phones=[CHURNED_PHONE],
    )
    stale_response = client.post(f"/automation/flows/{flow_id}/callback", json=stale, headers=worker_headers)
    assert stale_response.status_code == 200
    assert stale_response.json()["applied"] is False

    flow = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()
    assert flow["status"] == "completed"
    assert flow["last_execute_result"]["success"] is True

    dispatches = client.get(f"/automation/flows/{flow_id}/dispatches", headers=gangnam).json()
    assert dispatches["pagination"]["total"] == 1
    assert dispatches["items"][0]["status"] == "completed"
    assert dispatches["items"][0]["result"]["successCount"] == 1

    with session_local() as db:
        sms_logs = db.execute(select(func.count(SmsSendLog.id)).where(SmsSendLog.flow_id == flow_id)).scalar_one()
    assert sms_logs == 1


def test_failed_callback_marks_flow_failed_and_allows_redispatch(seeded_context, login, worker_headers):
    client, _ = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _sms_flow(client, gangnam).json()["id"]
    dispatch_id = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).json()["dispatch"]["id"]

    failed = _callback_body(dispatch_id=dispatch_id, executed_at=_ago(), success=False, phones=[CHURNED_PHONE])
    response = client.post(f"/automation/flows/{flow_id}/callback", json=failed, headers=worker_headers)
    assert response.status_code == 200

    flow = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()
    assert flow["status"] == "failed"
    assert flow["last_execute_result"]["errorMessage"] == "gateway timeout"

    again = client.post(f"/automation/flows/{flow_id}/dispatch", params={"worker": "stub"}, headers=gangnam)
    assert again.status_code == 200
    assert again.json()["dispatch"]["worker"] == "stub"


def test_point_flow_deduplicates_recent_recipients(seeded_context, login, worker_headers):
    client, session_local = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _point_flow(client, gangnam).json()["id"]

    first = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).json()
    assert first["job"]["action"] == "point-grant"
    assert first["job"]["target_phones"] == [AT_RISK_PHONE]
    assert first["job"]["payload"]["point"]["amount"] == 500
    assert first["job"]["payload"]["point"]["expiryDays"] == 30

    callback = _callback_body(dispatch_id=first["dispatch"]["id"], executed_at=_ago(), phones=[AT_RISK_PHONE])
    assert client.post(f"/automation/flows/{flow_id}/callback", json=callback, headers=worker_headers).status_code == 200

    preview = client.post(f"/automation/flows/{flow_id}/preview", headers=gangnam).json()
    assert preview["target_phones"] == []
    assert preview["deduplicated_phones"] == [AT_RISK_PHONE]

    second = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).json()
    assert second["dispatch"]["target_count"] == 0
    assert second["dispatch"]["skipped_phones"] == [AT_RISK_PHONE]

    with session_local() as db:
        log = db.execute(select(PointActionLog).where(PointActionLog.flow_id == flow_id)).scalar_one()
        assert log.phone == AT_RISK_PHONE
        assert log.amount == 500
        assert log.status == "SUCCESS"
        assert log.expiry_date is not None


def test_sms_point_flow_builds_combined_job(seeded_context, login):
    client, _ = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    created = client.post(
        "/automation/flows",
        json={
            "name": "Deduct and notify",
            "flow_type": "SMS_POINT",
            "is_active": True,
            "message_template": "포인트가 차감되었습니다",
            "message_type": "LMS",
            "filter_config": {"visitSegments": ["at_risk_7"]},
            "point_config": {"action": "DEDUCT", "amount": 100, "reason": "expired", "expiryDays": 10},
        },
        headers=gangnam,
    )
    assert created.status_code == 201

    job = client.post(f"/automation/flows/{created.json()['id']}/dispatch", headers=gangnam).json()["job"]
    assert job["action"] == "message+point-deduct"
    assert job["target_phones"] == [AT_RISK_PHONE]
    assert job["payload"]["message"]["type"] == "LMS"
    assert job["payload"]["point"]["expiryDays"] == 10


def test_inactive_and_draft_flows_cannot_dispatch(seeded_context, login, worker_headers):
    client, _ = seeded_context
    gangnam = login("gangnam_manager")
    draft_id = _point_flow(client, gangnam, is_active=False).json()["id"]

    assert client.post(f"/automation/flows/{draft_id}/dispatch", headers=gangnam).status_code == 409
    activated = client.post(f"/automation/flows/{draft_id}/activate", headers=gangnam)
    assert activated.status_code == 200
    assert activated.json()["status"] == "active"
    assert activated.json()["is_active"] is True

    unknown_worker = client.post(f"/automation/flows/{draft_id}/dispatch", params={"worker": "carrier-pigeon"}, headers=gangnam)
    assert unknown_worker.status_code == 422

    dispatch_id = client.post(f"/automation/flows/{draft_id}/dispatch", headers=gangnam).json()["dispatch"]["id"]
    deactivated = client.post(f"/automation/flows/{draft_id}/deactivate", headers=gangnam)
    assert deactivated.json()["status"] == "inactive"

    late = _callback_body(dispatch_id=dispatch_id, executed_at=_ago(), phones=[])
    response = client.post(f"/automation/flows/{draft_id}/callback", json=late, headers=worker_headers)
    assert response.status_code == 200
    assert response.json()["applied"] is True

    flow = client.get(f"/automation/flows/{draft_id}", headers=gangnam).json()
    assert flow["status"] == "inactive"
    assert flow["last_execute_result"]["dispatchId"] == dispatch_id
    assert client.post(f"/automation/flows/{draft_id}/dispatch", headers=gangnam).status_code == 409


def test_scheduler_dispatches_due_flows_once_per_hour(seeded_context, login, worker_headers):
    client, _ = seeded_context
    gangnam = login("gangnam_manager")
    daily = _sms_flow(
        client,
        gangnam,
        name="Morning reminder",
        trigger_config={"type": "recurring", "time": "09:00", "recurring": {"frequency": "daily"}},
    ).json()
    _sms_flow(client, gangnam, name="Manual only")

    assert client.post("/automation/scheduler/run").status_code == 401

    first = client.post("/automation/scheduler/run", params={"at": "2026-10-19T00:10:00Z"}, headers=worker_headers)
    assert first.status_code == 200
    body = first.json()
    assert body["evaluated_flows"] == 2
    assert body["due_flows"] == 1
    assert body["dispatched_flows"] == 1
    assert [job["flow_id"] for job in body["jobs"]] == [daily["id"]]

    same_hour = client.post(
        "/automation/scheduler/run",
        params={"at": "2026-10-19T00:40:00Z"},
        headers=worker_headers,
    ).json()
    assert same_hour["due_flows"] == 0
    assert same_hour["dispatched_flows"] == 0

    off_hour = client.post(
        "/automation/scheduler/run",
        params={"at": "2026-10-19T05:10:00Z"},
        headers=worker_headers,
    ).json()
    assert off_hour["due_flows"] == 0

    next_day = client.post(
        "/automation/scheduler/run",
        params={"at": "2026-10-20T00:10:00Z"},
        headers=worker_headers,
    ).json()
    assert next_day["dispatched_flows"] == 1

    dispatches = client.get(f"/automation/flows/{daily['id']}/dispatches", headers=gangnam).json()
    assert [item["status"] for item in dispatches["items"]] == ["dispatched", "expired"]


def _bump_flow_version(db, flow_id: str) -> None:
    db.execute(
        update(AutomationFlow)
        .where(AutomationFlow.id == flow_id)
        .values(version=AutomationFlow.version + 1)
        .execution_options(synchronize_session=False)
    )


def test_redelivered_callback_without_dispatch_id_is_idempotent(seeded_context, login, worker_headers):
    client, session_local = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _point_flow(client, gangnam).json()["id"]
    dispatch_id = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).json()["dispatch"]["id"]

    payload = _callback_body(dispatch_id=None, executed_at=_ago(), phones=[AT_RISK_PHONE])
    payload.pop("dispatchId")

    first = client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=worker_headers)
    assert first.status_code == 200
    assert first.json()["dispatch_id"] == dispatch_id
    after_first = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()["last_execute_result"]

    second = client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=worker_headers)
    assert second.status_code == 200
    assert second.json()["dispatch_id"] == dispatch_id
    after_second = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()["last_execute_result"]

    assert after_first == after_second
    assert after_second["dispatchId"] == dispatch_id
    with session_local() as db:
        logs = db.execute(select(func.count(PointActionLog.id)).where(PointActionLog.flow_id == flow_id)).scalar_one()
    assert logs == 1


def test_dispatch_loses_to_concurrent_writer(seeded_context, login):
    client, session_local = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _sms_flow(client, gangnam).json()["id"]

    with session_local() as db:
        flow = db.get(AutomationFlow, flow_id)
        assert flow.version == 1
        _bump_flow_version(db, flow_id)
        with pytest.raises(ConcurrentUpdateError):
            dispatch_flow(db, flow=flow, scope=BranchScope(role="ADMIN", branch_id=None))
        db.rollback()

    with session_local() as db:
        dispatches = db.execute(
            select(func.count(AutomationDispatch.id)).where(AutomationDispatch.flow_id == flow_id)
        ).scalar_one()
    assert dispatches == 0
    assert client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()["status"] == "active"


def test_callback_retries_after_version_conflict(seeded_context, login, worker_headers, monkeypatch):
    client, session_local = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _sms_flow(client, gangnam).json()["id"]
    dispatch_id = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).json()["dispatch"]["id"]

    original = flow_execution_service._record_action_logs
    calls = []

    def conflicting_once(db, **kwargs):
        calls.append(kwargs["flow"].id)
        if len(calls) == 1:
            _bump_flow_version(db, kwargs["flow"].id)
        return original(db, **kwargs)

    monkeypatch.setattr(flow_execution_service, "_record_action_logs", conflicting_once)

    payload = _callback_body(dispatch_id=dispatch_id, executed_at=_ago(), phones=[CHURNED_PHONE])
    response = client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=worker_headers)
    assert response.status_code == 200
    assert response.json()["applied"] is True
    assert len(calls) == 2

    flow = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()
    assert flow["status"] == "completed"
    with session_local() as db:
        logs = db.execute(select(func.count(SmsSendLog.id)).where(SmsSendLog.flow_id == flow_id)).scalar_one()
    assert logs == 1


def test_callback_gives_up_after_repeated_conflicts(seeded_context, login, worker_headers, monkeypatch):
    client, session_local = seeded_context
    _seed_customers(client, login)
    gangnam = login("gangnam_manager")
    flow_id = _sms_flow(client, gangnam).json()["id"]
    dispatch_id = client.post(f"/automation/flows/{flow_id}/dispatch", headers=gangnam).json()["dispatch"]["id"]

    original = flow_execution_service._record_action_logs
    calls = []

    def always_conflicting(db, **kwargs):
        calls.append(kwargs["flow"].id)
        _bump_flow_version(db, kwargs["flow"].id)
        return original(db, **kwargs)

    monkeypatch.setattr(flow_execution_service, "_record_action_logs", always_conflicting)

    payload = _callback_body(dispatch_id=dispatch_id, executed_at=_ago(), phones=[CHURNED_PHONE])
    response = client.post(f"/automation/flows/{flow_id}/callback", json=payload, headers=worker_headers)
    assert response.status_code == 409
    assert len(calls) == settings.automation_callback_max_retries

    flow = client.get(f"/automation/flows/{flow_id}", headers=gangnam).json()
    assert flow["status"] == "dispatched"
    assert flow["last_execute_result"] is None
    with session_local() as db:
        logs = db.execute(select(func.count(SmsSendLog.id)).where(SmsSendLog.flow_id == flow_id)).scalar_one()
    assert logs == 0


def test_scheduler_keeps_going_when_one_flow_breaks(seeded_context, login, worker_headers, monkeypatch):
    client, _ = seeded_context
    gangnam = login("gangnam_manager")
    trigger = {"type": "recurring", "time": "09:00", "recurring": {"frequency": "daily"}}
    first = _sms_flow(client, gangnam, name="Morning reminder", trigger_config=trigger).json()
    second = _sms_flow(client, gangnam, name="Morning coupon", trigger_config=trigger).json()

    original = flow_execution_service.get_execution_worker
    calls = []

    def flaky_registry(name):
        calls.append(name)
        if len(calls) == 1:
            raise RuntimeError("worker registry unavailable")
        return original(name)

    monkeypatch.setattr(flow_execution_service, "get_execution_worker", flaky_registry)

    run = client.post("/automation/scheduler/run", params={"at": "2026-10-19T00:10:00Z"}, headers=worker_headers)
    assert run.status_code == 200
    body = run.json()
    assert body["due_flows"] == 2
    assert body["dispatched_flows"] == 1
    assert body["failed_flows"] == 1
    assert len(body["jobs"]) == 1
    assert body["jobs"][0]["flow_id"] in {first["id"], second["id"]}
