from datetime import datetime, timezone

import pytest

from app.schemas.automation import TriggerConfig
from app.services.errors import FlowTransitionError
from app.services.flow_execution_service import next_state, trigger_is_due

# Monday 2026-10-19 09:05 in Asia/Seoul.
MONDAY_0905_KST = datetime(2026, 10, 19, 0, 5, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("current", "event", "expected"),
    [
        ("draft", "activate", "active"),
        ("inactive", "activate", "active"),
        ("active", "dispatch", "dispatched"),
        ("completed", "dispatch", "dispatched"),
        ("failed", "dispatch", "dispatched"),
        ("dispatched", "complete", "completed"),
        ("dispatched", "fail", "failed"),
        ("completed", "complete", "completed"),
        ("dispatched", "deactivate", "inactive"),
    ],
)
def test_allowed_flow_transitions(current, event, expected):
    assert next_state(current, event) == expected


@pytest.mark.parametrize(
    ("current", "event"),
    [
        ("draft", "dispatch"),
        ("dispatched", "dispatch"),
        ("inactive", "dispatch"),
        ("active", "activate"),
        ("draft", "deactivate"),
        ("active", "complete"),
    ],
)
def test_rejected_flow_transitions(current, event):
    with pytest.raises(FlowTransitionError):
        next_state(current, event)


def test_unknown_flow_event_is_a_programming_error():
    with pytest.raises(ValueError):
        next_state("active", "explode")


def test_manual_trigger_is_never_due():
    assert trigger_is_due(TriggerConfig(type="manual"), MONDAY_0905_KST) is False


def test_daily_trigger_matches_local_hour_only():
    trigger = TriggerConfig.model_validate({"type": "recurring", "time": "09:00", "recurring": {"frequency": "daily"}})
    assert trigger_is_due(trigger, MONDAY_0905_KST) is True
    assert trigger_is_due(trigger, datetime(2026, 10, 19, 9, 5, tzinfo=timezone.utc)) is False


def test_weekly_trigger_uses_sunday_based_weekdays():
    monday = TriggerConfig.model_validate(
        {"type": "recurring", "time": "09:30", "recurring": {"frequency": "weekly", "daysOfWeek": [1, 3]}}
    )
    sunday = TriggerConfig.model_validate(
        {"type": "recurring", "time": "09:30", "recurring": {"frequency": "weekly", "daysOfWeek": [0]}}
    )
    assert trigger_is_due(monday, MONDAY_0905_KST) is True
    assert trigger_is_due(sunday, MONDAY_0905_KST) is False


def test_monthly_trigger_and_end_date():
    due = TriggerConfig.model_validate(
        {"type": "recurring", "time": "09:00", "recurring": {"frequency": "monthly", "dayOfMonth": 19}}
    )
    ended = TriggerConfig.model_validate(
        {
            "type": "recurring",
            "time": "09:00",
            "recurring": {"frequency": "monthly", "dayOfMonth": 19, "endDate": "2026-10-18"},
        }
    )
    assert trigger_is_due(due, MONDAY_0905_KST) is True
    assert trigger_is_due(ended, MONDAY_0905_KST) is False


def test_scheduled_trigger_honors_scheduled_date():
    today = TriggerConfig.model_validate({"type": "scheduled", "time": "09:00", "scheduledDate": "2026-10-19"})
    tomorrow = TriggerConfig.model_validate({"type": "scheduled", "time": "09:00", "scheduledDate": "2026-10-20"})
    assert trigger_is_due(today, MONDAY_0905_KST) is True
    assert trigger_is_due(tomorrow, MONDAY_0905_KST) is False


def test_trigger_validation_rejects_bad_shapes():
    with pytest.raises(ValueError):
        TriggerConfig.model_validate({"type": "recurring", "time": "09:00"})
    with pytest.raises(ValueError):
        TriggerConfig.model_validate({"type": "scheduled", "time": "25:00"})
    with pytest.raises(ValueError):
        TriggerConfig.model_validate({"type": "manual", "unexpected": True})
