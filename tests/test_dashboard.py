from datetime import timedelta

import pytest

from dashboard import parse_period
from errors import ValidationError

from .conftest import VALID_REQUEST


def _fields(**overrides):
    fields = dict(VALID_REQUEST)
    fields.update(overrides)
    return fields


def test_parse_period():
    assert parse_period("7d") == 7
    assert parse_period("30d") == 30
    for bad in ("", "0d", "7w", "400d"):
        with pytest.raises(ValidationError):
            parse_period(bad)


def test_stats(services, clock, victim, official, v1, v2):
    first = services.requests.submit(victim.actor, _fields())
    second = services.requests.submit(victim.actor, _fields(severity="low"))
    third = services.requests.submit(victim.actor, _fields(severity="critical"))
    services.requests.cancel(victim.session, third.id)

    clock.step = timedelta(hours=2)
    task = services.tasks.assign_volunteer(official.session, first.id, v1.actor.id)
    clock.step = timedelta(seconds=1)
    services.tasks.accept_task(v1.session, task.id)
    services.tasks.update_status(v1.session, task.id, "in_progress")
    services.tasks.update_status(v1.session, task.id, "completed")
    services.volunteers.set_availability(v2.session, v2.actor.id, False)

    stats = services.dashboard.stats()
    assert stats["totalRequests"] == 3
    assert stats["pendingRequests"] == 1
    assert stats["criticalRequests"] == 0  # one critical completed, one cancelled
    assert stats["activeVolunteers"] == 1
    assert stats["completedTasks"] == 1
    assert stats["responseRate"] == pytest.approx(33.3)
    assert stats["averageResponseHours"] > 2
    assert second.id != first.id


def test_stats_when_empty(services):
    stats = services.dashboard.stats()
    assert stats["totalRequests"] == 0
    assert stats["responseRate"] == 0.0
    assert stats["averageResponseHours"] is None


def test_analytics(services, victim, official, v1):
    request = services.requests.submit(victim.actor, _fields())
    services.requests.submit(victim.actor, _fields(emergencyType="Shelter Needed", severity="low"))
    task = services.tasks.assign_volunteer(official.session, request.id, v1.actor.id)
    services.tasks.accept_task(v1.session, task.id)
    services.tasks.update_status(v1.session, task.id, "in_progress")
    services.tasks.update_status(v1.session, task.id, "completed")

    data = services.dashboard.analytics("7d")
    assert len(data["requestsByDay"]) == 7
    assert sum(d["count"] for d in data["requestsByDay"]) == 2
    by_type = {d["type"]: d["count"] for d in data["requestsByType"]}
    assert by_type["Flood"] == 1 and by_type["Shelter Needed"] == 1 and by_type["Other"] == 0
    by_severity = {d["severity"]: d["count"] for d in data["requestsBySeverity"]}
    assert by_severity == {"critical": 1, "high": 0, "medium": 0, "low": 1}
    assert data["volunteerPerformance"] == [
        {"id": v1.actor.id, "name": "Rahman Volunteer", "tasksCompleted": 1}
    ]


def test_activity_log(services, victim, official, v1, submitted):
    services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    entries = services.activity.recent(limit=2)
    assert [(e.type, e.action) for e in entries] == [("task", "assigned"), ("request", "created")]
    assert entries[0].user == "Admin User"
    assert len(services.activity.recent()) > 2
