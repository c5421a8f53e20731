"""Tests for volunteer assignment and the task lifecycle."""

import threading

import pytest

from errors import (
    AlreadyAssigned,
    Forbidden,
    InvalidTransition,
    NotFound,
    StorageError,
)

from .conftest import VALID_REQUEST


def _assert_timestamps(task):
    assert (task.accepted_at is not None) == (task.status in ("accepted", "in_progress", "completed"))
    assert (task.completed_at is not None) == (task.status == "completed")


def test_assign_creates_pending_task(services, official, v1, submitted):
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    assert task.status == "pending"
    assert task.volunteer_id == v1.actor.id
    assert task.request_id == submitted.id
    assert task.title == "Flood Assistance"
    assert task.priority == "high"
    assert task.location == submitted.address
    _assert_timestamps(task)

    request = services.requests.get(submitted.id)
    assert request.status == "assigned"
    assert request.assigned_volunteer.id == v1.actor.id
    assert request.assigned_volunteer.name == "Rahman Volunteer"


def test_second_assignment_rejected(services, official, v1, v2, submitted):
    services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    with pytest.raises(AlreadyAssigned):
        services.tasks.assign_volunteer(official.session, submitted.id, v2.actor.id)
    assert len(services.tasks.list_tasks()) == 1


def test_assign_checks(services, official, victim, v1, submitted):
    with pytest.raises(Forbidden):
        services.tasks.assign_volunteer(v1.session, submitted.id, v1.actor.id)
    with pytest.raises(NotFound):
        services.tasks.assign_volunteer(official.session, "missing", v1.actor.id)
    with pytest.raises(NotFound):
        services.tasks.assign_volunteer(official.session, submitted.id, victim.actor.id)

    services.requests.cancel(victim.session, submitted.id)
    with pytest.raises(InvalidTransition):
        services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)


def test_full_lifecycle(services, official, v1, submitted):
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)

    task = services.tasks.accept_task(v1.session, task.id)
    assert task.status == "accepted"
    _assert_timestamps(task)
    assert services.requests.get(submitted.id).status == "assigned"

    # completion must pass through in_progress
    with pytest.raises(InvalidTransition):
        services.tasks.update_status(v1.session, task.id, "completed", notes="done")

    task = services.tasks.update_status(v1.session, task.id, "in_progress", notes="on the way")
    assert task.notes == "on the way"
    _assert_timestamps(task)
    assert services.requests.get(submitted.id).status == "in_progress"

    task = services.tasks.update_status(v1.session, task.id, "completed", notes="done")
    assert task.status == "completed"
    assert task.notes == "done"
    assert task.completed_at >= task.accepted_at >= task.assigned_at
    _assert_timestamps(task)

    request = services.requests.get(submitted.id)
    assert request.status == "completed"
    assert request.created_at <= request.updated_at

    for status in ("pending", "accepted", "in_progress", "completed"):
        with pytest.raises(InvalidTransition):
            services.tasks.update_status(v1.session, task.id, status)
    with pytest.raises(InvalidTransition):
        services.requests.cancel(official.session, submitted.id)


def test_illegal_task_transitions(services, official, v1, submitted):
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    with pytest.raises(InvalidTransition):
        services.tasks.update_status(v1.session, task.id, "in_progress")
    # acceptance only goes through accept_task
    with pytest.raises(InvalidTransition):
        services.tasks.update_status(v1.session, task.id, "accepted")
    with pytest.raises(InvalidTransition):
        services.tasks.update_status(v1.session, task.id, "flying")

    services.tasks.accept_task(v1.session, task.id)
    with pytest.raises(InvalidTransition):
        services.tasks.accept_task(v1.session, task.id)
    assert services.requests.get(submitted.id).status == "assigned"


@pytest.mark.parametrize("status", ["accepted", "in_progress", "completed", "pending", "bogus"])
def test_other_volunteer_is_forbidden(services, official, v1, v2, submitted, status):
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    with pytest.raises(Forbidden):
        services.tasks.update_status(v2.session, task.id, status, notes="not mine")
    with pytest.raises(Forbidden):
        services.tasks.accept_task(v2.session, task.id)
    assert services.tasks.get(task.id).status == "pending"


def test_missing_task(services, v1):
    with pytest.raises(NotFound):
        services.tasks.accept_task(v1.session, "missing")


def test_reassign_after_completion_is_rejected(services, official, v1, v2, submitted):
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    services.tasks.accept_task(v1.session, task.id)
    services.tasks.update_status(v1.session, task.id, "in_progress")
    services.tasks.update_status(v1.session, task.id, "completed")
    with pytest.raises(InvalidTransition):
        services.tasks.assign_volunteer(official.session, submitted.id, v2.actor.id)


def test_list_for_volunteer_newest_first(services, victim, official, v1, v2):
    ids = []
    for _ in range(3):
        request = services.requests.submit(victim.actor, dict(VALID_REQUEST))
        ids.append(services.tasks.assign_volunteer(official.session, request.id, v1.actor.id).id)
    other = services.requests.submit(victim.actor, dict(VALID_REQUEST))
    services.tasks.assign_volunteer(official.session, other.id, v2.actor.id)

    services.tasks.accept_task(v1.session, ids[0])
    assert [t.id for t in services.tasks.list_for_volunteer(v1.actor.id)] == list(reversed(ids))
    assert services.tasks.list_for_volunteer("nobody") == []
    assert len(services.tasks.list_tasks(status="accepted")) == 1


def test_concurrent_assignment_has_one_winner(services, official, make_actor, submitted):
    volunteers = [make_actor("volunteer") for _ in range(6)]
    barrier = threading.Barrier(len(volunteers))
    results = []
    lock = threading.Lock()

    def attempt(volunteer):
        barrier.wait()
        try:
            services.tasks.assign_volunteer(official.session, submitted.id, volunteer.actor.id)
            outcome = "ok"
        except AlreadyAssigned:
            outcome = "already"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(v,)) for v in volunteers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("ok") == 1
    assert results.count("already") == len(volunteers) - 1
    assert len(services.tasks.list_tasks()) == 1


def test_suggest_and_auto_assign(services, official, make_actor, submitted):
    near = make_actor("volunteer", name="Near", coordinates={"lat": 24.90, "lng": 91.87})
    far = make_actor("volunteer", name="Far", coordinates={"lat": 23.81, "lng": 90.41})
    nowhere = make_actor("volunteer", name="Nowhere")
    busy = make_actor("volunteer", name="Busy", coordinates={"lat": 24.8949, "lng": 91.8687})
    # closest of all, but never vetted
    make_actor("volunteer", name="Unvetted", coordinates={"lat": 24.8949, "lng": 91.8687})
    for v in (near, far, nowhere, busy):
        services.volunteers.approve(official.session, v.actor.id)
    services.volunteers.set_availability(busy.session, busy.actor.id, False)

    ranked = services.tasks.suggest_volunteers(submitted.id)
    assert [s["volunteer"].name for s in ranked] == ["Near", "Far", "Nowhere"]
    assert ranked[0]["distanceKm"] < ranked[1]["distanceKm"]
    assert ranked[2]["distanceKm"] is None

    task = services.tasks.auto_assign(official.session, submitted.id)
    assert task.volunteer_id == near.actor.id
    assert far.actor.id != task.volunteer_id


def test_auto_assign_without_volunteers(services, official, submitted):
    with pytest.raises(NotFound):
        services.tasks.auto_assign(official.session, submitted.id)


def test_auto_assign_skips_unapproved(services, official, v1, submitted):
    with pytest.raises(NotFound):
        services.tasks.auto_assign(official.session, submitted.id)
    # officials may still pick an unapproved volunteer by hand
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    assert task.volunteer_id == v1.actor.id


def _fail_task_writes(monkeypatch, store, method):
    original = getattr(store, method)

    def failing(collection, *args, **kwargs):
        if collection == "task":
            raise StorageError("Database error: connection reset")
        return original(collection, *args, **kwargs)

    monkeypatch.setattr(store, method, failing)
    return lambda: monkeypatch.setattr(store, method, original)


def test_failed_task_insert_restores_request(monkeypatch, services, store, official, v1, submitted):
    heal = _fail_task_writes(monkeypatch, store, "insert")
    with pytest.raises(StorageError):
        services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)

    request = services.requests.get(submitted.id)
    assert request.status == "pending"
    assert request.assigned_volunteer is None
    assert services.tasks.list_tasks() == []

    heal()
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    assert services.requests.get(submitted.id).status == "assigned"
    assert services.tasks.get(task.id).status == "pending"


def test_failed_task_save_restores_request(monkeypatch, services, store, official, v1, submitted):
    task = services.tasks.assign_volunteer(official.session, submitted.id, v1.actor.id)
    services.tasks.accept_task(v1.session, task.id)

    heal = _fail_task_writes(monkeypatch, store, "replace")
    with pytest.raises(StorageError):
        services.tasks.update_status(v1.session, task.id, "in_progress")
    assert services.requests.get(submitted.id).status == "assigned"
    assert services.tasks.get(task.id).status == "accepted"

    heal()
    task = services.tasks.update_status(v1.session, task.id, "in_progress")
    assert task.status == "in_progress"
    assert services.requests.get(submitted.id).status == "in_progress"
