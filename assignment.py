"""
Task assignment and the volunteer task lifecycle.

    pending -> accepted -> in_progress -> completed

A task always belongs to one request. When a task enters in_progress or
completed, its request is advanced to the same status before the task itself
is saved; the request's version check is what serializes competing writers.
"""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from activity import ActivityLog
from database import Store
from errors import (
    AlreadyAssigned,
    Conflict,
    Forbidden,
    InvalidTransition,
    NotFound,
    StorageError,
)
from lifecycle import RequestLifecycle
from schemas import TASK_STATUSES, Actor, HelpRequest, Session, Task, VolunteerRef, utcnow

log = logging.getLogger("siren.tasks")

# The single legal successor of each task status.
NEXT_TASK_STATUS: Dict[str, Optional[str]] = {
    "pending": "accepted",
    "accepted": "in_progress",
    "in_progress": "completed",
    "completed": None,
}

SEVERITY_PRIORITY = {"low": "low", "medium": "medium", "high": "high", "critical": "high"}


def haversine_km(lat1, lon1, lat2, lon2):
    R = 6371
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1))
        * math.cos(math.radians(lat2))
        * math.sin(dlon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


class TaskAssignment:
    def __init__(
        self,
        store: Store,
        requests: RequestLifecycle,
        activity: Optional[ActivityLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.requests = requests
        self.activity = activity
        self.clock = clock

    def _record(self, action: str, user: str, details: str) -> None:
        if self.activity:
            self.activity.record("task", action, user, details)

    def _save(self, task: Task, changes: Dict[str, Any]) -> Task:
        updated = task.model_copy(update=changes)
        doc = updated.to_document()
        if not self.store.replace("task", doc, task.version):
            log.warning("Task %s changed concurrently", task.id)
            raise Conflict("Task was modified concurrently")
        updated.version = doc["version"]
        return updated

    def _volunteer(self, volunteer_id: str) -> Actor:
        doc = self.store.get("actor", volunteer_id)
        if doc is None or doc.get("role") != "volunteer":
            raise NotFound("Volunteer not found")
        return Actor.model_validate(doc)

    def _active_task(self, request_id: str) -> Optional[Task]:
        for doc in self.store.find("task", {"requestId": request_id}):
            if doc["status"] != "completed":
                return Task.model_validate(doc)
        return None

    def get(self, task_id: str) -> Task:
        doc = self.store.get("task", task_id)
        if doc is None:
            raise NotFound("Task not found")
        return Task.model_validate(doc)

    # ------------------ Assignment ------------------

    def assign_volunteer(self, session: Session, request_id: str, volunteer_id: str) -> Task:
        if session.role != "official":
            raise Forbidden("Only officials may assign volunteers")
        request = self.requests.get(request_id)
        volunteer = self._volunteer(volunteer_id)

        if request.status in ("completed", "cancelled"):
            raise InvalidTransition(f"Cannot assign a volunteer to a {request.status} request")
        if request.status != "pending" or self._active_task(request_id) is not None:
            raise AlreadyAssigned("Request already has an active task")

        try:
            assigned = self.requests.advance(
                request,
                "assigned",
                assigned_volunteer=VolunteerRef(id=volunteer.id, name=volunteer.name),
            )
        except Conflict:
            # another official got there first
            raise AlreadyAssigned("Request already has an active task")

        task = Task(
            request_id=request.id,
            volunteer_id=volunteer.id,
            title=f"{request.emergency_type} Assistance",
            description=request.description,
            location=request.address,
            coordinates=request.coordinates,
            priority=SEVERITY_PRIORITY[request.severity],
            assigned_at=self.clock(),
        )
        try:
            self.store.insert("task", task.to_document())
        except (StorageError, Conflict):
            self.requests.restore(assigned, request)
            raise
        log.info("Task %s: volunteer %s assigned to request %s", task.id, volunteer.id, request.id)
        self._record(
            "assigned",
            session.name or session.actor_id,
            f"Assigned {volunteer.name} to request {request.id}",
        )
        return task

    def suggest_volunteers(self, request_id: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Approved, available volunteers nearest to the request first; unknown distance last."""
        request = self.requests.get(request_id)
        query = {"role": "volunteer", "availability": True, "approved": True}
        candidates = [Actor.model_validate(d) for d in self.store.find("actor", query)]
        ranked = []
        for v in candidates:
            dist = None
            if request.coordinates and v.coordinates:
                dist = round(
                    haversine_km(
                        request.coordinates.lat,
                        request.coordinates.lng,
                        v.coordinates.lat,
                        v.coordinates.lng,
                    ),
                    2,
                )
            ranked.append({"volunteer": v, "distanceKm": dist})
        ranked.sort(
            key=lambda x: (x["distanceKm"] is None, x["distanceKm"] or 0.0, x["volunteer"].name)
        )
        return ranked[: max(limit, 0)]

    def auto_assign(self, session: Session, request_id: str) -> Task:
        if session.role != "official":
            raise Forbidden("Only officials may assign volunteers")
        suggestions = self.suggest_volunteers(request_id, limit=1)
        if not suggestions:
            raise NotFound("No available volunteer")
        return self.assign_volunteer(session, request_id, suggestions[0]["volunteer"].id)

    # ------------------ Volunteer transitions ------------------

    def _load_owned(self, session: Session, task_id: str) -> Task:
        task = self.get(task_id)
        if session.actor_id != task.volunteer_id:
            raise Forbidden("Task is assigned to another volunteer")
        return task

    def _open_request(self, task: Task) -> HelpRequest:
        request = self.requests.get(task.request_id)
        if request.status == "cancelled":
            raise InvalidTransition("The request for this task was cancelled")
        return request

    def accept_task(self, session: Session, task_id: str) -> Task:
        task = self._load_owned(session, task_id)
        self._open_request(task)
        if task.status != "pending":
            raise InvalidTransition(f"Task cannot move from {task.status} to accepted")
        accepted = self._save(task, {"status": "accepted", "accepted_at": self.clock()})
        log.info("Task %s accepted by %s", task.id, session.actor_id)
        self._record("accepted", session.name or session.actor_id, f"Accepted task {task.id}")
        return accepted

    def update_status(
        self, session: Session, task_id: str, new_status: str, notes: Optional[str] = ""
    ) -> Task:
        task = self._load_owned(session, task_id)
        if new_status not in TASK_STATUSES:
            raise InvalidTransition(f"Unknown task status: {new_status}")
        expected = NEXT_TASK_STATUS[task.status]
        if new_status != expected or new_status == "accepted":
            raise InvalidTransition(f"Task cannot move from {task.status} to {new_status}")
        request = self._open_request(task)

        # request first: its version check decides between concurrent callers
        advanced = self.requests.advance(request, new_status)
        changes: Dict[str, Any] = {"status": new_status, "notes": notes or ""}
        if new_status == "completed":
            changes["completed_at"] = self.clock()
        try:
            updated = self._save(task, changes)
        except (StorageError, Conflict):
            self.requests.restore(advanced, request)
            raise
        log.info("Task %s: %s -> %s", task.id, task.status, new_status)
        self._record(
            "completed" if new_status == "completed" else "updated",
            session.name or session.actor_id,
            f"Task {task.id} is now {new_status}",
        )
        return updated

    # ------------------ Queries ------------------

    def list_for_volunteer(self, volunteer_id: str) -> List[Task]:
        tasks = [Task.model_validate(d) for d in self.store.find("task", {"volunteerId": volunteer_id})]
        tasks.sort(key=lambda t: (t.assigned_at, t.id), reverse=True)
        return tasks

    def list_tasks(self, status: Optional[str] = None) -> List[Task]:
        query = {"status": status} if status else {}
        tasks = [Task.model_validate(d) for d in self.store.find("task", query)]
        tasks.sort(key=lambda t: (t.assigned_at, t.id), reverse=True)
        return tasks
