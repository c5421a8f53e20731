"""Read-only statistics and analytics for officials."""

import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from database import Store
from errors import ValidationError
from schemas import EMERGENCY_TYPES, SEVERITIES, Actor, HelpRequest, Task, utcnow

PERIOD_RE = re.compile(r"^(\d{1,3})d$")


def parse_period(period: str) -> int:
    """``"7d"`` -> 7. Accepts 1 to 365 days."""
    match = PERIOD_RE.match(period or "")
    days = int(match.group(1)) if match else 0
    if not 1 <= days <= 365:
        raise ValidationError({"period": "Period must look like 7d (1-365 days)"})
    return days


class Dashboard:
    def __init__(self, store: Store, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def _requests(self) -> List[HelpRequest]:
        return [HelpRequest.model_validate(d) for d in self.store.find("request")]

    def _tasks(self) -> List[Task]:
        return [Task.model_validate(d) for d in self.store.find("task")]

    def stats(self) -> Dict[str, Any]:
        requests = self._requests()
        tasks = self._tasks()
        volunteers = self.store.find("actor", {"role": "volunteer", "availability": True})

        total = len(requests)
        responded = sum(1 for r in requests if r.status not in ("pending", "cancelled"))
        created = {r.id: r.created_at for r in requests}
        waits = [
            (t.assigned_at - created[t.request_id]).total_seconds() / 3600
            for t in tasks
            if t.request_id in created
        ]
        return {
            "totalRequests": total,
            "pendingRequests": sum(1 for r in requests if r.status == "pending"),
            "criticalRequests": sum(
                1 for r in requests
                if r.severity == "critical" and r.status not in ("completed", "cancelled")
            ),
            "activeVolunteers": len(volunteers),
            "completedTasks": sum(1 for t in tasks if t.status == "completed"),
            "responseRate": round(100.0 * responded / total, 1) if total else 0.0,
            "averageResponseHours": round(sum(waits) / len(waits), 2) if waits else None,
        }

    def analytics(self, period: str = "7d") -> Dict[str, Any]:
        days = parse_period(period)
        requests = self._requests()
        today = self.clock().date()
        start = today - timedelta(days=days - 1)

        per_day = Counter(
            r.created_at.date() for r in requests if start <= r.created_at.date() <= today
        )
        by_type = Counter(r.emergency_type for r in requests)
        by_severity = Counter(r.severity for r in requests)

        completed = Counter(t.volunteer_id for t in self._tasks() if t.status == "completed")
        performance = []
        for doc in self.store.find("actor", {"role": "volunteer"}):
            volunteer = Actor.model_validate(doc)
            performance.append({"id": volunteer.id, "name": volunteer.name,
                                "tasksCompleted": completed.get(volunteer.id, 0)})
        performance.sort(key=lambda p: (-p["tasksCompleted"], p["name"]))

        return {
            "requestsByDay": [
                {"date": (start + timedelta(days=i)).isoformat(),
                 "count": per_day.get(start + timedelta(days=i), 0)}
                for i in range(days)
            ],
            "requestsByType": [{"type": t, "count": by_type.get(t, 0)} for t in EMERGENCY_TYPES],
            "requestsBySeverity": [
                {"severity": s, "count": by_severity.get(s, 0)} for s in reversed(SEVERITIES)
            ],
            "volunteerPerformance": performance,
        }
