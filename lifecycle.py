"""
Help request lifecycle.

    pending -> assigned -> in_progress -> completed
    pending | assigned -> cancelled

Only ``submit`` and ``cancel`` are driven directly by actors. The other
transitions are driven by task assignment through ``advance``.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

from activity import ActivityLog
from database import Store
from errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationError
from schemas import Actor, GeoPoint, HelpRequest, RequestFilters, Session, utcnow
from validators import parse_coordinates, validate_request_fields

log = logging.getLogger("siren.requests")

REQUEST_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"assigned", "cancelled"}),
    "assigned": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"completed"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

SEARCH_FIELDS = ("victim_name", "address", "emergency_type", "description")


def check_request_transition(current: str, target: str) -> None:
    if target not in REQUEST_TRANSITIONS[current]:
        raise InvalidTransition(f"Request cannot move from {current} to {target}")


class RequestLifecycle:
    def __init__(
        self,
        store: Store,
        activity: Optional[ActivityLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.activity = activity
        self.clock = clock

    def _record(self, action: str, user: str, details: str) -> None:
        if self.activity:
            self.activity.record("request", action, user, details)

    def submit(self, requester: Optional[Actor], fields: Mapping[str, Any]) -> HelpRequest:
        """Create a pending request. ``requester`` is None for anonymous submissions."""
        errors = validate_request_fields(fields)
        if errors:
            log.warning("Request submission rejected: %s", ", ".join(sorted(errors)))
            raise ValidationError(errors)

        point, _ = parse_coordinates(fields.get("coordinates"))
        now = self.clock()
        request = HelpRequest(
            requester_id=requester.id if requester else None,
            victim_name=fields["victimName"].strip(),
            phone=fields["phone"],
            email=fields.get("email") or None,
            address=fields["address"].strip(),
            coordinates=GeoPoint(lat=point[0], lng=point[1]) if point else None,
            emergency_type=fields["emergencyType"],
            severity=fields.get("severity") or "medium",
            description=fields["description"].strip(),
            photo_url=fields.get("photoUrl") or None,
            created_at=now,
            updated_at=now,
        )
        self.store.insert("request", request.to_document())
        log.info("Request %s submitted (%s, %s)", request.id, request.emergency_type, request.severity)
        self._record("created", request.victim_name, f"New {request.emergency_type} request")
        return request

    def get(self, request_id: str) -> HelpRequest:
        doc = self.store.get("request", request_id)
        if doc is None:
            raise NotFound("Request not found")
        return HelpRequest.model_validate(doc)

    def advance(self, request: HelpRequest, target: str, **changes: Any) -> HelpRequest:
        """Move ``request`` to ``target`` if it is the legal next state.

        Raises Conflict when another writer saved the request since it was read.
        """
        check_request_transition(request.status, target)
        updated = request.model_copy(update=dict(changes, status=target, updated_at=self.clock()))
        doc = updated.to_document()
        if not self.store.replace("request", doc, request.version):
            log.warning("Request %s changed concurrently; %s rejected", request.id, target)
            raise Conflict("Request was modified concurrently")
        updated.version = doc["version"]
        log.info("Request %s: %s -> %s", request.id, request.status, target)
        return updated

    def restore(self, current: HelpRequest, previous: HelpRequest) -> None:
        """Write ``previous`` back over ``current`` after a dependent write failed."""
        doc = previous.to_document()
        if not self.store.replace("request", doc, current.version):
            log.error("Request %s could not be restored to %s", previous.id, previous.status)
            raise Conflict("Request was modified concurrently")
        log.warning("Request %s restored to %s", previous.id, previous.status)

    def cancel(self, session: Session, request_id: str) -> HelpRequest:
        request = self.get(request_id)
        if session.role != "official" and session.actor_id != request.requester_id:
            raise Forbidden("Only the requester or an official may cancel this request")
        cancelled = self.advance(request, "cancelled")
        self._record("cancelled", session.name or session.actor_id, f"Cancelled request {request.id}")
        return cancelled

    def list_all(self, filters: Optional[RequestFilters] = None) -> List[HelpRequest]:
        filters = filters or RequestFilters()
        query = {
            key: value
            for key, value in (
                ("status", filters.status),
                ("severity", filters.severity),
                ("emergencyType", filters.emergency_type),
            )
            if value
        }
        requests = [HelpRequest.model_validate(d) for d in self.store.find("request", query)]
        term = (filters.search or "").strip().lower()
        if term:
            requests = [
                r for r in requests
                if any(term in (getattr(r, f) or "").lower() for f in SEARCH_FIELDS)
            ]
        requests.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return requests

    def list_for_requester(self, requester_id: str) -> List[HelpRequest]:
        requests = [
            HelpRequest.model_validate(d)
            for d in self.store.find("request", {"requesterId": requester_id})
        ]
        requests.sort(key=lambda r: (r.created_at, r.id), reverse=True)
        return requests
