"""Volunteer roster: listing, approval and availability."""

import logging
from typing import List, Optional

from activity import ActivityLog
from database import Store
from errors import Conflict, Forbidden, NotFound
from schemas import Actor, Session

log = logging.getLogger("siren.volunteers")


class VolunteerRoster:
    def __init__(self, store: Store, activity: Optional[ActivityLog] = None):
        self.store = store
        self.activity = activity

    def get(self, volunteer_id: str) -> Actor:
        doc = self.store.get("actor", volunteer_id)
        if doc is None or doc.get("role") != "volunteer":
            raise NotFound("Volunteer not found")
        return Actor.model_validate(doc)

    def list_volunteers(
        self, availability: Optional[bool] = None, approved: Optional[bool] = None
    ) -> List[Actor]:
        query = {"role": "volunteer"}
        if availability is not None:
            query["availability"] = availability
        if approved is not None:
            query["approved"] = approved
        volunteers = [Actor.model_validate(d) for d in self.store.find("actor", query)]
        volunteers.sort(key=lambda v: (v.name.lower(), v.id))
        return volunteers

    def approve(self, session: Session, volunteer_id: str) -> Actor:
        """Mark a volunteer as vetted; only approved volunteers are suggested."""
        if session.role != "official":
            raise Forbidden("Only officials may approve volunteers")
        volunteer = self.get(volunteer_id)
        if volunteer.approved:
            return volunteer
        updated = volunteer.model_copy(update={"approved": True})
        doc = updated.to_document()
        if not self.store.replace("actor", doc, volunteer.version):
            raise Conflict("Volunteer was modified concurrently")
        updated.version = doc["version"]
        log.info("Volunteer %s approved by %s", volunteer_id, session.actor_id)
        if self.activity:
            self.activity.record(
                "volunteer", "approved", session.name or session.actor_id,
                f"{volunteer.name} approved",
            )
        return updated

    def set_availability(self, session: Session, volunteer_id: str, availability: bool) -> Actor:
        if session.role != "official" and session.actor_id != volunteer_id:
            raise Forbidden("Volunteers may only change their own availability")
        volunteer = self.get(volunteer_id)
        updated = volunteer.model_copy(update={"availability": availability})
        doc = updated.to_document()
        if not self.store.replace("actor", doc, volunteer.version):
            raise Conflict("Volunteer was modified concurrently")
        updated.version = doc["version"]
        log.info("Volunteer %s availability set to %s", volunteer_id, availability)
        if self.activity:
            state = "available" if availability else "unavailable"
            self.activity.record(
                "volunteer", "availability", session.name or session.actor_id,
                f"{volunteer.name} marked {state}",
            )
        return updated
