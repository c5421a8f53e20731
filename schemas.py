"""
Database Schemas for SIREN disaster response

Each Pydantic model below maps to a collection (lowercased entity name).
Field names are snake_case in Python and camelCase on the wire and in storage,
so ``emergency_type`` is persisted and served as ``emergencyType``.
"""

import uuid
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["victim", "volunteer", "official", "donor"]
RequestStatus = Literal["pending", "assigned", "in_progress", "completed", "cancelled"]
TaskStatus = Literal["pending", "accepted", "in_progress", "completed"]
Severity = Literal["low", "medium", "high", "critical"]
Priority = Literal["low", "medium", "high"]
EmergencyType = Literal[
    "Flood",
    "Medical Emergency",
    "Food/Water Shortage",
    "Shelter Needed",
    "Rescue Operation",
    "Other",
]

ROLES = ("victim", "volunteer", "official", "donor")
REGISTRABLE_ROLES = ("victim", "volunteer", "official")
REQUEST_STATUSES = ("pending", "assigned", "in_progress", "completed", "cancelled")
TASK_STATUSES = ("pending", "accepted", "in_progress", "completed")
SEVERITIES = ("low", "medium", "high", "critical")
EMERGENCY_TYPES = (
    "Flood",
    "Medical Emergency",
    "Food/Water Shortage",
    "Shelter Needed",
    "Rescue Operation",
    "Other",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class Entity(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        """Storage shape: camelCase keys, native datetimes."""
        return self.model_dump(by_alias=True)

    def public(self) -> dict:
        """JSON shape served to collaborators."""
        return self.model_dump(by_alias=True, mode="json")


class GeoPoint(Entity):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class VolunteerRef(Entity):
    id: str
    name: str


class Actor(Entity):
    id: str = Field(default_factory=new_id)
    name: str
    email: str
    phone: Optional[str] = None
    role: Role
    password_hash: str
    skills: List[str] = Field(default_factory=list)
    availability: bool = True
    approved: bool = False
    coordinates: Optional[GeoPoint] = None
    created_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def public(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude={"password_hash"})


class HelpRequest(Entity):
    id: str = Field(default_factory=new_id)
    requester_id: Optional[str] = None
    victim_name: str
    phone: str
    email: Optional[str] = None
    address: str
    coordinates: Optional[GeoPoint] = None
    emergency_type: EmergencyType
    severity: Severity = "medium"
    description: str
    status: RequestStatus = "pending"
    photo_url: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    assigned_volunteer: Optional[VolunteerRef] = None
    version: int = 0


class Task(Entity):
    id: str = Field(default_factory=new_id)
    request_id: str
    volunteer_id: str
    title: str
    description: str
    location: str
    coordinates: Optional[GeoPoint] = None
    priority: Priority = "medium"
    status: TaskStatus = "pending"
    notes: str = ""
    assigned_at: datetime
    accepted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: int = 0


class Session(Entity):
    actor_id: str
    role: Role
    name: Optional[str] = None
    issued_at: datetime
    expires_at: datetime
    token_id: str


class ActivityEntry(Entity):
    id: str = Field(default_factory=new_id)
    type: Literal["auth", "request", "task", "volunteer"]
    action: str
    user: str
    details: str
    timestamp: datetime
    version: int = 0


class RequestFilters(Entity):
    status: Optional[RequestStatus] = None
    severity: Optional[Severity] = None
    emergency_type: Optional[EmergencyType] = None
    search: Optional[str] = None
