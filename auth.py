"""
Authentication and role-based access for SIREN.

Sessions are self-contained signed tokens, so checking a role never needs a
store round trip. Only logout touches storage, by recording the token id as
revoked.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import AbstractSet, Any, Callable, Dict, Mapping, Optional

import jwt
from passlib.context import CryptContext
from pydantic import BaseModel

from activity import ActivityLog
from config import Settings
from database import Store
from errors import (
    Conflict,
    Forbidden,
    InvalidCredentials,
    NotFound,
    RoleMismatch,
    Unauthenticated,
    ValidationError,
)
from schemas import Actor, GeoPoint, Session, new_id, utcnow
from validators import clean_phone, parse_coordinates, validate_registration

log = logging.getLogger("siren.auth")

# Operation -> roles allowed to perform it. An empty set means any
# authenticated actor.
PERMISSIONS: Dict[str, AbstractSet[str]] = {
    "submit_request": frozenset({"victim"}),
    "cancel_request": frozenset({"victim", "official"}),
    "list_requests": frozenset(),
    "view_request": frozenset(),
    "assign_volunteer": frozenset({"official"}),
    "suggest_volunteers": frozenset({"official"}),
    "list_tasks": frozenset({"official"}),
    "accept_task": frozenset({"volunteer"}),
    "update_task": frozenset({"volunteer"}),
    "view_volunteer_tasks": frozenset({"volunteer", "official"}),
    "list_volunteers": frozenset({"volunteer", "official"}),
    "view_volunteer": frozenset({"volunteer", "official"}),
    "approve_volunteer": frozenset({"official"}),
    "set_availability": frozenset({"volunteer", "official"}),
    "view_dashboard": frozenset({"official"}),
    "view_activity": frozenset({"official"}),
}


def permitted(role: str, operation: str) -> bool:
    """Pure policy lookup; unknown operations are denied."""
    if operation not in PERMISSIONS:
        return False
    allowed = PERMISSIONS[operation]
    return not allowed or role in allowed


class IssuedSession(BaseModel):
    session: Session
    token: str
    actor: Actor


class AuthGate:
    def __init__(
        self,
        store: Store,
        settings: Settings,
        activity: Optional[ActivityLog] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.settings = settings
        self.activity = activity
        self.clock = clock
        self.pwd_context = CryptContext(
            schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=settings.bcrypt_rounds
        )

    # ------------------ Tokens ------------------

    def _issue(self, actor: Actor) -> IssuedSession:
        # token times come from the wall clock; PyJWT checks them against it
        issued_at = datetime.now(timezone.utc).replace(microsecond=0)
        expires_at = issued_at + timedelta(minutes=self.settings.token_expire_min)
        session = Session(
            actor_id=actor.id,
            role=actor.role,
            name=actor.name,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=new_id(),
        )
        payload = {
            "sub": actor.id,
            "role": actor.role,
            "name": actor.name,
            "jti": session.token_id,
            "iat": issued_at,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self.settings.jwt_secret, algorithm=self.settings.jwt_algo)
        return IssuedSession(session=session, token=token, actor=actor)

    def session_from_token(self, token: str) -> Session:
        try:
            payload = jwt.decode(
                token, self.settings.jwt_secret, algorithms=[self.settings.jwt_algo]
            )
        except jwt.ExpiredSignatureError:
            raise Unauthenticated("Token expired")
        except jwt.InvalidTokenError:
            raise Unauthenticated("Invalid token")
        for claim in ("sub", "role", "jti", "iat", "exp"):
            if claim not in payload:
                raise Unauthenticated("Invalid token")
        if self.store.get("revoked_token", payload["jti"]) is not None:
            raise Unauthenticated("Session has ended")
        return Session(
            actor_id=payload["sub"],
            role=payload["role"],
            name=payload.get("name"),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_id=payload["jti"],
        )

    # ------------------ Operations ------------------

    def register(self, fields: Mapping[str, Any]) -> IssuedSession:
        errors = validate_registration(fields)
        if errors:
            log.warning("Registration rejected: %s", ", ".join(sorted(errors)))
            raise ValidationError(errors)

        email = fields["email"].strip().lower()
        if self.store.find_one("actor", {"email": email}) is not None:
            raise ValidationError({"email": "Email already registered"})

        point, _ = parse_coordinates(fields.get("coordinates"))
        skills = fields.get("skills") or []
        actor = Actor(
            name=fields["name"].strip(),
            email=email,
            phone=clean_phone(fields["phone"]),
            role=fields["role"],
            password_hash=self.pwd_context.hash(fields["password"]),
            skills=[str(s).strip() for s in skills if str(s).strip()],
            coordinates=GeoPoint(lat=point[0], lng=point[1]) if point else None,
            created_at=self.clock(),
        )
        try:
            self.store.insert("actor", actor.to_document())
        except Conflict:
            # lost a race with another registration for the same email
            raise ValidationError({"email": "Email already registered"})

        log.info("Registered %s %s", actor.role, actor.id)
        if self.activity:
            self.activity.record("auth", "registered", actor.name, f"New {actor.role} account")
        return self._issue(actor)

    def authenticate(self, email: str, password: str, claimed_role: str) -> IssuedSession:
        email = (email or "").strip().lower()
        doc = self.store.find_one("actor", {"email": email}) if email else None
        if doc is None:
            log.warning("Login failed for unknown email")
            raise InvalidCredentials("Invalid credentials")
        actor = Actor.model_validate(doc)
        if not password or not self.pwd_context.verify(password, actor.password_hash):
            log.warning("Login failed for actor %s: bad password", actor.id)
            raise InvalidCredentials("Invalid credentials")
        if claimed_role != actor.role:
            log.warning("Login failed for actor %s: role mismatch", actor.id)
            raise RoleMismatch(f"This account is not registered as {claimed_role}")
        log.info("Actor %s logged in as %s", actor.id, actor.role)
        return self._issue(actor)

    @staticmethod
    def authorize(session: Session, required_roles: AbstractSet[str]) -> bool:
        return not required_roles or session.role in required_roles

    def require(self, session: Session, operation: str) -> None:
        if not permitted(session.role, operation):
            raise Forbidden(f"Role {session.role} may not {operation.replace('_', ' ')}")

    def end_session(self, session: Session) -> None:
        if self.store.get("revoked_token", session.token_id) is not None:
            return
        try:
            self.store.insert(
                "revoked_token",
                {
                    "id": session.token_id,
                    "actorId": session.actor_id,
                    "revokedAt": self.clock(),
                    "expiresAt": session.expires_at,
                    "version": 0,
                },
            )
        except Conflict:
            return  # revoked concurrently
        log.info("Session ended for actor %s", session.actor_id)
        # PyJWT rejects these tokens on expiry alone
        purged = self.store.delete_expired(
            "revoked_token", "expiresAt", datetime.now(timezone.utc)
        )
        if purged:
            log.debug("Purged %d expired revocations", purged)

    def get_actor(self, actor_id: str) -> Actor:
        doc = self.store.get("actor", actor_id)
        if doc is None:
            raise NotFound("Actor not found")
        return Actor.model_validate(doc)
