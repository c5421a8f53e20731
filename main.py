import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from activity import ActivityLog
from assignment import TaskAssignment
from auth import AuthGate, IssuedSession
from config import Settings, load_settings
from dashboard import Dashboard
from database import MongoStore, Store, build_store
from errors import Forbidden, SirenError, Unauthenticated
from lifecycle import RequestLifecycle
from logging_config import setup_logging
from schemas import (
    EmergencyType,
    RequestFilters,
    RequestStatus,
    Session,
    Severity,
    TaskStatus,
    utcnow,
)
from volunteers import VolunteerRoster

log = logging.getLogger("siren.api")

security = HTTPBearer(auto_error=False)


@dataclass
class Services:
    settings: Settings
    store: Store
    activity: ActivityLog
    auth: AuthGate
    requests: RequestLifecycle
    tasks: TaskAssignment
    volunteers: VolunteerRoster
    dashboard: Dashboard


def build_services(settings: Settings, store: Optional[Store] = None, clock=utcnow) -> Services:
    store = store if store is not None else build_store(settings)
    activity = ActivityLog(store, clock=clock)
    requests = RequestLifecycle(store, activity=activity, clock=clock)
    return Services(
        settings=settings,
        store=store,
        activity=activity,
        auth=AuthGate(store, settings, activity=activity, clock=clock),
        requests=requests,
        tasks=TaskAssignment(store, requests, activity=activity, clock=clock),
        volunteers=VolunteerRoster(store, activity=activity),
        dashboard=Dashboard(store, clock=clock),
    )


# ------------------ Dependencies ------------------

def get_services(request: Request) -> Services:
    return request.app.state.services


def optional_session(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    services: Services = Depends(get_services),
) -> Optional[Session]:
    if credentials is None:
        return None
    return services.auth.session_from_token(credentials.credentials)


def current_session(session: Optional[Session] = Depends(optional_session)) -> Session:
    if session is None:
        raise Unauthenticated("Missing bearer token")
    return session


def require_operation(operation: str):
    def checker(
        session: Session = Depends(current_session),
        services: Services = Depends(get_services),
    ):
        services.auth.require(session, operation)
        return session

    return checker


# ------------------ Payloads ------------------

class RegisterRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    password: Optional[str] = None
    confirmPassword: Optional[str] = None
    role: Optional[str] = None
    skills: List[str] = []
    coordinates: Optional[Dict[str, Any]] = None


class LoginRequest(BaseModel):
    email: str
    password: str
    role: str


class HelpRequestCreate(BaseModel):
    victimName: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    coordinates: Optional[Dict[str, Any]] = None
    emergencyType: Optional[str] = None
    severity: Optional[str] = None
    description: Optional[str] = None
    photoUrl: Optional[str] = None


class AssignRequest(BaseModel):
    requestId: str
    volunteerId: str


class AutoAssignRequest(BaseModel):
    requestId: str


class TaskStatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = ""


class AvailabilityUpdate(BaseModel):
    availability: bool


def session_response(issued: IssuedSession) -> Dict[str, Any]:
    return {
        "token": issued.token,
        "token_type": "bearer",
        "user": issued.actor.public(),
        "session": issued.session.public(),
    }


# ------------------ App ------------------

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    setup_logging()
    settings = settings or load_settings()
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(services.store, MongoStore):
            services.store.ensure_indexes()
        log.info("SIREN API ready (storage=%s)", settings.storage_backend)
        yield

    app = FastAPI(title="SIREN Disaster Response API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SirenError)
    async def siren_error_handler(request: Request, exc: SirenError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def body_error_handler(request: Request, exc: RequestValidationError):
        fields = {}
        for err in exc.errors():
            loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
            fields[".".join(loc) or "body"] = err.get("msg", "Invalid value")
        return JSONResponse(
            status_code=422,
            content=jsonable_encoder({"kind": "ValidationError", "detail": "Invalid input", "errors": fields}),
        )

    # ------------------ Auth ------------------

    @app.post("/auth/register")
    def register(payload: RegisterRequest, services: Services = Depends(get_services)):
        return session_response(services.auth.register(payload.model_dump()))

    @app.post("/auth/login")
    def login(payload: LoginRequest, services: Services = Depends(get_services)):
        issued = services.auth.authenticate(payload.email, payload.password, payload.role)
        return session_response(issued)

    @app.post("/auth/logout")
    def logout(session: Session = Depends(current_session), services: Services = Depends(get_services)):
        services.auth.end_session(session)
        return {"message": "Logged out"}

    @app.get("/auth/me")
    def me(session: Session = Depends(current_session), services: Services = Depends(get_services)):
        return {"user": services.auth.get_actor(session.actor_id).public(), "session": session.public()}

    # ------------------ Help Requests ------------------

    @app.post("/requests", status_code=201)
    def create_request(
        payload: HelpRequestCreate,
        session: Optional[Session] = Depends(optional_session),
        services: Services = Depends(get_services),
    ):
        requester = None
        if session is not None:
            services.auth.require(session, "submit_request")
            requester = services.auth.get_actor(session.actor_id)
        elif not services.settings.allow_anonymous_requests:
            raise Unauthenticated("Sign in to submit a request")
        request = services.requests.submit(requester, payload.model_dump())
        return {"request": request.public(), "message": "Request created successfully"}

    @app.get("/requests")
    def list_requests(
        status: Optional[RequestStatus] = None,
        severity: Optional[Severity] = None,
        emergencyType: Optional[EmergencyType] = None,
        search: Optional[str] = None,
        session: Session = Depends(require_operation("list_requests")),
        services: Services = Depends(get_services),
    ):
        filters = RequestFilters(
            status=status, severity=severity, emergency_type=emergencyType, search=search
        )
        items = services.requests.list_all(filters)
        return {"requests": [r.public() for r in items], "total": len(items)}

    @app.get("/requests/mine")
    def my_requests(session: Session = Depends(current_session), services: Services = Depends(get_services)):
        items = services.requests.list_for_requester(session.actor_id)
        return {"requests": [r.public() for r in items], "total": len(items)}

    @app.get("/requests/{request_id}")
    def get_request(
        request_id: str,
        session: Session = Depends(require_operation("view_request")),
        services: Services = Depends(get_services),
    ):
        return {"request": services.requests.get(request_id).public()}

    @app.post("/requests/{request_id}/cancel")
    def cancel_request(
        request_id: str,
        session: Session = Depends(require_operation("cancel_request")),
        services: Services = Depends(get_services),
    ):
        request = services.requests.cancel(session, request_id)
        return {"request": request.public(), "message": "Request cancelled"}

    @app.get("/requests/{request_id}/suggestions")
    def suggest_volunteers(
        request_id: str,
        limit: int = 5,
        session: Session = Depends(require_operation("suggest_volunteers")),
        services: Services = Depends(get_services),
    ):
        ranked = services.tasks.suggest_volunteers(request_id, limit=limit)
        return {
            "suggestions": [
                {"volunteer": s["volunteer"].public(), "distanceKm": s["distanceKm"]} for s in ranked
            ]
        }

    # ------------------ Tasks ------------------

    @app.post("/tasks/assign", status_code=201)
    def assign_volunteer(
        payload: AssignRequest,
        session: Session = Depends(require_operation("assign_volunteer")),
        services: Services = Depends(get_services),
    ):
        task = services.tasks.assign_volunteer(session, payload.requestId, payload.volunteerId)
        return {"task": task.public(), "message": "Volunteer assigned successfully"}

    @app.post("/tasks/auto-assign", status_code=201)
    def auto_assign(
        payload: AutoAssignRequest,
        session: Session = Depends(require_operation("assign_volunteer")),
        services: Services = Depends(get_services),
    ):
        task = services.tasks.auto_assign(session, payload.requestId)
        return {"task": task.public(), "message": "Volunteer assigned successfully"}

    @app.get("/tasks")
    def list_tasks(
        status: Optional[TaskStatus] = None,
        session: Session = Depends(require_operation("list_tasks")),
        services: Services = Depends(get_services),
    ):
        items = services.tasks.list_tasks(status)
        return {"tasks": [t.public() for t in items], "total": len(items)}

    @app.post("/tasks/{task_id}/accept")
    def accept_task(
        task_id: str,
        session: Session = Depends(require_operation("accept_task")),
        services: Services = Depends(get_services),
    ):
        task = services.tasks.accept_task(session, task_id)
        return {"task": task.public(), "message": "Task accepted successfully"}

    @app.put("/tasks/{task_id}/status")
    def update_task_status(
        task_id: str,
        payload: TaskStatusUpdate,
        session: Session = Depends(require_operation("update_task")),
        services: Services = Depends(get_services),
    ):
        task = services.tasks.update_status(session, task_id, payload.status, payload.notes)
        return {"task": task.public(), "message": "Task updated successfully"}

    # ------------------ Volunteers ------------------

    @app.get("/volunteers")
    def list_volunteers(
        availability: Optional[bool] = None,
        approved: Optional[bool] = None,
        session: Session = Depends(require_operation("list_volunteers")),
        services: Services = Depends(get_services),
    ):
        items = services.volunteers.list_volunteers(availability, approved)
        return {"volunteers": [v.public() for v in items], "total": len(items)}

    @app.get("/volunteers/{volunteer_id}")
    def get_volunteer(
        volunteer_id: str,
        session: Session = Depends(require_operation("view_volunteer")),
        services: Services = Depends(get_services),
    ):
        return {"volunteer": services.volunteers.get(volunteer_id).public()}

    @app.get("/volunteers/{volunteer_id}/tasks")
    def volunteer_tasks(
        volunteer_id: str,
        session: Session = Depends(require_operation("view_volunteer_tasks")),
        services: Services = Depends(get_services),
    ):
        if session.role != "official" and session.actor_id != volunteer_id:
            raise Forbidden("Volunteers may only view their own tasks")
        return {"tasks": [t.public() for t in services.tasks.list_for_volunteer(volunteer_id)]}

    @app.put("/volunteers/{volunteer_id}/availability")
    def set_availability(
        volunteer_id: str,
        payload: AvailabilityUpdate,
        session: Session = Depends(require_operation("set_availability")),
        services: Services = Depends(get_services),
    ):
        volunteer = services.volunteers.set_availability(session, volunteer_id, payload.availability)
        return {"volunteer": volunteer.public(), "message": "Availability updated"}

    # ------------------ Admin ------------------

    @app.post("/admin/volunteers/{volunteer_id}/approve")
    def approve_volunteer(
        volunteer_id: str,
        session: Session = Depends(require_operation("approve_volunteer")),
        services: Services = Depends(get_services),
    ):
        volunteer = services.volunteers.approve(session, volunteer_id)
        return {"volunteer": volunteer.public(), "message": "Volunteer approved successfully"}

    @app.get("/admin/stats")
    def dashboard_stats(
        session: Session = Depends(require_operation("view_dashboard")),
        services: Services = Depends(get_services),
    ):
        return {"stats": services.dashboard.stats()}

    @app.get("/admin/analytics")
    def analytics(
        period: str = "7d",
        session: Session = Depends(require_operation("view_dashboard")),
        services: Services = Depends(get_services),
    ):
        return {"analytics": services.dashboard.analytics(period)}

    @app.get("/admin/logs")
    def activity_logs(
        limit: int = 50,
        session: Session = Depends(require_operation("view_activity")),
        services: Services = Depends(get_services),
    ):
        return {"logs": [e.public() for e in services.activity.recent(limit)]}

    # ------------------ Health ------------------

    @app.get("/")
    def read_root():
        return {
            "message": "SIREN Disaster Response Backend Running",
            "storage": settings.storage_backend,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
