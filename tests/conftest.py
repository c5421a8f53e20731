from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from database import MemoryStore
from main import build_services

VALID_REQUEST = {
    "victimName": "Karim Ahmed",
    "phone": "01712345678",
    "email": "karim@example.com",
    "address": "Sylhet Sadar, Sylhet",
    "coordinates": {"lat": 24.8949, "lng": 91.8687},
    "emergencyType": "Flood",
    "description": "House flooded, need immediate rescue",
    "severity": "critical",
}


class Ticker:
    """Clock that moves forward one second per reading."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime.now(timezone.utc)
        self.step = step

    def __call__(self):
        self.now = self.now + self.step
        return self.now


@pytest.fixture
def settings():
    return Settings(jwt_secret="test-secret", bcrypt_rounds=4)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return Ticker()


@pytest.fixture
def services(settings, store, clock):
    return build_services(settings, store=store, clock=clock)


@pytest.fixture
def make_actor(services):
    """Register an actor and return the issued session bundle."""
    counter = {"n": 0}

    def _make(role, name=None, **extra):
        counter["n"] += 1
        n = counter["n"]
        fields = {
            "name": name or f"{role.title()} Person {n}",
            "email": f"{role}{n}@example.com",
            "phone": f"0171234{n:04d}",
            "password": "secret123",
            "role": role,
        }
        fields.update(extra)
        return services.auth.register(fields)

    return _make


@pytest.fixture
def victim(make_actor):
    return make_actor("victim", name="Karim Ahmed")


@pytest.fixture
def official(make_actor):
    return make_actor("official", name="Admin User")


@pytest.fixture
def v1(make_actor):
    return make_actor("volunteer", name="Rahman Volunteer")


@pytest.fixture
def v2(make_actor):
    return make_actor("volunteer", name="Sakib Volunteer")


@pytest.fixture
def submitted(services, victim):
    return services.requests.submit(victim.actor, dict(VALID_REQUEST))
