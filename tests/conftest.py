import os
import sys
from datetime import datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(os.path.dirname(__file__), "test_reservations.db"),
)
os.environ.pop("REDIS_URL", None)

import fakeredis
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from common import cache
from reservations_service import models
from reservations_service.config import ALGORITHM, SECRET_KEY
from reservations_service.database import Base, SessionLocal, engine
from reservations_service.main import app
from reservations_service.rate_limiter import reset_rate_limits


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reset_rate_limits()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def campus(db):
    """
    Two buildings; the library holds a 4-seat and a 10-seat room.

    Returns a dict of plain ids so tests do not depend on session state.
    """
    library = models.Building(name="Main Library", code="LIB")
    science = models.Building(name="Science Hall", code="SCI")
    db.add_all([library, science])
    db.flush()

    small = models.Room(building_id=library.id, room_number="1.01", capacity=4)
    large = models.Room(building_id=library.id, room_number="2.10", capacity=10)
    lab = models.Room(building_id=science.id, room_number="B12", capacity=6)
    db.add_all([small, large, lab])
    db.commit()

    return {
        "library_id": library.id,
        "science_id": science.id,
        "small_room_id": small.id,
        "large_room_id": large.id,
        "lab_room_id": lab.id,
    }


def make_token(user_id: int, username: str, role: str) -> str:
    payload = {
        "sub": username,
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=30),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


@pytest.fixture()
def headers_for():
    """Build Authorization headers for a user id and role."""

    def _headers(user_id: int, role: str = "student") -> dict:
        token = make_token(user_id=user_id, username=f"user{user_id}", role=role)
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def fake_redis(monkeypatch):
    """Back the shared cache with an in-memory Redis for one test."""
    client = fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    monkeypatch.setattr(cache, "_redis_client", client)
    return client
