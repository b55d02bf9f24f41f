import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["AUTO_CREATE_TABLES"] = "false"

from datetime import datetime

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.api.deps import get_db
from app.db.init_db import init_db
from app.main import app
from app.services import transfusion_service as svc
from app.utils.jwt import create_access_token

T0 = datetime(2026, 1, 1, 8, 0, 0)
CAREGIVER = 7
OTHER_CAREGIVER = 8


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def client(session_factory):
    def _get_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = _get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(user_id: int = CAREGIVER):
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}
    return _headers


@pytest.fixture
def started(db):
    """500 ml, 15 drops/ml, 30 drops/min started at T0 -> planned 250 min."""
    return svc.start_transfusion(
        db,
        CAREGIVER,
        task_id=11,
        patient_id=22,
        pouch_volume_ml=500,
        drop_factor=15,
        drop_rate_per_minute=30,
        start_time=T0,
    )
