import os
import tempfile
import uuid

# Must be set before forge3d is imported: the engine binds at import time
_test_dir = tempfile.mkdtemp(prefix="forge3d-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_test_dir, 'forge3d.db')}"
os.environ["PROVIDER_BACKEND"] = "mock"
os.environ["JWT_SECRET"] = "test-secret-that-is-long-enough-for-hs256"
os.environ["DEBUG"] = "false"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from forge3d.auth import create_access_token
from forge3d.db import Base, SessionLocal, engine
from forge3d.main import app
from forge3d.services.catalog import catalog, seed_service_types

@pytest.fixture(autouse=True)
def fresh_database():
    """Recreate the schema and reload the seeded catalog for every test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        seed_service_types(session)
        catalog.reset()
        catalog.load(session)
    finally:
        session.close()
    yield
    app.dependency_overrides.clear()

@pytest.fixture
def db_session() -> Session:
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

@pytest.fixture
def client() -> TestClient:
    return TestClient(app)

@pytest.fixture
def user_id() -> str:
    return f"user_{uuid.uuid4().hex[:12]}"

@pytest.fixture
def make_headers():
    def _make(sub: str, email: str = None, role: str = None):
        token = create_access_token(sub, email=email, role=role)
        return {"Authorization": f"Bearer {token}"}
    return _make

@pytest.fixture
def auth_headers(make_headers, user_id):
    return make_headers(user_id, email=f"{user_id}@example.com")
