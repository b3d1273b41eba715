import os
import tempfile
from datetime import date, timedelta

import pytest

# Set testing environment before the application reads its settings
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test.db"
os.environ["MEDIA_ROOT"] = tempfile.mkdtemp(prefix="scheduler-media-")

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from appointment_scheduler.main import app
from appointment_scheduler.core.database import get_db, get_redis, Base

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db

@pytest.fixture(scope="function")
def test_db():
    # Create tables
    Base.metadata.create_all(bind=engine)
    get_redis().flushdb()
    yield
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def db_session(test_db):
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

@pytest.fixture
def client():
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client

def days_from_today(days: int) -> str:
    return (date.today() + timedelta(days=days)).isoformat()

def register_and_login(client, username, password="TestPassword123"):
    """Register a user and return (user_id, auth headers)."""
    response = client.post("/api/v1/auth/register", json={
        "username": username,
        "email": f"{username.lower()}@example.com",
        "password": password,
    })
    assert response.status_code == 200, response.text
    user_id = response.json()["id"]

    login_response = client.post("/api/v1/auth/login", json={
        "username": username,
        "password": password,
    })
    assert login_response.status_code == 200, login_response.text
    token = login_response.json()["access_token"]
    return user_id, {"Authorization": f"Bearer {token}"}
