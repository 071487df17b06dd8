import email_validator
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from backend.app import app
from backend.school_admin.database import Base, get_db_session

ADMIN_EMAIL = "admin@school.test"
ADMIN_PASSWORD = "Secret123"

# Test addresses use the reserved .test domain.
email_validator.TEST_ENVIRONMENT = True


# Async tests run on asyncio only.
@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db_session] = override_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    response = client.post(
        "/api/v1/setup/master-admin",
        json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD, "full_name": "School Admin"},
    )
    assert response.status_code == 201, response.text
    return bearer(response.json()["access_token"])


@pytest.fixture
def staff_headers(client, admin_headers):
    response = client.post(
        "/api/v1/staff",
        json={
            "email": "teacher@school.test",
            "password": "Teacher123",
            "full_name": "Class Teacher",
            "role": "staff",
        },
        headers=admin_headers,
    )
    assert response.status_code == 201, response.text
    login = client.post("/api/v1/auth/login", json={"email": "teacher@school.test", "password": "Teacher123"})
    return bearer(login.json()["access_token"])
