"""
Test configuration and fixtures.

Provides:
- A fresh in-memory SQLite database per test (schema from the models)
- Users, a ticket and JWT token minting for authenticated tests
- HTTPX AsyncClient and a Starlette TestClient (websocket) bound to that database
"""
import os
import uuid
from typing import AsyncGenerator, Generator

# In-process only: no Redis, no rate limits, throwaway database
os.environ["TESTING"] = "1"
os.environ["REDIS_URL"] = "memory://"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session, sessionmaker

from helpdesk.core.deps import get_db
from helpdesk.core.redis_client import reset_clients
from helpdesk.core.security import create_session_token
from helpdesk.db.base import Base
from helpdesk.db.enums import Role
from helpdesk.db.models import Ticket, User
from helpdesk.db.session import build_engine
from helpdesk.main import app
from helpdesk.services.presence_service import reset_trackers
from helpdesk.services.side_effects import clear_dead_letters
from helpdesk.services.ticket_service import create_ticket


# =============================================================================
# Isolation
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_process_state():
    """Presence records, dead letters and Redis clients are process-global."""
    reset_trackers()
    clear_dead_letters()
    reset_clients()
    yield
    reset_trackers()
    clear_dead_letters()
    app.dependency_overrides.clear()


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    engine = build_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    """Session on a throwaway database; app code may commit freely."""
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


def make_user(db: Session, role: Role, name: str) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}-{uuid.uuid4().hex[:6]}@example.com",
        full_name=name,
        role=role.value,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def requester(db: Session) -> User:
    return make_user(db, Role.SUPPORT_USER, "Rita Requester")


@pytest.fixture
def agent(db: Session) -> User:
    return make_user(db, Role.ADMIN, "Alex Agent")


@pytest.fixture
def other_agent(db: Session) -> User:
    return make_user(db, Role.ADMIN, "Olive Agent")


@pytest.fixture
def outsider(db: Session) -> User:
    return make_user(db, Role.SUPPORT_USER, "Oscar Outsider")


@pytest.fixture
def superadmin(db: Session) -> User:
    return make_user(db, Role.SUPERADMIN, "Sam Superadmin")


@pytest.fixture
def ticket(db: Session, requester: User, agent: User) -> Ticket:
    return create_ticket(
        db,
        "Printer on fire",
        requester.id,
        description="Third floor printer is smoking",
        assigned_to=agent.id,
    )


# =============================================================================
# Auth Fixtures
# =============================================================================

def token_for(user: User, act_as: uuid.UUID | None = None) -> str:
    return create_session_token(
        user_id=user.id,
        role=user.role,
        token_version=user.token_version,
        act_as=act_as,
    )


def auth_headers(user: User, act_as: uuid.UUID | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token_for(user, act_as)}"}


@pytest.fixture
def headers_for():
    """Build bearer headers for a user: headers_for(user) or headers_for(user, act_as=id)."""
    return auth_headers


@pytest.fixture
def token_factory():
    return token_for


# =============================================================================
# Client Fixtures
# =============================================================================

def _override_db(db: Session):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient on the test database; pass auth headers per request."""
    _override_db(db)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def ws_client(db: Session) -> Generator[TestClient, None, None]:
    """Synchronous TestClient for websocket sessions (lifespan not started)."""
    _override_db(db)
    yield TestClient(app)
    app.dependency_overrides.clear()
