# tests/conftest.py - Shared test fixtures
import os
from typing import List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["EMAIL_PROVIDER"] = "log"
os.environ["DB_RETRY_BASE_DELAY"] = "0"

from models import (  # noqa: E402
    Base, User, Role, Project, Ticket, Comment,
    ADMIN_ROLE, DEVELOPER_ROLE, PROJECT_MANAGER_ROLE, TESTER_ROLE, utcnow,
)
import auth  # noqa: E402
from auth import AuthService, CurrentUser  # noqa: E402
from database import build_engine, get_db_session, seed_defaults  # noqa: E402
from events import Outbox, get_notifier  # noqa: E402
from main import app  # noqa: E402

DEFAULT_PASSWORD = "Password1"


class RecordingNotifier:
    """Stands in for Notifier: keeps every dispatched outbox for assertions"""

    def __init__(self):
        self.outboxes: List[Outbox] = []

    async def dispatch(self, outbox: Outbox) -> None:
        self.outboxes.append(outbox)

    @property
    def events(self):
        return [e for o in self.outboxes for e in o.events]

    @property
    def emails(self):
        return [m for o in self.outboxes for m in o.emails]


@pytest.fixture(autouse=True)
def reset_login_attempts():
    auth._login_attempts.clear()
    yield
    auth._login_attempts.clear()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, notifier):
    """HTTP test client with overridden DB and notifier dependencies"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def roles(db_session):
    """Seed the default roles; returns {name: Role}"""
    await seed_defaults(db_session)
    await db_session.commit()
    result = await db_session.execute(select(Role))
    return {r.name: r for r in result.scalars().all()}


async def create_user(
    db: AsyncSession,
    role: Role,
    name: str,
    email: str,
    password: str = DEFAULT_PASSWORD,
    verified: bool = True,
    deleted: bool = False,
) -> User:
    user = User(
        name=name,
        email=email,
        password_hash=AuthService.hash_password(password),
        role=role,
        created_at=utcnow(),
        is_verified=verified,
        is_deleted=deleted,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def admin_user(db_session, roles):
    return await create_user(db_session, roles[ADMIN_ROLE], "admin", "admin@omnitak.com")


@pytest_asyncio.fixture
async def second_admin(db_session, roles):
    return await create_user(db_session, roles[ADMIN_ROLE], "backup-admin", "backup.admin@omnitak.com")


@pytest_asyncio.fixture
async def pm_user(db_session, roles):
    return await create_user(db_session, roles[PROJECT_MANAGER_ROLE], "pm", "pm@omnitak.com")


@pytest_asyncio.fixture
async def dev_user(db_session, roles):
    return await create_user(db_session, roles[DEVELOPER_ROLE], "dev", "dev@omnitak.com")


@pytest_asyncio.fixture
async def tester_user(db_session, roles):
    return await create_user(db_session, roles[TESTER_ROLE], "tester", "tester@omnitak.com")


@pytest_asyncio.fixture
async def unverified_user(db_session, roles):
    return await create_user(
        db_session, roles[DEVELOPER_ROLE], "newcomer", "newcomer@omnitak.com", verified=False
    )


@pytest_asyncio.fixture
async def project(db_session, admin_user):
    p = Project(name="Apollo", description="Launch tracker", created_by=admin_user.id, start_date=utcnow())
    db_session.add(p)
    await db_session.commit()
    return p


async def create_ticket(db: AsyncSession, project: Project, creator: User, assignee: User = None, **fields) -> Ticket:
    ticket = Ticket(
        title=fields.pop("title", "Fix login page"),
        project_id=project.id,
        created_by=creator.id,
        assigned_to=assignee.id if assignee else None,
        created_at=utcnow(),
        **fields,
    )
    db.add(ticket)
    await db.commit()
    return ticket


async def create_comment(db: AsyncSession, ticket: Ticket, author: User, content: str = "Looks good") -> Comment:
    comment = Comment(ticket_id=ticket.id, content=content, created_by=author.id, created_at=utcnow())
    db.add(comment)
    await db.commit()
    return comment


async def fetch(db: AsyncSession, model, obj_id: int):
    """Re-read a row from the database, overwriting whatever the session holds"""
    stmt = select(model).where(model.id == obj_id).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


def as_actor(user: User) -> CurrentUser:
    return AuthService.build_current_user(user)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({
        "sub": str(user.id),
        "name": user.name,
        "email": user.email,
    })
    return {"Authorization": f"Bearer {token}"}
