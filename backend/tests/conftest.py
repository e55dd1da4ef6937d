# tests/conftest.py — Shared test fixtures
import os
import uuid

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "development"

from models import (  # noqa: E402
    Base, User, RoleName, Communication, CommunicationType, CommunicationStatus,
    TargetAudience, Priority, utcnow,
)
from auth import AuthService  # noqa: E402
from database import get_db_session  # noqa: E402
from main import app  # noqa: E402

DEFAULT_PASSWORD = "Schoolday2024"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        await AuthService.ensure_roles(session)
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, session_factory):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def make_user(db, email: str, *roles: RoleName, is_active: bool = True,
                    password: str = DEFAULT_PASSWORD) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=email.split("@")[0].replace(".", " ").title(),
        password_hash=AuthService.hash_password(password),
        is_active=is_active,
    )
    db.add(user)
    await db.flush()
    for role in roles:
        await AuthService.assign_role(db, user.id, role)
    await db.commit()
    await db.refresh(user)
    return user


async def make_communication(db, author: User, **overrides) -> Communication:
    """Persist a communication; defaults to a published announcement for everyone."""
    values = dict(
        title="Sports day moved to Friday",
        content="Sports day has been moved to Friday because of the forecast.",
        type=CommunicationType.ANNOUNCEMENT,
        target_audience=TargetAudience.ALL,
        priority=Priority.MEDIUM,
        status=CommunicationStatus.PUBLISHED,
        published_at=utcnow(),
        author_id=author.id if author else None,
    )
    values.update(overrides)
    if values["status"] != CommunicationStatus.PUBLISHED and "published_at" not in overrides:
        values["published_at"] = None
    record = Communication(**values)
    db.add(record)
    await db.commit()
    await db.refresh(record)
    return record


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await make_user(db_session, "admin@northfield-school.org", RoleName.ADMIN)


@pytest_asyncio.fixture
async def office_user(db_session):
    return await make_user(db_session, "office@northfield-school.org", RoleName.OFFICE_MEMBER)


@pytest_asyncio.fixture
async def teacher_user(db_session):
    return await make_user(db_session, "teacher@northfield-school.org", RoleName.TEACHER)


@pytest_asyncio.fixture
async def other_teacher(db_session):
    return await make_user(db_session, "teacher.two@northfield-school.org", RoleName.TEACHER)


@pytest_asyncio.fixture
async def viewer_user(db_session):
    return await make_user(db_session, "viewer@northfield-school.org", RoleName.VIEWER)


@pytest_asyncio.fixture
async def parent_user(db_session):
    return await make_user(db_session, "parent@northfield-school.org", RoleName.PARENT)


@pytest_asyncio.fixture
async def pending_user(db_session):
    return await make_user(db_session, "new.staff@northfield-school.org", is_active=False)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_claims(user))
    return {"Authorization": f"Bearer {token}"}
