import uuid

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from app.main import app
from app.database import Base, get_db
from app.models.workspace import Workspace

# Test database URL (SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///./test.db"


@pytest_asyncio.fixture
async def test_engine():
    """Create test database and tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory bound to the test database, for tests needing several sessions."""
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def workspace(test_db: AsyncSession) -> Workspace:
    """Create a test workspace."""
    ws = Workspace(id=str(uuid.uuid4()), name=f"workspace-{uuid.uuid4()}")
    test_db.add(ws)
    await test_db.commit()
    await test_db.refresh(ws)
    return ws


@pytest_asyncio.fixture
async def other_workspace(test_db: AsyncSession) -> Workspace:
    """A second workspace for isolation tests."""
    ws = Workspace(id=str(uuid.uuid4()), name=f"workspace-{uuid.uuid4()}")
    test_db.add(ws)
    await test_db.commit()
    await test_db.refresh(ws)
    return ws


@pytest_asyncio.fixture
async def client(test_db: AsyncSession):
    """Create test client with overridden database."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
