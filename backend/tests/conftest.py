"""
Reefline - Test Fixtures
========================

Shared pytest fixtures for all tests.
"""

import asyncio
import itertools
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any, Optional
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reefline.api.deps import create_access_token, get_ci_provider, get_vcs_provider
from reefline.api.main import app
from reefline.core.database import Base, enable_sqlite_foreign_keys, get_db
from reefline.core.models import (
    AccessLevel,
    DataProject,
    PipelineConfig,
    ProjectMembership,
    ProjectVisibility,
    User,
    UserRole,
)
from reefline.core.pipeline import PipelineOrchestrator


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


# ==========================================================================
# Fake Providers
# ==========================================================================

class FakeCIProvider:
    """Records triggered and canceled runs instead of talking to GitLab."""

    def __init__(self) -> None:
        self.triggered: list[dict[str, Any]] = []
        self.canceled: list[str] = []
        self.fail_with: Optional[Exception] = None
        self._run_ids = itertools.count(1000)

    async def trigger(
        self,
        project_handle: int,
        access_token: str,
        document: str,
        *,
        source_branch: str,
        target_branch: str,
    ) -> str:
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        run_id = str(next(self._run_ids))
        self.triggered.append({
            "project_handle": project_handle,
            "access_token": access_token,
            "document": document,
            "source_branch": source_branch,
            "target_branch": target_branch,
            "run_id": run_id,
        })
        return run_id

    async def cancel(
        self,
        project_handle: int,
        external_run_id: str,
        access_token: Optional[str] = None,
    ) -> None:
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        self.canceled.append(external_run_id)


class FakeVCSProvider:
    """Records deleted branches."""

    def __init__(self) -> None:
        self.deleted_branches: list[str] = []
        self.fail_with: Optional[Exception] = None

    async def delete_branch(self, project_handle: int, access_token: str, branch: str) -> None:
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        self.deleted_branches.append(branch)


@pytest.fixture
def fake_ci() -> FakeCIProvider:
    return FakeCIProvider()


@pytest.fixture
def fake_vcs() -> FakeVCSProvider:
    return FakeVCSProvider()


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Every test gets its own in-memory database.
    """
    engine = enable_sqlite_foreign_keys(
        create_async_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with make_session_factory(engine)() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def file_session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """
    Session factory on a file-backed SQLite database.

    Concurrency tests need one session per task, which an in-memory
    database on a single connection cannot provide.
    """
    engine = enable_sqlite_foreign_keys(
        create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'reefline-test.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield make_session_factory(engine)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    fake_ci: FakeCIProvider,
    fake_vcs: FakeVCSProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database and provider overrides.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_ci_provider] = lambda: fake_ci
    app.dependency_overrides[get_vcs_provider] = lambda: fake_vcs

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def orchestrator(
    db_session: AsyncSession,
    fake_ci: FakeCIProvider,
    fake_vcs: FakeVCSProvider,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(db_session, fake_ci, fake_vcs)


# ==========================================================================
# User Fixtures
# ==========================================================================

async def _add(db_session: AsyncSession, *objects: Any) -> None:
    db_session.add_all(objects)
    await db_session.commit()
    for obj in objects:
        await db_session.refresh(obj)


@pytest_asyncio.fixture
async def developer(db_session: AsyncSession) -> User:
    """User with a linked GitLab token; made a DEVELOPER of ``data_project``."""
    user = User(
        id=uuid4(),
        email="dev@example.com",
        name="Dev User",
        role=UserRole.USER,
        is_active=True,
        vcs_access_token="glpat-developer",
    )
    await _add(db_session, user)
    return user


@pytest_asyncio.fixture
async def guest(db_session: AsyncSession) -> User:
    """User with GUEST access on ``data_project``."""
    user = User(
        id=uuid4(),
        email="guest@example.com",
        name="Guest User",
        role=UserRole.USER,
        is_active=True,
        vcs_access_token="glpat-guest",
    )
    await _add(db_session, user)
    return user


@pytest_asyncio.fixture
async def outsider(db_session: AsyncSession) -> User:
    """User without any membership."""
    user = User(
        id=uuid4(),
        email="outsider@example.com",
        name="Outsider",
        role=UserRole.USER,
        is_active=True,
    )
    await _add(db_session, user)
    return user


@pytest_asyncio.fixture
async def test_admin(db_session: AsyncSession) -> User:
    user = User(
        id=uuid4(),
        email="admin@example.com",
        name="Admin User",
        role=UserRole.ADMIN,
        is_active=True,
        vcs_access_token="glpat-admin",
    )
    await _add(db_session, user)
    return user


# ==========================================================================
# Project & Pipeline Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def data_project(db_session: AsyncSession, developer: User, guest: User) -> DataProject:
    """Private project on GitLab id 42 with a developer and a guest."""
    project = DataProject(
        id=uuid4(),
        slug="reef-survey",
        name="Reef Survey",
        gitlab_id=42,
        visibility=ProjectVisibility.PRIVATE,
    )
    await _add(db_session, project)
    await _add(
        db_session,
        ProjectMembership(
            user_id=developer.id,
            data_project_id=project.id,
            access_level=AccessLevel.DEVELOPER,
        ),
        ProjectMembership(
            user_id=guest.id,
            data_project_id=project.id,
            access_level=AccessLevel.GUEST,
        ),
    )
    return project


@pytest_asyncio.fixture
async def public_project(db_session: AsyncSession) -> DataProject:
    project = DataProject(
        id=uuid4(),
        slug="open-tides",
        name="Open Tides",
        gitlab_id=77,
        visibility=ProjectVisibility.PUBLIC,
    )
    await _add(db_session, project)
    return project


@pytest_asyncio.fixture
async def pipeline_config(db_session: AsyncSession, data_project: DataProject) -> PipelineConfig:
    """Configuration with two data operations and the default branch pattern."""
    config = PipelineConfig(
        id=uuid4(),
        data_project_id=data_project.id,
        slug="clean-sonar",
        name="Clean sonar data",
        source_branch="master",
        target_branch_pattern="data-pipeline/$SLUG-$NUMBER",
        data_operations=[
            {"command": "normalize", "parameters": {"input": "raw/sonar.csv"}},
            {"command": "dedupe", "parameters": {}},
        ],
    )
    await _add(db_session, config)
    return config


# ==========================================================================
# Auth Fixtures
# ==========================================================================

def headers_for(user: User) -> dict[str, str]:
    """Authorization headers for ``user``."""
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def auth_headers(developer: User) -> dict[str, str]:
    """Get authorization headers for the developer."""
    return headers_for(developer)


@pytest.fixture
def guest_headers(guest: User) -> dict[str, str]:
    return headers_for(guest)


@pytest.fixture
def outsider_headers(outsider: User) -> dict[str, str]:
    return headers_for(outsider)


@pytest.fixture
def admin_headers(test_admin: User) -> dict[str, str]:
    """Get authorization headers for admin user."""
    return headers_for(test_admin)
