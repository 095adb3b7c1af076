"""
Reefline - API Dependencies
===========================

Shared dependencies for FastAPI endpoints: authentication, access control
on pipelines, providers and the orchestrator.
"""

from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from reefline.core.config import settings
from reefline.core.database import get_db
from reefline.core.integrations import GitLabClient
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
from reefline.core.pipeline.providers import CIProvider, VCSProvider


# ==========================================================================
# Security
# ==========================================================================

security = HTTPBearer(auto_error=False)


# ==========================================================================
# Token Utilities
# ==========================================================================

def create_access_token(
    user_id: UUID,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a new access token.

    Args:
        user_id: User's UUID
        expires_delta: Optional custom expiration time

    Returns:
        Encoded JWT token
    """
    import secrets

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    expire = datetime.now(timezone.utc) + expires_delta

    payload = {
        "sub": str(user_id),
        "exp": expire,
        "iat": datetime.now(timezone.utc),
        "type": "access",
        "jti": secrets.token_hex(16),  # Unique token identifier
    }

    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    """
    Decode and validate a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    try:
        return jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e


# ==========================================================================
# User Dependencies
# ==========================================================================

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """
    Get the current authenticated user.

    Raises:
        HTTPException: If not authenticated or user not found
    """
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_token(credentials.credentials)

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type")

    user_id_str = payload.get("sub")
    if user_id_str is None:
        raise _unauthorized("Invalid token payload")

    try:
        user_id = UUID(user_id_str)
    except ValueError as e:
        raise _unauthorized("Invalid user ID in token") from e

    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if user is None:
        raise _unauthorized("User not found")

    if not user.is_active:
        raise _unauthorized("User account is deactivated")

    return user


def missing_vcs_access_token() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail="No source-control access token linked to this account",
    )


async def get_optional_vcs_access_token(
    current_user: Annotated[User, Depends(get_current_user)],
) -> Optional[str]:
    """Source-control token of the current user, None if none is linked."""
    return current_user.vcs_access_token or None


async def get_vcs_access_token(
    access_token: Annotated[Optional[str], Depends(get_optional_vcs_access_token)],
) -> str:
    """Source-control token of the current user, needed to touch branches and runs."""
    if access_token is None:
        raise missing_vcs_access_token()
    return access_token


# ==========================================================================
# Access Control
# ==========================================================================

async def get_access_level(
    db: AsyncSession,
    user: User,
    data_project_id: UUID,
) -> Optional[int]:
    """Membership level of ``user`` on a project, None if not a member."""
    result = await db.execute(
        select(ProjectMembership.access_level).where(
            ProjectMembership.user_id == user.id,
            ProjectMembership.data_project_id == data_project_id,
        )
    )
    return result.scalar_one_or_none()


async def has_project_access(
    db: AsyncSession,
    user: User,
    data_project_id: UUID,
    min_level: AccessLevel,
) -> bool:
    """
    Check whether ``user`` may act on a project at ``min_level``.

    Admins always may. Anybody may view (GUEST) a public project.
    """
    if user.role == UserRole.ADMIN:
        return True

    level = await get_access_level(db, user, data_project_id)
    if level is not None and level >= min_level:
        return True

    if min_level <= AccessLevel.GUEST:
        project = await db.get(DataProject, data_project_id)
        return project is not None and project.visibility == ProjectVisibility.PUBLIC

    return False


async def visible_project_ids(db: AsyncSession, user: User) -> Optional[set[UUID]]:
    """Projects whose pipelines ``user`` may view; None means all of them."""
    if user.role == UserRole.ADMIN:
        return None

    public = await db.execute(
        select(DataProject.id).where(DataProject.visibility == ProjectVisibility.PUBLIC)
    )
    member = await db.execute(
        select(ProjectMembership.data_project_id).where(ProjectMembership.user_id == user.id)
    )
    return set(public.scalars().all()) | set(member.scalars().all())


def require_pipeline_access(min_level: AccessLevel):
    """
    Build a dependency checking access to the pipeline in the ``pid`` path param.

    A pipeline that does not exist passes, so the orchestrator can answer
    with NOT_FOUND.
    """

    async def dependency(
        pid: UUID,
        current_user: Annotated[User, Depends(get_current_user)],
        db: Annotated[AsyncSession, Depends(get_db)],
    ) -> User:
        config = await db.get(PipelineConfig, pid)
        if config is None:
            return current_user

        if not await has_project_access(db, current_user, config.data_project_id, min_level):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Access to this pipeline is not allowed",
            )
        return current_user

    return dependency


# ==========================================================================
# Providers & Orchestrator
# ==========================================================================

@lru_cache
def get_gitlab_client() -> GitLabClient:
    """Process-wide GitLab client."""
    return GitLabClient()


def get_ci_provider() -> CIProvider:
    return get_gitlab_client()


def get_vcs_provider() -> VCSProvider:
    return get_gitlab_client()


async def get_orchestrator(
    db: Annotated[AsyncSession, Depends(get_db)],
    ci: Annotated[CIProvider, Depends(get_ci_provider)],
    vcs: Annotated[VCSProvider, Depends(get_vcs_provider)],
) -> PipelineOrchestrator:
    return PipelineOrchestrator(db, ci, vcs)


# ==========================================================================
# Type Aliases for Dependency Injection
# ==========================================================================

# Use these in endpoint signatures for cleaner code
CurrentUser = Annotated[User, Depends(get_current_user)]
PipelineViewer = Annotated[User, Depends(require_pipeline_access(AccessLevel.GUEST))]
PipelineDeveloper = Annotated[User, Depends(require_pipeline_access(AccessLevel.DEVELOPER))]
VcsAccessToken = Annotated[str, Depends(get_vcs_access_token)]
OptionalVcsAccessToken = Annotated[Optional[str], Depends(get_optional_vcs_access_token)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
Orchestrator = Annotated[PipelineOrchestrator, Depends(get_orchestrator)]
