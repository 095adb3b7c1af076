"""
Reefline - Database Models
==========================

SQLAlchemy models for pipeline configurations, their instances and the
collaborator records (users, data projects, memberships) the boundary layer
needs to authorize and address them.
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from reefline.core.database import Base


# ==========================================================================
# Enums
# ==========================================================================

class UserRole(str, enum.Enum):
    """User roles for access control."""
    ADMIN = "admin"
    USER = "user"


class ProjectVisibility(str, enum.Enum):
    """Visibility of a data project."""
    PUBLIC = "public"
    PRIVATE = "private"


class AccessLevel(enum.IntEnum):
    """Membership levels, on the GitLab scale."""
    GUEST = 10
    REPORTER = 20
    DEVELOPER = 30
    MAINTAINER = 40
    OWNER = 50


class PipelineType(str, enum.Enum):
    """Kind of processing a pipeline configuration describes."""
    DATA = "data"
    VISUALIZATION = "visualization"
    TRAINING = "training"


class PipelineInstanceStatus(str, enum.Enum):
    """Lifecycle status of a pipeline instance."""
    CREATED = "created"        # Numbered, nothing submitted yet
    RUNNING = "running"        # Submitted to the CI provider
    SUCCEEDED = "succeeded"    # Reported by the running job
    FAILED = "failed"          # Reported by the running job
    CANCELED = "canceled"      # Halted through the CI provider
    ARCHIVED = "archived"      # Local bookkeeping only


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


# ==========================================================================
# Value Objects
# ==========================================================================

@dataclass(frozen=True)
class PipelineJobInfo:
    """Handle on the CI run backing a started instance."""

    external_run_id: str
    secret: str
    started_at: Optional[datetime] = None


# ==========================================================================
# Accounts & Projects
# ==========================================================================

class User(Base, TimestampMixin):
    """User account (managed elsewhere, read here for attribution and auth)."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole, values_callable=_enum_values),
        default=UserRole.USER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    vcs_access_token: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<User {self.email}>"


class DataProject(Base, TimestampMixin):
    """Source-control project a pipeline configuration is bound to."""

    __tablename__ = "data_projects"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    slug: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    gitlab_id: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    visibility: Mapped[ProjectVisibility] = mapped_column(
        Enum(ProjectVisibility, values_callable=_enum_values),
        default=ProjectVisibility.PRIVATE,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<DataProject {self.slug} gitlab_id={self.gitlab_id}>"


class ProjectMembership(Base, TimestampMixin):
    """Access level of a user on a data project."""

    __tablename__ = "project_memberships"
    __table_args__ = (
        UniqueConstraint("user_id", "data_project_id", name="uq_membership_user_project"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    data_project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    access_level: Mapped[int] = mapped_column(
        Integer,
        default=AccessLevel.GUEST,
        nullable=False,
    )


# ==========================================================================
# Pipelines
# ==========================================================================

class PipelineConfig(Base, TimestampMixin):
    """
    Reusable pipeline template bound to one data project.

    Only ``name`` may change once the configuration has instances.
    """

    __tablename__ = "pipeline_configs"
    __table_args__ = (
        UniqueConstraint("data_project_id", "slug", name="uq_pipeline_config_project_slug"),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    data_project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    slug: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    pipeline_type: Mapped[PipelineType] = mapped_column(
        Enum(PipelineType, values_callable=_enum_values),
        default=PipelineType.DATA,
        nullable=False,
    )
    source_branch: Mapped[str] = mapped_column(
        String(255),
        default="master",
        nullable=False,
    )
    target_branch_pattern: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    data_operations: Mapped[list] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    def target_branch_for(self, number: int, instance_id: UUID) -> str:
        """Expand the branch pattern for one instance."""
        return (
            self.target_branch_pattern
            .replace("$SLUG", self.slug)
            .replace("$NUMBER", str(number))
            .replace("$ID", str(instance_id))
        )

    def create_instance(self, number: int) -> "PipelineInstance":
        """Build (but do not persist) the instance carrying ``number``."""
        instance_id = uuid4()
        return PipelineInstance(
            id=instance_id,
            pipeline_config_id=self.id,
            data_project_id=self.data_project_id,
            slug=f"{self.slug}-{number}",
            name=self.name,
            number=number,
            target_branch=self.target_branch_for(number, instance_id),
            status=PipelineInstanceStatus.CREATED,
        )

    def __repr__(self) -> str:
        return f"<PipelineConfig {self.slug} project={self.data_project_id}>"


class PipelineInstance(Base, TimestampMixin):
    """
    One numbered run of a pipeline configuration.

    The job-info columns stay NULL until the instance is started.
    """

    __tablename__ = "pipeline_instances"
    __table_args__ = (
        UniqueConstraint(
            "pipeline_config_id",
            "number",
            name="uq_pipeline_instance_config_number",
        ),
    )

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    pipeline_config_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("pipeline_configs.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    data_project_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("data_projects.id", ondelete="CASCADE"),
        nullable=False,
    )
    slug: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    number: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )
    target_branch: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )
    status: Mapped[PipelineInstanceStatus] = mapped_column(
        Enum(PipelineInstanceStatus, values_callable=_enum_values),
        default=PipelineInstanceStatus.CREATED,
        nullable=False,
        index=True,
    )

    # Job info
    external_run_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    secret: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    finished_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    @property
    def job_info(self) -> Optional[PipelineJobInfo]:
        if self.external_run_id is None or self.secret is None:
            return None
        return PipelineJobInfo(
            external_run_id=self.external_run_id,
            secret=self.secret,
            started_at=self.started_at,
        )

    def __repr__(self) -> str:
        return (
            f"<PipelineInstance {self.slug} "
            f"number={self.number} status={self.status.value}>"
        )
