"""
Reefline - Pydantic Schemas
===========================

Request and response schemas for API validation.
Secrets never appear in these; the pipeline file endpoint is the only
place a secret leaves the service.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from reefline.core.models import PipelineInstanceStatus, PipelineType


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Pipeline Configuration Schemas
# ==========================================================================

class DataOperation(BaseSchema):
    """One processing step; the command and its parameters are opaque here."""

    command: str = Field(min_length=1, max_length=255)
    parameters: dict[str, Any] = Field(default_factory=dict)


class PipelineConfigCreate(BaseSchema):
    """Schema for creating a pipeline configuration."""

    data_project_id: UUID
    slug: str = Field(min_length=1, max_length=100, pattern=r"^[a-z0-9][a-z0-9-]*$")
    name: str = Field(min_length=1, max_length=255)
    pipeline_type: PipelineType = PipelineType.DATA
    source_branch: str = Field("master", min_length=1, max_length=255)
    target_branch_pattern: Optional[str] = Field(None, min_length=1, max_length=255)
    data_operations: list[DataOperation] = Field(default_factory=list)


class PipelineConfigUpdate(BaseSchema):
    """Only descriptive fields can change."""

    name: str = Field(min_length=1, max_length=255)


class PipelineJobInfoResponse(BaseSchema):
    """Job info without the secret."""

    external_run_id: str
    started_at: Optional[datetime] = None


class PipelineInstanceResponse(TimestampSchema):
    """Schema for pipeline instance in responses."""

    id: UUID
    pipeline_config_id: UUID
    data_project_id: UUID
    slug: str
    name: str
    number: int
    target_branch: str
    status: PipelineInstanceStatus
    job_info: Optional[PipelineJobInfoResponse] = None
    finished_at: Optional[datetime] = None


class PipelineConfigResponse(TimestampSchema):
    """Schema for pipeline configuration with its instances."""

    id: UUID
    data_project_id: UUID
    slug: str
    name: str
    pipeline_type: PipelineType
    source_branch: str
    target_branch_pattern: str
    data_operations: list[DataOperation]
    instances: list[PipelineInstanceResponse] = Field(default_factory=list)


class PipelineStatusReport(BaseSchema):
    """Status callback sent by the running job."""

    status: PipelineInstanceStatus
    message: Optional[str] = Field(None, max_length=2000)


# ==========================================================================
# Generic Responses
# ==========================================================================

class MessageResponse(BaseSchema):
    """Generic message response."""

    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
