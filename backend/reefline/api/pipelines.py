"""
Reefline - Pipelines API
========================

Pipeline configuration and instance endpoints.

Access is checked here, before the orchestrator is invoked: viewing needs
view access on the data project, anything that changes state needs
DEVELOPER. The status callback is authenticated by the instance secret
instead of a bearer token.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Header, HTTPException, Response, status
from fastapi.responses import PlainTextResponse

from reefline.api.deps import (
    CurrentUser,
    DbSession,
    OptionalVcsAccessToken,
    Orchestrator,
    PipelineDeveloper,
    PipelineViewer,
    VcsAccessToken,
    has_project_access,
    missing_vcs_access_token,
    visible_project_ids,
)
from reefline.core.models import AccessLevel
from reefline.core.pipeline import ConfigWithInstances, PipelineAction
from reefline.core.schemas import (
    MessageResponse,
    PipelineConfigCreate,
    PipelineConfigResponse,
    PipelineConfigUpdate,
    PipelineInstanceResponse,
    PipelineStatusReport,
)

router = APIRouter(prefix="/pipelines", tags=["Pipelines"])


# ==========================================================================
# Helper Functions
# ==========================================================================

def _config_to_response(item: ConfigWithInstances) -> PipelineConfigResponse:
    response = PipelineConfigResponse.model_validate(item.config)
    response.instances = [
        PipelineInstanceResponse.model_validate(instance) for instance in item.instances
    ]
    return response


# ==========================================================================
# Pipeline Configurations
# ==========================================================================

@router.get("", response_model=list[PipelineConfigResponse])
async def list_pipelines(
    current_user: CurrentUser,
    db: DbSession,
    orchestrator: Orchestrator,
) -> list[PipelineConfigResponse]:
    """List the pipelines of every data project the caller can view."""
    project_ids = await visible_project_ids(db, current_user)
    items = await orchestrator.list_configs(project_ids)
    return [_config_to_response(item) for item in items]


@router.post("", response_model=PipelineConfigResponse, status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    data: PipelineConfigCreate,
    current_user: CurrentUser,
    db: DbSession,
    orchestrator: Orchestrator,
) -> PipelineConfigResponse:
    """
    Create a pipeline configuration.

    Requires DEVELOPER access on the target data project.
    """
    if not await has_project_access(db, current_user, data.data_project_id, AccessLevel.DEVELOPER):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access to this data project is not allowed",
        )

    config = await orchestrator.create_config(data)
    return _config_to_response(ConfigWithInstances(config))


@router.get("/{pid}", response_model=PipelineConfigResponse)
async def get_pipeline(
    pid: UUID,
    current_user: PipelineViewer,
    orchestrator: Orchestrator,
) -> PipelineConfigResponse:
    """Get a pipeline configuration with its instances."""
    return _config_to_response(await orchestrator.get_config(pid))


@router.patch("/{pid}", response_model=PipelineConfigResponse)
async def update_pipeline(
    pid: UUID,
    data: PipelineConfigUpdate,
    current_user: PipelineDeveloper,
    orchestrator: Orchestrator,
) -> PipelineConfigResponse:
    """Rename a pipeline configuration. Nothing else about it can change."""
    await orchestrator.rename_config(pid, data.name)
    return _config_to_response(await orchestrator.get_config(pid))


@router.delete("/{pid}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_pipeline(
    pid: UUID,
    current_user: PipelineDeveloper,
    orchestrator: Orchestrator,
) -> Response:
    """Delete a pipeline configuration that has no instances left."""
    await orchestrator.delete_config(pid)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ==========================================================================
# Pipeline Instances
# ==========================================================================

@router.get("/{pid}/instances", response_model=list[PipelineInstanceResponse])
async def list_instances(
    pid: UUID,
    current_user: PipelineViewer,
    orchestrator: Orchestrator,
) -> list[PipelineInstanceResponse]:
    """List the instances of a pipeline, ordered by number."""
    instances = await orchestrator.list_instances(pid)
    return [PipelineInstanceResponse.model_validate(instance) for instance in instances]


@router.post(
    "/{pid}/instances",
    response_model=PipelineInstanceResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_instance(
    pid: UUID,
    current_user: PipelineDeveloper,
    orchestrator: Orchestrator,
) -> PipelineInstanceResponse:
    """Create the next numbered instance of a pipeline."""
    instance = await orchestrator.create_instance(pid)
    return PipelineInstanceResponse.model_validate(instance)


@router.get("/{pid}/instances/{instance_id}", response_model=PipelineInstanceResponse)
async def get_instance(
    pid: UUID,
    instance_id: UUID,
    current_user: PipelineViewer,
    orchestrator: Orchestrator,
) -> PipelineInstanceResponse:
    """Get one instance of a pipeline."""
    instance = await orchestrator.get_instance(pid, instance_id)
    return PipelineInstanceResponse.model_validate(instance)


@router.get("/{pid}/instances/{instance_id}/pipeline-file", response_class=PlainTextResponse)
async def get_pipeline_file(
    pid: UUID,
    instance_id: UUID,
    current_user: PipelineDeveloper,
    orchestrator: Orchestrator,
) -> PlainTextResponse:
    """
    Render the CI pipeline file of an instance.

    The callback secret is only filled in while the instance is running.
    """
    document = await orchestrator.render_instance_file(pid, instance_id, current_user)
    return PlainTextResponse(document, media_type="text/plain")


@router.put("/{pid}/instances/{instance_id}/status", response_model=MessageResponse)
async def report_instance_status(
    pid: UUID,
    instance_id: UUID,
    report: PipelineStatusReport,
    orchestrator: Orchestrator,
    x_pipeline_secret: Annotated[Optional[str], Header()] = None,
) -> MessageResponse:
    """
    Status callback from the running job.

    Authenticated by the instance secret in the ``X-Pipeline-Secret`` header.
    """
    instance = await orchestrator.report_status(
        pid, instance_id, x_pipeline_secret, report.status, report.message
    )
    return MessageResponse(message=f"Pipeline instance {instance.slug} is {instance.status.value}")


@router.put("/{pid}/instances/{instance_id}/{action}", response_model=PipelineInstanceResponse)
async def dispatch_action(
    pid: UUID,
    instance_id: UUID,
    action: str,
    current_user: PipelineDeveloper,
    access_token: OptionalVcsAccessToken,
    orchestrator: Orchestrator,
) -> PipelineInstanceResponse:
    """
    Apply ``start``, ``archive`` or ``cancel`` to an instance.

    Only ``start`` needs the caller's source-control token. ``cancel`` falls
    back to the service token and ``archive`` stays local.
    """
    await orchestrator.get_instance(pid, instance_id)
    pipeline_action = PipelineAction.parse(action)
    if pipeline_action == PipelineAction.START and access_token is None:
        raise missing_vcs_access_token()

    instance = await orchestrator.dispatch(
        pid, instance_id, pipeline_action, current_user, access_token
    )
    return PipelineInstanceResponse.model_validate(instance)


@router.delete("/{pid}/instances/{instance_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_instance(
    pid: UUID,
    instance_id: UUID,
    current_user: PipelineDeveloper,
    access_token: VcsAccessToken,
    orchestrator: Orchestrator,
) -> Response:
    """Delete an instance and its target branch. Running instances must be canceled first."""
    await orchestrator.delete_instance(pid, instance_id, access_token)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
