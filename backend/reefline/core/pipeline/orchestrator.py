"""
Pipeline Orchestrator - Entry point for every pipeline operation.

Composes the numberer, the lifecycle engine, the secret manager and the
artifact builder. Every operation is scoped to a pipeline configuration,
which is resolved first; instance operations then resolve the instance
within that configuration.

The boundary layer is expected to have authorized the caller already.
"""

import logging
from collections.abc import Collection
from dataclasses import dataclass, field
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reefline.core.config import settings
from reefline.core.models import (
    DataProject,
    PipelineConfig,
    PipelineInstance,
    PipelineInstanceStatus,
    User,
)
from reefline.core.pipeline.artifact import InstanceArtifactBuilder
from reefline.core.pipeline.errors import AlreadyExists, ConfigInUse, NotFound
from reefline.core.pipeline.lifecycle import LifecycleEngine, PipelineAction
from reefline.core.pipeline.numbering import InstanceNumberer
from reefline.core.pipeline.providers import CIProvider, VCSProvider
from reefline.core.pipeline.secret_manager import SecretManager
from reefline.core.schemas import PipelineConfigCreate

logger = logging.getLogger(__name__)


@dataclass
class ConfigWithInstances:
    """A configuration together with its instances, ordered by number."""

    config: PipelineConfig
    instances: list[PipelineInstance] = field(default_factory=list)


class PipelineOrchestrator:
    """
    Facade over pipeline configurations and their instances.

    Args:
        db: Database session for this unit of work
        ci: CI provider
        vcs: Source-control provider
    """

    def __init__(
        self,
        db: AsyncSession,
        ci: CIProvider,
        vcs: VCSProvider,
        secret_manager: Optional[SecretManager] = None,
        artifact_builder: Optional[InstanceArtifactBuilder] = None,
        numberer: Optional[InstanceNumberer] = None,
    ):
        self.db = db
        self.secret_manager = secret_manager or SecretManager()
        self.artifact_builder = artifact_builder or InstanceArtifactBuilder(self.secret_manager)
        self.numberer = numberer or InstanceNumberer(db)
        self.lifecycle = LifecycleEngine(
            db,
            ci,
            vcs,
            secret_manager=self.secret_manager,
            artifact_builder=self.artifact_builder,
        )

    # ==========================================================================
    # Configurations
    # ==========================================================================

    async def list_configs(
        self,
        data_project_ids: Optional[Collection[UUID]] = None,
    ) -> list[ConfigWithInstances]:
        """
        List configurations with their instances.

        Args:
            data_project_ids: Restrict to these projects; None lists all
        """
        query = select(PipelineConfig).order_by(PipelineConfig.created_at, PipelineConfig.slug)
        if data_project_ids is not None:
            if not data_project_ids:
                return []
            query = query.where(PipelineConfig.data_project_id.in_(list(data_project_ids)))

        configs = list((await self.db.execute(query)).scalars().all())
        if not configs:
            return []

        result = await self.db.execute(
            select(PipelineInstance)
            .where(PipelineInstance.pipeline_config_id.in_([c.id for c in configs]))
            .order_by(PipelineInstance.number)
        )
        by_config: dict[UUID, list[PipelineInstance]] = {c.id: [] for c in configs}
        for instance in result.scalars().all():
            by_config[instance.pipeline_config_id].append(instance)

        return [ConfigWithInstances(config, by_config[config.id]) for config in configs]

    async def get_config(self, config_id: UUID) -> ConfigWithInstances:
        """Get one configuration with its instances."""
        config = await self._get_config_or_raise(config_id)
        return ConfigWithInstances(config, await self._instances_of(config_id))

    async def create_config(self, data: PipelineConfigCreate) -> PipelineConfig:
        """
        Create a configuration in a data project.

        Raises:
            NotFound: If the data project does not exist
            AlreadyExists: If the slug is taken in that project
        """
        project = await self.db.get(DataProject, data.data_project_id)
        if project is None:
            raise NotFound("DataProject was not found")

        config = PipelineConfig(
            data_project_id=project.id,
            slug=data.slug,
            name=data.name,
            pipeline_type=data.pipeline_type,
            source_branch=data.source_branch,
            target_branch_pattern=(
                data.target_branch_pattern or settings.PIPELINE_DEFAULT_BRANCH_PATTERN
            ),
            data_operations=[op.model_dump() for op in data.data_operations],
        )
        self.db.add(config)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise AlreadyExists(
                f"PipelineConfig '{data.slug}' already exists in this project"
            ) from e

        await self.db.refresh(config)
        logger.info(f"Created pipeline config {config.slug} in project {project.slug}")
        return config

    async def rename_config(self, config_id: UUID, name: str) -> PipelineConfig:
        """Change the descriptive name of a configuration."""
        config = await self._get_config_or_raise(config_id)
        config.name = name
        await self.db.commit()
        await self.db.refresh(config)
        return config

    async def delete_config(self, config_id: UUID) -> None:
        """
        Delete a configuration that owns no instances.

        Raises:
            NotFound: If the configuration does not exist
            ConfigInUse: If instances still reference it
        """
        config = await self._get_config_or_raise(config_id)

        count = (
            await self.db.execute(
                select(func.count())
                .select_from(PipelineInstance)
                .where(PipelineInstance.pipeline_config_id == config_id)
            )
        ).scalar() or 0
        if count:
            raise ConfigInUse(
                f"PipelineConfig still has {count} instance(s), delete them first",
                details={"instances": count},
            )

        await self.db.delete(config)
        try:
            await self.db.commit()
        except IntegrityError as e:
            # An instance was created between the count and the delete
            await self.db.rollback()
            raise ConfigInUse("PipelineConfig still has instances") from e

        self.numberer.locks.discard(config_id)
        logger.info(f"Deleted pipeline config {config_id}")

    # ==========================================================================
    # Instances
    # ==========================================================================

    async def list_instances(self, config_id: UUID) -> list[PipelineInstance]:
        """List the instances of a configuration, ordered by number."""
        await self._get_config_or_raise(config_id)
        return await self._instances_of(config_id)

    async def get_instance(self, config_id: UUID, instance_id: UUID) -> PipelineInstance:
        """Get one instance of a configuration."""
        await self._get_config_or_raise(config_id)
        return await self._get_instance_or_raise(config_id, instance_id)

    async def create_instance(self, config_id: UUID) -> PipelineInstance:
        """
        Create the next numbered instance, status CREATED.

        Raises:
            NotFound: If the configuration does not exist
            NumberingUnavailable: If no number could be claimed
        """
        await self._get_config_or_raise(config_id)
        instance = await self.numberer.claim(config_id)
        logger.info(
            f"Created instance {instance.slug} (#{instance.number}) for config {config_id}"
        )
        return instance

    async def dispatch(
        self,
        config_id: UUID,
        instance_id: UUID,
        action: str | PipelineAction,
        actor: User,
        access_token: Optional[str] = None,
    ) -> PipelineInstance:
        """
        Apply a lifecycle action to an instance.

        ``access_token`` is required for START. CANCEL without one uses the
        provider's service token.

        Raises:
            NotFound: If the configuration, instance or data project is missing
            UnsupportedAction: If the action is not start, archive or cancel
            InvalidTransition: If the action is illegal in the current status
            UpstreamUnavailable: If the CI provider call failed
        """
        config = await self._get_config_or_raise(config_id)
        if not isinstance(action, PipelineAction):
            action = PipelineAction.parse(action)
        instance = await self._get_instance_or_raise(config_id, instance_id)

        if action == PipelineAction.START:
            project = await self._get_project_or_raise(config.data_project_id)
            return await self.lifecycle.start(
                config, instance, actor, access_token, project.gitlab_id
            )
        if action == PipelineAction.ARCHIVE:
            return await self.lifecycle.archive(instance)
        if action == PipelineAction.CANCEL:
            project = await self._get_project_or_raise(config.data_project_id)
            return await self.lifecycle.cancel(instance, project.gitlab_id, access_token)

        raise AssertionError(f"Unhandled pipeline action {action!r}")

    async def render_instance_file(
        self,
        config_id: UUID,
        instance_id: UUID,
        actor: User,
    ) -> str:
        """
        Render the pipeline file of an instance.

        The real secret is only embedded while the instance is RUNNING;
        otherwise the placeholder is.
        """
        config = await self._get_config_or_raise(config_id)
        instance = await self._get_instance_or_raise(config_id, instance_id)

        secret = None
        job_info = instance.job_info
        if job_info is not None and instance.status == PipelineInstanceStatus.RUNNING:
            secret = job_info.secret

        return self.artifact_builder.render(config, instance, actor, secret)

    async def delete_instance(
        self,
        config_id: UUID,
        instance_id: UUID,
        access_token: str,
    ) -> None:
        """
        Delete an instance and its target branch.

        Raises:
            NotFound: If the configuration, instance or data project is missing
            InvalidTransition: If the instance is RUNNING
            UpstreamUnavailable: If the branch could not be deleted
        """
        await self._get_config_or_raise(config_id)
        instance = await self._get_instance_or_raise(config_id, instance_id)
        project = await self._get_project_or_raise(instance.data_project_id)

        await self.lifecycle.delete(instance, access_token, project.gitlab_id)

    async def report_status(
        self,
        config_id: UUID,
        instance_id: UUID,
        presented_secret: Optional[str],
        status: PipelineInstanceStatus,
        message: Optional[str] = None,
    ) -> PipelineInstance:
        """Apply a status callback from the running job."""
        await self._get_config_or_raise(config_id)
        instance = await self._get_instance_or_raise(config_id, instance_id)
        return await self.lifecycle.report_status(instance, presented_secret, status, message)

    # ==========================================================================
    # Lookups
    # ==========================================================================

    async def _get_config_or_raise(self, config_id: UUID) -> PipelineConfig:
        config = await self.db.get(PipelineConfig, config_id)
        if config is None:
            raise NotFound("PipelineConfig was not found")
        return config

    async def _get_instance_or_raise(
        self,
        config_id: UUID,
        instance_id: UUID,
    ) -> PipelineInstance:
        result = await self.db.execute(
            select(PipelineInstance).where(
                PipelineInstance.pipeline_config_id == config_id,
                PipelineInstance.id == instance_id,
            )
        )
        instance = result.scalar_one_or_none()
        if instance is None:
            raise NotFound("PipelineInstance was not found")
        return instance

    async def _get_project_or_raise(self, data_project_id: UUID) -> DataProject:
        project = await self.db.get(DataProject, data_project_id)
        if project is None:
            raise NotFound("DataProject not found for this Pipeline")
        return project

    async def _instances_of(self, config_id: UUID) -> list[PipelineInstance]:
        result = await self.db.execute(
            select(PipelineInstance)
            .where(PipelineInstance.pipeline_config_id == config_id)
            .order_by(PipelineInstance.number)
        )
        return list(result.scalars().all())
