"""
Lifecycle Engine - Drives pipeline instances through their states.

    CREATED → RUNNING → SUCCEEDED | FAILED   (reported by the running job)
                      → CANCELED             (halted through the CI provider)
    RUNNING | SUCCEEDED | FAILED | CANCELED → ARCHIVED

Deletion is not a state: it is allowed from anything but RUNNING and
removes the target branch before the record.

Every transition runs under a per-instance lock and is committed with a
compare-and-set update, so only one of several concurrent callers (in this
process or another) can move an instance out of a given state. Provider
calls happen before the local write; when they fail nothing is written.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import InvalidRequestError
from sqlalchemy.ext.asyncio import AsyncSession

from reefline.core.models import (
    PipelineConfig,
    PipelineInstance,
    PipelineInstanceStatus,
    User,
)
from reefline.core.pipeline.artifact import InstanceArtifactBuilder
from reefline.core.pipeline.errors import (
    InvalidTransition,
    NotFound,
    UnsupportedAction,
    UpstreamUnavailable,
)
from reefline.core.pipeline.locks import KeyedLocks, instance_locks
from reefline.core.pipeline.providers import CIProvider, VCSProvider
from reefline.core.pipeline.secret_manager import SecretManager

logger = logging.getLogger(__name__)

Status = PipelineInstanceStatus


class PipelineAction(str, enum.Enum):
    """Actions a user can dispatch on an instance."""
    START = "start"
    ARCHIVE = "archive"
    CANCEL = "cancel"

    @classmethod
    def parse(cls, token: str) -> "PipelineAction":
        """
        Map an action token to an action.

        Raises:
            UnsupportedAction: For anything but start, archive or cancel
        """
        try:
            return cls(token)
        except ValueError:
            raise UnsupportedAction(
                f"No valid action: '{token}'",
                details={"allowed": [action.value for action in cls]},
            ) from None


ARCHIVABLE = frozenset({Status.RUNNING, Status.SUCCEEDED, Status.FAILED, Status.CANCELED})
REPORTABLE = frozenset({Status.RUNNING, Status.SUCCEEDED, Status.FAILED})


def _now() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleEngine:
    """
    State machine for pipeline instances.

    Args:
        db: Session the instance belongs to
        ci: CI provider that runs pipeline files
        vcs: Source-control provider owning the target branches
        secret_manager: Issues and validates callback secrets
        artifact_builder: Renders the pipeline file submitted on start
        locks: Per-instance lock registry
    """

    def __init__(
        self,
        db: AsyncSession,
        ci: CIProvider,
        vcs: VCSProvider,
        secret_manager: Optional[SecretManager] = None,
        artifact_builder: Optional[InstanceArtifactBuilder] = None,
        locks: KeyedLocks = instance_locks,
    ):
        self.db = db
        self.ci = ci
        self.vcs = vcs
        self.secret_manager = secret_manager or SecretManager()
        self.artifact_builder = artifact_builder or InstanceArtifactBuilder(self.secret_manager)
        self.locks = locks

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def start(
        self,
        config: PipelineConfig,
        instance: PipelineInstance,
        actor: User,
        access_token: str,
        project_handle: int,
    ) -> PipelineInstance:
        """
        Submit the instance to the CI provider: CREATED → RUNNING.

        Raises:
            InvalidTransition: If the instance is not CREATED
            UpstreamUnavailable: If the CI provider did not accept the run
        """
        async with self.locks(instance.id):
            await self._reload(instance)
            self._require(instance, {Status.CREATED}, PipelineAction.START)

            secret = self.secret_manager.issue()
            document = self.artifact_builder.render(config, instance, actor, secret)

            external_run_id = await self.ci.trigger(
                project_handle,
                access_token,
                document,
                source_branch=config.source_branch,
                target_branch=instance.target_branch,
            )

            started = await self._compare_and_set(
                instance,
                {Status.CREATED},
                write_secret=True,
                status=Status.RUNNING,
                external_run_id=external_run_id,
                secret=secret,
                started_at=_now(),
            )
            if not started:
                await self._cancel_orphan(project_handle, external_run_id, access_token)
                raise self._invalid(instance, PipelineAction.START)

        logger.info(
            f"Started instance {instance.slug} on {instance.target_branch} "
            f"as run {external_run_id} for {actor.email}"
        )
        return instance

    async def archive(self, instance: PipelineInstance) -> PipelineInstance:
        """
        Mark a started instance as archived. Local bookkeeping only.

        Raises:
            InvalidTransition: If the instance never started or is archived
        """
        async with self.locks(instance.id):
            await self._reload(instance)
            self._require(instance, ARCHIVABLE, PipelineAction.ARCHIVE)

            if not await self._compare_and_set(instance, ARCHIVABLE, status=Status.ARCHIVED):
                raise self._invalid(instance, PipelineAction.ARCHIVE)

        logger.info(f"Archived instance {instance.slug}")
        return instance

    async def cancel(
        self,
        instance: PipelineInstance,
        project_handle: int,
        access_token: Optional[str] = None,
    ) -> PipelineInstance:
        """
        Halt a running instance: RUNNING → CANCELED.

        The status only changes after the CI provider acknowledged, so a
        failed cancel can simply be retried.

        Raises:
            InvalidTransition: If the instance is not RUNNING
            UpstreamUnavailable: If the CI provider did not acknowledge
        """
        async with self.locks(instance.id):
            await self._reload(instance)
            self._require(instance, {Status.RUNNING}, PipelineAction.CANCEL)

            await self.ci.cancel(project_handle, instance.external_run_id, access_token)

            canceled = await self._compare_and_set(
                instance,
                {Status.RUNNING},
                status=Status.CANCELED,
                finished_at=_now(),
            )
            if not canceled:
                raise self._invalid(instance, PipelineAction.CANCEL)

        logger.info(f"Canceled instance {instance.slug} (run {instance.external_run_id})")
        return instance

    async def delete(
        self,
        instance: PipelineInstance,
        access_token: str,
        project_handle: int,
    ) -> None:
        """
        Remove the target branch, then the instance record.

        Raises:
            InvalidTransition: If the instance is RUNNING
            UpstreamUnavailable: If the branch could not be deleted; the
                record is kept in that case
        """
        instance_id = instance.id
        async with self.locks(instance_id):
            await self._reload(instance)
            if instance.status == Status.RUNNING:
                raise InvalidTransition(
                    "Cannot delete a running pipeline instance, cancel it first",
                    details={"status": instance.status.value, "action": "delete"},
                )

            await self.vcs.delete_branch(project_handle, access_token, instance.target_branch)

            result = await self.db.execute(
                delete(PipelineInstance)
                .where(
                    PipelineInstance.id == instance_id,
                    PipelineInstance.status != Status.RUNNING,
                )
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
            if result.rowcount != 1:
                raise InvalidTransition(
                    "Pipeline instance changed while it was being deleted",
                    details={"action": "delete"},
                )
            self.db.expunge(instance)

        self.locks.discard(instance_id)
        logger.info(f"Deleted instance {instance.slug} and branch {instance.target_branch}")

    async def report_status(
        self,
        instance: PipelineInstance,
        presented_secret: Optional[str],
        status: PipelineInstanceStatus,
        message: Optional[str] = None,
    ) -> PipelineInstance:
        """
        Apply a status reported by the running job.

        RUNNING is accepted as a heartbeat; SUCCEEDED and FAILED finish the run.

        Raises:
            InvalidSecret: If the secret does not belong to the instance
            InvalidTransition: If the status cannot be reported or the
                instance is no longer running
        """
        async with self.locks(instance.id):
            await self._reload(instance)
            self.secret_manager.validate(instance, presented_secret)

            if status not in REPORTABLE:
                raise InvalidTransition(
                    f"Status '{status.value}' cannot be reported by a running job",
                    details={"status": instance.status.value},
                )
            self._require(instance, {Status.RUNNING}, "report status for")

            if status != Status.RUNNING:
                finished = await self._compare_and_set(
                    instance,
                    {Status.RUNNING},
                    status=status,
                    finished_at=_now(),
                )
                if not finished:
                    raise self._invalid(instance, "report status for")
                logger.info(f"Instance {instance.slug} reported {status.value}")

            if message:
                logger.info(f"Instance {instance.slug} job message: {message}")

        return instance

    # ==========================================================================
    # Helpers
    # ==========================================================================

    def _require(self, instance: PipelineInstance, allowed, action) -> None:
        if instance.status not in allowed:
            raise self._invalid(instance, action)

    def _invalid(self, instance: PipelineInstance, action) -> InvalidTransition:
        verb = action.value if isinstance(action, PipelineAction) else action
        return InvalidTransition(
            f"Cannot {verb} pipeline instance in {instance.status.value} status",
            details={"status": instance.status.value, "action": verb},
        )

    async def _reload(self, instance: PipelineInstance) -> None:
        try:
            await self.db.refresh(instance)
        except InvalidRequestError as e:
            raise NotFound("PipelineInstance was not found") from e

    async def _compare_and_set(
        self,
        instance: PipelineInstance,
        expected,
        write_secret: bool = False,
        **values,
    ) -> bool:
        """Update the row only if its status is still one of ``expected``."""
        stmt = update(PipelineInstance).where(
            PipelineInstance.id == instance.id,
            PipelineInstance.status.in_(list(expected)),
        )
        if write_secret:
            stmt = stmt.where(PipelineInstance.secret.is_(None))

        result = await self.db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(instance)
        return result.rowcount == 1

    async def _cancel_orphan(
        self,
        project_handle: int,
        external_run_id: str,
        access_token: str,
    ) -> None:
        """Stop a run triggered by the loser of a start race."""
        try:
            await self.ci.cancel(project_handle, external_run_id, access_token)
        except UpstreamUnavailable as e:
            logger.error(f"Could not cancel orphaned run {external_run_id}: {e.message}")
