"""
Reefline - Lifecycle Engine Tests
=================================

Transitions, their guards, and what happens when providers fail or
callers race.
"""

import asyncio
import logging
from uuid import uuid4

import pytest
import yaml
from sqlalchemy import select

from reefline.core.models import (
    DataProject,
    PipelineConfig,
    PipelineInstance,
    PipelineInstanceStatus,
    User,
)
from reefline.core.pipeline import InstanceNumberer, LifecycleEngine, PipelineAction
from reefline.core.pipeline.errors import (
    InvalidSecret,
    InvalidTransition,
    UnsupportedAction,
    UpstreamUnavailable,
)
from reefline.core.pipeline.locks import KeyedLocks

Status = PipelineInstanceStatus
TOKEN = "glpat-developer"
PROJECT_HANDLE = 42


# ==========================================================================
# Fixtures
# ==========================================================================

@pytest.fixture
def engine(db_session, fake_ci, fake_vcs) -> LifecycleEngine:
    return LifecycleEngine(db_session, fake_ci, fake_vcs)


@pytest.fixture
async def instance(db_session, pipeline_config) -> PipelineInstance:
    return await InstanceNumberer(db_session).claim(pipeline_config.id)


@pytest.fixture
async def running(engine, pipeline_config, instance, developer) -> PipelineInstance:
    return await engine.start(pipeline_config, instance, developer, TOKEN, PROJECT_HANDLE)


# ==========================================================================
# Actions
# ==========================================================================

class TestPipelineAction:
    """Tests for parsing action tokens."""

    def test_known_actions(self):
        assert PipelineAction.parse("start") is PipelineAction.START
        assert PipelineAction.parse("archive") is PipelineAction.ARCHIVE
        assert PipelineAction.parse("cancel") is PipelineAction.CANCEL

    def test_unknown_action(self):
        with pytest.raises(UnsupportedAction, match="No valid action: 'publish'"):
            PipelineAction.parse("publish")


# ==========================================================================
# Start
# ==========================================================================

class TestStart:
    """Tests for CREATED → RUNNING."""

    async def test_start_submits_pipeline_file(self, running, fake_ci):
        assert running.status == Status.RUNNING
        assert running.job_info is not None
        assert running.started_at is not None

        assert len(fake_ci.triggered) == 1
        call = fake_ci.triggered[0]
        assert call["project_handle"] == PROJECT_HANDLE
        assert call["access_token"] == TOKEN
        assert call["source_branch"] == "master"
        assert call["target_branch"] == "data-pipeline/clean-sonar-1"
        assert call["run_id"] == running.job_info.external_run_id

        variables = yaml.safe_load(call["document"])["variables"]
        assert variables["EPF_BOT_SECRET"] == running.job_info.secret

    async def test_start_twice(self, engine, pipeline_config, running, developer, fake_ci):
        secret = running.job_info.secret

        with pytest.raises(InvalidTransition, match="Cannot start pipeline instance in running status"):
            await engine.start(pipeline_config, running, developer, TOKEN, PROJECT_HANDLE)

        assert len(fake_ci.triggered) == 1
        assert running.job_info.secret == secret

    async def test_upstream_failure_leaves_instance_created(
        self, engine, pipeline_config, instance, developer, fake_ci
    ):
        fake_ci.fail_with = UpstreamUnavailable("GitLab is down")

        with pytest.raises(UpstreamUnavailable):
            await engine.start(pipeline_config, instance, developer, TOKEN, PROJECT_HANDLE)

        assert instance.status == Status.CREATED
        assert instance.job_info is None

    async def test_start_after_failure_can_be_retried(
        self, engine, pipeline_config, instance, developer, fake_ci
    ):
        fake_ci.fail_with = UpstreamUnavailable("GitLab is down")
        with pytest.raises(UpstreamUnavailable):
            await engine.start(pipeline_config, instance, developer, TOKEN, PROJECT_HANDLE)

        fake_ci.fail_with = None
        started = await engine.start(pipeline_config, instance, developer, TOKEN, PROJECT_HANDLE)

        assert started.status == Status.RUNNING


# ==========================================================================
# Archive
# ==========================================================================

class TestArchive:
    """Tests for archiving."""

    async def test_created_cannot_be_archived(self, engine, instance):
        with pytest.raises(InvalidTransition):
            await engine.archive(instance)
        assert instance.status == Status.CREATED

    @pytest.mark.parametrize("finished", [Status.SUCCEEDED, Status.FAILED])
    async def test_finished_run_is_archived(self, engine, running, finished):
        await engine.report_status(running, running.job_info.secret, finished)

        archived = await engine.archive(running)

        assert archived.status == Status.ARCHIVED
        assert archived.job_info is not None

    async def test_running_can_be_archived(self, engine, running):
        assert (await engine.archive(running)).status == Status.ARCHIVED

    async def test_archive_twice(self, engine, running):
        await engine.archive(running)
        with pytest.raises(InvalidTransition):
            await engine.archive(running)


# ==========================================================================
# Cancel
# ==========================================================================

class TestCancel:
    """Tests for RUNNING → CANCELED."""

    async def test_cancel_running(self, engine, running, fake_ci):
        run_id = running.job_info.external_run_id

        canceled = await engine.cancel(running, PROJECT_HANDLE, TOKEN)

        assert canceled.status == Status.CANCELED
        assert canceled.finished_at is not None
        assert fake_ci.canceled == [run_id]

    async def test_created_cannot_be_canceled(self, engine, instance, fake_ci):
        with pytest.raises(InvalidTransition, match="Cannot cancel pipeline instance in created status"):
            await engine.cancel(instance, PROJECT_HANDLE, TOKEN)

        assert instance.status == Status.CREATED
        assert fake_ci.canceled == []

    async def test_cancel_twice(self, engine, running, fake_ci):
        await engine.cancel(running, PROJECT_HANDLE, TOKEN)

        with pytest.raises(InvalidTransition):
            await engine.cancel(running, PROJECT_HANDLE, TOKEN)

        assert running.status == Status.CANCELED
        assert len(fake_ci.canceled) == 1

    async def test_upstream_failure_keeps_running(self, engine, running, fake_ci):
        fake_ci.fail_with = UpstreamUnavailable("GitLab is down")

        with pytest.raises(UpstreamUnavailable):
            await engine.cancel(running, PROJECT_HANDLE, TOKEN)

        assert running.status == Status.RUNNING
        assert running.finished_at is None


# ==========================================================================
# Delete
# ==========================================================================

class TestDelete:
    """Tests for deleting instances."""

    async def test_delete_created(self, db_session, engine, instance, fake_vcs):
        instance_id = instance.id

        await engine.delete(instance, TOKEN, PROJECT_HANDLE)

        assert fake_vcs.deleted_branches == ["data-pipeline/clean-sonar-1"]
        assert await db_session.get(PipelineInstance, instance_id) is None

    async def test_running_cannot_be_deleted(self, db_session, engine, running, fake_vcs):
        with pytest.raises(InvalidTransition, match="cancel it first"):
            await engine.delete(running, TOKEN, PROJECT_HANDLE)

        assert fake_vcs.deleted_branches == []
        assert await db_session.get(PipelineInstance, running.id) is not None

    async def test_branch_failure_keeps_record(self, db_session, engine, instance, fake_vcs):
        fake_vcs.fail_with = UpstreamUnavailable("GitLab is down")

        with pytest.raises(UpstreamUnavailable):
            await engine.delete(instance, TOKEN, PROJECT_HANDLE)

        assert await db_session.get(PipelineInstance, instance.id) is not None

    async def test_delete_after_cancel(self, db_session, engine, running, fake_vcs):
        instance_id = running.id
        await engine.cancel(running, PROJECT_HANDLE, TOKEN)

        await engine.delete(running, TOKEN, PROJECT_HANDLE)

        assert await db_session.get(PipelineInstance, instance_id) is None


# ==========================================================================
# Status Callbacks
# ==========================================================================

class TestReportStatus:
    """Tests for callbacks from the running job."""

    async def test_success(self, engine, running):
        reported = await engine.report_status(running, running.job_info.secret, Status.SUCCEEDED)

        assert reported.status == Status.SUCCEEDED
        assert reported.finished_at is not None

    async def test_job_message_is_logged(self, engine, running, caplog):
        with caplog.at_level(logging.INFO, logger="reefline.core.pipeline.lifecycle"):
            await engine.report_status(
                running, running.job_info.secret, Status.FAILED, "normalize: missing column depth"
            )

        assert "normalize: missing column depth" in caplog.text

    async def test_heartbeat_keeps_running(self, engine, running):
        reported = await engine.report_status(running, running.job_info.secret, Status.RUNNING)

        assert reported.status == Status.RUNNING
        assert reported.finished_at is None

    async def test_wrong_secret(self, engine, running):
        with pytest.raises(InvalidSecret):
            await engine.report_status(running, "guess", Status.SUCCEEDED)
        assert running.status == Status.RUNNING

    async def test_created_has_no_secret(self, engine, instance):
        with pytest.raises(InvalidSecret):
            await engine.report_status(instance, "***censored***", Status.SUCCEEDED)

    @pytest.mark.parametrize("reported", [Status.CANCELED, Status.ARCHIVED, Status.CREATED])
    async def test_unreportable_status(self, engine, running, reported):
        with pytest.raises(InvalidTransition):
            await engine.report_status(running, running.job_info.secret, reported)
        assert running.status == Status.RUNNING

    async def test_report_after_finish(self, engine, running):
        secret = running.job_info.secret
        await engine.report_status(running, secret, Status.FAILED)

        with pytest.raises(InvalidTransition):
            await engine.report_status(running, secret, Status.SUCCEEDED)
        assert running.status == Status.FAILED


# ==========================================================================
# Concurrency
# ==========================================================================

async def _seed(session_factory) -> tuple:
    async with session_factory() as session:
        user = User(id=uuid4(), email="racer@example.com", name="Racer", vcs_access_token=TOKEN)
        project = DataProject(id=uuid4(), slug="race", name="Race", gitlab_id=PROJECT_HANDLE)
        config = PipelineConfig(
            id=uuid4(),
            data_project_id=project.id,
            slug="race",
            name="Race",
            target_branch_pattern="data-pipeline/$SLUG-$NUMBER",
            data_operations=[],
        )
        session.add_all([user, project, config])
        await session.commit()
        instance = await InstanceNumberer(session).claim(config.id)
        return user.id, config.id, instance.id


class TestConcurrentStart:
    """Duplicate start requests, each on its own session."""

    async def _race(self, session_factory, fake_ci, fake_vcs, shared_locks: bool):
        user_id, config_id, instance_id = await _seed(session_factory)
        locks = KeyedLocks()

        async def start() -> str:
            async with session_factory() as session:
                engine = LifecycleEngine(
                    session,
                    fake_ci,
                    fake_vcs,
                    locks=locks if shared_locks else KeyedLocks(),
                )
                config = await session.get(PipelineConfig, config_id)
                instance = await session.get(PipelineInstance, instance_id)
                actor = await session.get(User, user_id)
                try:
                    await engine.start(config, instance, actor, TOKEN, PROJECT_HANDLE)
                except InvalidTransition:
                    return "rejected"
                return "started"

        outcomes = await asyncio.gather(*(start() for _ in range(4)))

        async with session_factory() as session:
            stored = (
                await session.execute(select(PipelineInstance).where(PipelineInstance.id == instance_id))
            ).scalar_one()
        return sorted(outcomes), stored

    async def test_only_one_start_wins(self, file_session_factory, fake_ci, fake_vcs):
        outcomes, stored = await self._race(file_session_factory, fake_ci, fake_vcs, shared_locks=True)

        assert outcomes == ["rejected", "rejected", "rejected", "started"]
        assert stored.status == Status.RUNNING
        assert len(fake_ci.triggered) == 1
        assert stored.external_run_id == fake_ci.triggered[0]["run_id"]

    async def test_losing_runs_are_canceled(self, file_session_factory, fake_ci, fake_vcs):
        """Without a shared lock every caller triggers; only one write lands."""
        outcomes, stored = await self._race(file_session_factory, fake_ci, fake_vcs, shared_locks=False)

        assert outcomes.count("started") == 1
        assert stored.status == Status.RUNNING
        run_ids = {call["run_id"] for call in fake_ci.triggered}
        assert stored.external_run_id in run_ids
        assert set(fake_ci.canceled) == run_ids - {stored.external_run_id}
