"""
Instance Numberer - Race-free sequence numbers per pipeline configuration.

A claim reads the current maximum and inserts the next instance as one
serialized step:

1. an in-process lock per configuration,
2. a row lock on the configuration (PostgreSQL; SQLite ignores it),
3. the (pipeline_config_id, number) unique constraint as the backstop,
   with a fresh read and retry whenever it fires.
"""

import logging
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reefline.core.config import settings
from reefline.core.models import PipelineConfig, PipelineInstance
from reefline.core.pipeline.errors import NotFound, NumberingConflict, NumberingUnavailable
from reefline.core.pipeline.locks import KeyedLocks, numbering_locks

logger = logging.getLogger(__name__)


class InstanceNumberer:
    """Assigns instance numbers: 1 for the first instance, then max + 1."""

    def __init__(
        self,
        db: AsyncSession,
        max_retries: Optional[int] = None,
        locks: KeyedLocks = numbering_locks,
    ):
        self.db = db
        self.max_retries = max_retries or settings.PIPELINE_NUMBERING_MAX_RETRIES
        self.locks = locks

    async def next_number(self, config_id: UUID) -> int:
        """Number the next instance of ``config_id`` would get right now."""
        result = await self.db.execute(
            select(func.max(PipelineInstance.number))
            .where(PipelineInstance.pipeline_config_id == config_id)
        )
        current = result.scalar()
        if current is None:
            logger.info(f"No instances for config {config_id} so far, starting with 1")
            return 1
        return current + 1

    async def claim(self, config_id: UUID) -> PipelineInstance:
        """
        Create and commit the next instance of a configuration.

        Args:
            config_id: Configuration to number within

        Returns:
            The persisted instance, status CREATED

        Raises:
            NotFound: If the configuration vanished before the claim
            NumberingUnavailable: If every attempt collided
        """
        async with self.locks(config_id):
            for attempt in range(1, self.max_retries + 1):
                try:
                    return await self._claim_once(config_id)
                except NumberingConflict as e:
                    logger.warning(
                        f"Numbering conflict on attempt {attempt}/{self.max_retries}: {e}"
                    )

        raise NumberingUnavailable(
            "Could not assign an instance number, please retry",
            details={"pipeline_config_id": str(config_id), "attempts": self.max_retries},
        )

    async def _claim_once(self, config_id: UUID) -> PipelineInstance:
        result = await self.db.execute(
            select(PipelineConfig)
            .where(PipelineConfig.id == config_id)
            .with_for_update()
        )
        config = result.scalar_one_or_none()
        if config is None:
            raise NotFound("PipelineConfig was not found")

        number = await self.next_number(config_id)
        instance = config.create_instance(number)
        self.db.add(instance)

        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise NumberingConflict(config_id, number) from e

        await self.db.refresh(instance)
        return instance
