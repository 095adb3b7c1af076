"""
Secret Manager - Per-instance callback tokens.

A secret is issued when an instance starts, embedded in its pipeline file
and presented back by the running job when it reports status.
"""

import hmac
import logging
import secrets
from typing import Optional

from reefline.core.config import settings
from reefline.core.models import PipelineInstance
from reefline.core.pipeline.errors import InvalidSecret

logger = logging.getLogger(__name__)


class SecretManager:
    """
    Issues, redacts and validates instance secrets.

    A secret is written once, when the instance starts; the lifecycle
    engine only stores it on rows that have none.
    """

    def __init__(
        self,
        num_bytes: Optional[int] = None,
        placeholder: Optional[str] = None,
    ):
        self.num_bytes = num_bytes or settings.PIPELINE_SECRET_BYTES
        self.placeholder = placeholder or settings.PIPELINE_REDACTED_SECRET

    def issue(self) -> str:
        """Generate a new unguessable token."""
        return secrets.token_urlsafe(self.num_bytes)

    def redact(self, secret: Optional[str]) -> str:
        """Return ``secret`` or the placeholder when there is none."""
        if not secret:
            return self.placeholder
        return secret

    def validate(self, instance: PipelineInstance, presented: Optional[str]) -> None:
        """
        Check a secret presented by a running job.

        Raises:
            InvalidSecret: If the instance has no secret or it does not match
        """
        job_info = instance.job_info
        if job_info is None or not presented:
            logger.warning(f"Rejected callback for instance {instance.id}: no secret")
            raise InvalidSecret("Pipeline secret missing or not issued")

        if not hmac.compare_digest(job_info.secret.encode(), presented.encode()):
            logger.warning(f"Rejected callback for instance {instance.id}: secret mismatch")
            raise InvalidSecret("Pipeline secret does not match")
