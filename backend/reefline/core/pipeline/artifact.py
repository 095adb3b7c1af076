"""
Instance Artifact Builder - Renders the CI pipeline file for an instance.

The document is what the CI provider executes on the instance's target
branch. Rendering is pure: it never touches the database or the instance.
"""

import shlex
from typing import Any, Optional

import yaml

from reefline.core.config import settings
from reefline.core.models import PipelineConfig, PipelineInstance, User
from reefline.core.pipeline.secret_manager import SecretManager

STAGE_NAME = "pipeline"
JOB_NAME = "reefline-pipeline"

# Sent back to the status callback from after_script, where GitLab exposes CI_JOB_STATUS
_REPORT_STATUS = (
    'STATUS=$([ "$CI_JOB_STATUS" = "success" ] && echo succeeded || echo failed); '
    'curl --silent --fail -X PUT '
    '-H "X-Pipeline-Secret: $EPF_BOT_SECRET" '
    '-H "Content-Type: application/json" '
    "-d \"{\\\"status\\\": \\\"$STATUS\\\"}\" "
    '"$EPF_CALLBACK_URL"'
)


class InstanceArtifactBuilder:
    """Builds the YAML job definition for one pipeline instance."""

    def __init__(
        self,
        secret_manager: Optional[SecretManager] = None,
        image: Optional[str] = None,
        runner_tags: Optional[list[str]] = None,
        callback_url: Optional[str] = None,
    ):
        self.secret_manager = secret_manager or SecretManager()
        self.image = image or settings.PIPELINE_IMAGE
        self.runner_tags = runner_tags if runner_tags is not None else settings.PIPELINE_RUNNER_TAGS
        self.callback_url = (callback_url or settings.PIPELINE_CALLBACK_URL).rstrip("/")

    def render(
        self,
        config: PipelineConfig,
        instance: PipelineInstance,
        actor: User,
        secret: Optional[str],
    ) -> str:
        """
        Render the pipeline file.

        Args:
            config: Configuration providing source branch and data operations
            instance: Instance the file is for
            actor: User the run is attributed to
            secret: Real secret, or None to embed the redacted placeholder

        Returns:
            YAML document as text
        """
        document = {
            "variables": self._variables(config, instance, actor, secret),
            "stages": [STAGE_NAME],
            JOB_NAME: {
                "stage": STAGE_NAME,
                "image": self.image,
                "tags": list(self.runner_tags),
                "script": self._script(config),
                "after_script": [_REPORT_STATUS],
                "only": {"refs": [instance.target_branch]},
            },
        }
        return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

    def _variables(
        self,
        config: PipelineConfig,
        instance: PipelineInstance,
        actor: User,
        secret: Optional[str],
    ) -> dict[str, Any]:
        return {
            "GIT_DEPTH": 1,
            "PIPELINE_CONFIG_ID": str(config.id),
            "PIPELINE_INSTANCE_ID": str(instance.id),
            "PIPELINE_NUMBER": instance.number,
            "PIPELINE_SLUG": instance.slug,
            "SOURCE_BRANCH": config.source_branch,
            "TARGET_BRANCH": instance.target_branch,
            "CONF_NAME": actor.name,
            "CONF_EMAIL": actor.email,
            "EPF_CALLBACK_URL": (
                f"{self.callback_url}/{config.id}/instances/{instance.id}/status"
            ),
            "EPF_BOT_SECRET": self.secret_manager.redact(secret),
        }

    def _script(self, config: PipelineConfig) -> list[str]:
        lines = [
            'git config --global user.email "$CONF_EMAIL"',
            'git config --global user.name "$CONF_NAME"',
        ]
        for operation in config.data_operations or []:
            lines.append(self._command_line(operation))
        lines.append('git add --all && git commit --allow-empty -m "Pipeline $PIPELINE_SLUG"')
        lines.append('git push origin "HEAD:$TARGET_BRANCH"')
        return lines

    @staticmethod
    def _command_line(operation: dict[str, Any]) -> str:
        parts = [shlex.quote(str(operation["command"]))]
        for key, value in (operation.get("parameters") or {}).items():
            parts.append(f"--{key}")
            parts.append(shlex.quote(str(value)))
        return " ".join(parts)
