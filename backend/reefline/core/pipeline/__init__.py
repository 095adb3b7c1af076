"""
Reefline Pipeline Orchestrator
==============================

Creates numbered pipeline instances from pipeline configurations and drives
them through their lifecycle on an external CI provider.

Components:
- PipelineOrchestrator: Facade used by the API layer
- LifecycleEngine: start / archive / cancel / delete / status callbacks
- InstanceNumberer: Race-free instance numbers per configuration
- InstanceArtifactBuilder: Renders the pipeline file the CI provider runs
- SecretManager: Per-instance callback secrets
"""

from reefline.core.pipeline.artifact import InstanceArtifactBuilder
from reefline.core.pipeline.lifecycle import LifecycleEngine, PipelineAction
from reefline.core.pipeline.numbering import InstanceNumberer
from reefline.core.pipeline.orchestrator import ConfigWithInstances, PipelineOrchestrator
from reefline.core.pipeline.secret_manager import SecretManager

__all__ = [
    "ConfigWithInstances",
    "InstanceArtifactBuilder",
    "InstanceNumberer",
    "LifecycleEngine",
    "PipelineAction",
    "PipelineOrchestrator",
    "SecretManager",
]
