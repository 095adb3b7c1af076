"""
Contracts the orchestrator needs from the CI and source-control providers.

Implementations raise ``UpstreamUnavailable`` for any rejected or failed call.
"""

from typing import Optional, Protocol


class CIProvider(Protocol):
    """Executes job-definition documents."""

    async def trigger(
        self,
        project_handle: int,
        access_token: str,
        document: str,
        *,
        source_branch: str,
        target_branch: str,
    ) -> str:
        """Submit ``document`` for ``target_branch`` and return the external run id."""
        ...

    async def cancel(
        self,
        project_handle: int,
        external_run_id: str,
        access_token: Optional[str] = None,
    ) -> None:
        """Halt a run; returns once the provider acknowledged."""
        ...


class VCSProvider(Protocol):
    """Source-control operations."""

    async def delete_branch(
        self,
        project_handle: int,
        access_token: str,
        branch: str,
    ) -> None:
        """Delete ``branch``; a branch that does not exist counts as deleted."""
        ...
