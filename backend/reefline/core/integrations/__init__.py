"""Clients for the external CI and source-control providers."""

from reefline.core.integrations.gitlab import GitLabClient

__all__ = ["GitLabClient"]
