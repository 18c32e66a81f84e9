"""Core transport and async plumbing shared by the CLI and the daemon."""

from .async_utils import run_sync, run_sync_limited
from .git import GitTransport, validate_git_name

__all__ = ["GitTransport", "run_sync", "run_sync_limited", "validate_git_name"]
