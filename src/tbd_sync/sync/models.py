"""Pydantic models for the sync orchestrator.

Defines the data contracts shared across the sync modules:

- ``SyncAction``: Enum of per-entity reconciliation outcomes.
- ``SyncPhase``: Orchestrator state machine phases.
- ``EntitySyncResult``: Outcome of reconciling one entity or file.
- ``SyncReport``: Aggregate results for a full sync run.
- ``SyncStatus``: Read-only view of pending local/remote changes.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel


class SyncAction(str, Enum):
    """Possible reconciliation outcomes for one entity or file."""

    SKIP = "skip"
    PUSH = "push"
    PULL = "pull"
    MERGE = "merge"
    CREATE_REMOTE = "create_remote"
    CREATE_LOCAL = "create_local"
    ERROR = "error"


class SyncPhase(str, Enum):
    """Orchestrator state machine phases."""

    IDLE = "idle"
    FETCHING = "fetching"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    PUSHING = "pushing"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


class EntitySyncResult(BaseModel):
    """Result of reconciling one entity (or one non-entity tree file).

    Attributes:
        path: Tree-relative path of the reconciled file.
        entity_id: Entity ID, or ``None`` for non-entity files.
        action: Reconciliation outcome.
        attic_entries: Number of attic entries the merge produced.
        error: Error message if reconciliation of this path failed.
    """

    path: str
    entity_id: str | None = None
    action: SyncAction
    attic_entries: int = 0
    error: str | None = None

    model_config = {"frozen": True}


class SyncReport(BaseModel):
    """Aggregate report for a full sync run.

    Attributes:
        branch: Sync branch name.
        remote: Remote name.
        results: Per-path results of the final (successful) attempt.
        mode: Sync mode the run used (``full``, ``pull`` or ``push``).
        deferred: Paths the mode left for a later run.
        attempts: Number of fetch/reconcile/push attempts made.
        phases: Phases visited, in order.
        commit: Commit pushed by this run, or ``None`` if nothing changed.
        remote_tip: Remote tip the final attempt reconciled against.
        files_written: Local files written after a successful push.
        started_at: ISO 8601 timestamp when sync started.
        completed_at: ISO 8601 timestamp when sync completed.
    """

    branch: str
    remote: str
    results: list[EntitySyncResult] = []
    mode: str = "full"
    deferred: list[str] = []
    attempts: int = 0
    phases: list[SyncPhase] = []
    commit: str | None = None
    remote_tip: str | None = None
    files_written: int = 0
    started_at: str
    completed_at: str | None = None

    model_config = {"frozen": True}

    def _with_action(self, action: SyncAction) -> list[EntitySyncResult]:
        return [r for r in self.results if r.action == action]

    @property
    def pushed(self) -> list[EntitySyncResult]:
        """Results where local content was sent to the remote."""
        return self._with_action(SyncAction.PUSH) + self._with_action(
            SyncAction.CREATE_REMOTE
        )

    @property
    def pulled(self) -> list[EntitySyncResult]:
        """Results where remote content was adopted locally."""
        return self._with_action(SyncAction.PULL) + self._with_action(
            SyncAction.CREATE_LOCAL
        )

    @property
    def merged(self) -> list[EntitySyncResult]:
        return self._with_action(SyncAction.MERGE)

    @property
    def skipped(self) -> list[EntitySyncResult]:
        return self._with_action(SyncAction.SKIP)

    @property
    def errors(self) -> list[EntitySyncResult]:
        return [r for r in self.results if r.error is not None]

    @property
    def attic_entries(self) -> int:
        return sum(r.attic_entries for r in self.results)

    @property
    def changed(self) -> bool:
        """True if the run pushed a commit or wrote local files."""
        return self.commit is not None or self.files_written > 0

    def summary(self) -> str:
        """Format a plain-text summary of the sync run.

        Returns:
            Multi-line summary string with counts by action.
        """
        lines = [
            f"Sync {self.branch} <-> {self.remote}/{self.branch} [{self.mode}] "
            f"({self.attempts} attempt{'s' if self.attempts != 1 else ''})",
            f"  Pushed:        {len(self.pushed)}",
            f"  Pulled:        {len(self.pulled)}",
            f"  Merged:        {len(self.merged)}",
            f"  Attic entries: {self.attic_entries}",
            f"  Unchanged:     {len(self.skipped)}",
            f"  Deferred:      {len(self.deferred)}",
            f"  Errors:        {len(self.errors)}",
        ]
        return "\n".join(lines)


class SyncStatus(BaseModel):
    """Pending changes relative to the last successful sync.

    Attributes:
        last_synced_commit: Commit recorded by this node's last sync.
        remote_tip: Current remote tip after fetching (``None`` if the
            branch does not exist or the fetch was skipped).
        local_changes: Tree paths changed locally since the last sync.
        remote_moved: True if the remote advanced since the last sync.
    """

    last_synced_commit: str | None = None
    remote_tip: str | None = None
    local_changes: list[str] = []
    remote_moved: bool = False

    model_config = {"frozen": True}

    @property
    def in_sync(self) -> bool:
        return not self.local_changes and not self.remote_moved
