"""Sync engine: orchestrates fetch, reconcile, commit and push.

The ``SyncEngine`` class ties together the entity store, conflict detector,
merge rule engine, per-node state, and a ``Transport`` into a single
``run()`` method that reconciles the local replica with the shared sync
branch.

State machine::

    idle -> fetching -> reconciling -> committing -> pushing -> done
                ^                                        |
                +---------------- retrying <-------------+   (rejected)
                                                         -> failed

Key design choices:

* The whole reconciliation is planned **in memory**.  Local files are only
  written after the push succeeded (or when there was nothing to push), so
  a failed run leaves the local replica exactly as it was.
* Reads after a fetch target the remote-tracking ref returned by
  ``Transport.fetch()``; the transport advances its refs only on a
  successful push.
* The merge base is the commit recorded by this node's last successful
  sync (``LocalSyncState``), read back through the transport.
* ``run(mode="pull")`` never builds a revision; ``run(mode="push")`` never
  adopts remote-only changes.  Skipped work is listed on
  ``SyncReport.deferred`` and picked up by the next full run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Literal, Protocol

from tbd_sync import codec, paths
from tbd_sync.attic import entry_rel_path
from tbd_sync.core.async_utils import run_sync_limited
from tbd_sync.errors import (
    CorruptionError,
    SyncFailedError,
    TransportError,
    TransportRejected,
    ValidationError,
)
from tbd_sync.models import Issue
from tbd_sync.store import EntityStore
from tbd_sync.sync.detector import ConflictDetector
from tbd_sync.sync.merger import MergeRuleEngine
from tbd_sync.sync.models import (
    EntitySyncResult,
    SyncAction,
    SyncPhase,
    SyncReport,
    SyncStatus,
)
from tbd_sync.sync.state import LocalSyncState
from tbd_sync.timeutils import now

logger = logging.getLogger(__name__)

DEFAULT_MAX_PUSH_ATTEMPTS = 3
SCHEMA_VERSION = 1

SyncMode = Literal["full", "pull", "push"]

# Actions a partial sync leaves for a later run.
DEFERRED_ACTIONS: dict[str, frozenset[SyncAction]] = {
    "full": frozenset(),
    "pull": frozenset({SyncAction.PUSH, SyncAction.CREATE_REMOTE}),
    "push": frozenset({SyncAction.PULL, SyncAction.CREATE_LOCAL}),
}


class Transport(Protocol):
    """Shared transport log the engine syncs against."""

    branch: str
    remote: str

    def fetch(self) -> str | None:
        """Refresh the remote view; return its tip or ``None``."""
        ...  # pragma: no cover

    def read_file(self, ref: str, path: str) -> bytes | None:
        ...  # pragma: no cover

    def list_files(self, ref: str, prefix: str = "") -> list[str]:
        ...  # pragma: no cover

    def build_revision(
        self,
        parent: str | None,
        files: dict[str, bytes],
        removals: Iterable[str],
        message: str,
    ) -> str | None:
        """Build a revision on *parent*; ``None`` if nothing changed."""
        ...  # pragma: no cover

    def push(self, commit: str) -> None:
        """Advance the remote; raises ``TransportRejected`` on a race."""
        ...  # pragma: no cover


def meta_file_content() -> bytes:
    return codec.dump_yaml({"schema_version": SCHEMA_VERSION}).encode("utf-8")


@dataclass
class SyncPlan:
    """Everything one reconciliation pass decided, not yet applied.

    Attributes:
        remote_files: Tree path -> bytes for the new revision.
        remote_removals: Tree paths the new revision drops.
        local_files: Tree path -> bytes to write locally after the push.
        local_removals: Local tree paths to remove after the push.
        quarantine: Corrupt local files to move aside after the push.
        results: Per-path reconciliation results.
        mode: ``"full"``, ``"pull"`` (never publish) or ``"push"`` (never
            adopt remote-only changes).
        deferred: Tree paths left for a later run because of ``mode``.
    """

    remote_files: dict[str, bytes] = field(default_factory=dict)
    remote_removals: set[str] = field(default_factory=set)
    local_files: dict[str, bytes] = field(default_factory=dict)
    local_removals: set[str] = field(default_factory=set)
    quarantine: list[str] = field(default_factory=list)
    results: list[EntitySyncResult] = field(default_factory=list)
    mode: SyncMode = "full"
    deferred: list[str] = field(default_factory=list)

    @property
    def has_remote_changes(self) -> bool:
        if self.mode == "pull":
            return False
        return bool(self.remote_files or self.remote_removals)

    def defers(self, action: SyncAction) -> bool:
        return action in DEFERRED_ACTIONS[self.mode]

    def commit_message(self) -> str:
        counts: dict[str, int] = {}
        for result in self.results:
            if result.action != SyncAction.SKIP:
                counts[result.action.value] = counts.get(result.action.value, 0) + 1
        detail = ", ".join(f"{n} {a}" for a, n in sorted(counts.items()))
        return f"tbd sync: {detail or 'update'}"


@dataclass
class _Side:
    """One side's view of an entity during reconciliation."""

    rel_path: str | None = None
    archived: bool = False
    data: bytes | None = None
    entity: Issue | None = None
    corrupt: bool = False

    @property
    def hash(self) -> str | None:
        return codec.content_hash(self.entity) if self.entity else None


class SyncEngine:
    """Orchestrate a full sync between the local replica and the transport.

    Args:
        store: Entity store for the local replica.
        transport: Transport log (typically ``GitTransport``).
        state: Per-node bookkeeping.
        merger: Merge rule engine; defaults to the issue rule table.
        detector: Conflict detector.
        max_push_attempts: Fetch/reconcile/push attempts before giving up.
    """

    def __init__(
        self,
        store: EntityStore,
        transport: Transport,
        state: LocalSyncState,
        merger: MergeRuleEngine | None = None,
        detector: ConflictDetector | None = None,
        max_push_attempts: int = DEFAULT_MAX_PUSH_ATTEMPTS,
    ) -> None:
        self.store = store
        self.transport = transport
        self.state = state
        self.merger = merger or MergeRuleEngine()
        self.detector = detector or ConflictDetector()
        self.max_push_attempts = max(1, max_push_attempts)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def run(self, mode: SyncMode = "full") -> SyncReport:
        """Execute a sync run.

        Args:
            mode: ``"full"`` reconciles both ways.  ``"pull"`` adopts and
                merges remote changes locally without publishing anything.
                ``"push"`` publishes local changes (merging where both
                sides changed) but leaves remote-only changes for a later
                run; the sync base is then kept so those are still pulled.

        Returns:
            A ``SyncReport`` for the successful attempt.

        Raises:
            IntegrityError: If two copies disagree on an immutable field.
                Nothing is written locally or remotely.
            ValidationError: If *mode* is not a known sync mode.
            SyncFailedError: If every push attempt was rejected or the
                transport failed.  Local state is untouched.
        """
        if mode not in DEFERRED_ACTIONS:
            raise ValidationError(
                f"Unknown sync mode '{mode}'",
                hint="Use one of: full, pull, push.",
            )
        started_at = now()
        phases: list[SyncPhase] = [SyncPhase.IDLE]
        base = self.state.last_synced_commit()
        last_error: Exception | None = None

        for attempt in range(1, self.max_push_attempts + 1):
            try:
                phases.append(SyncPhase.FETCHING)
                tip = self.transport.fetch()

                phases.append(SyncPhase.RECONCILING)
                plan = self.reconcile(tip, base, mode=mode)

                phases.append(SyncPhase.COMMITTING)
                commit = None
                if plan.has_remote_changes:
                    commit = self.transport.build_revision(
                        tip,
                        plan.remote_files,
                        plan.remote_removals,
                        plan.commit_message(),
                    )

                if commit is not None:
                    phases.append(SyncPhase.PUSHING)
                    self.transport.push(commit)
            except TransportRejected as exc:
                last_error = exc
                logger.warning(
                    "Push rejected (attempt %d/%d); refetching and re-merging",
                    attempt,
                    self.max_push_attempts,
                )
                phases.append(SyncPhase.RETRYING)
                continue
            except TransportError as exc:
                phases.append(SyncPhase.FAILED)
                logger.error("Sync failed: %s", exc.message)
                raise SyncFailedError(
                    f"Sync failed on attempt {attempt}: {exc.message}"
                ) from exc

            written = self._apply_local(plan)
            synced = commit or tip
            if mode == "push" and plan.deferred:
                logger.info(
                    "Keeping sync base %s; %d remote changes not adopted",
                    base,
                    len(plan.deferred),
                )
            elif synced is not None:
                self.state.record_sync(synced)
            phases.append(SyncPhase.DONE)
            report = SyncReport(
                branch=self.transport.branch,
                remote=self.transport.remote,
                results=plan.results,
                mode=mode,
                deferred=plan.deferred,
                attempts=attempt,
                phases=phases,
                commit=commit,
                remote_tip=tip,
                files_written=written,
                started_at=started_at,
                completed_at=now(),
            )
            logger.info("%s", report.summary())
            return report

        phases.append(SyncPhase.FAILED)
        logger.error(
            "Sync gave up after %d rejected pushes", self.max_push_attempts
        )
        raise SyncFailedError(
            f"Push rejected {self.max_push_attempts} times; the remote kept "
            "advancing. No local changes were lost."
        ) from last_error

    async def run_async(self, mode: SyncMode = "full") -> SyncReport:
        """Run ``run()`` in a worker thread without blocking the event loop."""
        return await run_sync_limited(self.run, mode)

    def status(self) -> SyncStatus:
        """Report pending changes without writing anything."""
        base = self.state.last_synced_commit()
        tip = self.transport.fetch()
        base_files = set(self.transport.list_files(base)) if base else set()
        local_files = set(self.store.list_files())
        changes: list[str] = []
        for rel_path in sorted(base_files | local_files):
            local = self.store.read_file(rel_path)
            remote = (
                self.transport.read_file(base, rel_path) if base else None
            )
            if not _same_content(rel_path, local, remote):
                changes.append(rel_path)
        return SyncStatus(
            last_synced_commit=base,
            remote_tip=tip,
            local_changes=changes,
            remote_moved=tip != base,
        )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self, tip: str | None, base: str | None, mode: SyncMode = "full"
    ) -> SyncPlan:
        """Plan the reconciliation of the local replica against *tip*.

        Args:
            tip: Remote tip commit, or ``None`` if the branch is new.
            base: Commit this node last synced to, if any.
            mode: Sync mode; see ``run()``.

        Returns:
            The in-memory ``SyncPlan``.

        Raises:
            IntegrityError: If a merge finds an immutable-field mismatch.
        """
        plan = SyncPlan(mode=mode)
        local_paths = self.store.list_files()
        remote_paths = self.transport.list_files(tip) if tip else []

        local_entities = _index_entities(local_paths)
        remote_entities = _index_entities(remote_paths)
        for entity_id in sorted(set(local_entities) | set(remote_entities)):
            self._reconcile_entity(
                entity_id,
                local_entities.get(entity_id, {}),
                remote_entities.get(entity_id, {}),
                tip,
                base,
                plan,
            )

        local_other = {p for p in local_paths if paths.parse_entity_rel_path(p) is None}
        remote_other = {p for p in remote_paths if paths.parse_entity_rel_path(p) is None}
        if paths.META_FILE not in local_other | remote_other:
            content = meta_file_content()
            plan.remote_files[paths.META_FILE] = content
            plan.local_files[paths.META_FILE] = content
        for rel_path in sorted(local_other | remote_other):
            self._reconcile_file(rel_path, local_other, remote_other, tip, plan)

        logger.info(
            "Reconciled %d paths against %s",
            len(plan.results),
            tip[:12] if tip else "empty remote",
        )
        return plan

    def _reconcile_entity(
        self,
        entity_id: str,
        local_locations: dict[bool, str],
        remote_locations: dict[bool, str],
        tip: str | None,
        base: str | None,
        plan: SyncPlan,
    ) -> None:
        local = self._load_local(local_locations)
        remote = self._load_remote(remote_locations, tip)

        if remote.corrupt:
            plan.results.append(
                EntitySyncResult(
                    path=remote.rel_path or "",
                    entity_id=entity_id,
                    action=SyncAction.ERROR,
                    error=f"Remote copy of {entity_id} is corrupt; local copy kept",
                )
            )
            return

        base_entity = self._load_base(entity_id, base)
        base_hash = codec.content_hash(base_entity) if base_entity else None
        action = self.detector.classify(local.hash, remote.hash, base_hash)
        archived = local.archived or remote.archived
        target = paths.entity_rel_path(entity_id, archived=archived)

        # A push-only run must not adopt a remote archive relocation either.
        adopts_relocation = remote.archived and not local.archived
        if plan.defers(action) or (
            plan.mode == "push" and action == SyncAction.SKIP and adopts_relocation
        ):
            plan.deferred.append(target)
            logger.debug(
                "%s: %s deferred by %s sync", entity_id, action.value, plan.mode
            )
            return

        if local.corrupt:
            plan.quarantine.append(local.rel_path)
        if action == SyncAction.SKIP and local.entity is None:
            return

        if action == SyncAction.CREATE_LOCAL and base_hash is not None:
            logger.warning(
                "Local file for %s is missing; restoring it from the remote",
                entity_id,
            )

        attic_count = 0

        if action == SyncAction.SKIP:
            # Same content; versions may differ.  Each side keeps its bytes
            # and only follows an archive relocation.
            self._place(plan, "local", local, target, local.data)
            self._place(plan, "remote", remote, target, remote.data)
        else:
            if action in (SyncAction.CREATE_REMOTE, SyncAction.PUSH):
                final = local.entity
            elif action in (SyncAction.CREATE_LOCAL, SyncAction.PULL):
                final = remote.entity
            else:
                result = self.merger.merge(local.entity, remote.entity, base_entity)
                final = result.merged
                attic_count = len(result.attic_entries)
                for entry in result.attic_entries:
                    content = codec.encode_attic_entry(entry)
                    rel_path = entry_rel_path(entry)
                    plan.remote_files[rel_path] = content
                    plan.local_files[rel_path] = content
            data = codec.encode(final)
            self._place(plan, "local", local, target, data)
            self._place(plan, "remote", remote, target, data)

        for rel_path in local_locations.values():
            if rel_path != target:
                plan.local_removals.add(rel_path)
        for rel_path in remote_locations.values():
            if rel_path != target:
                plan.remote_removals.add(rel_path)

        logger.debug("%s: %s", entity_id, action.value)
        plan.results.append(
            EntitySyncResult(
                path=target,
                entity_id=entity_id,
                action=action,
                attic_entries=attic_count,
            )
        )

    @staticmethod
    def _place(
        plan: SyncPlan,
        side: str,
        current: _Side,
        target: str,
        data: bytes | None,
    ) -> None:
        """Schedule *data* at *target* on one side unless already there."""
        if data is None:
            return
        files = plan.local_files if side == "local" else plan.remote_files
        if current.rel_path != target or current.data != data or current.corrupt:
            files[target] = data

    def _reconcile_file(
        self,
        rel_path: str,
        local_paths: set[str],
        remote_paths: set[str],
        tip: str | None,
        plan: SyncPlan,
    ) -> None:
        """Union non-entity files (attic entries, ``meta.yml``) by path."""
        if rel_path not in remote_paths:
            action = SyncAction.CREATE_REMOTE
        elif rel_path not in local_paths:
            action = SyncAction.CREATE_LOCAL
        else:
            action = SyncAction.SKIP
        if plan.defers(action):
            plan.deferred.append(rel_path)
            return

        if action == SyncAction.CREATE_REMOTE:
            data = self.store.read_file(rel_path)
            if data is not None:
                plan.remote_files[rel_path] = data
        elif action == SyncAction.CREATE_LOCAL:
            data = self.transport.read_file(tip, rel_path)
            if data is not None:
                plan.local_files[rel_path] = data
        else:
            local = self.store.read_file(rel_path)
            remote = self.transport.read_file(tip, rel_path)
            if local != remote:
                logger.warning(
                    "%s differs locally and remotely; keeping both as they are",
                    rel_path,
                )
            action = SyncAction.SKIP
        plan.results.append(EntitySyncResult(path=rel_path, action=action))

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _load_local(self, locations: dict[bool, str]) -> _Side:
        side = _pick_location(locations)
        if side.rel_path is None:
            return side
        side.data = self.store.read_file(side.rel_path)
        if side.data is None:
            return _Side()
        try:
            side.entity = codec.decode(side.data, path=side.rel_path)
        except CorruptionError as exc:
            logger.warning("%s; adopting the remote copy", exc.message)
            side.corrupt = True
        return side

    def _load_remote(self, locations: dict[bool, str], tip: str | None) -> _Side:
        side = _pick_location(locations)
        if side.rel_path is None or tip is None:
            return _Side()
        side.data = self.transport.read_file(tip, side.rel_path)
        if side.data is None:
            return _Side()
        try:
            side.entity = codec.decode(side.data, path=side.rel_path)
        except CorruptionError as exc:
            logger.error("%s", exc.message)
            side.corrupt = True
        return side

    def _load_base(self, entity_id: str, base: str | None) -> Issue | None:
        if base is None:
            return None
        for archived in (False, True):
            rel_path = paths.entity_rel_path(entity_id, archived=archived)
            data = self.transport.read_file(base, rel_path)
            if data is None:
                continue
            try:
                return codec.decode(data, path=rel_path)
            except CorruptionError:
                return None
        return None

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def _apply_local(self, plan: SyncPlan) -> int:
        """Write the planned local changes; returns the number of writes."""
        for rel_path in plan.quarantine:
            self.store.quarantine(rel_path)
        for rel_path in sorted(plan.local_files):
            self.store.write_file(rel_path, plan.local_files[rel_path])
        for rel_path in sorted(plan.local_removals):
            if rel_path not in plan.local_files:
                self.store.remove_file(rel_path)
        if plan.local_files:
            logger.info("Wrote %d local files", len(plan.local_files))
        return len(plan.local_files)


def _index_entities(rel_paths: Iterable[str]) -> dict[str, dict[bool, str]]:
    """Map entity id -> {archived: rel_path} for the entity files in a tree."""
    index: dict[str, dict[bool, str]] = {}
    for rel_path in rel_paths:
        parsed = paths.parse_entity_rel_path(rel_path)
        if parsed is None:
            continue
        entity_id, archived = parsed
        index.setdefault(entity_id, {})[archived] = rel_path
    return index


def _pick_location(locations: dict[bool, str]) -> _Side:
    # An archived copy wins over a stale live one left by an interrupted move.
    if True in locations:
        return _Side(rel_path=locations[True], archived=True)
    if False in locations:
        return _Side(rel_path=locations[False], archived=False)
    return _Side()


def _same_content(rel_path: str, left: bytes | None, right: bytes | None) -> bool:
    if left == right:
        return True
    if left is None or right is None:
        return False
    if paths.parse_entity_rel_path(rel_path) is None:
        return False
    try:
        return codec.content_hash(codec.decode(left)) == codec.content_hash(
            codec.decode(right)
        )
    except CorruptionError:
        return False
