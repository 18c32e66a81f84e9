"""Tracker facade: the programmatic surface CLI and daemon code call.

Wires the entity store, attic and sync engine together for one
repository and exposes issue lifecycle operations on top of them.  Every
local mutation bumps ``version`` by one and refreshes ``updated_at``;
archived issues are read-only.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from tbd_sync import codec, paths
from tbd_sync.attic import Attic
from tbd_sync.config import Config
from tbd_sync.core.git import GitTransport
from tbd_sync.errors import (
    EntityRetiredError,
    NotFoundError,
    ValidationError,
)
from tbd_sync.ids import allocate_id, normalize_id, validate_id
from tbd_sync.models import (
    TERMINAL_STATUS,
    AtticEntry,
    Dependency,
    Issue,
    derive_close_fields,
)
from tbd_sync.store import EntityStore
from tbd_sync.sync.engine import SyncEngine, SyncMode, Transport
from tbd_sync.sync.merger import MergeRuleEngine
from tbd_sync.sync.models import SyncReport, SyncStatus
from tbd_sync.sync.state import LocalSyncState
from tbd_sync.timeutils import now

logger = logging.getLogger(__name__)

# Fields callers may not set through ``update()``.
MANAGED_FIELDS = frozenset(
    {"type", "id", "version", "created_at", "updated_at", "created_by"}
)


def _validation_error(exc: PydanticValidationError) -> ValidationError:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    )
    return ValidationError(f"Invalid issue data: {problems}")


class Tracker:
    """Issue operations and sync for one repository.

    Args:
        config: Resolved configuration (see ``config.load_config``).
        transport: Transport log; defaults to a ``GitTransport`` on the
            configured branch and remote.
    """

    def __init__(self, config: Config, transport: Transport | None = None) -> None:
        self.config = config
        root = config.repo_root
        self.store = EntityStore(
            paths.data_sync_dir(root),
            paths.cache_dir(root),
            temp_grace_seconds=config.temp_grace_seconds,
        )
        self.attic = Attic(self.store)
        self.state = LocalSyncState(paths.cache_dir(root))
        self.transport = transport or GitTransport(
            root, branch=config.branch, remote=config.remote
        )
        self.engine = SyncEngine(
            self.store,
            self.transport,
            self.state,
            merger=MergeRuleEngine(tie_break=config.tie_break),
            max_push_attempts=config.max_push_attempts,
        )

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self, mode: SyncMode = "full") -> SyncReport:
        """Reconcile with the shared branch; see ``SyncEngine.run()``."""
        return self.engine.run(mode)

    def sync_status(self) -> SyncStatus:
        return self.engine.status()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _resolve_id(self, issue_id: str) -> str:
        entity_id = normalize_id(issue_id, self.config.id_prefix)
        if not validate_id(entity_id):
            raise ValidationError(f"Invalid issue id: {issue_id!r}")
        return entity_id

    def get(self, issue_id: str) -> Issue:
        """Load an issue, live or archived.

        Raises:
            NotFoundError: If the issue does not exist.
        """
        return self.store.read(self._resolve_id(issue_id))

    def list(
        self,
        status: str | None = None,
        label: str | None = None,
        kind: str | None = None,
        include_archived: bool = False,
    ) -> list[Issue]:
        """Return issues matching every given filter.

        Results are ordered by priority, then creation time.
        """
        issues = [
            issue
            for issue in self.store.list_entities(include_archived)
            if (status is None or issue.status == status)
            and (label is None or label in issue.labels)
            and (kind is None or issue.kind == kind)
        ]
        issues.sort(key=lambda i: (i.priority, i.created_at, i.id))
        return issues

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        description: str | None = None,
        kind: str = "task",
        priority: int = 2,
        labels: list[str] | None = None,
        assignee: str | None = None,
        parent_id: str | None = None,
        created_by: str | None = None,
        **fields: Any,
    ) -> Issue:
        """Create a new issue at version 1.

        Raises:
            ValidationError: If a field value is invalid.
            NotFoundError: If ``parent_id`` does not exist.
            CollisionError: If no unused ID could be allocated.
        """
        if parent_id is not None:
            parent_id = self._resolve_id(parent_id)
            if not self.store.exists(parent_id):
                raise NotFoundError("Issue", parent_id)
        entity_id = allocate_id(
            self.store.exists,
            prefix=self.config.id_prefix,
            hex_width=self.config.hex_width,
            max_attempts=self.config.id_max_attempts,
        )
        timestamp = now()
        try:
            issue = Issue(
                id=entity_id,
                version=1,
                created_at=timestamp,
                updated_at=timestamp,
                created_by=created_by,
                title=title,
                description=description,
                kind=kind,
                priority=priority,
                labels=labels or [],
                assignee=assignee,
                parent_id=parent_id,
                **fields,
            )
        except PydanticValidationError as exc:
            raise _validation_error(exc) from exc
        self.store.write(issue)
        logger.info("Created %s: %s", issue.id, issue.title)
        return issue

    def update(self, issue_id: str, **patch: Any) -> Issue:
        """Apply *patch* as a new local revision.

        Status changes keep ``closed_at`` and ``close_reason`` consistent:
        closing stamps ``closed_at``, any other status clears both.  A patch
        that changes nothing writes nothing.

        Raises:
            ValidationError: If *patch* touches a managed field or holds an
                invalid value.
            NotFoundError: If the issue does not exist.
            EntityRetiredError: If the issue is archived.
        """
        managed = MANAGED_FIELDS & set(patch)
        if managed:
            raise ValidationError(
                f"Cannot update managed fields: {', '.join(sorted(managed))}"
            )
        unknown = set(patch) - set(Issue.model_fields)
        if unknown:
            raise ValidationError(
                f"Unknown fields: {', '.join(sorted(unknown))}"
            )
        entity_id = self._resolve_id(issue_id)
        issue = self.store.read(entity_id)
        if self.store.is_archived(entity_id):
            raise EntityRetiredError(f"Issue {entity_id} is archived and read-only")

        stamp = now()
        changes = dict(patch)
        changes.update(
            derive_close_fields(
                changes.get("status", issue.status),
                changes.get("closed_at") or issue.closed_at,
                changes.get("close_reason", issue.close_reason),
                stamp,
            )
        )

        try:
            candidate = issue.with_changes(**changes)
        except PydanticValidationError as exc:
            raise _validation_error(exc) from exc
        if codec.content_hash(candidate) == codec.content_hash(issue):
            logger.debug("Update of %s changed nothing", entity_id)
            return issue

        updated = candidate.with_changes(
            version=issue.version + 1, updated_at=stamp
        )
        self.store.write(updated)
        logger.info("Updated %s (version %d)", entity_id, updated.version)
        return updated

    def close(self, issue_id: str, reason: str | None = None) -> Issue:
        return self.update(issue_id, status=TERMINAL_STATUS, close_reason=reason)

    def reopen(self, issue_id: str) -> Issue:
        return self.update(issue_id, status="open")

    def archive(self, issue_id: str) -> str:
        """Retire a closed issue by relocating it to ``archive/``.

        Returns:
            The issue's new tree path.

        Raises:
            ValidationError: If the issue is not closed.
        """
        issue = self.get(issue_id)
        if not issue.is_closed:
            raise ValidationError(
                f"Issue {issue.id} must be closed before it can be archived",
                hint=f"Close it first: tbd close {issue.id}",
            )
        return self.store.archive(issue.id)

    def add_dependency(
        self, issue_id: str, target_id: str, dep_type: str = "blocks"
    ) -> Issue:
        """Record that *issue_id* has a ``dep_type`` edge to *target_id*."""
        issue = self.get(issue_id)
        target = self._resolve_id(target_id)
        if target == issue.id:
            raise ValidationError("An issue cannot depend on itself")
        if not self.store.exists(target):
            raise NotFoundError("Issue", target)
        deps = [d for d in issue.dependencies if d.target != target]
        deps.append(Dependency(type=dep_type, target=target))
        return self.update(issue.id, dependencies=deps)

    def remove_dependency(self, issue_id: str, target_id: str) -> Issue:
        issue = self.get(issue_id)
        target = self._resolve_id(target_id)
        deps = [d for d in issue.dependencies if d.target != target]
        return self.update(issue.id, dependencies=deps)

    # ------------------------------------------------------------------
    # Attic
    # ------------------------------------------------------------------

    def attic_list(
        self,
        issue_id: str | None = None,
        field: str | None = None,
        since: str | None = None,
        limit: int | None = None,
    ) -> list[AtticEntry]:
        entity_id = self._resolve_id(issue_id) if issue_id else None
        return self.attic.list(entity_id, field=field, since=since, limit=limit)

    def attic_show(self, entry_id: str) -> AtticEntry:
        return self.attic.show(entry_id)

    def attic_restore(self, entry_id: str) -> Issue:
        return self.attic.restore(entry_id)
