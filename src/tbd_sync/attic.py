"""Attic: the append-only archive of values discarded by merges.

Entries live at ``attic/conflicts/{entity_id}/{timestamp}_{field}.yml``
inside the data tree and are synced like any other log content, so every
replica ends up with the same audit trail.  Entries are never edited or
removed; restoring one writes a *new* versioned edit to the live entity,
with ``closed_at`` and ``close_reason`` re-derived from the restored status.

Merges only ever record single fields or ``extensions.<namespace>``;
``full`` entries (a whole-entity snapshot) are accepted by ``restore`` for
entries written by other tools.
"""

from __future__ import annotations

import logging
from typing import Any

from tbd_sync import codec, paths
from tbd_sync.errors import (
    CorruptionError,
    EntityRetiredError,
    NotFoundError,
    ValidationError,
)
from tbd_sync.ids import validate_id
from tbd_sync.models import AtticEntry, Issue, derive_close_fields
from tbd_sync.store import EntityStore
from tbd_sync.timeutils import now, parse_timestamp

logger = logging.getLogger(__name__)

EXTENSIONS_PREFIX = "extensions."
FULL_ENTITY_FIELD = "full"

# Fields an attic restore may never write.
PROTECTED_FIELDS = frozenset(
    {
        "type",
        "id",
        "version",
        "updated_at",
        "created_at",
        "created_by",
        "closed_at",
        "close_reason",
    }
)


def entry_rel_path(entry: AtticEntry) -> str:
    """Return the tree-relative path of an attic entry."""
    return f"{paths.ATTIC_DIR}/{entry.entry_id}{paths.ATTIC_SUFFIX}"


class Attic:
    """Record, query and restore attic entries.

    Args:
        store: Entity store owning the data tree.
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    def record(self, entry: AtticEntry) -> str:
        """Write *entry*; returns its tree path."""
        rel_path = entry_rel_path(entry)
        self.store.write_file(rel_path, codec.encode_attic_entry(entry))
        logger.info(
            "Recorded attic entry %s (%s lost by %s)",
            entry.entry_id,
            entry.field,
            entry.loser_source,
        )
        return rel_path

    def list(
        self,
        entity_id: str | None = None,
        field: str | None = None,
        since: str | None = None,
        limit: int | None = None,
    ) -> list[AtticEntry]:
        """Return entries, newest first.

        Args:
            entity_id: Only entries for this entity.
            field: Only entries for this field.
            since: Only entries recorded at or after this timestamp.
            limit: Maximum number of entries to return.
        """
        prefix = paths.ATTIC_DIR
        if entity_id is not None:
            if not validate_id(entity_id):
                return []
            prefix = f"{paths.ATTIC_DIR}/{entity_id}"
        since_dt = parse_timestamp(since) if since else None

        entries: list[AtticEntry] = []
        for rel_path in self.store.list_files(prefix):
            if not rel_path.endswith(paths.ATTIC_SUFFIX):
                continue
            data = self.store.read_file(rel_path)
            if data is None:
                continue
            try:
                entry = codec.decode_attic_entry(data, path=rel_path)
            except CorruptionError as exc:
                logger.warning("Skipping unreadable attic entry: %s", exc.message)
                continue
            if field is not None and entry.field != field:
                continue
            if since_dt is not None and parse_timestamp(entry.timestamp) < since_dt:
                continue
            entries.append(entry)

        entries.sort(
            key=lambda e: (parse_timestamp(e.timestamp), e.entry_id),
            reverse=True,
        )
        if limit is not None:
            entries = entries[: max(limit, 0)]
        return entries

    def show(self, entry_id: str) -> AtticEntry:
        """Load one entry by its ``{entity_id}/{timestamp}_{field}`` id.

        Raises:
            NotFoundError: If no such entry exists.
        """
        rel_path = f"{paths.ATTIC_DIR}/{entry_id}{paths.ATTIC_SUFFIX}"
        try:
            data = self.store.read_file(rel_path)
        except ValueError as exc:
            raise NotFoundError("Attic entry", entry_id) from exc
        if data is None:
            raise NotFoundError("Attic entry", entry_id)
        return codec.decode_attic_entry(data, path=rel_path)

    def restore(self, entry_id: str) -> Issue:
        """Write an archived value back as a new edit of the live entity.

        Returns:
            The updated entity.

        Raises:
            NotFoundError: If the entry or its entity no longer exists.
            EntityRetiredError: If the entity has been archived.
            ValidationError: If the entry targets a field restore may not
                write.
        """
        entry = self.show(entry_id)
        if not self.store.exists(entry.entity_id):
            raise NotFoundError(
                "Issue",
                entry.entity_id,
                hint="The entity this entry belongs to no longer exists; "
                "nothing was restored.",
            )
        if self.store.is_archived(entry.entity_id):
            raise EntityRetiredError(
                f"Cannot restore {entry_id}: issue {entry.entity_id} is archived"
            )
        entity = self.store.read(entry.entity_id)
        stamp = now()
        changes = self._changes_for(entry, entity)
        changes.update(
            derive_close_fields(
                changes.get("status", entity.status),
                entity.closed_at,
                entity.close_reason,
                stamp,
            )
        )
        updated = entity.with_changes(
            **changes, version=entity.version + 1, updated_at=stamp
        )
        self.store.write(updated)
        logger.info(
            "Restored %s into %s (version %d)",
            entry_id,
            entity.id,
            updated.version,
        )
        return updated

    @staticmethod
    def _changes_for(entry: AtticEntry, entity: Issue) -> dict[str, Any]:
        if entry.field == FULL_ENTITY_FIELD:
            if not isinstance(entry.lost_value, dict):
                raise ValidationError(
                    f"Attic entry {entry.entry_id} has no entity snapshot"
                )
            return {
                key: value
                for key, value in entry.lost_value.items()
                if key not in PROTECTED_FIELDS and key in Issue.model_fields
            }
        if entry.field.startswith(EXTENSIONS_PREFIX):
            namespace = entry.field[len(EXTENSIONS_PREFIX) :]
            extensions = dict(entity.extensions)
            if entry.lost_value is None:
                extensions.pop(namespace, None)
            else:
                extensions[namespace] = entry.lost_value
            return {"extensions": extensions}
        if entry.field in PROTECTED_FIELDS or entry.field not in Issue.model_fields:
            raise ValidationError(
                f"Field '{entry.field}' cannot be restored from the attic"
            )
        return {entry.field: entry.lost_value}
