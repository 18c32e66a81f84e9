"""Entity store: one canonical file per entity on local disk.

The store owns the local replica directory (``.tbd/data-sync/``) and the
never-synced cache directory (``.tbd/cache/``).  All writes go through
``file_handler.atomic_write``.  Entities are never deleted: retiring one
relocates its file to ``archive/`` and corrupt files are moved to the
cache ``quarantine/`` directory for inspection.
"""

from __future__ import annotations

import logging
from pathlib import Path

from tbd_sync import codec, paths
from tbd_sync.errors import CorruptionError, EntityRetiredError, NotFoundError
from tbd_sync.file_handler import (
    DEFAULT_TEMP_GRACE_SECONDS,
    atomic_move,
    atomic_write,
    read_bytes,
    resolve_within,
    sweep_temp_files,
)
from tbd_sync.models import Issue
from tbd_sync.timeutils import filename_timestamp, now

logger = logging.getLogger(__name__)


class EntityStore:
    """Read and write entity files under a data directory.

    Args:
        data_dir: Local replica of the sync branch tree.
        cache_dir: Local, never-synced cache directory.
        temp_grace_seconds: Age after which orphaned temp files are swept.
        sweep: Run the orphaned temp-file sweep on construction.
    """

    def __init__(
        self,
        data_dir: Path,
        cache_dir: Path,
        temp_grace_seconds: float = DEFAULT_TEMP_GRACE_SECONDS,
        sweep: bool = True,
    ) -> None:
        self.data_dir = data_dir
        self.cache_dir = cache_dir
        if sweep:
            sweep_temp_files(data_dir, temp_grace_seconds)
            sweep_temp_files(cache_dir, temp_grace_seconds)

    # ------------------------------------------------------------------
    # Raw tree files
    # ------------------------------------------------------------------

    def path_for(self, rel_path: str) -> Path:
        return resolve_within(self.data_dir, rel_path)

    def read_file(self, rel_path: str) -> bytes | None:
        return read_bytes(self.path_for(rel_path))

    def write_file(self, rel_path: str, data: bytes) -> None:
        atomic_write(self.path_for(rel_path), data)

    def remove_file(self, rel_path: str) -> None:
        """Remove a tree file that has been relocated elsewhere."""
        self.path_for(rel_path).unlink(missing_ok=True)

    def list_files(self, prefix: str = "") -> list[str]:
        """Return sorted tree-relative paths of regular files under *prefix*.

        Temp files and dotfiles are skipped.
        """
        root = self.data_dir / prefix if prefix else self.data_dir
        if not root.exists():
            return []
        result: list[str] = []
        for path in root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            result.append(path.relative_to(self.data_dir).as_posix())
        return sorted(result)

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    def locate(self, entity_id: str) -> tuple[str, bool] | None:
        """Return ``(rel_path, archived)`` for an entity, or ``None``."""
        live = paths.entity_rel_path(entity_id)
        if self.path_for(live).exists():
            return live, False
        archived = paths.entity_rel_path(entity_id, archived=True)
        if self.path_for(archived).exists():
            return archived, True
        return None

    def exists(self, entity_id: str) -> bool:
        """True if the entity exists live or archived."""
        return self.locate(entity_id) is not None

    def is_archived(self, entity_id: str) -> bool:
        found = self.locate(entity_id)
        return found is not None and found[1]

    def read(self, entity_id: str, include_archived: bool = True) -> Issue:
        """Load an entity.

        Raises:
            NotFoundError: If no file exists for *entity_id*.
            CorruptionError: If the file cannot be decoded.
        """
        found = self.locate(entity_id)
        if found is None or (found[1] and not include_archived):
            raise NotFoundError("Issue", entity_id)
        rel_path, _ = found
        data = self.read_file(rel_path)
        if data is None:
            raise NotFoundError("Issue", entity_id)
        return codec.decode(data, path=rel_path)

    def write(self, entity: Issue) -> str:
        """Write a live entity atomically; returns its tree path.

        Raises:
            EntityRetiredError: If the entity has been archived.
        """
        if self.is_archived(entity.id):
            raise EntityRetiredError(
                f"Issue {entity.id} is archived and read-only"
            )
        rel_path = paths.entity_rel_path(entity.id, entity.type)
        self.write_file(rel_path, codec.encode(entity))
        logger.debug("Wrote %s (version %d)", rel_path, entity.version)
        return rel_path

    def list_ids(self, include_archived: bool = False) -> list[str]:
        ids: list[str] = []
        for rel in self.list_files():
            parsed = paths.parse_entity_rel_path(rel)
            if parsed is None:
                continue
            entity_id, archived = parsed
            if archived and not include_archived:
                continue
            ids.append(entity_id)
        return sorted(set(ids))

    def list_entities(self, include_archived: bool = False) -> list[Issue]:
        """Load every decodable entity; corrupt files are quarantined."""
        result: list[Issue] = []
        for entity_id in self.list_ids(include_archived):
            try:
                result.append(self.read(entity_id))
            except CorruptionError as exc:
                logger.warning("%s", exc.message)
                if exc.path:
                    self.quarantine(exc.path)
        return result

    def archive(self, entity_id: str) -> str:
        """Relocate an entity file into ``archive/``.

        Returns:
            The new tree path.
        """
        found = self.locate(entity_id)
        if found is None:
            raise NotFoundError("Issue", entity_id)
        rel_path, archived = found
        if archived:
            return rel_path
        target = paths.entity_rel_path(entity_id, archived=True)
        atomic_move(self.path_for(rel_path), self.path_for(target))
        logger.info("Archived %s -> %s", rel_path, target)
        return target

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    def quarantine(self, rel_path: str) -> Path | None:
        """Move a corrupt tree file into the cache quarantine directory.

        Returns:
            The quarantine path, or ``None`` if the file was already gone.
        """
        source = self.path_for(rel_path)
        if not source.exists():
            return None
        stamp = filename_timestamp(now())
        name = rel_path.replace("/", "__")
        target = self.cache_dir / paths.QUARANTINE_DIR / f"{stamp}_{name}"
        atomic_move(source, target)
        logger.warning("Quarantined corrupt file %s -> %s", rel_path, target)
        return target
