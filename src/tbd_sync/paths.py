"""On-disk and in-tree layout.

Working tree of the operator's repository::

    .tbd/
      config.yml              tracked configuration (not replicated data)
      data-sync/              local replica of the sync branch tree
        meta.yml
        issues/{id}.md
        archive/issues/{id}.md
        attic/conflicts/{id}/{timestamp}_{field}.yml
      cache/                  never synced
        state.yml             per-node sync bookkeeping
        quarantine/           corrupt files moved aside

Paths inside the sync branch are relative to ``data-sync/`` and always use
forward slashes.
"""

from __future__ import annotations

from pathlib import Path

TBD_DIR = ".tbd"
CONFIG_FILE = "config.yml"
DATA_SYNC_DIR_NAME = "data-sync"
CACHE_DIR_NAME = "cache"

ISSUES_DIR = "issues"
ARCHIVE_DIR = "archive"
ATTIC_DIR = "attic/conflicts"
META_FILE = "meta.yml"
STATE_FILE = "state.yml"
QUARANTINE_DIR = "quarantine"

ISSUE_SUFFIX = ".md"
ATTIC_SUFFIX = ".yml"

# Entity type discriminator -> directory name inside the data tree.
TYPE_DIRS: dict[str, str] = {"is": ISSUES_DIR}


def tbd_root(repo_root: Path) -> Path:
    return repo_root / TBD_DIR


def data_sync_dir(repo_root: Path) -> Path:
    return repo_root / TBD_DIR / DATA_SYNC_DIR_NAME


def cache_dir(repo_root: Path) -> Path:
    return repo_root / TBD_DIR / CACHE_DIR_NAME


def entity_rel_path(
    entity_id: str, entity_type: str = "is", archived: bool = False
) -> str:
    """Return the tree-relative path of an entity file."""
    rel = f"{TYPE_DIRS[entity_type]}/{entity_id}{ISSUE_SUFFIX}"
    if archived:
        return f"{ARCHIVE_DIR}/{rel}"
    return rel


def parse_entity_rel_path(rel: str) -> tuple[str, bool] | None:
    """Return ``(entity_id, archived)`` for an entity path, else ``None``."""
    archived = False
    if rel.startswith(f"{ARCHIVE_DIR}/"):
        archived = True
        rel = rel[len(ARCHIVE_DIR) + 1 :]
    for type_dir in TYPE_DIRS.values():
        prefix = f"{type_dir}/"
        if rel.startswith(prefix) and rel.endswith(ISSUE_SUFFIX):
            name = rel[len(prefix) : -len(ISSUE_SUFFIX)]
            if name and "/" not in name:
                return name, archived
    return None
