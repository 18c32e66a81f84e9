"""Canonical entity codec and content hashing.

Entity files are Markdown with YAML front matter::

    ---
    assignee: null
    created_at: '2025-01-07T10:30:00.000Z'
    ...
    title: Fix auth
    type: is
    updated_at: '2025-01-07T10:30:00.000Z'
    version: 2
    ---
    Description body here.

Canonical form rules (any conforming writer must follow them, otherwise
spurious conflicts are detected where none exist):

* keys sorted alphabetically at every nesting level;
* nulls and empty collections written explicitly, never omitted;
* ``labels`` sorted lexicographically, ``dependencies`` sorted by target;
* LF line endings, no line wrapping, exactly one trailing newline;
* the description is the body; every other field is front matter.

``content_hash()`` is SHA-256 over compact sorted-key JSON of the
canonical field values *without* ``version``: the version counts edits per
replica and must never make two logically equal copies look different.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from tbd_sync.errors import CorruptionError
from tbd_sync.models import AtticEntry, Issue

FRONT_MATTER_DELIMITER = "---"
BODY_FIELD = "description"
HASH_EXCLUDED_FIELDS = frozenset({"version"})


class CanonicalDumper(yaml.SafeDumper):
    """SafeDumper subclass that never emits anchors/aliases.

    A dedicated subclass keeps the global ``yaml.SafeDumper`` untouched.
    """

    def ignore_aliases(self, data: Any) -> bool:
        return True


def dump_yaml(data: Any) -> str:
    """Serialise *data* as canonical YAML (sorted keys, no wrapping)."""
    text = yaml.dump(
        data,
        Dumper=CanonicalDumper,
        sort_keys=True,
        allow_unicode=True,
        default_flow_style=False,
        width=float("inf"),
    )
    return text.replace("\r\n", "\n")


# ---------------------------------------------------------------------------
# Canonical dict + hash
# ---------------------------------------------------------------------------


def canonical_dict(entity: Issue) -> dict[str, Any]:
    """Return the entity as plain data in canonical form.

    Model validators already sort ``labels`` and ``dependencies``; sorting
    again here keeps the codec correct even for instances built with
    ``model_construct`` or ``model_copy``.
    """
    data = entity.model_dump(mode="json")
    data["labels"] = sorted(set(data.get("labels") or []))
    data["dependencies"] = sorted(
        data.get("dependencies") or [],
        key=lambda dep: (dep["target"], dep["type"]),
    )
    data["extensions"] = data.get("extensions") or {}
    return data


def content_hash(entity: Issue) -> str:
    """Return the lowercase SHA-256 hex digest of the entity's content."""
    data = {
        key: value
        for key, value in canonical_dict(entity).items()
        if key not in HASH_EXCLUDED_FIELDS
    }
    payload = json.dumps(
        data,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode(entity: Issue) -> bytes:
    """Serialise *entity* to its canonical file bytes."""
    data = canonical_dict(entity)
    body = data.pop(BODY_FIELD, None)
    parts = [
        FRONT_MATTER_DELIMITER,
        dump_yaml(data).rstrip("\n"),
        FRONT_MATTER_DELIMITER,
    ]
    if body:
        parts.append(body)
    return ("\n".join(parts) + "\n").encode("utf-8")


def _split_front_matter(text: str) -> tuple[str, str]:
    lines = text.split("\n")
    if not lines or lines[0].rstrip() != FRONT_MATTER_DELIMITER:
        raise ValueError("missing front matter opening delimiter")
    for index in range(1, len(lines)):
        if lines[index].rstrip() == FRONT_MATTER_DELIMITER:
            front = "\n".join(lines[1:index])
            body = "\n".join(lines[index + 1 :])
            return front, body
    raise ValueError("missing front matter closing delimiter")


def decode(data: bytes, path: str | None = None) -> Issue:
    """Parse canonical file bytes back into an ``Issue``.

    Args:
        data: Raw file content.
        path: Optional path, used in the error message only.

    Raises:
        CorruptionError: If the bytes are not a valid entity file.
    """
    where = f" in {path}" if path else ""
    try:
        text = data.decode("utf-8").lstrip("\ufeff")
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        front, body = _split_front_matter(text)
        meta = yaml.safe_load(front)
        if not isinstance(meta, dict):
            raise ValueError("front matter is not a mapping")
        if body.strip():
            meta[BODY_FIELD] = body
        return Issue.model_validate(meta)
    except (
        UnicodeDecodeError,
        ValueError,
        yaml.YAMLError,
        PydanticValidationError,
    ) as exc:
        raise CorruptionError(
            f"Cannot decode entity{where}: {exc}", path=path
        ) from exc


def encode_attic_entry(entry: AtticEntry) -> bytes:
    """Serialise an attic entry as canonical YAML bytes."""
    return dump_yaml(entry.model_dump(mode="json")).encode("utf-8")


def decode_attic_entry(data: bytes, path: str | None = None) -> AtticEntry:
    """Parse an attic entry file.

    Raises:
        CorruptionError: If the file is not a valid attic entry.
    """
    where = f" in {path}" if path else ""
    try:
        raw = yaml.safe_load(data.decode("utf-8"))
        if not isinstance(raw, dict):
            raise ValueError("attic entry is not a mapping")
        return AtticEntry.model_validate(raw)
    except (
        UnicodeDecodeError,
        ValueError,
        yaml.YAMLError,
        PydanticValidationError,
    ) as exc:
        raise CorruptionError(
            f"Cannot decode attic entry{where}: {exc}", path=path
        ) from exc
