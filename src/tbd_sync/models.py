"""Pydantic models for replicated entities and attic entries.

These models are the normative description of the file format:

- ``Dependency``: a typed edge to another entity.
- ``Issue``: the replicated issue entity (type discriminator ``"is"``).
- ``AtticContext`` / ``AtticEntry``: a value discarded by a merge.

Validators normalise values on the way in (sorted label sets, edges
sorted by target, LF line endings, canonical timestamps) so that two
logically equal entities always compare and serialise identically.  All
models are frozen; use ``Issue.with_changes()`` to derive a new revision.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from urllib.parse import quote

from pydantic import BaseModel, Field, field_validator

from tbd_sync.ids import validate_id
from tbd_sync.timeutils import (
    filename_timestamp,
    normalize_timestamp,
)

IssueStatus = Literal["open", "in_progress", "blocked", "deferred", "closed"]
IssueKind = Literal["bug", "feature", "task", "epic", "chore"]
DependencyType = Literal["blocks"]
Side = Literal["local", "remote"]

TERMINAL_STATUS = "closed"
MAX_TITLE_LENGTH = 500
MAX_TEXT_LENGTH = 50000


def _normalize_text(value: Any) -> str | None:
    """LF line endings, no trailing whitespace; empty becomes ``None``."""
    if value is None:
        return None
    text = str(value).replace("\r\n", "\n").replace("\r", "\n")
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    text = text.strip("\n")
    return text or None


def _normalize_optional_timestamp(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (str, datetime)):
        return normalize_timestamp(value)
    raise ValueError(f"invalid timestamp: {value!r}")


def derive_close_fields(
    status: str | None,
    closed_at: str | None,
    close_reason: str | None,
    stamp: str,
) -> dict[str, str | None]:
    """Return ``closed_at`` and ``close_reason`` consistent with *status*.

    A closed issue keeps its ``closed_at`` or is stamped with *stamp*; any
    other status clears both fields.  Every writer of ``status`` (local
    edits, merges, attic restores) goes through this rule.
    """
    if status == TERMINAL_STATUS:
        return {"closed_at": closed_at or stamp, "close_reason": close_reason}
    return {"closed_at": None, "close_reason": None}


class Dependency(BaseModel):
    """A typed dependency edge pointing at ``target``."""

    type: DependencyType = "blocks"
    target: str

    model_config = {"frozen": True}

    @field_validator("target")
    @classmethod
    def _check_target(cls, value: str) -> str:
        if not validate_id(value):
            raise ValueError(f"invalid dependency target: {value!r}")
        return value


class Issue(BaseModel):
    """A replicated issue.

    ``version`` counts edits on the replica that produced the file.  It is
    informational only and never decides whether two copies conflict.
    """

    type: Literal["is"] = "is"
    id: str
    version: int = Field(default=1, ge=0)
    created_at: str
    updated_at: str
    created_by: str | None = None

    title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    description: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)
    notes: str | None = Field(default=None, max_length=MAX_TEXT_LENGTH)

    kind: IssueKind = "task"
    status: IssueStatus = "open"
    priority: int = Field(default=2, ge=0, le=4)

    assignee: str | None = None
    labels: list[str] = Field(default_factory=list)
    dependencies: list[Dependency] = Field(default_factory=list)
    parent_id: str | None = None

    due_date: str | None = None
    deferred_until: str | None = None
    closed_at: str | None = None
    close_reason: str | None = None

    extensions: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not validate_id(value):
            raise ValueError(f"invalid entity id: {value!r}")
        return value

    @field_validator("parent_id")
    @classmethod
    def _check_parent(cls, value: str | None) -> str | None:
        if value is not None and not validate_id(value):
            raise ValueError(f"invalid parent id: {value!r}")
        return value

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _normalize_required_ts(cls, value: Any) -> str:
        result = _normalize_optional_timestamp(value)
        if result is None:
            raise ValueError("timestamp is required")
        return result

    @field_validator(
        "due_date", "deferred_until", "closed_at", mode="before"
    )
    @classmethod
    def _normalize_optional_ts(cls, value: Any) -> str | None:
        return _normalize_optional_timestamp(value)

    @field_validator("title", mode="before")
    @classmethod
    def _normalize_title(cls, value: Any) -> Any:
        if isinstance(value, str):
            return " ".join(value.split())
        return value

    @field_validator("description", "notes", mode="before")
    @classmethod
    def _normalize_body(cls, value: Any) -> str | None:
        return _normalize_text(value)

    @field_validator("labels", mode="before")
    @classmethod
    def _normalize_labels(cls, value: Any) -> list[str]:
        if value is None:
            return []
        labels = {str(label).strip() for label in value}
        labels.discard("")
        return sorted(labels)

    @field_validator("dependencies", mode="after")
    @classmethod
    def _normalize_dependencies(
        cls, value: list[Dependency]
    ) -> list[Dependency]:
        by_target: dict[str, Dependency] = {}
        for dep in value:
            by_target.setdefault(dep.target, dep)
        return [by_target[t] for t in sorted(by_target)]

    @field_validator("extensions", mode="before")
    @classmethod
    def _normalize_extensions(cls, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        return dict(value)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def is_closed(self) -> bool:
        return self.status == TERMINAL_STATUS

    def with_changes(self, **changes: Any) -> Issue:
        """Return a re-validated copy with *changes* applied."""
        data = self.model_dump(mode="python")
        data.update(changes)
        return type(self).model_validate(data)


class AtticContext(BaseModel):
    """Version and timestamp context explaining a merge decision."""

    local_version: int
    remote_version: int
    local_updated_at: str
    remote_updated_at: str

    model_config = {"frozen": True}


class AtticEntry(BaseModel):
    """One value a merge decision discarded.

    Attributes:
        entity_id: Entity the value belonged to.
        timestamp: Merge time (canonical timestamp).
        field: Field name, ``extensions.<namespace>``, or ``full``.
        lost_value: The discarded value, verbatim.
        winner_source: Side whose value was kept.
        loser_source: Side whose value was discarded.
        strategy: Merge strategy that made the decision.
        context: Versions and timestamps of both sides.
    """

    entity_id: str
    timestamp: str
    field: str
    lost_value: Any = None
    winner_source: Side
    loser_source: Side
    strategy: str
    context: AtticContext

    model_config = {"frozen": True}

    @field_validator("entity_id")
    @classmethod
    def _check_entity_id(cls, value: str) -> str:
        if not validate_id(value):
            raise ValueError(f"invalid entity id: {value!r}")
        return value

    @field_validator("timestamp", mode="before")
    @classmethod
    def _normalize_ts(cls, value: Any) -> str:
        result = _normalize_optional_timestamp(value)
        if result is None:
            raise ValueError("timestamp is required")
        return result

    @property
    def entry_id(self) -> str:
        """Address of the entry: ``{entity_id}/{timestamp}_{field}``.

        The field part is percent-encoded so an extension namespace such as
        ``a/../b`` stays a single path segment.
        """
        return (
            f"{self.entity_id}/{filename_timestamp(self.timestamp)}"
            f"_{quote(self.field, safe='')}"
        )
