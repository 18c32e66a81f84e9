"""Error taxonomy for the sync engine.

Every error carries a short ``error_type`` category and a corrective
``hint`` so callers (CLI, daemon, agents) can tell the user what to do
next without knowing engine internals.  ``format()`` renders the same
``Error (<type>): ...`` / ``Action: ...`` shape for every error.

Recovery policy:

* ``CollisionError`` and ``TransportRejected`` are retried internally with
  bounded attempts before they surface.
* ``IntegrityError`` is fatal and aborts the whole sync run.
* ``CorruptionError`` quarantines the offending file; it is never deleted.
"""

from __future__ import annotations


class TbdSyncError(Exception):
    """Base class for all engine errors."""

    error_type = "error"
    default_hint = "Run 'tbd doctor' for diagnostics."

    def __init__(self, message: str, hint: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint or self.default_hint

    def format(self) -> str:
        """Render the error with its corrective action."""
        return f"Error ({self.error_type}): {self.message}\n\nAction: {self.hint}"


class ValidationError(TbdSyncError):
    """Invalid input supplied by a caller."""

    error_type = "validation_error"
    default_hint = "Check parameter values and retry."


class ConfigError(TbdSyncError):
    """Configuration is missing or invalid."""

    error_type = "config_error"
    default_hint = "Check .tbd/config.yml and TBD_* environment variables."


class NotFoundError(TbdSyncError):
    """A referenced entity or attic entry does not exist."""

    error_type = "not_found"
    default_hint = "Run 'tbd list' (or 'tbd attic list') to see what exists."

    def __init__(
        self, kind: str, identifier: str, hint: str | None = None
    ) -> None:
        super().__init__(f"{kind} not found: {identifier}", hint)
        self.kind = kind
        self.identifier = identifier


class EntityRetiredError(TbdSyncError):
    """The entity was relocated to the archive and can no longer change."""

    error_type = "retired"
    default_hint = (
        "Archived entities are read-only; create a new issue instead."
    )


class IntegrityError(TbdSyncError):
    """Two revisions disagree on an immutable field."""

    error_type = "integrity_error"
    default_hint = (
        "Inspect both copies with 'tbd sync --status'; this is never "
        "resolved automatically."
    )

    def __init__(
        self,
        entity_id: str,
        field: str,
        local_value: object,
        remote_value: object,
    ) -> None:
        super().__init__(
            f"Immutable field '{field}' differs for {entity_id}: "
            f"local={local_value!r} remote={remote_value!r}"
        )
        self.entity_id = entity_id
        self.field = field


class CollisionError(TbdSyncError):
    """ID generation kept colliding with existing entities."""

    error_type = "collision"
    default_hint = "Retry the command; if it persists, widen ids.hex_width."


class CorruptionError(TbdSyncError):
    """A stored file cannot be decoded by the canonical codec."""

    error_type = "corruption"
    default_hint = (
        "The file was moved to .tbd/cache/quarantine/; inspect and repair "
        "it, or run 'tbd sync' to re-adopt the remote copy."
    )

    def __init__(
        self, message: str, path: str | None = None, hint: str | None = None
    ) -> None:
        super().__init__(message, hint)
        self.path = path


class TransportError(TbdSyncError):
    """The version-control transport failed."""

    error_type = "transport_error"
    default_hint = (
        "Check network access and the configured remote, then run "
        "'tbd sync' again."
    )


class TransportRejected(TransportError):
    """A push lost the race: the remote advanced concurrently."""

    error_type = "push_rejected"
    default_hint = "Run 'tbd sync' again to merge the newer remote state."


class SyncFailedError(TbdSyncError):
    """A sync run gave up; local state was left exactly as it was."""

    error_type = "sync_failed"
    default_hint = (
        "Run 'tbd sync --status' to inspect pending changes, then retry "
        "'tbd sync'."
    )
