"""Entity ID generation and validation.

IDs are ``{prefix}-{hex}`` where the hex suffix is drawn from ``secrets``
(default 6 hex characters, 24 bits of entropy).  IDs are immutable for the
lifetime of an entity.  Collisions are handled by checking for an existing
file before committing a new entity and regenerating, bounded by
``max_attempts``.
"""

from __future__ import annotations

import logging
import re
import secrets
from typing import Callable

from tbd_sync.errors import CollisionError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "is"
DEFAULT_HEX_WIDTH = 6
DEFAULT_MAX_ATTEMPTS = 10

_ID_PATTERN = re.compile(r"^([a-z]+)-([0-9a-f]+)$")


def generate_id(
    prefix: str = DEFAULT_PREFIX, hex_width: int = DEFAULT_HEX_WIDTH
) -> str:
    """Return a fresh random ID such as ``is-a1b2c3``."""
    # token_hex works in whole bytes; trim to the requested width.
    suffix = secrets.token_hex((hex_width + 1) // 2)[:hex_width]
    return f"{prefix}-{suffix}"


def allocate_id(
    exists: Callable[[str], bool],
    prefix: str = DEFAULT_PREFIX,
    hex_width: int = DEFAULT_HEX_WIDTH,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> str:
    """Generate an ID that ``exists`` reports as unused.

    Args:
        exists: Callback returning ``True`` if an entity file already
            exists for the candidate ID.
        prefix: ID prefix (entity type discriminator).
        hex_width: Number of hex characters in the suffix.
        max_attempts: Candidates tried before giving up.

    Raises:
        CollisionError: If every candidate collided.
    """
    for attempt in range(1, max_attempts + 1):
        candidate = generate_id(prefix, hex_width)
        if not exists(candidate):
            return candidate
        logger.warning(
            "ID collision on %s (attempt %d/%d)",
            candidate,
            attempt,
            max_attempts,
        )
    raise CollisionError(
        f"Could not allocate a unique '{prefix}' ID after "
        f"{max_attempts} attempts"
    )


def validate_id(entity_id: str, prefix: str | None = None) -> bool:
    """Return ``True`` if *entity_id* is well formed.

    Args:
        entity_id: Candidate ID.
        prefix: If given, the ID must use this prefix.
    """
    match = _ID_PATTERN.match(entity_id)
    if match is None:
        return False
    if prefix is not None and match.group(1) != prefix:
        return False
    return True


def normalize_id(value: str, prefix: str = DEFAULT_PREFIX) -> str:
    """Accept ``a1b2c3`` or ``is-a1b2c3`` and return the full ID."""
    value = value.strip().lower()
    if "-" not in value:
        value = f"{prefix}-{value}"
    return value
