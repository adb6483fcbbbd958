"""
Idempotency Key Validation

Client request IDs must be canonical RFC 4122 UUIDs (versions 1-5).
"""

import re
import uuid
from typing import Optional

REQUEST_ID_HEADER = "X-Request-ID"
REPLAY_HEADER = "X-Idempotent-Replay"

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_idempotency_key(value: Optional[str]) -> bool:
    """
    Check that a request ID is an 8-4-4-4-12 hex UUID.

    The version nibble must be 1-5 and the variant nibble one of 8, 9, a, b.
    Matching is case-insensitive.
    """
    if not value:
        return False
    return _UUID_PATTERN.fullmatch(value) is not None


def new_idempotency_key() -> str:
    """Generate a fresh request ID suitable for the ``X-Request-ID`` header."""
    return str(uuid.uuid4())
