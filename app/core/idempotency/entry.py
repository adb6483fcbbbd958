"""
Idempotency Entry

Backend-neutral snapshot of one recorded request/response pair.
"""

import base64
import binascii
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

UTF8_ENCODING = "utf-8"
BASE64_ENCODING = "base64"


def encode_response_body(raw: bytes) -> Tuple[str, str]:
    """Return ``(text, encoding)``; bodies that are not valid UTF-8 are base64 encoded."""
    try:
        return raw.decode(UTF8_ENCODING), UTF8_ENCODING
    except UnicodeDecodeError:
        return base64.b64encode(raw).decode("ascii"), BASE64_ENCODING


def _as_utc(value: datetime) -> datetime:
    # SQLite and some drivers hand back naive datetimes; stored values are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class IdempotencyEntry:
    """
    A captured first execution of a sensitive request.

    The request fields are diagnostic only; matching happens on
    ``idempotency_key`` and ``created_at`` alone.
    """

    idempotency_key: str
    request_method: str
    request_uri: str
    response_status: int
    response_body: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[int] = None
    request_body: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    response_body_encoding: str = UTF8_ENCODING

    def __post_init__(self) -> None:
        self.created_at = _as_utc(self.created_at)

    @classmethod
    def capture(cls, response_body: bytes, **fields: Any) -> "IdempotencyEntry":
        """Build an entry from the raw bytes the handler produced."""
        text, encoding = encode_response_body(response_body)
        return cls(response_body=text, response_body_encoding=encoding, **fields)

    def response_bytes(self) -> bytes:
        """The stored response body exactly as the handler sent it."""
        if self.response_body_encoding == BASE64_ENCODING:
            try:
                return base64.b64decode(self.response_body, validate=True)
            except binascii.Error as exc:
                raise ValueError(f"Corrupt base64 response body for {self.idempotency_key}") from exc
        return self.response_body.encode(UTF8_ENCODING)

    def is_live(self, since: datetime) -> bool:
        """True if the entry was created strictly after ``since``."""
        return self.created_at > _as_utc(since)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IdempotencyEntry":
        values = dict(data)
        values["created_at"] = datetime.fromisoformat(values["created_at"])
        return cls(**values)
