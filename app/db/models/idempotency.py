"""
Idempotency Record Model

Database model for responses captured by the idempotency guard.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.idempotency.entry import IdempotencyEntry
from app.db.base import Base, utcnow


class IdempotencyRecord(Base):
    """
    Idempotency Record Model.

    One row per client-supplied request ID. Rows are written once after the
    first execution of a sensitive request and read on every retry; the
    replay window is applied when querying, not by deleting rows.
    """

    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Client-supplied UUID; the unique index makes concurrent first writes safe
    idempotency_key: Mapped[str] = mapped_column(
        String(36),
        nullable=False,
        unique=True,
        index=True,
    )

    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)

    # Original request
    request_method: Mapped[str] = mapped_column(String(10), nullable=False)
    request_uri: Mapped[str] = mapped_column(String(512), nullable=False)
    request_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Captured outcome
    response_status: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)
    # "utf-8" or "base64" for bodies that are not valid UTF-8
    response_body_encoding: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default="utf-8",
        server_default="utf-8",
    )

    # Diagnostics
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        index=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    @classmethod
    def from_entry(cls, entry: IdempotencyEntry) -> "IdempotencyRecord":
        return cls(
            idempotency_key=entry.idempotency_key,
            user_id=entry.user_id,
            request_method=entry.request_method,
            request_uri=entry.request_uri[:512],
            request_body=entry.request_body,
            response_status=entry.response_status,
            response_body=entry.response_body,
            response_body_encoding=entry.response_body_encoding,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent[:512] if entry.user_agent else None,
            created_at=entry.created_at,
            updated_at=entry.created_at,
        )

    def to_entry(self) -> IdempotencyEntry:
        return IdempotencyEntry(
            idempotency_key=self.idempotency_key,
            user_id=self.user_id,
            request_method=self.request_method,
            request_uri=self.request_uri,
            request_body=self.request_body,
            response_status=self.response_status,
            response_body=self.response_body,
            response_body_encoding=self.response_body_encoding,
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            created_at=self.created_at,
        )

    def __repr__(self) -> str:
        return (
            f"<IdempotencyRecord(key={self.idempotency_key}, "
            f"uri={self.request_uri}, status={self.response_status})>"
        )
