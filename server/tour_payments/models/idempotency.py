"""Stored initiation responses keyed by Idempotency-Key."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import CheckConstraint, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class IdempotencyRecord(Base):
    """
    First response given for an (Idempotency-Key, method) pair.

    ``method`` carries the operation and the caller's user id. Only
    successful and non-retryable responses are stored.
    """

    __tablename__ = "idempotency_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    method: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    request_body_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    response_status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    # Canonical JSON of the Problem Details or initiation response
    response_body: Mapped[str] = mapped_column(Text, nullable=False)

    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint("length(idempotency_key) > 0", name="ck_idempotency_key_not_empty"),
        CheckConstraint("length(request_body_hash) = 64", name="ck_idempotency_hash_length"),
        CheckConstraint("response_status_code >= 100", name="ck_idempotency_status_code_valid"),
        CheckConstraint("response_status_code <= 599", name="ck_idempotency_status_code_max"),
        UniqueConstraint("idempotency_key", "method", name="uq_idempotency_key_method"),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = self.expires_at
        # SQLite returns naive datetimes even for timezone-aware columns
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or datetime.now(timezone.utc))
