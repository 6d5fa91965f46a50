"""Destination model definition."""

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Destination(Base):
    """
    Bookable tour/experience with its three-tier pricing.

    Prices are managed by the admin site; this service only reads them.
    """

    __tablename__ = "destinations"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4())
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Unit prices per participant, keyed by rate class
    citizen_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    resident_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    non_resident_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("citizen_price >= 0", name="ck_destination_citizen_price_non_negative"),
        CheckConstraint("resident_price >= 0", name="ck_destination_resident_price_non_negative"),
        CheckConstraint("non_resident_price >= 0", name="ck_destination_non_resident_price_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<Destination(id={self.id}, title='{self.title}', active={self.is_active})>"
