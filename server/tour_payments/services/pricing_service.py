"""Authoritative pricing for bookings."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import InvalidRateClassError, NotFoundError
from ..core.observability import metrics_collector
from ..models.booking import RateClass
from ..models.destination import Destination

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
FALLBACK_RATE_CLASS = RateClass.NON_RESIDENT

# Spellings used by older clients
_RATE_CLASS_ALIASES = {
    "citizen": RateClass.CITIZEN,
    "resident": RateClass.RESIDENT,
    "non_resident": RateClass.NON_RESIDENT,
    "nonresident": RateClass.NON_RESIDENT,
    "non-resident": RateClass.NON_RESIDENT,
}


@dataclass(frozen=True)
class PriceQuote:
    """Authoritative price for one booking request."""

    unit_price: Decimal
    total_amount: Decimal
    currency: str
    rate_class: RateClass
    fallback_applied: bool = False
    item_title: str = ""


def parse_rate_class(value: Optional[str]) -> Optional[RateClass]:
    """Return the rate class for a client-supplied name, or None if unknown."""
    if value is None:
        return None
    return _RATE_CLASS_ALIASES.get(value.strip().lower())


def unit_price_for(destination: Destination, rate_class: RateClass) -> Decimal:
    return {
        RateClass.CITIZEN: destination.citizen_price,
        RateClass.RESIDENT: destination.resident_price,
        RateClass.NON_RESIDENT: destination.non_resident_price,
    }[rate_class]


def currency_for(rate_class: RateClass, local_currency: str, settlement_currency: str) -> str:
    """Citizens pay in the local currency; every other class settles in the settlement currency."""
    return local_currency if rate_class == RateClass.CITIZEN else settlement_currency


def compute_total(unit_price: Decimal, participants: int) -> Decimal:
    """Exact ``unit_price * participants`` rounded to cents."""
    if participants < 1:
        raise ValueError("participants must be at least 1")
    return (Decimal(unit_price) * participants).quantize(CENT)


def amounts_match(declared: Decimal, authoritative: Decimal, tolerance: Decimal = CENT) -> bool:
    """True when a client-declared amount is within ``tolerance`` of the authoritative one."""
    return abs(Decimal(declared) - Decimal(authoritative)) <= tolerance


class PricingResolver:
    """Looks up a destination's pricing tier and computes the booking total."""

    def __init__(
        self,
        db: AsyncSession,
        local_currency: str = "KES",
        settlement_currency: str = "USD",
        strict_rate_class: bool = False,
    ):
        self.db = db
        self.local_currency = local_currency
        self.settlement_currency = settlement_currency
        self.strict_rate_class = strict_rate_class

    async def get_destination(self, item_id: str) -> Destination:
        stmt = select(Destination).where(Destination.id == item_id)
        result = await self.db.execute(stmt)
        destination = result.scalar_one_or_none()
        if destination is None or not destination.is_active:
            raise NotFoundError(resource_type="destination", resource_id=item_id)
        return destination

    def _resolve_rate_class(self, item_id: str, requested: Optional[str]) -> tuple[RateClass, bool]:
        rate_class = parse_rate_class(requested)
        if rate_class is not None:
            return rate_class, False

        if self.strict_rate_class:
            raise InvalidRateClassError(requested, [rc.value for rc in RateClass])

        logger.warning(
            "Unknown rate class, pricing at non-resident tier",
            extra={
                "destination_id": item_id,
                "requested_rate_class": requested,
                "applied_rate_class": FALLBACK_RATE_CLASS.value,
            }
        )
        metrics_collector.record_rate_class_fallback()
        return FALLBACK_RATE_CLASS, True

    async def resolve(self, item_id: str, rate_class: Optional[str], participants: int) -> PriceQuote:
        """
        Compute the authoritative price for a booking request.

        Args:
            item_id: Destination identifier
            rate_class: Requested rate class name (aliases accepted)
            participants: Number of participants, at least 1

        Returns:
            PriceQuote with exact decimal amounts

        Raises:
            NotFoundError: If the destination does not exist or is inactive
            InvalidRateClassError: If the rate class is unknown and strict mode is on
        """
        destination = await self.get_destination(item_id)
        resolved, fallback = self._resolve_rate_class(item_id, rate_class)

        unit_price = Decimal(unit_price_for(destination, resolved))
        return PriceQuote(
            unit_price=unit_price,
            total_amount=compute_total(unit_price, participants),
            currency=currency_for(resolved, self.local_currency, self.settlement_currency),
            rate_class=resolved,
            fallback_applied=fallback,
            item_title=destination.title,
        )
