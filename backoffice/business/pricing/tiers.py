from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from pydantic import TypeAdapter, ValidationError

from backoffice.business.pricing.errors import InvalidTierTable, InvalidUsageQuantity
from backoffice.business.pricing.types import UsageTier


_TIER_LIST = TypeAdapter(list[UsageTier])


@dataclass(slots=True, frozen=True)
class TierConsumption:
    lower: int
    upper: int | None
    units: int
    unit_price: int

    @property
    def charge(self) -> int:
        return self.units * self.unit_price


def validate_tier_table(tiers: Sequence[UsageTier]) -> tuple[UsageTier, ...]:
    if not tiers:
        raise InvalidTierTable("tier table is empty")

    previous = 0
    for index, tier in enumerate(tiers):
        if tier.up_to is None:
            if index != len(tiers) - 1:
                raise InvalidTierTable("unbounded tier must be last and appear once")
            continue
        if tier.up_to <= previous:
            raise InvalidTierTable("tiers must be strictly ascending by upTo")
        previous = tier.up_to
    if tiers[-1].up_to is not None:
        raise InvalidTierTable("tier table must end with an unbounded tier")

    if any(tier.unit_price < 0 for tier in tiers):
        raise InvalidTierTable("tier unit prices must be non-negative")
    return tuple(tiers)


def parse_tier_table(raw: Iterable[dict[str, Any]] | None) -> tuple[UsageTier, ...]:
    """Parse stored tier JSON into validated tiers; raises InvalidTierTable on bad data."""

    if raw is None:
        return ()
    try:
        tiers = _TIER_LIST.validate_python(list(raw))
    except ValidationError as exc:
        raise InvalidTierTable(f"malformed tier table: {exc.error_count()} error(s)") from exc
    return validate_tier_table(tiers)


def dump_tier_table(tiers: Iterable[UsageTier]) -> list[dict[str, Any]]:
    return [tier.model_dump(by_alias=True) for tier in tiers]


def breakdown(quantity: int, tiers: Sequence[UsageTier]) -> list[TierConsumption]:
    if quantity < 0:
        raise InvalidUsageQuantity("usage quantity must be non-negative")

    table = validate_tier_table(tiers)
    consumed: list[TierConsumption] = []
    remaining = quantity
    lower = 0
    for tier in table:
        if remaining == 0:
            break
        width = remaining if tier.up_to is None else tier.up_to - lower
        units = min(remaining, width)
        consumed.append(TierConsumption(lower=lower, upper=tier.up_to, units=units, unit_price=tier.unit_price))
        remaining -= units
        if tier.up_to is not None:
            lower = tier.up_to
    return consumed


def calculate(quantity: int, tiers: Sequence[UsageTier]) -> int:
    return sum(item.charge for item in breakdown(quantity, tiers))
