from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from backoffice.business.pricing import tiers
from backoffice.business.pricing.errors import InvalidUsageQuantity, PricingNotFoundForCycle
from backoffice.business.pricing.types import AddOnCharge, AddOnSelection, BillingCycle, PricingRow, UsageComponent


@dataclass(slots=True)
class ResolvedBoltOns:
    recurring: list[AddOnCharge] = field(default_factory=list)
    consumables: list[UsageComponent] = field(default_factory=list)

    @property
    def recurring_total(self) -> int:
        return sum(item.amount for item in self.recurring)


def _row_for_cycle(selection: AddOnSelection, cycle: BillingCycle) -> PricingRow:
    for row in selection.pricing:
        if row.interval == cycle:
            return row
    for row in selection.pricing:
        if row.interval is None:
            return row
    raise PricingNotFoundForCycle(selection.add_on_id, cycle, component="add-on")


def _usage_row(selection: AddOnSelection) -> PricingRow:
    for row in selection.pricing:
        if row.pricing_type == "usage" or row.usage_meter_id is not None:
            return row
    if selection.pricing:
        return selection.pricing[0]
    raise PricingNotFoundForCycle(selection.add_on_id, "usage", component="add-on usage")


def price_recurring(selection: AddOnSelection, cycle: BillingCycle, seats: int) -> AddOnCharge:
    row = _row_for_cycle(selection, cycle)
    if selection.pricing_model == "seat":
        unit_price = row.per_seat_amount if row.per_seat_amount is not None else row.amount
        quantity = seats * selection.quantity
        amount = unit_price * quantity
    elif selection.pricing_model == "usage" and row.usage_tiers:
        quantity = 1
        amount = tiers.calculate(selection.quantity, row.usage_tiers)
        unit_price = amount
    else:
        quantity = selection.quantity
        unit_price = row.amount
        amount = unit_price * quantity
    return AddOnCharge(
        attachment_id=selection.attachment_id,
        add_on_id=selection.add_on_id,
        name=selection.name,
        billing_type="billed_with_main",
        quantity=quantity,
        unit_price=unit_price,
        amount=amount,
        usage_meter_id=row.usage_meter_id,
    )


def consumable_component(selection: AddOnSelection, usage: Mapping[str, int] | None = None) -> UsageComponent:
    row = _usage_row(selection)
    component = UsageComponent(
        name=selection.name,
        usage_meter_id=row.usage_meter_id,
        unit=row.usage_unit,
        tiers=row.usage_tiers,
        flat_unit_price=None if row.usage_tiers else row.amount,
        source="add_on",
    )
    if usage is None:
        return component
    return price_usage(component, usage.get(row.usage_meter_id or "", 0))


def price_usage(component: UsageComponent, units: int) -> UsageComponent:
    if component.tiers:
        charge = tiers.calculate(units, component.tiers)
    else:
        if units < 0:
            raise InvalidUsageQuantity("usage quantity must be non-negative")
        charge = units * (component.flat_unit_price or 0)
    return UsageComponent(
        name=component.name,
        usage_meter_id=component.usage_meter_id,
        unit=component.unit,
        tiers=component.tiers,
        flat_unit_price=component.flat_unit_price,
        source=component.source,
        units=units,
        charge=charge,
    )


def resolve(
    selections: Iterable[AddOnSelection],
    cycle: BillingCycle,
    seats: int,
    usage: Mapping[str, int] | None = None,
) -> ResolvedBoltOns:
    """Split selected plan attachments into recurring charges and invoice-time consumables."""

    resolved = ResolvedBoltOns()
    for selection in sorted(selections, key=lambda item: (item.display_order, item.name)):
        if selection.billing_type == "billed_with_main":
            resolved.recurring.append(price_recurring(selection, cycle, seats))
        else:
            resolved.consumables.append(consumable_component(selection, usage))
    return resolved
