from __future__ import annotations

from collections.abc import Sequence

from backoffice.business.pricing import bolt_ons, coupons
from backoffice.business.pricing.errors import CouponNotApplicable, PricingNotFoundForCycle
from backoffice.business.pricing.money import format_cents, to_monthly_equivalent
from backoffice.business.pricing.types import (
    AddOnCharge,
    BillingCycle,
    CouponTerms,
    CustomerDiscount,
    LineItem,
    PricingInput,
    PricingResult,
    PricingRow,
    UsageComponent,
)


RECURRING_MODELS = frozenset({"flat", "seat", "hybrid"})
USAGE_MODELS = frozenset({"usage", "hybrid"})


def select_base_row(pricing: Sequence[PricingRow], cycle: BillingCycle, region: str | None) -> PricingRow | None:
    if region:
        wanted = region.strip().lower()
        for row in pricing:
            if row.pricing_type == "regional" and row.interval == cycle and (row.region or "").lower() == wanted:
                return row
    for row in pricing:
        if row.pricing_type == "base" and row.interval == cycle:
            return row
    return None


def select_per_seat_amount(pricing: Sequence[PricingRow], base_row: PricingRow | None, cycle: BillingCycle) -> int | None:
    if base_row is not None and base_row.per_seat_amount is not None:
        return base_row.per_seat_amount
    for row in pricing:
        if row.pricing_type == "seat" and row.interval == cycle:
            return row.per_seat_amount if row.per_seat_amount is not None else row.amount
    return None


def _plan_usage_components(inp: PricingInput) -> list[UsageComponent]:
    components: list[UsageComponent] = []
    for row in inp.pricing:
        if row.pricing_type != "usage":
            continue
        component = UsageComponent(
            name=row.usage_meter_name or f"{inp.plan_name} usage",
            usage_meter_id=row.usage_meter_id,
            unit=row.usage_unit,
            tiers=row.usage_tiers,
            flat_unit_price=None if row.usage_tiers else row.amount,
        )
        if inp.usage is not None:
            component = bolt_ons.price_usage(component, inp.usage.get(row.usage_meter_id or "", 0))
        components.append(component)
    return components


def _coupon_discount(inp: PricingInput, amount: int, *, locked_in: bool) -> int:
    coupon = inp.coupon
    if coupon is None:
        return 0
    if not locked_in:
        if inp.now is None:
            raise ValueError("coupon validation requires the current time")
        validation = coupons.validate(coupon, inp.plan_id, inp.now)
        if not validation.ok:
            raise CouponNotApplicable(coupon.code, validation.reason or "disabled")
    if coupon.discount_type not in coupons.AMOUNT_DISCOUNTS:
        return 0
    return coupons.discount_amount(coupon.discount_type, coupon.discount_value, amount)


def _customer_discount(discount: CustomerDiscount | None, amount: int) -> int:
    if discount is None or discount.value <= 0:
        return 0
    return coupons.discount_amount(discount.discount_type, discount.value, amount)


def describe_customer_discount(discount: CustomerDiscount, currency: str = "USD") -> str:
    if discount.discount_type == "percentage":
        return f"{discount.value}%"
    return format_cents(discount.value, currency)


def _usage_lines(components: Sequence[UsageComponent]) -> list[LineItem]:
    lines: list[LineItem] = []
    for component in components:
        if not component.units:
            continue
        charge = component.charge or 0
        unit_label = component.unit or "units"
        lines.append(
            LineItem(
                description=f"{component.name} ({component.units:,} {unit_label})",
                quantity=1,
                unit_price=charge,
                total=charge,
            )
        )
    return lines


def build_line_items(
    inp: PricingInput,
    *,
    currency: str,
    base_amount: int,
    per_seat_amount: int,
    seat_quantity: int,
    add_on_charges: Sequence[AddOnCharge],
    customer_discount: int,
    coupon_discount: int,
    free_cycle_credit: int,
    usage_components: Sequence[UsageComponent],
    consumables: Sequence[UsageComponent],
) -> list[LineItem]:
    cycle_label = "Annual" if inp.cycle == "yearly" else "Monthly"
    lines: list[LineItem] = []
    if inp.pricing_model in RECURRING_MODELS:
        lines.append(
            LineItem(
                description=f"{inp.plan_name} - {cycle_label} subscription",
                quantity=1,
                unit_price=base_amount,
                total=base_amount,
            )
        )
    if seat_quantity > 0:
        lines.append(
            LineItem(
                description=f"Seats ({seat_quantity} × {format_cents(per_seat_amount, currency)})",
                quantity=seat_quantity,
                unit_price=per_seat_amount,
                total=per_seat_amount * seat_quantity,
            )
        )
    for charge in add_on_charges:
        lines.append(
            LineItem(
                description=f"{charge.name} (add-on)",
                quantity=charge.quantity,
                unit_price=charge.unit_price,
                total=charge.amount,
            )
        )
    if inp.customer_discount is not None and customer_discount > 0:
        lines.append(
            LineItem(
                description=f"Customer Discount ({describe_customer_discount(inp.customer_discount, currency)})",
                quantity=1,
                unit_price=-customer_discount,
                total=-customer_discount,
            )
        )
    coupon: CouponTerms | None = inp.coupon
    if coupon is not None and coupon_discount > 0:
        lines.append(
            LineItem(
                description=f"Coupon: {coupon.code} ({coupons.describe(coupon, currency)})",
                quantity=1,
                unit_price=-coupon_discount,
                total=-coupon_discount,
            )
        )
    if free_cycle_credit > 0:
        suffix = f" ({coupon.code})" if coupon is not None else ""
        lines.append(
            LineItem(
                description=f"Free billing cycle{suffix}",
                quantity=1,
                unit_price=-free_cycle_credit,
                total=-free_cycle_credit,
            )
        )
    lines.extend(_usage_lines(usage_components))
    lines.extend(_usage_lines(consumables))
    return lines


def resolve(inp: PricingInput, *, coupon_locked_in: bool = False) -> PricingResult:
    """Resolve the recurring charge and MRR of one plan instance.

    Usage and consumable add-on charges are priced only when ``inp.usage`` carries the
    period's aggregated units; they never contribute to ``recurring_charge`` or ``mrr``.
    A customer discount comes off the gross recurring charge before the coupon; when it
    is not recurring it is left out of ``mrr``.
    ``coupon_locked_in`` skips coupon validation for a coupon already redeemed by the
    subscription being priced.
    """

    base_row = select_base_row(inp.pricing, inp.cycle, inp.region)
    base_amount = 0
    per_seat_amount = 0
    seat_quantity = 0
    if inp.pricing_model in RECURRING_MODELS:
        if base_row is None:
            raise PricingNotFoundForCycle(inp.plan_id, inp.cycle, inp.region)
        base_amount = base_row.amount
        seat_price = select_per_seat_amount(inp.pricing, base_row, inp.cycle)
        if inp.pricing_model == "seat" and seat_price is None:
            raise PricingNotFoundForCycle(inp.plan_id, inp.cycle, inp.region, component="seat")
        if seat_price is not None and inp.pricing_model in {"seat", "hybrid"}:
            per_seat_amount = seat_price
            seat_quantity = max(0, inp.seats - inp.included_seats)
    seat_amount = per_seat_amount * seat_quantity

    usage_components = _plan_usage_components(inp) if inp.pricing_model in USAGE_MODELS else []
    resolved_add_ons = bolt_ons.resolve(inp.add_ons, inp.cycle, inp.seats, inp.usage)

    gross_recurring = base_amount + seat_amount + resolved_add_ons.recurring_total
    customer_discount = _customer_discount(inp.customer_discount, gross_recurring)
    after_customer_discount = gross_recurring - customer_discount
    coupon_discount = _coupon_discount(inp, after_customer_discount, locked_in=coupon_locked_in)
    after_coupon = after_customer_discount - coupon_discount
    free_cycle_credit = after_coupon if inp.free_cycle else 0
    recurring_charge = after_coupon - free_cycle_credit

    steady_charge = recurring_charge
    if customer_discount and inp.customer_discount is not None and not inp.customer_discount.is_recurring:
        steady_charge = gross_recurring - _coupon_discount(inp, gross_recurring, locked_in=True)
        if inp.free_cycle:
            steady_charge = 0
    mrr = to_monthly_equivalent(steady_charge) if inp.cycle == "yearly" else steady_charge

    currency = inp.currency or (base_row.currency if base_row is not None else None)
    if currency is None:
        currency = inp.pricing[0].currency if inp.pricing else "USD"

    return PricingResult(
        plan_id=inp.plan_id,
        cycle=inp.cycle,
        currency=currency,
        base_amount=base_amount,
        per_seat_amount=per_seat_amount,
        seat_quantity=seat_quantity,
        seat_amount=seat_amount,
        add_on_charges=resolved_add_ons.recurring,
        consumables=resolved_add_ons.consumables,
        usage_components=usage_components,
        gross_recurring=gross_recurring,
        customer_discount=customer_discount,
        coupon_discount=coupon_discount,
        free_cycle_credit=free_cycle_credit,
        recurring_charge=recurring_charge,
        mrr=mrr,
        line_item_preview=build_line_items(
            inp,
            currency=currency,
            base_amount=base_amount,
            per_seat_amount=per_seat_amount,
            seat_quantity=seat_quantity,
            add_on_charges=resolved_add_ons.recurring,
            customer_discount=customer_discount,
            coupon_discount=coupon_discount,
            free_cycle_credit=free_cycle_credit,
            usage_components=usage_components,
            consumables=resolved_add_ons.consumables,
        ),
    )

