"""Money arithmetic for quotes, invoices and commissions.

Every function works on ``Decimal`` and rounds to cents with ROUND_HALF_UP.
Tax is always charged on the discounted amount, never on the raw subtotal.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from common.errors import ValidationError

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0")
ONE = Decimal("1")


def to_decimal(value: Any, field: str = "value") -> Decimal:
    if value is None or value == "":
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field} must be a number.", errors={field: ["A valid number is required."]})
    if not result.is_finite():
        raise ValidationError(f"{field} must be a number.", errors={field: ["A valid number is required."]})
    return result


def to_money(value: Any) -> Decimal:
    return to_decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _non_negative(value: Any, field: str) -> Decimal:
    amount = to_decimal(value, field)
    if amount < 0:
        raise ValidationError(f"{field} cannot be negative.", errors={field: ["Must be zero or greater."]})
    return amount


def _rate(value: Any, field: str) -> Decimal:
    rate = _non_negative(value, field)
    if rate > ONE:
        raise ValidationError(
            f"{field} must be between 0 and 1.",
            errors={field: ["Express the rate as a fraction, e.g. 0.0875."]},
        )
    return rate


def _item_value(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def compute_line_total(quantity: Any, unit_price: Any) -> Decimal:
    quantity = _non_negative(quantity, "quantity")
    unit_price = _non_negative(unit_price, "unit_price")
    return to_money(quantity * unit_price)


def compute_subtotal(line_items: Iterable[Any]) -> Decimal:
    subtotal = ZERO
    for item in line_items:
        subtotal += compute_line_total(_item_value(item, "quantity"), _item_value(item, "unit_price"))
    return to_money(subtotal)


def compute_taxable_amount(subtotal: Any, discount: Any = ZERO) -> Decimal:
    subtotal = _non_negative(subtotal, "subtotal")
    discount = _non_negative(discount, "discount")
    return to_money(max(subtotal - discount, ZERO))


def compute_tax(subtotal: Any, discount: Any, tax_rate: Any) -> Decimal:
    taxable = compute_taxable_amount(subtotal, discount)
    return to_money(taxable * _rate(tax_rate, "tax_rate"))


def compute_total(subtotal: Any, discount: Any, tax: Any) -> Decimal:
    subtotal = _non_negative(subtotal, "subtotal")
    discount = _non_negative(discount, "discount")
    tax = _non_negative(tax, "tax")
    return to_money(subtotal - discount + tax)


def compute_totals(line_items: Iterable[Any], discount: Any = ZERO, tax_rate: Any = ZERO) -> dict[str, Decimal]:
    subtotal = compute_subtotal(line_items)
    discount = to_money(_non_negative(discount, "discount"))
    tax_amount = compute_tax(subtotal, discount, tax_rate)
    return {
        "subtotal": subtotal,
        "discount": discount,
        "taxable_amount": compute_taxable_amount(subtotal, discount),
        "tax_amount": tax_amount,
        "total": compute_total(subtotal, discount, tax_amount),
    }


def compute_commission(order_totals: Iterable[Any], rate: Any) -> Decimal:
    rate = _rate(rate, "commission_rate")
    earned = sum((_non_negative(total, "order_total") for total in order_totals), ZERO)
    return to_money(earned * rate)


def compute_pending_commission(order_totals: Iterable[Any], rate: Any, prior_payments: Iterable[Any]) -> Decimal:
    earned = compute_commission(order_totals, rate)
    paid = sum((_non_negative(amount, "payment") for amount in prior_payments), ZERO)
    return to_money(earned - paid)
