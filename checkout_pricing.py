"""
Cart pricing, discounts, VAT and loyalty redemption.

All arithmetic is done on Decimal. Nothing is rounded until an amount is
displayed or leaves the process (see ``quantize_money``).

VAT rule: VAT is charged on the net amount after both line discounts and the
loyalty points discount, on every path:

    net   = subtotal - total_discount - points_discount
    vat   = net * VAT_RATE
    grand = net + vat
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from pos_config import (
    LOYALTY_POINT_VALUE,
    LOYALTY_POINTS_PER_UNIT,
    LOYALTY_REDEEM_THRESHOLD,
    VAT_RATE,
)

DISCOUNT_PERCENTAGE = 'percentage'
DISCOUNT_FIXED = 'fixed'
DISCOUNT_KINDS = (DISCOUNT_PERCENTAGE, DISCOUNT_FIXED)

ZERO = Decimal('0')
HUNDRED = Decimal('100')
CENT = Decimal('0.01')


class ValidationError(ValueError):
    """Malformed pricing input. Never reaches the ERP."""


def to_decimal(value: Any, field_name: str = 'amount') -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be numeric")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, float):
        # str() keeps the short repr so 45.1 stays 45.1 instead of 45.0999...
        result = Decimal(str(value))
    else:
        try:
            result = Decimal(str(value).strip()) if value is not None else None
        except (InvalidOperation, ValueError):
            result = None
    if result is None or not result.is_finite():
        raise ValidationError(f"{field_name} must be numeric")
    return result


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return f"{quantize_money(value):.2f}"


@dataclass(frozen=True)
class CartLine:
    item_code: str
    unit_price: Decimal
    qty: int
    discount: Decimal = ZERO
    discount_type: str = DISCOUNT_PERCENTAGE
    item_name: str = ''
    cost_price: Decimal = ZERO

    def __post_init__(self):
        if not self.item_code or not str(self.item_code).strip():
            raise ValidationError("item_code is required")
        price = to_decimal(self.unit_price, 'unit_price')
        discount = to_decimal(self.discount if self.discount is not None else ZERO, 'discount')
        cost = to_decimal(self.cost_price if self.cost_price is not None else ZERO, 'cost_price')
        if isinstance(self.qty, bool) or not isinstance(self.qty, int):
            raise ValidationError("qty must be a whole number")
        if self.qty < 1:
            raise ValidationError(f"qty must be at least 1 (got {self.qty})")
        if price < ZERO:
            raise ValidationError("unit_price cannot be negative")
        if cost < ZERO:
            raise ValidationError("cost_price cannot be negative")
        if self.discount_type not in DISCOUNT_KINDS:
            raise ValidationError(f"Unknown discount type {self.discount_type!r}")
        if discount < ZERO:
            raise ValidationError("discount cannot be negative")
        if self.discount_type == DISCOUNT_PERCENTAGE and discount > HUNDRED:
            raise ValidationError("percentage discount cannot exceed 100")
        if self.discount_type == DISCOUNT_FIXED and discount > price:
            raise ValidationError("fixed discount cannot exceed the unit price")
        object.__setattr__(self, 'unit_price', price)
        object.__setattr__(self, 'discount', discount)
        object.__setattr__(self, 'cost_price', cost)
        object.__setattr__(self, 'item_name', self.item_name or str(self.item_code))

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.qty

    def with_qty(self, qty: int) -> 'CartLine':
        return CartLine(
            item_code=self.item_code,
            unit_price=self.unit_price,
            qty=qty,
            discount=self.discount,
            discount_type=self.discount_type,
            item_name=self.item_name,
            cost_price=self.cost_price,
        )


@dataclass
class LoyaltyAccount:
    customer_id: str
    points: int = 0
    customer_name: str = ''
    phone: str = ''
    email: str = ''

    def __post_init__(self):
        if isinstance(self.points, bool) or not isinstance(self.points, int):
            raise ValidationError("points must be a whole number")
        if self.points < 0:
            raise ValidationError("points balance cannot be negative")


@dataclass(frozen=True)
class LoyaltyRule:
    points_per_unit: Decimal = LOYALTY_POINTS_PER_UNIT
    redeem_threshold: int = LOYALTY_REDEEM_THRESHOLD
    point_value: Decimal = LOYALTY_POINT_VALUE

    def __post_init__(self):
        if self.redeem_threshold < 1:
            raise ValidationError("redeem_threshold must be positive")
        object.__setattr__(self, 'point_value', to_decimal(self.point_value, 'point_value'))
        object.__setattr__(self, 'points_per_unit', to_decimal(self.points_per_unit, 'points_per_unit'))


@dataclass(frozen=True)
class PricingResult:
    subtotal: Decimal
    line_discount: Decimal
    points_discount: Decimal
    vat: Decimal
    grand_total: Decimal
    points_redeemed: int = 0

    @property
    def net_total(self) -> Decimal:
        return self.subtotal - self.line_discount - self.points_discount

    def display(self) -> Dict[str, Any]:
        return {
            'subtotal': format_money(self.subtotal),
            'discount': format_money(self.line_discount),
            'points_discount': format_money(self.points_discount),
            'vat': format_money(self.vat),
            'grand_total': format_money(self.grand_total),
            'points_redeemed': self.points_redeemed,
        }


# ---------- PURE PRICING ----------
def subtotal(lines: Iterable[CartLine]) -> Decimal:
    return sum((l.amount for l in lines), ZERO)


def line_discount(line: CartLine) -> Decimal:
    if line.discount_type == DISCOUNT_PERCENTAGE:
        raw = line.unit_price * line.qty * line.discount / HUNDRED
    else:
        raw = line.discount * line.qty
    return min(max(raw, ZERO), line.amount)


def total_discount(lines: Iterable[CartLine]) -> Decimal:
    return sum((line_discount(l) for l in lines), ZERO)


def points_discount(points: int, rule: LoyaltyRule) -> Decimal:
    return Decimal(points) * rule.point_value


def points_earned(net: Decimal, rule: LoyaltyRule) -> int:
    """Whole points earned on a net (pre-VAT) amount."""
    if net <= ZERO:
        return 0
    return int((net * rule.points_per_unit).to_integral_value(rounding=ROUND_FLOOR))


def vat_amount(lines: Iterable[CartLine], points_off: Decimal = ZERO, rate: Decimal = VAT_RATE) -> Decimal:
    lines = list(lines)
    return (subtotal(lines) - total_discount(lines) - points_off) * rate


def grand_total(lines: Iterable[CartLine], points_off: Decimal = ZERO, rate: Decimal = VAT_RATE) -> Decimal:
    lines = list(lines)
    net = subtotal(lines) - total_discount(lines) - points_off
    return net + net * rate


def redeemable_points(balance: int, rule: LoyaltyRule, cap_amount: Optional[Decimal] = None) -> int:
    """Largest multiple of the threshold not exceeding the balance.

    With ``cap_amount`` the result is reduced further (in whole threshold
    blocks) so the monetary value never exceeds that amount.
    """
    if balance < rule.redeem_threshold:
        return 0
    blocks = balance // rule.redeem_threshold
    if cap_amount is not None and rule.point_value > ZERO:
        block_value = rule.point_value * rule.redeem_threshold
        max_blocks = int(max(cap_amount, ZERO) // block_value)
        blocks = min(blocks, max_blocks)
    return blocks * rule.redeem_threshold


def price_cart(
    lines: Iterable[CartLine],
    rule: Optional[LoyaltyRule] = None,
    account: Optional[LoyaltyAccount] = None,
    redeem: bool = False,
    rate: Decimal = VAT_RATE,
) -> PricingResult:
    lines = list(lines)
    rule = rule or LoyaltyRule()
    sub = subtotal(lines)
    disc = total_discount(lines)
    points = 0
    if redeem and account is not None:
        points = redeemable_points(account.points, rule, cap_amount=sub - disc)
    points_off = points_discount(points, rule)
    net = sub - disc - points_off
    vat = net * rate
    return PricingResult(
        subtotal=sub,
        line_discount=disc,
        points_discount=points_off,
        vat=vat,
        grand_total=net + vat,
        points_redeemed=points,
    )


# ---------- TRANSACTION CONTEXT ----------
@dataclass
class CheckoutTransaction:
    """The only mutable state of an open sale."""
    rule: LoyaltyRule = field(default_factory=LoyaltyRule)
    account: Optional[LoyaltyAccount] = None
    redeem: bool = False
    vat_rate: Decimal = VAT_RATE
    lines: List[CartLine] = field(default_factory=list)
    _redeemed: Optional[int] = field(default=None, repr=False)

    def add_line(self, line: CartLine) -> None:
        for idx, existing in enumerate(self.lines):
            if (existing.item_code == line.item_code and existing.unit_price == line.unit_price
                    and existing.discount == line.discount and existing.discount_type == line.discount_type):
                self.lines[idx] = existing.with_qty(existing.qty + line.qty)
                return
        self.lines.append(line)

    def remove_line(self, item_code: str) -> None:
        self.lines = [l for l in self.lines if l.item_code != item_code]

    def set_quantity(self, item_code: str, qty: int) -> None:
        found = False
        for idx, existing in enumerate(self.lines):
            if existing.item_code == item_code:
                self.lines[idx] = existing.with_qty(qty)
                found = True
        if not found:
            raise ValidationError(f"{item_code} is not in the cart")

    def activate_redemption(self, active: bool = True) -> None:
        if active and self.account is None:
            raise ValidationError("Redemption needs a loyalty customer")
        self.redeem = active

    def price(self) -> PricingResult:
        return price_cart(self.lines, self.rule, self.account, self.redeem, self.vat_rate)

    def commit_redemption(self) -> int:
        """Deduct the redeemed points from the account. Runs at most once."""
        if self._redeemed is not None:
            return self._redeemed
        points = self.price().points_redeemed
        if points and self.account is not None:
            self.account.points -= points
        self._redeemed = points
        return points

    def rollback_redemption(self) -> None:
        if self._redeemed and self.account is not None:
            self.account.points += self._redeemed
        self._redeemed = None


def parse_cart_lines(rows: Iterable[Dict[str, Any]]) -> List[CartLine]:
    """Build CartLines from request JSON rows."""
    lines = []
    for idx, row in enumerate(rows or [], start=1):
        if not isinstance(row, dict):
            raise ValidationError(f"Line {idx} must be an object")
        qty = row.get('qty', row.get('quantity', 1))
        if isinstance(qty, float) and qty.is_integer():
            qty = int(qty)
        elif isinstance(qty, str) and qty.strip().isdigit():
            qty = int(qty.strip())
        lines.append(CartLine(
            item_code=str(row.get('item_code') or row.get('code') or row.get('id') or '').strip(),
            item_name=row.get('item_name') or row.get('name') or '',
            unit_price=row.get('rate', row.get('price')),
            qty=qty,
            discount=row.get('discount') or 0,
            discount_type=row.get('discount_type') or DISCOUNT_PERCENTAGE,
            cost_price=row.get('cost_price') or 0,
        ))
    return lines
