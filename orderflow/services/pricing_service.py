"""Item pricing and voucher evaluation.

Everything here is computation over rows the caller already loaded; the only
database access is the voucher lookup and the per-user usage count.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import func

from ..errors import ValidationError
from ..models.product import Product, ProductSize, ProductVariant
from ..models.voucher import Voucher, VoucherUsage
from ..utils.money import quantize, to_decimal


STANDARD = "STANDARD"
STAFF_OVERRIDE = "STAFF_OVERRIDE"
SYSTEM_OVERRIDE = "SYSTEM_OVERRIDE"

PERCENTAGE = "PERCENTAGE"
FIXED_AMOUNT = "FIXED_AMOUNT"
FREE_SHIPPING = "FREE_SHIPPING"
FREE_ITEM = "FREE_ITEM"
REFUND = "REFUND"
DISCOUNT_TYPES = {PERCENTAGE, FIXED_AMOUNT, FREE_SHIPPING, FREE_ITEM, REFUND}


@dataclass
class PricedLine:
    product_id: str
    variant_id: Optional[str]
    size_id: Optional[str]
    quantity: int
    price: Decimal
    original_price: Decimal
    applied_role: str = STANDARD
    product_name: Optional[str] = None
    variant_name: Optional[str] = None
    size_label: Optional[str] = None
    customer_note: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity

    @property
    def line_discount(self) -> Decimal:
        return max(Decimal("0"), self.original_price - self.price) * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "variant_id": self.variant_id,
            "size_id": self.size_id,
            "product_name": self.product_name,
            "variant_name": self.variant_name,
            "size_label": self.size_label,
            "quantity": self.quantity,
            "price": str(self.price),
            "original_price": str(self.original_price),
            "applied_role": self.applied_role,
            "customer_note": self.customer_note,
        }


@dataclass
class PricingResult:
    lines: List[PricedLine]
    subtotal: Decimal
    original_subtotal: Decimal
    item_discount: Decimal
    voucher_discount: Decimal = Decimal("0.00")
    voucher: Optional[Voucher] = None
    voucher_snapshot: Optional[dict] = field(default=None)

    @property
    def total(self) -> Decimal:
        return quantize(max(Decimal("0"), self.subtotal - self.voucher_discount))

    @property
    def discount_amount(self) -> Decimal:
        return quantize(self.item_discount + self.voucher_discount)

    @property
    def paid_by_credit(self) -> bool:
        return self.total == 0 and self.voucher_discount > 0

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)


def resolve_base_price(product: Product, variant: Optional[ProductVariant], size: Optional[ProductSize]) -> Decimal:
    """Catalog price: size, then variant, then the product's price fields."""
    for candidate in (
        size.price if size is not None else None,
        variant.price if variant is not None else None,
        product.min_price,
        product.max_price,
        product.supposed_price,
    ):
        if candidate is not None:
            return quantize(candidate)
    raise ValidationError(f"No price configured for product {product.name}")


def price_line(
    *,
    product: Product,
    variant: Optional[ProductVariant],
    size: Optional[ProductSize],
    quantity: int,
    override_price=None,
    override_role: Optional[str] = None,
    customer_note: Optional[str] = None,
) -> PricedLine:
    """Price one line. ``override_role`` must only be set for callers allowed to override."""
    original = resolve_base_price(product, variant, size)
    charged = original
    role = STANDARD
    if override_price is not None:
        if override_role is None:
            raise ValidationError("Not allowed to override item price")
        override = quantize(override_price)
        if override < 0:
            raise ValidationError("Item price must be >= 0")
        if override != original:
            charged = override
            role = override_role
    return PricedLine(
        product_id=product.id,
        variant_id=variant.id if variant is not None else None,
        size_id=size.id if size is not None else None,
        quantity=quantity,
        price=charged,
        original_price=original,
        applied_role=role,
        product_name=product.name,
        variant_name=variant.name if variant is not None else None,
        size_label=size.label if size is not None else None,
        customer_note=customer_note,
    )


def normalize_code(code: str) -> str:
    return (code or "").upper().strip()


def validate_voucher(
    session,
    *,
    code: str,
    customer_id: str,
    organization_id: Optional[str],
    subtotal: Decimal,
    product_ids: Iterable[str],
    now: datetime,
) -> Voucher:
    voucher = session.query(Voucher).filter(Voucher.code == normalize_code(code)).first()
    if voucher is None:
        raise ValidationError("Invalid voucher code")
    if not voucher.is_active:
        raise ValidationError("This voucher is no longer active")
    if voucher.valid_from is not None and voucher.valid_from > now:
        raise ValidationError("This voucher is not valid yet")
    if voucher.valid_until is not None and voucher.valid_until < now:
        raise ValidationError("This voucher has expired")
    if voucher.usage_limit and (voucher.used_count or 0) >= voucher.usage_limit:
        raise ValidationError("This voucher has reached its usage limit")
    if voucher.usage_limit_per_user:
        used = (
            session.query(func.count(VoucherUsage.id))
            .filter(VoucherUsage.voucher_id == voucher.id, VoucherUsage.user_id == customer_id)
            .scalar()
        )
        if used >= voucher.usage_limit_per_user:
            raise ValidationError("You have already used this voucher the maximum number of times")
    if voucher.discount_type == REFUND:
        # refund credits are platform-wide but personal
        if voucher.assigned_to_user_id and voucher.assigned_to_user_id != customer_id:
            raise ValidationError("This voucher is not assigned to you")
    elif voucher.organization_id and voucher.organization_id != organization_id:
        raise ValidationError("This voucher is only valid for a specific store")
    if voucher.minimum_order_amount and subtotal < to_decimal(voucher.minimum_order_amount):
        raise ValidationError(f"Minimum order of {to_decimal(voucher.minimum_order_amount):.2f} required")
    if voucher.applicable_products:
        allowed = {str(pid) for pid in voucher.applicable_products}
        if not any(str(pid) in allowed for pid in product_ids):
            raise ValidationError("This voucher is not valid for the products in your order")
    return voucher


def compute_voucher_discount(voucher: Voucher, subtotal: Decimal, proportional_share=None) -> Decimal:
    """Discount for ``subtotal``; never more than ``subtotal``.

    ``proportional_share`` is this order's slice of a voucher spread over a
    multi-store cart. It can lower the discount, never raise it above what
    the voucher gives ``subtotal`` on its own.
    """
    if voucher.discount_type == PERCENTAGE:
        discount = subtotal * to_decimal(voucher.discount_value) / Decimal("100")
        if voucher.max_discount_amount and discount > to_decimal(voucher.max_discount_amount):
            discount = to_decimal(voucher.max_discount_amount)
    elif voucher.discount_type in (FIXED_AMOUNT, REFUND, FREE_ITEM):
        discount = min(to_decimal(voucher.discount_value), subtotal)
    else:
        # FREE_SHIPPING: shipping is not priced by this engine
        discount = Decimal("0")
    if proportional_share is not None:
        discount = min(to_decimal(proportional_share), discount)
    return quantize(min(max(discount, Decimal("0")), subtotal))


class PricingService:
    """Totals for a list of already-priced lines, with an optional voucher."""

    def price(
        self,
        session,
        *,
        lines: List[PricedLine],
        customer_id: str,
        organization_id: Optional[str],
        now: datetime,
        voucher_code: Optional[str] = None,
        voucher_proportional_share=None,
    ) -> PricingResult:
        subtotal = quantize(sum((line.line_total for line in lines), Decimal("0")))
        original_subtotal = quantize(sum((line.original_price * line.quantity for line in lines), Decimal("0")))
        item_discount = quantize(sum((line.line_discount for line in lines), Decimal("0")))
        result = PricingResult(
            lines=lines,
            subtotal=subtotal,
            original_subtotal=original_subtotal,
            item_discount=item_discount,
        )
        if voucher_code:
            voucher = validate_voucher(
                session,
                code=voucher_code,
                customer_id=customer_id,
                organization_id=organization_id,
                subtotal=subtotal,
                product_ids=[line.product_id for line in lines],
                now=now,
            )
            result.voucher = voucher
            result.voucher_discount = compute_voucher_discount(voucher, subtotal, voucher_proportional_share)
            result.voucher_snapshot = voucher.snapshot()
        return result
