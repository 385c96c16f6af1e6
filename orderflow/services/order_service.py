import secrets
import string
from datetime import datetime
from typing import Dict, List, Optional
from uuid import uuid4

from ..db.session import get_session
from ..errors import NotFoundError, SecurityError, ValidationError
from ..models.order import Order, OrderItem
from ..models.user import User
from ..models.voucher import Voucher, VoucherUsage
from ..utils.timeutil import utcnow
from ..utils.validators import ensure_positive_int
from .collaborators import Actor, Collaborators
from .inventory_service import InventoryLedger
from .logging import log_event
from .order_state import (
    ORDER_CREATED,
    PAID,
    PAY_PENDING,
    PENDING,
    PROCESSING,
    append_history,
    load_order_lines,
    write_log,
)
from .pricing_service import STAFF_OVERRIDE, SYSTEM_OVERRIDE, PricedLine, PricingService, price_line


SOURCE_WEB = "WEB"
SOURCE_MESSENGER = "MESSENGER"
TRUSTED_SOURCES = {SOURCE_MESSENGER}
EMBEDDED_ITEM_LIMIT = 20

_BASE36 = string.digits + string.ascii_uppercase


def generate_order_number(now: datetime, prefix: str = "ORD") -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}-{now:%Y%m%d}-{suffix}"


class OrderService:
    """Turns an item list into a priced, stock-reserved order."""

    def __init__(
        self,
        session_factory=get_session,
        pricing: Optional[PricingService] = None,
        inventory: Optional[InventoryLedger] = None,
        collaborators: Optional[Collaborators] = None,
        currency: str = "PHP",
    ):
        self._session_factory = session_factory
        self._pricing = pricing or PricingService()
        self._inventory = inventory or InventoryLedger()
        self._collab = collaborators or Collaborators()
        self._currency = currency

    def create_order(
        self,
        *,
        customer_id: str,
        items: List[Dict],
        actor: Actor,
        organization_id: Optional[str] = None,
        voucher_code: Optional[str] = None,
        voucher_proportional_share=None,
        source: str = SOURCE_WEB,
        request_id: Optional[str] = None,
        customer_info: Optional[Dict] = None,
    ) -> Dict:
        """Create one order for a single store.

        Pricing, stock deduction, voucher redemption and the order row all
        commit in the same transaction.
        """
        if not items:
            raise ValidationError("At least one item is required")
        if not customer_id:
            raise ValidationError("customer_id required")
        if actor.id != customer_id and not actor.is_privileged and source not in TRUSTED_SOURCES:
            raise SecurityError("Not allowed to place orders for another customer")
        if voucher_proportional_share is not None and not actor.is_privileged and source not in TRUSTED_SOURCES:
            raise SecurityError("Not allowed to set a voucher share")
        override_role = self._override_role(actor, source)
        now = utcnow()

        with self._session_factory() as session:
            if request_id:
                existing = session.query(Order).filter(Order.request_id == request_id).first()
                if existing:
                    return existing.to_dict()

            customer = session.query(User).filter(User.id == customer_id).first()
            if customer is None:
                raise NotFoundError("Customer not found")

            products = self._inventory.load_products(session, [it.get("product_id") for it in items])
            lines = self._price_lines(products, items, override_role)
            org_ids = {products[line.product_id].organization_id for line in lines}
            if len(org_ids) > 1:
                raise ValidationError("All items of an order must come from the same store")
            org_id = organization_id or next(iter(org_ids))
            if organization_id and org_ids != {organization_id}:
                raise ValidationError("Items do not belong to this store")

            self._inventory.check_available(products, lines)
            pricing = self._pricing.price(
                session,
                lines=lines,
                customer_id=customer_id,
                organization_id=org_id,
                now=now,
                voucher_code=voucher_code,
                voucher_proportional_share=voucher_proportional_share,
            )

            prefix = "MSG" if source == SOURCE_MESSENGER else "ORD"
            order_id = str(uuid4())
            embed = len(lines) <= EMBEDDED_ITEM_LIMIT
            paid_by_credit = pricing.paid_by_credit
            order = Order(
                id=order_id,
                order_number=self._unique_order_number(session, now, prefix),
                request_id=request_id,
                organization_id=org_id,
                customer_id=customer_id,
                customer_info=customer_info
                or {"email": customer.email, "name": customer.name, "phone": customer.phone},
                source=source,
                items=[line.to_dict() for line in lines] if embed else None,
                uses_item_rows=not embed,
                item_count=pricing.item_count,
                subtotal=pricing.subtotal,
                discount_amount=pricing.discount_amount,
                voucher_discount=pricing.voucher_discount,
                total_amount=pricing.total,
                currency=products[lines[0].product_id].currency or self._currency,
                status=PROCESSING if paid_by_credit else PENDING,
                payment_status=PAID if paid_by_credit else PAY_PENDING,
                recent_status_history=[],
                voucher_id=pricing.voucher.id if pricing.voucher else None,
                voucher_code=pricing.voucher.code if pricing.voucher else None,
                voucher_snapshot=pricing.voucher_snapshot,
                paid_at=now if paid_by_credit else None,
                updated_at=now,
            )
            append_history(
                order,
                actor_id=actor.id,
                previous=None,
                new=order.status,
                reason="Paid in full by voucher" if paid_by_credit else "Order placed",
                now=now,
            )
            session.add(order)
            if not embed:
                for line in lines:
                    session.add(self._item_row(order_id, line))

            self._inventory.deduct(products, lines)

            if pricing.voucher is not None:
                session.add(
                    VoucherUsage(
                        id=str(uuid4()),
                        voucher_id=pricing.voucher.id,
                        user_id=customer_id,
                        order_id=order_id,
                        discount_amount=pricing.voucher_discount,
                    )
                )
                # SQL-side increment so concurrent redemptions do not lose updates
                pricing.voucher.used_count = Voucher.used_count + 1

            voucher_note = f" (Voucher {order.voucher_code} applied: -{pricing.voucher_discount:.2f})" if pricing.voucher_discount > 0 else ""
            paid_note = " - Paid in full by voucher" if paid_by_credit else ""
            write_log(
                session,
                order_id,
                log_type=ORDER_CREATED,
                reason="Order created",
                message=f"Order placed with {len(lines)} item(s) totaling {pricing.total:.2f}{voucher_note}{paid_note}",
                actor_id=actor.id,
                is_system=actor.role == "system",
                is_public=True,
                new_value=order.status,
            )
            session.flush()
            log_event(
                "info",
                "order.created",
                order_id=order_id,
                order_number=order.order_number,
                items=len(lines),
                total=float(pricing.total),
                source=source,
                paid_by_credit=paid_by_credit,
            )
            result = order.to_dict()

        self._collab.safe_audit(
            "order.created",
            "info",
            {"order_id": order_id, "order_number": result["order_number"], "actor_id": actor.id},
        )
        return result

    def get_order(self, order_id: str) -> Dict:
        if not order_id:
            return {}
        with self._session_factory() as session:
            o = session.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).first()
            if not o:
                return {}
            data = o.to_dict()
            data["items"] = load_order_lines(session, o)
            return data

    def soft_delete(self, order_id: str, *, actor: Actor) -> None:
        if not actor.is_admin:
            raise SecurityError("Only admins can delete orders")
        with self._session_factory() as session:
            o = session.query(Order).filter(Order.id == order_id).first()
            if not o:
                raise NotFoundError("Order not found")
            o.is_deleted = True
            o.updated_at = utcnow()

    # ----- helpers -----------------------------------------------------------

    @staticmethod
    def _override_role(actor: Actor, source: str) -> Optional[str]:
        if source in TRUSTED_SOURCES:
            return SYSTEM_OVERRIDE
        if actor.is_privileged:
            return STAFF_OVERRIDE
        return None

    @staticmethod
    def _price_lines(products, items: List[Dict], override_role: Optional[str]) -> List[PricedLine]:
        lines = []
        for it in items:
            product = products.get(it.get("product_id"))
            if product is None or not product.is_active:
                raise NotFoundError("Product not found or inactive")
            quantity = ensure_positive_int(it.get("quantity"), "quantity")
            variant = None
            if it.get("variant_id"):
                variant = product.get_variant(it["variant_id"])
                if variant is None or not variant.is_active:
                    raise ValidationError(f"Variant not available for {product.name}")
            size = None
            if it.get("size_id"):
                size = variant.get_size(it["size_id"]) if variant is not None else None
                if size is None:
                    raise ValidationError(f"Size not available for {product.name}")
            override = it.get("price")
            if override is not None and override_role is None:
                raise SecurityError("Not allowed to override item price")
            lines.append(
                price_line(
                    product=product,
                    variant=variant,
                    size=size,
                    quantity=quantity,
                    override_price=override,
                    override_role=override_role,
                    customer_note=it.get("customer_note"),
                )
            )
        return lines

    @staticmethod
    def _unique_order_number(session, now: datetime, prefix: str) -> str:
        for _ in range(5):
            candidate = generate_order_number(now, prefix)
            if not session.query(Order.id).filter(Order.order_number == candidate).first():
                return candidate
        raise ValidationError("Could not allocate an order number, please retry")

    @staticmethod
    def _item_row(order_id: str, line: PricedLine) -> OrderItem:
        return OrderItem(
            id=str(uuid4()),
            order_id=order_id,
            product_id=line.product_id,
            variant_id=line.variant_id,
            size_id=line.size_id,
            product_name=line.product_name,
            variant_name=line.variant_name,
            size_label=line.size_label,
            quantity=line.quantity,
            price=line.price,
            original_price=line.original_price,
            applied_role=line.applied_role,
            customer_note=line.customer_note,
        )
