from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, Text, func
from .base import Base


class Order(Base):
    __tablename__ = "order"

    id = Column(String(36), primary_key=True)
    order_number = Column(String(32), nullable=False, unique=True)
    request_id = Column(String(64), nullable=True, unique=True)  # client idempotency key
    organization_id = Column(String(36), nullable=True, index=True)
    customer_id = Column(String(36), nullable=False, index=True)
    customer_info = Column(JSON, nullable=True)
    source = Column(String(16), nullable=False, default="WEB")  # WEB / MESSENGER
    items = Column(JSON, nullable=True)  # embedded snapshot when the order is small
    uses_item_rows = Column(Boolean, nullable=False, default=False)
    item_count = Column(Integer, nullable=False, default=0)
    subtotal = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    voucher_discount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(32), nullable=False)
    payment_status = Column(String(32), nullable=False)
    recent_status_history = Column(JSON, nullable=False, default=list)
    voucher_id = Column(String(36), nullable=True)
    voucher_code = Column(String(64), nullable=True)
    voucher_snapshot = Column(JSON, nullable=True)
    checkout_id = Column(String(36), nullable=True, index=True)
    payment_provider = Column(String(16), nullable=True)
    provider_checkout_id = Column(String(128), nullable=True)
    provider_checkout_url = Column(Text, nullable=True)
    provider_checkout_expires_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(32), nullable=True)
    cancellation_message = Column(Text, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=True)

    @property
    def customer_email(self):
        return (self.customer_info or {}).get("email")

    def to_dict(self) -> dict:
        return {
            "order_id": self.id,
            "order_number": self.order_number,
            "organization_id": self.organization_id,
            "customer_id": self.customer_id,
            "source": self.source,
            "item_count": self.item_count,
            "subtotal": float(self.subtotal or 0),
            "discount_amount": float(self.discount_amount or 0),
            "total_amount": float(self.total_amount or 0),
            "currency": self.currency,
            "status": self.status,
            "payment_status": self.payment_status,
            "voucher_code": self.voucher_code,
            "checkout_id": self.checkout_id,
            "payment_url": self.provider_checkout_url,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "recent_status_history": self.recent_status_history or [],
        }


class OrderItem(Base):
    """Line item row, used instead of ``Order.items`` for large orders."""

    __tablename__ = "order_item"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("order.id"), nullable=False, index=True)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), nullable=True)
    size_id = Column(String(36), nullable=True)
    product_name = Column(String(255), nullable=True)
    variant_name = Column(String(128), nullable=True)
    size_label = Column(String(64), nullable=True)
    quantity = Column(Integer, nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    original_price = Column(Numeric(12, 2), nullable=False)
    applied_role = Column(String(32), nullable=False, default="STANDARD")
    customer_note = Column(Text, nullable=True)

    def to_line(self) -> dict:
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


class OrderLog(Base):
    __tablename__ = "order_log"

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("order.id"), nullable=False, index=True)
    log_type = Column(String(32), nullable=False)
    reason = Column(String(255), nullable=False)
    message = Column(Text, nullable=True)
    actor_id = Column(String(36), nullable=True)
    is_system = Column(Boolean, nullable=False, default=False)
    is_public = Column(Boolean, nullable=False, default=False)
    previous_value = Column(String(64), nullable=True)
    new_value = Column(String(64), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
