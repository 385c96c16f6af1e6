from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String, func
from .base import Base


class Voucher(Base):
    __tablename__ = "voucher"

    id = Column(String(36), primary_key=True)
    code = Column(String(64), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    organization_id = Column(String(36), nullable=True, index=True)  # None = platform-wide
    discount_type = Column(String(32), nullable=False)  # PERCENTAGE / FIXED_AMOUNT / FREE_SHIPPING / FREE_ITEM / REFUND
    discount_value = Column(Numeric(12, 2), nullable=False)
    max_discount_amount = Column(Numeric(12, 2), nullable=True)
    minimum_order_amount = Column(Numeric(12, 2), nullable=True)
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    usage_limit_per_user = Column(Integer, nullable=True)
    valid_from = Column(DateTime, nullable=True)
    valid_until = Column(DateTime, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    applicable_products = Column(JSON, nullable=True)
    assigned_to_user_id = Column(String(36), nullable=True)
    created_by_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    def snapshot(self) -> dict:
        return {
            "code": self.code,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_value": str(self.discount_value),
            "max_discount_amount": str(self.max_discount_amount) if self.max_discount_amount is not None else None,
        }


class VoucherUsage(Base):
    __tablename__ = "voucher_usage"

    id = Column(String(36), primary_key=True)
    voucher_id = Column(String(36), ForeignKey("voucher.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)
    order_id = Column(String(36), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
