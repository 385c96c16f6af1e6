from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text, func
from .base import Base


class CheckoutSession(Base):
    """One provider-hosted payment page covering one or more orders."""

    __tablename__ = "checkout_session"

    id = Column(String(36), primary_key=True)  # uuid4, doubles as the opaque checkout token
    customer_id = Column(String(36), nullable=False, index=True)
    order_ids = Column(JSON, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default="PENDING")  # PENDING / PAID / EXPIRED / CANCELLED
    expires_at = Column(DateTime, nullable=False)
    invoice_created = Column(Boolean, nullable=False, default=False)
    # NOT_STARTED -> INTENT_CLAIMED -> EXTERNAL_CALL_IN_FLIGHT -> RESULT_RECORDED, or FAILED
    invoice_state = Column(String(32), nullable=False, default="NOT_STARTED")
    invoice_attempts = Column(Integer, nullable=False, default=0)
    last_invoice_attempt_at = Column(DateTime, nullable=True)
    payment_provider = Column(String(16), nullable=True)
    provider_resource_id = Column(String(128), nullable=True)
    provider_url = Column(Text, nullable=True)
    provider_expires_at = Column(DateTime, nullable=True)
    flagged_stuck_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=True)

    @property
    def has_provider_result(self) -> bool:
        return bool(self.provider_resource_id and self.provider_url)

    def provider_result(self) -> dict:
        return {
            "provider": self.payment_provider,
            "provider_resource_id": self.provider_resource_id,
            "payment_url": self.provider_url,
            "expires_at": self.provider_expires_at.isoformat() if self.provider_expires_at else None,
        }
