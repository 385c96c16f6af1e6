from sqlalchemy import Column, DateTime, ForeignKey, JSON, Numeric, String, Text, UniqueConstraint, func
from .base import Base


class Payment(Base):
    __tablename__ = "payment"
    __table_args__ = (
        # webhook retries must not book the same provider transaction twice
        UniqueConstraint("order_id", "payment_provider", "transaction_id", name="uq_payment_order_provider_txn"),
    )

    id = Column(String(36), primary_key=True)
    order_id = Column(String(36), ForeignKey("order.id"), nullable=False, index=True)
    payer_id = Column(String(36), nullable=True)
    organization_id = Column(String(36), nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    processing_fee = Column(Numeric(12, 2), nullable=False, default=0)
    net_amount = Column(Numeric(12, 2), nullable=False)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False)
    payment_method = Column(String(32), nullable=False)
    payment_provider = Column(String(16), nullable=False)  # PAYMONGO / XENDIT / MANUAL
    transaction_id = Column(String(128), nullable=True)
    reference_no = Column(String(128), nullable=False, index=True)
    status = Column(String(32), nullable=False)
    status_history = Column(JSON, nullable=False, default=list)
    reconciliation_status = Column(String(32), nullable=False, default="PENDING")
    notes = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    payment_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "payment_id": self.id,
            "order_id": self.order_id,
            "amount": float(self.amount),
            "processing_fee": float(self.processing_fee or 0),
            "net_amount": float(self.net_amount),
            "refunded_amount": float(self.refunded_amount or 0),
            "currency": self.currency,
            "payment_provider": self.payment_provider,
            "transaction_id": self.transaction_id,
            "reference_no": self.reference_no,
            "status": self.status,
            "reconciliation_status": self.reconciliation_status,
        }
