from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text, func
from .base import Base


class ChatOrderSession(Base):
    """State of an order being collected through a chat conversation."""

    __tablename__ = "chat_order_session"

    id = Column(String(36), primary_key=True)
    conversation_id = Column(String(64), nullable=False, index=True)
    account_id = Column(String(64), nullable=False)
    contact_id = Column(String(64), nullable=False)
    product_id = Column(String(36), nullable=False)
    product_code = Column(String(64), nullable=True)
    product_name = Column(String(255), nullable=True)
    variant_id = Column(String(36), nullable=True)
    variant_name = Column(String(128), nullable=True)
    size_id = Column(String(36), nullable=True)
    size_label = Column(String(64), nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=True)
    quantity = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    email = Column(String(255), nullable=True)
    customer_id = Column(String(36), nullable=True)
    step = Column(String(32), nullable=False)
    order_id = Column(String(36), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=False)
    last_activity_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class EmailVerificationCode(Base):
    __tablename__ = "email_verification_code"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=False, unique=True)
    code = Column(String(6), nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    contact_id = Column(String(64), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
