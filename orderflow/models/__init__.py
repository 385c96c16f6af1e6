from .base import Base
from .chat_session import ChatOrderSession, EmailVerificationCode
from .checkout_session import CheckoutSession
from .order import Order, OrderItem, OrderLog
from .payment import Payment
from .product import Product, ProductSize, ProductVariant
from .user import User
from .voucher import Voucher, VoucherUsage

__all__ = [
    "Base",
    "ChatOrderSession",
    "CheckoutSession",
    "EmailVerificationCode",
    "Order",
    "OrderItem",
    "OrderLog",
    "Payment",
    "Product",
    "ProductSize",
    "ProductVariant",
    "User",
    "Voucher",
    "VoucherUsage",
]
