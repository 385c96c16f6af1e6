"""
聊天訊息產生器
Outgoing Chatwoot payloads; option lists use the ``input_select`` content type.
"""
from typing import Dict, List, Optional

from .money import format_peso


CANCEL_ITEM = {"title": "❌ Cancel Order", "value": "cancel"}
BACK_ITEM = {"title": "⬅️ Back to variants", "value": "back_variant"}
SKIP_NOTES_ITEM = {"title": "⏩ Skip (No notes)", "value": "skip_notes"}


def text_message(content: str) -> Dict:
    return {"content": content, "content_type": "text", "message_type": "outgoing", "private": False}


def input_select_message(content: str, items: List[Dict]) -> Dict:
    return {
        "content": content,
        "content_type": "input_select",
        "content_attributes": {"items": items},
        "message_type": "outgoing",
        "private": False,
    }


def variant_option_title(name: str, price) -> str:
    return f"{name} - {format_peso(price)}"


def size_option_title(label: str, price) -> str:
    if price is None:
        return label
    return f"{label} (+{format_peso(price)})"


def build_variant_selection(product_name: str, options: List[Dict]) -> Dict:
    """``options``: dicts with ``id``, ``name`` and ``price``."""
    items = [{"title": variant_option_title(o["name"], o["price"]), "value": f"variant_{o['id']}"} for o in options]
    items.append(dict(CANCEL_ITEM))
    return input_select_message(f"📦 {product_name}\n\nPlease select a variant:", items)


def build_size_selection(product_name: str, variant_name: str, options: List[Dict]) -> Dict:
    items = [{"title": size_option_title(o["label"], o.get("price")), "value": f"size_{o['id']}"} for o in options]
    items.append(dict(BACK_ITEM))
    items.append(dict(CANCEL_ITEM))
    return input_select_message(f"📦 {product_name} - {variant_name}\n\nPlease select a size:", items)


def _selection(variant_name: Optional[str], size_label: Optional[str]) -> str:
    name = variant_name or "Selected"
    return f"{name} ({size_label})" if size_label else name


def build_quantity_prompt(product_name: str, variant_name: Optional[str], size_label: Optional[str] = None) -> Dict:
    return text_message(
        f"📦 {product_name} - {_selection(variant_name, size_label)}\n\n"
        "How many would you like to order? Please reply with a number (1-99):"
    )


def build_notes_prompt() -> Dict:
    return input_select_message(
        "📝 Any special notes or instructions for your order?\n\nYou can type your notes or select an option:",
        [dict(SKIP_NOTES_ITEM), dict(CANCEL_ITEM)],
    )


def build_email_prompt() -> Dict:
    return text_message(
        "📧 To complete your order, please provide your email address:\n\n"
        "(We will send you an OTP code to verify your email)"
    )


def build_otp_prompt(email: str) -> Dict:
    return text_message(f"📧 We sent a verification code to {email}.\n\nPlease enter the 6-digit code:")


def build_payment_link(
    product_name: str,
    variant_name: Optional[str],
    size_label: Optional[str],
    quantity: int,
    total,
    payment_url: str,
) -> Dict:
    return text_message(
        "✅ Order Created!\n\n"
        f"📦 {product_name}\n"
        f"   {_selection(variant_name, size_label)} x{quantity}\n\n"
        f"💰 Total: {format_peso(total)}\n\n"
        f"🔗 Pay here: {payment_url}\n\n"
        "Thank you for your order! You will receive a confirmation once payment is received."
    )


def build_payment_confirmed(order_number: str) -> Dict:
    return text_message(
        "🎉 Payment Received!\n\n"
        f"Your order {order_number} has been confirmed and is now being processed.\n\n"
        "We'll keep you updated on the status. Thank you!"
    )


def build_error(message: str) -> Dict:
    return text_message(f"❌ {message}")


def build_cancelled() -> Dict:
    return text_message(
        "❌ Order cancelled.\n\nYou can start a new order anytime by sending a product code (e.g., CODE: PROD123)."
    )
