"""
聊天下單流程
A customer types ``CODE: <product code>`` in a chat conversation and is walked
through variant, size, quantity, notes, e-mail and OTP before a MESSENGER
order and its payment link are created.

Each conversation has at most one active session. Every reply extends the
session's absolute expiry; a session idle for longer than
``chat_session_idle_minutes`` is closed on the next message.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from sqlalchemy import func, or_

from ..config import AppConfig
from ..db.session import get_session
from ..errors import NotFoundError, OrderflowError, SecurityError, ValidationError
from ..models.chat_session import ChatOrderSession
from ..models.order import Order
from ..models.product import Product, ProductSize, ProductVariant
from ..utils import chat_messages as msgs
from ..utils.timeutil import utcnow
from .checkout_service import CheckoutService
from .collaborators import Collaborators, system_actor
from .email_verification import EXPIRED, MAX_ATTEMPTS, NOT_FOUND, EmailVerificationService
from .inventory_service import PREORDER
from .logging import log_event
from .order_service import SOURCE_MESSENGER, OrderService
from .pricing_service import normalize_code, resolve_base_price


VARIANT_SELECTION = "VARIANT_SELECTION"
SIZE_SELECTION = "SIZE_SELECTION"
QUANTITY_INPUT = "QUANTITY_INPUT"
NOTES_INPUT = "NOTES_INPUT"
EMAIL_INPUT = "EMAIL_INPUT"
OTP_VERIFICATION = "OTP_VERIFICATION"
CHECKOUT = "CHECKOUT"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"

TRIGGER_RE = re.compile(r"^CODE:\s*(.+)$", re.IGNORECASE)
VARIANT_TITLE_RE = re.compile(r"^(.+?)\s*[—-]\s*₱[\d,.]+$")
SIZE_TITLE_RE = re.compile(r"^(.+?)(?:\s*\(\+₱[\d,.]+\))?$")

MAX_QUANTITY = 99
QUANTITY_RE = re.compile(r"[0-9]{1,2}")


@dataclass
class ChatContext:
    account_id: str
    conversation_id: str
    contact_id: str
    contact_name: Optional[str] = None


def is_cancel(text: str) -> bool:
    return "cancel" in (text or "").lower()


def is_skip_notes(text: str) -> bool:
    value = (text or "").strip().lower()
    return value == "skip_notes" or "skip" in value or "no notes" in value


def match_option(text: str, options: Sequence, prefix: str, name_of: Callable, title_re) -> Optional[object]:
    """Resolve a chat reply to one of ``options``.

    Button tokens (``<prefix><id>``) match by id. Typed replies have the
    price suffix stripped and then match by exact name, case-insensitive
    name, and finally by the option name appearing inside the reply.
    """
    value = (text or "").strip()
    if value.startswith(prefix):
        wanted = value[len(prefix):]
        return next((o for o in options if o.id == wanted), None)
    m = title_re.match(value)
    name = (m.group(1) if m else value).strip()
    found = next((o for o in options if name_of(o) == name), None)
    if found is not None:
        return found
    lowered = name.lower()
    found = next((o for o in options if name_of(o).lower() == lowered), None)
    if found is not None:
        return found
    contained = [o for o in options if name_of(o).lower() in lowered]
    if not contained:
        return None
    return max(contained, key=lambda o: len(name_of(o)))


def _variant_in_stock(variant: ProductVariant) -> bool:
    # 款式沒有庫存數時看尺寸庫存
    if variant.inventory is None:
        return not variant.sizes or any(s.inventory is None or s.inventory > 0 for s in variant.sizes)
    return variant.inventory > 0


def available_variants(product: Product) -> List[ProductVariant]:
    preorder = product.inventory_type == PREORDER
    return [v for v in product.variants if v.is_active and (preorder or _variant_in_stock(v))]


def available_sizes(product: Product, variant: ProductVariant) -> List[ProductSize]:
    if product.inventory_type == PREORDER:
        return list(variant.sizes)
    return [s for s in variant.sizes if s.inventory is None or s.inventory > 0]


class ConversationService:
    def __init__(
        self,
        config: AppConfig,
        orders: OrderService,
        checkout: CheckoutService,
        verification: Optional[EmailVerificationService] = None,
        session_factory=get_session,
        collaborators: Optional[Collaborators] = None,
    ):
        self._config = config
        self._orders = orders
        self._checkout = checkout
        self._session_factory = session_factory
        self._collab = collaborators or Collaborators()
        self._verification = verification or EmailVerificationService(config, session_factory, self._collab)

    # ----- entry points ------------------------------------------------------

    def handle_message(
        self,
        *,
        account_id,
        conversation_id,
        contact_id,
        content: str,
        contact_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict:
        """Route one incoming customer message. ``handled`` is False when no order flow owns it."""
        now = now or utcnow()
        ctx = ChatContext(str(account_id), str(conversation_id), str(contact_id), contact_name)
        text = (content or "").strip()

        trigger = TRIGGER_RE.match(text)
        if trigger:
            return self.start_order(ctx, trigger.group(1).strip(), now=now)

        with self._session_factory() as session:
            chat = self._active(session, ctx.conversation_id)
            if chat is None:
                return {"handled": False}
            chat_id, step = chat.id, chat.step
            if self._is_expired(chat, now):
                self._close(chat, CANCELLED, now)
                outcome = (CANCELLED, [msgs.build_error("Session expired. Please start a new order.")])
            elif is_cancel(text):
                self._close(chat, CANCELLED, now)
                outcome = (CANCELLED, [msgs.build_cancelled()])
            else:
                self._touch(chat, now)
                outcome = None

        if outcome is None:
            handler = {
                VARIANT_SELECTION: self._on_variant,
                SIZE_SELECTION: self._on_size,
                QUANTITY_INPUT: self._on_quantity,
                NOTES_INPUT: self._on_notes,
                EMAIL_INPUT: self._on_email,
                OTP_VERIFICATION: self._on_otp,
                CHECKOUT: self._on_checkout_retry,
            }[step]
            outcome = handler(chat_id, text, ctx, now)

        new_step, replies = outcome
        self._send(ctx, replies)
        log_event("info", "chat.step", conversation_id=ctx.conversation_id, session_id=chat_id, step=new_step)
        return {"handled": True, "session_id": chat_id, "step": new_step}

    def start_order(self, ctx: ChatContext, code: str, now: Optional[datetime] = None) -> Dict:
        now = now or utcnow()
        with self._session_factory() as session:
            product = (
                session.query(Product)
                .filter(func.upper(Product.code) == normalize_code(code), Product.is_active.is_(True))
                .first()
            )
            if product is None:
                replies = [msgs.build_error(f"Product {code} not found. Please check the code and try again.")]
                self._send(ctx, replies)
                return {"handled": True, "session_id": None, "step": None}

            # 同一個對話只保留一個進行中的訂單流程
            session.query(ChatOrderSession).filter(
                ChatOrderSession.conversation_id == ctx.conversation_id,
                ChatOrderSession.is_active.is_(True),
            ).update({"is_active": False, "step": CANCELLED}, synchronize_session=False)

            chat = ChatOrderSession(
                id=str(uuid4()),
                conversation_id=ctx.conversation_id,
                account_id=ctx.account_id,
                contact_id=ctx.contact_id,
                product_id=product.id,
                product_code=product.code,
                product_name=product.name,
                is_active=True,
                last_activity_at=now,
                expires_at=now + timedelta(minutes=self._config.chat_session_ttl_minutes),
                step=VARIANT_SELECTION,
            )
            options = available_variants(product)
            if product.variants and not options:
                replies = [msgs.build_error(f"Sorry, {product.name} is currently out of stock.")]
                self._send(ctx, replies)
                return {"handled": True, "session_id": None, "step": None}
            if options:
                replies = [msgs.build_variant_selection(product.name, self._variant_options(product, options))]
            else:
                chat.unit_price = resolve_base_price(product, None, None)
                chat.step = QUANTITY_INPUT
                replies = [msgs.build_quantity_prompt(product.name, None)]
            session.add(chat)
            session.flush()
            chat_id, step = chat.id, chat.step

        self._send(ctx, replies)
        log_event("info", "chat.order_started", conversation_id=ctx.conversation_id, session_id=chat_id, product_code=code)
        return {"handled": True, "session_id": chat_id, "step": step}

    def expire_chat_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Close active sessions past their absolute expiry or idle timeout."""
        now = now or utcnow()
        idle_cutoff = now - timedelta(minutes=self._config.chat_session_idle_minutes)
        with self._session_factory() as session:
            rows = (
                session.query(ChatOrderSession)
                .filter(
                    ChatOrderSession.is_active.is_(True),
                    or_(ChatOrderSession.expires_at <= now, ChatOrderSession.last_activity_at <= idle_cutoff),
                )
                .all()
            )
            for chat in rows:
                self._close(chat, CANCELLED, now)
            expired = [chat.id for chat in rows]
        if expired:
            log_event("info", "chat.sessions_expired", count=len(expired))
        return expired

    def send_payment_confirmation(self, payload: Dict) -> bool:
        """Listener for ``chat_payment_confirmed`` notifications."""
        order_id = payload.get("order_id")
        with self._session_factory() as session:
            chat = session.query(ChatOrderSession).filter(ChatOrderSession.order_id == order_id).first()
            if chat is None:
                return False
            order_number = payload.get("order_number")
            if not order_number:
                order = session.query(Order).filter(Order.id == order_id).first()
                order_number = order.order_number if order is not None else ""
            ctx = ChatContext(chat.account_id, chat.conversation_id, chat.contact_id)
        self._send(ctx, [msgs.build_payment_confirmed(order_number)])
        return True

    # ----- step handlers -----------------------------------------------------

    def _on_variant(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        with self._session_factory() as session:
            chat, product = self._load(session, chat_id)
            variant = match_option(text, available_variants(product), "variant_", lambda v: v.name, VARIANT_TITLE_RE)
            if variant is None:
                return chat.step, [msgs.build_error("Invalid variant selection. Please try again.")]
            chat.variant_id = variant.id
            chat.variant_name = variant.name
            chat.size_id = None
            chat.size_label = None
            sizes = available_sizes(product, variant)
            if sizes:
                chat.step = SIZE_SELECTION
                options = [{"id": s.id, "label": s.label, "price": s.price} for s in sizes]
                return chat.step, [msgs.build_size_selection(product.name, variant.name, options)]
            chat.unit_price = resolve_base_price(product, variant, None)
            chat.step = QUANTITY_INPUT
            return chat.step, [msgs.build_quantity_prompt(product.name, variant.name)]

    def _on_size(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        with self._session_factory() as session:
            chat, product = self._load(session, chat_id)
            lowered = text.lower()
            if text == "back_variant" or "back" in lowered:
                chat.variant_id = None
                chat.variant_name = None
                chat.step = VARIANT_SELECTION
                options = self._variant_options(product, available_variants(product))
                return chat.step, [msgs.build_variant_selection(product.name, options)]
            variant = product.get_variant(chat.variant_id)
            sizes = available_sizes(product, variant) if variant is not None else []
            size = match_option(text, sizes, "size_", lambda s: s.label, SIZE_TITLE_RE)
            if size is None:
                return chat.step, [msgs.build_error("Invalid size selection. Please try again.")]
            chat.size_id = size.id
            chat.size_label = size.label
            chat.unit_price = resolve_base_price(product, variant, size)
            chat.step = QUANTITY_INPUT
            return chat.step, [msgs.build_quantity_prompt(product.name, variant.name, size.label)]

    def _on_quantity(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            quantity = int(text) if QUANTITY_RE.fullmatch(text.strip()) else 0
            if not 1 <= quantity <= MAX_QUANTITY:
                return chat.step, [msgs.build_error("Please enter a valid quantity between 1 and 99.")]
            chat.quantity = quantity
            chat.step = NOTES_INPUT
            return chat.step, [msgs.build_notes_prompt()]

    def _on_notes(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            chat.notes = None if is_skip_notes(text) else text
            if chat.email and chat.customer_id:
                chat.step = CHECKOUT
            else:
                chat.step = EMAIL_INPUT
                return chat.step, [msgs.build_email_prompt()]
        return self._complete(chat_id, ctx, now)

    def _on_email(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        try:
            self._verification.issue_code(text, contact_id=ctx.contact_id, now=now)
        except ValidationError as exc:
            return EMAIL_INPUT, [msgs.build_error(exc.message)]
        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            chat.email = text.strip().lower()
            chat.step = OTP_VERIFICATION
            return chat.step, [msgs.build_otp_prompt(chat.email)]

    def _on_otp(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            email = chat.email
        result = self._verification.verify_code(email, text, now=now)
        if not result.success:
            with self._session_factory() as session:
                chat, _ = self._load(session, chat_id)
                if result.reason == MAX_ATTEMPTS:
                    self._close(chat, CANCELLED, now)
                    return CANCELLED, [msgs.build_error("Too many incorrect attempts. Please start a new order.")]
                if result.reason in (EXPIRED, NOT_FOUND):
                    chat.email = None
                    chat.step = EMAIL_INPUT
                    return chat.step, [msgs.build_error("Your code has expired. Please enter your email address again.")]
                return chat.step, [msgs.build_error(f"Invalid code. {result.attempts_remaining} attempts remaining.")]

        user_id = self._verification.get_or_create_user(email, contact_id=ctx.contact_id, name=ctx.contact_name)
        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            chat.customer_id = user_id
            chat.step = CHECKOUT
        return self._complete(chat_id, ctx, now)

    def _on_checkout_retry(self, chat_id: str, text: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        return self._complete(chat_id, ctx, now)

    def _complete(self, chat_id: str, ctx: ChatContext, now: datetime) -> Tuple[str, List[Dict]]:
        """Create the order (idempotent per chat session) and send its payment link."""
        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            item = {
                "product_id": chat.product_id,
                "variant_id": chat.variant_id,
                "size_id": chat.size_id,
                "quantity": chat.quantity,
                "price": chat.unit_price,
                "customer_note": chat.notes,
            }
            customer_id = chat.customer_id
            summary = (chat.product_name, chat.variant_name, chat.size_label, chat.quantity)
            customer_info = {"email": chat.email, "name": ctx.contact_name, "chat_contact_id": chat.contact_id}

        actor = system_actor(self._config.system_actor_id)
        try:
            order = self._orders.create_order(
                customer_id=customer_id,
                items=[item],
                actor=actor,
                source=SOURCE_MESSENGER,
                request_id=f"chat-{chat_id}",
                customer_info=customer_info,
            )
        except (ValidationError, NotFoundError, SecurityError) as exc:
            log_event("warning", "chat.order_failed", session_id=chat_id, error=exc.message)
            with self._session_factory() as session:
                chat, _ = self._load(session, chat_id)
                self._close(chat, CANCELLED, now)
            return CANCELLED, [msgs.build_error(f"Sorry, we could not place your order: {exc.message}")]

        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            chat.order_id = order["order_id"]

        try:
            invoice = self._checkout.create_single_order_invoice(order["order_id"], actor=actor)
        except OrderflowError as exc:
            # order stays; the next message in this conversation retries the link
            log_event("error", "chat.payment_link_failed", session_id=chat_id, order_id=order["order_id"], error=exc.message)
            return CHECKOUT, [msgs.build_error("We could not create your payment link. Please reply to try again.")]

        with self._session_factory() as session:
            chat, _ = self._load(session, chat_id)
            self._close(chat, COMPLETED, now)
        product_name, variant_name, size_label, quantity = summary
        reply = msgs.build_payment_link(
            product_name, variant_name, size_label, quantity, order["total_amount"], invoice["payment_url"]
        )
        log_event("info", "chat.order_completed", session_id=chat_id, order_id=order["order_id"])
        return COMPLETED, [reply]

    # ----- helpers -----------------------------------------------------------

    @staticmethod
    def _active(session, conversation_id: str) -> Optional[ChatOrderSession]:
        return (
            session.query(ChatOrderSession)
            .filter(ChatOrderSession.conversation_id == conversation_id, ChatOrderSession.is_active.is_(True))
            .order_by(ChatOrderSession.last_activity_at.desc())
            .first()
        )

    @staticmethod
    def _load(session, chat_id: str) -> Tuple[ChatOrderSession, Product]:
        chat = session.query(ChatOrderSession).filter(ChatOrderSession.id == chat_id).first()
        if chat is None:
            raise NotFoundError("Chat session not found")
        product = session.query(Product).filter(Product.id == chat.product_id).first()
        return chat, product

    def _is_expired(self, chat: ChatOrderSession, now: datetime) -> bool:
        idle = timedelta(minutes=self._config.chat_session_idle_minutes)
        return now >= chat.expires_at or now - chat.last_activity_at > idle

    def _touch(self, chat: ChatOrderSession, now: datetime) -> None:
        chat.last_activity_at = now
        chat.expires_at = now + timedelta(minutes=self._config.chat_session_ttl_minutes)

    @staticmethod
    def _close(chat: ChatOrderSession, step: str, now: datetime) -> None:
        chat.step = step
        chat.is_active = False
        chat.last_activity_at = now

    @staticmethod
    def _variant_options(product: Product, variants: List[ProductVariant]) -> List[Dict]:
        return [{"id": v.id, "name": v.name, "price": resolve_base_price(product, v, None)} for v in variants]

    def _send(self, ctx: ChatContext, replies: List[Dict]) -> None:
        for reply in replies:
            self._collab.send_chat_message(
                ctx.account_id, ctx.conversation_id, reply["content"], reply.get("content_attributes")
            )
