"""Provider webhook handling and checkout expiry.

Every provider event resolves to either a single order (bare order number)
or a checkout session (``checkout-<id>``), and every Payment row is keyed by
(order, provider, transaction id) so redelivered webhooks are no-ops.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Union
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from ..db.session import get_session
from ..errors import AuthenticationError, ValidationError
from ..models.checkout_session import CheckoutSession
from ..models.order import Order
from ..models.payment import Payment
from ..utils.money import from_minor, split_proportionally, to_minor
from ..utils.timeutil import utcnow
from .checkout_service import SESSION_CANCELLED, SESSION_EXPIRED, SESSION_PAID, SESSION_PENDING
from .collaborators import Collaborators, system_actor
from .logging import log_event, mask_token
from .order_state import CANCELLED, PAID, PAY_PENDING, PENDING, REFUNDED, OrderStateMachine
from .webhook_events import (
    PAYMONGO,
    XENDIT,
    IgnoredEvent,
    InvoiceExpired,
    PaymentFailed,
    PaymentSucceeded,
    WebhookEvent,
    parse_paymongo_event,
    parse_xendit_event,
    verify_paymongo_signature,
    verify_xendit_token,
)


VERIFIED = "VERIFIED"
MATCHED = "MATCHED"
MANUAL_REVIEW = "MANUAL_REVIEW"
CHECKOUT_PREFIX = "checkout-"

PAYMONGO_SIGNATURE_HEADER = "Paymongo-Signature"
XENDIT_TOKEN_HEADER = "X-Callback-Token"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


@dataclass
class WebhookResult:
    processed: bool
    reason: Optional[str] = None
    status_code: int = 200
    order_ids: List[str] = field(default_factory=list)
    payment_ids: List[str] = field(default_factory=list)
    checkout_id: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "processed": self.processed,
            "reason": self.reason,
            "order_ids": self.order_ids,
            "payment_ids": self.payment_ids,
        }


class ReconciliationService:
    def __init__(
        self,
        config,
        state_machine: Optional[OrderStateMachine] = None,
        session_factory=get_session,
        collaborators: Optional[Collaborators] = None,
    ):
        self._config = config
        self._collab = collaborators or Collaborators()
        self._session_factory = session_factory
        self._states = state_machine or OrderStateMachine(self._collab, session_factory=session_factory)
        self._system = system_actor(config.system_actor_id)

    # ----- entry point -------------------------------------------------------

    def handle_provider_webhook(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookResult:
        """Authenticate, parse and apply one provider callback."""
        event = self.parse_webhook(provider, raw_body, headers)
        return self.process_event(event)

    def parse_webhook(self, provider: str, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        if provider == PAYMONGO:
            if not verify_paymongo_signature(raw_body, _header(headers, PAYMONGO_SIGNATURE_HEADER), self._config.paymongo_webhook_secret):
                log_event("warning", "security.webhook_signature_invalid", provider=provider)
                raise AuthenticationError("Invalid signature")
        elif provider == XENDIT:
            if not verify_xendit_token(_header(headers, XENDIT_TOKEN_HEADER), self._config.xendit_callback_token):
                log_event(
                    "warning",
                    "security.webhook_token_invalid",
                    provider=provider,
                    token=mask_token(_header(headers, XENDIT_TOKEN_HEADER)),
                )
                raise AuthenticationError("Invalid callback token")
        else:
            raise ValidationError(f"Unknown provider: {provider}")
        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            raise ValidationError("Invalid JSON")
        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON")
        if provider == PAYMONGO:
            return parse_paymongo_event(payload)
        return parse_xendit_event(payload)

    def process_event(self, event: WebhookEvent) -> WebhookResult:
        if isinstance(event, IgnoredEvent):
            log_event("info", "webhook.ignored", provider=event.provider, event_type=event.event_type)
            return WebhookResult(processed=False, reason=event.reason)
        if isinstance(event, PaymentSucceeded):
            result = self._on_success(event)
        else:
            result = self._on_failure(event)
        severity = "info" if result.processed else "warning"
        self._collab.safe_audit(
            f"payment.webhook.{event.kind}",
            severity,
            {
                "provider": event.provider,
                "transaction_id": event.transaction_id,
                "external_id": event.external_id,
                "processed": result.processed,
                "reason": result.reason,
                "order_ids": result.order_ids,
            },
        )
        log_event(severity, f"webhook.{event.provider}.{event.kind}", processed=result.processed, reason=result.reason)
        return result

    # ----- success -----------------------------------------------------------

    def _on_success(self, event: PaymentSucceeded) -> WebhookResult:
        checkout_id, order_number, refusal = self._resolve_target(event.external_id, event.order_numbers)
        if refusal is not None:
            return refusal
        try:
            with self._session_factory() as session:
                if checkout_id:
                    cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
                    if cs is None:
                        return WebhookResult(processed=False, reason="Checkout session not found", status_code=404)
                    orders = self._session_orders(session, cs)
                else:
                    order = self._order_by_number(session, order_number)
                    if order is None:
                        return WebhookResult(processed=False, reason="Order not found", status_code=404)
                    orders = [order]
                    cs = self._single_order_session(session, order)
                if not orders:
                    return WebhookResult(processed=False, reason="No valid orders found", status_code=404)

                if self._payment_exists(session, [o.id for o in orders], event):
                    return WebhookResult(processed=True, reason="Payment already exists", order_ids=[o.id for o in orders])

                now = utcnow()
                weights = [to_minor(o.total_amount) for o in orders]
                amounts = split_proportionally(event.amount_minor, weights) if len(orders) > 1 else [event.amount_minor]
                fees = split_proportionally(event.fee_minor, weights) if len(orders) > 1 else [event.fee_minor]
                payment_ids = []
                for order, amount_minor, fee_minor in zip(orders, amounts, fees):
                    payment = self._record_payment(session, order, event, amount_minor, fee_minor, now)
                    payment_ids.append(payment.id)
                if cs is not None and cs.status == SESSION_PENDING:
                    cs.status = SESSION_PAID
                    cs.paid_at = now
                    cs.updated_at = now
                session.flush()
                order_ids = [o.id for o in orders]
                notices = [
                    {"order_id": o.id, "order_number": o.order_number, "customer_id": o.customer_id, "source": o.source}
                    for o in orders
                    if o.payment_status == PAID
                ]
        except IntegrityError:
            # a concurrent delivery of the same transaction won the insert
            log_event("info", "webhook.duplicate_race", provider=event.provider, transaction_id=event.transaction_id)
            return WebhookResult(processed=True, reason="Payment already exists")

        for notice in notices:
            self._collab.schedule(self._collab.safe_notify, 0, "payment_confirmed", notice)
            if notice["source"] == "MESSENGER":
                self._collab.schedule(self._collab.safe_notify, 0, "chat_payment_confirmed", notice)
        return WebhookResult(
            processed=True,
            order_ids=order_ids,
            payment_ids=payment_ids,
            checkout_id=checkout_id,
        )

    def _record_payment(self, session, order: Order, event: PaymentSucceeded, amount_minor: int, fee_minor: int, now: datetime) -> Payment:
        acceptable = order.status != CANCELLED and order.payment_status not in (PAID, REFUNDED)
        payment = Payment(
            id=str(uuid4()),
            order_id=order.id,
            payer_id=order.customer_id,
            organization_id=order.organization_id,
            amount=from_minor(amount_minor),
            processing_fee=from_minor(fee_minor),
            net_amount=from_minor(max(0, amount_minor - fee_minor)),
            currency=event.currency,
            payment_method=(event.payment_method or "ONLINE").upper(),
            payment_provider=event.provider.upper(),
            transaction_id=event.transaction_id,
            reference_no=f"{event.provider.upper()}-{event.transaction_id}",
            status=VERIFIED,
            status_history=[{"status": VERIFIED, "changed_at": now.isoformat(), "reason": "Provider webhook"}],
            reconciliation_status=MATCHED if acceptable else MANUAL_REVIEW,
            payment_date=now,
            updated_at=now,
        )
        session.add(payment)
        # surface the unique-key violation here rather than at commit
        session.flush()
        if acceptable:
            self._states.apply_payment_status(
                session,
                order,
                PAID,
                actor=self._system,
                reason=f"Payment confirmed via {event.provider}",
                now=now,
            )
        else:
            log_event(
                "warning",
                "payment.needs_review",
                order_id=order.id,
                status=order.status,
                payment_status=order.payment_status,
                transaction_id=event.transaction_id,
            )
        return payment

    # ----- failure / expiry --------------------------------------------------

    def _on_failure(self, event: Union[PaymentFailed, InvoiceExpired]) -> WebhookResult:
        checkout_id, order_number, refusal = self._resolve_target(event.external_id, ())
        if refusal is not None:
            return refusal
        reason = "Invoice expired" if isinstance(event, InvoiceExpired) else getattr(event, "reason", "Payment failed")
        with self._session_factory() as session:
            if checkout_id:
                cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
                if cs is None:
                    return WebhookResult(processed=False, reason="Checkout session not found", status_code=404)
                if cs.status in (SESSION_EXPIRED, SESSION_CANCELLED, SESSION_PAID):
                    return WebhookResult(processed=True, reason="Session already processed", checkout_id=cs.id)
                cancelled = self._expire_session(session, cs, reason)
                return WebhookResult(processed=True, order_ids=cancelled, checkout_id=cs.id)

            order = self._order_by_number(session, order_number)
            if order is None:
                return WebhookResult(processed=False, reason="Order not found", status_code=404)
            if order.status != PENDING or order.payment_status != PAY_PENDING:
                log_event("info", "webhook.order_not_pending", order_id=order.id, status=order.status)
                return WebhookResult(processed=True, reason="Order not pending", order_ids=[order.id])
            cs = self._single_order_session(session, order)
            if cs is not None and cs.status == SESSION_PENDING:
                cancelled = self._expire_session(session, cs, reason)
            else:
                self._states.cancel_in_session(session, order, reason="PAYMENT_FAILED", message=reason, actor=self._system)
                cancelled = [order.id]
            return WebhookResult(processed=True, order_ids=cancelled)

    def _expire_session(self, session, cs: CheckoutSession, reason: str) -> List[str]:
        now = utcnow()
        cancelled = []
        for order in self._session_orders(session, cs):
            if order.status == PENDING and order.payment_status == PAY_PENDING:
                self._states.cancel_in_session(session, order, reason="PAYMENT_FAILED", message=reason, actor=self._system, now=now)
                cancelled.append(order.id)
        cs.status = SESSION_EXPIRED
        cs.updated_at = now
        log_event("info", "checkout.expired", checkout_id=mask_token(cs.id), cancelled=len(cancelled), reason=reason)
        return cancelled

    def expire_checkout_sessions(self, now: Optional[datetime] = None) -> List[str]:
        """Expire pending sessions whose hosted payment page has lapsed."""
        now = now or utcnow()
        expired = []
        with self._session_factory() as session:
            rows = session.query(CheckoutSession).filter(CheckoutSession.status == SESSION_PENDING).all()
            for cs in rows:
                deadline = cs.provider_expires_at or cs.expires_at
                if deadline is not None and deadline < now:
                    self._expire_session(session, cs, "Checkout expired")
                    expired.append(cs.id)
        for checkout_id in expired:
            self._collab.safe_audit("checkout.expired", "info", {"checkout_id": checkout_id})
        return expired

    # ----- resolution --------------------------------------------------------

    def _resolve_target(self, external_id: Optional[str], order_numbers) -> tuple:
        """(checkout_id, order_number, refusal)"""
        if external_id:
            if external_id.startswith(CHECKOUT_PREFIX):
                return external_id[len(CHECKOUT_PREFIX):], None, None
            return None, external_id, None
        numbers = list(order_numbers or ())
        if len(numbers) == 1:
            return None, numbers[0], None
        if len(numbers) > 1:
            checkout_id = self._match_session_by_numbers(numbers)
            if checkout_id:
                return checkout_id, None, None
            log_event("warning", "webhook.unmatched_order_set", order_numbers=numbers)
            return None, None, WebhookResult(processed=False, reason="No checkout session matches these orders", status_code=404)
        return None, None, WebhookResult(processed=False, reason="No external ID")

    def _match_session_by_numbers(self, numbers: List[str]) -> Optional[str]:
        wanted = set(numbers)
        with self._session_factory() as session:
            orders = session.query(Order).filter(Order.order_number.in_(wanted)).all()
            if {o.order_number for o in orders} != wanted:
                return None
            order_ids = {o.id for o in orders}
            candidates = {o.checkout_id for o in orders if o.checkout_id}
            for checkout_id in candidates:
                cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
                if cs is not None and cs.status == SESSION_PENDING and set(cs.order_ids or []) == order_ids:
                    return cs.id
        return None

    @staticmethod
    def _order_by_number(session, order_number: Optional[str]) -> Optional[Order]:
        if not order_number:
            return None
        return session.query(Order).filter(Order.order_number == order_number, Order.is_deleted.is_(False)).first()

    @staticmethod
    def _session_orders(session, cs: CheckoutSession) -> List[Order]:
        ids = list(cs.order_ids or [])
        rows = {o.id: o for o in session.query(Order).filter(Order.id.in_(ids), Order.is_deleted.is_(False)).all()}
        return [rows[i] for i in ids if i in rows]

    @staticmethod
    def _single_order_session(session, order: Order) -> Optional[CheckoutSession]:
        if not order.checkout_id:
            return None
        cs = session.query(CheckoutSession).filter(CheckoutSession.id == order.checkout_id).first()
        if cs is None or list(cs.order_ids or []) != [order.id]:
            return None
        return cs

    @staticmethod
    def _payment_exists(session, order_ids: List[str], event: PaymentSucceeded) -> bool:
        return (
            session.query(Payment.id)
            .filter(
                Payment.order_id.in_(order_ids),
                Payment.payment_provider == event.provider.upper(),
                Payment.transaction_id == event.transaction_id,
            )
            .first()
            is not None
        )
