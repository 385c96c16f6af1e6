"""Checkout sessions and the at-most-once guard around provider checkout creation.

The provider call cannot share a transaction with the database, so invoice
creation runs in three steps:

1. claim: one conditional UPDATE flips ``invoice_created`` and bumps the
   rate-limit counter; only one caller can win it,
2. the provider call, outside any transaction,
3. record: provider id/url/expiry are written to the session and its orders.

``invoice_state`` tracks which step a session is in so a sweep can flag the
ones left behind by a crash between 1 and 3.
"""

import time
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import case, or_, update

from ..db.session import get_session
from ..errors import ExternalProviderError, NotFoundError, RateLimitError, SecurityError, ValidationError
from ..models.checkout_session import CheckoutSession
from ..models.order import Order
from ..utils.money import quantize, to_minor
from ..utils.timeutil import utcnow
from ..utils.validators import is_uuid_v4
from .collaborators import Actor, Collaborators
from .logging import log_event, mask_token
from .order_state import PAY_PENDING, PENDING, load_order_lines
from .payment_providers import CheckoutRequest, build_line_items


SESSION_PENDING = "PENDING"
SESSION_PAID = "PAID"
SESSION_EXPIRED = "EXPIRED"
SESSION_CANCELLED = "CANCELLED"

NOT_STARTED = "NOT_STARTED"
INTENT_CLAIMED = "INTENT_CLAIMED"
EXTERNAL_CALL_IN_FLIGHT = "EXTERNAL_CALL_IN_FLIGHT"
RESULT_RECORDED = "RESULT_RECORDED"
FAILED = "FAILED"
IN_PROGRESS_STATES = (INTENT_CLAIMED, EXTERNAL_CALL_IN_FLIGHT)

REASON_ALREADY_CREATED = "already created"
REASON_RATE_LIMITED = "Rate limit exceeded"
REASON_NOT_FOUND = "Checkout session not found"


@dataclass
class ClaimResult:
    success: bool
    reason: Optional[str] = None


def checkout_reference(session: CheckoutSession, order_numbers: List[str]) -> str:
    """External reference sent to the provider and echoed back by its webhooks."""
    if len(order_numbers) == 1:
        return order_numbers[0]
    return f"checkout-{session.id}"


class CheckoutService:
    def __init__(
        self,
        config,
        provider,
        session_factory=get_session,
        collaborators: Optional[Collaborators] = None,
        sleep=time.sleep,
    ):
        self._config = config
        self._provider = provider
        self._session_factory = session_factory
        self._collab = collaborators or Collaborators()
        self._sleep = sleep

    # ----- sessions ----------------------------------------------------------

    def create_session(self, *, customer_id: str, order_ids: List[str], actor: Actor) -> Dict:
        if not order_ids:
            raise ValidationError("order_ids required")
        if actor.id != customer_id and not actor.is_privileged:
            raise SecurityError("Not allowed to check out for another customer")
        unique_ids = list(dict.fromkeys(order_ids))
        now = utcnow()
        with self._session_factory() as session:
            orders = session.query(Order).filter(Order.id.in_(unique_ids), Order.is_deleted.is_(False)).all()
            if len(orders) != len(unique_ids):
                raise NotFoundError("Order not found")
            currencies = {o.currency for o in orders}
            if len(currencies) > 1:
                raise ValidationError("Orders in one checkout must share a currency")
            for o in orders:
                if o.customer_id != customer_id:
                    raise SecurityError("Order does not belong to this customer")
                if o.status != PENDING or o.payment_status != PAY_PENDING:
                    raise ValidationError(f"Order {o.order_number} is not awaiting payment")
            current = self._pending_sessions(session, orders)
            live = [cs for cs in current if self._is_live(cs, now)]
            if live:
                # one payable checkout per order
                if len(live) > 1 or set(live[0].order_ids or []) != set(unique_ids):
                    raise ValidationError("Some of these orders already have an active checkout")
                log_event("info", "checkout.session_reused", checkout_id=mask_token(live[0].id))
                return {
                    "checkout_id": live[0].id,
                    "total_amount": float(live[0].total_amount),
                    "expires_at": live[0].expires_at.isoformat(),
                }
            for stale in current:
                stale.status = SESSION_EXPIRED
                stale.updated_at = now
                log_event("info", "checkout.session_superseded", checkout_id=mask_token(stale.id))
            total = quantize(sum((Decimal(o.total_amount) for o in orders), Decimal("0")))
            if total <= 0:
                raise ValidationError("Nothing to pay for these orders")
            cs = CheckoutSession(
                id=str(uuid4()),
                customer_id=customer_id,
                order_ids=unique_ids,
                total_amount=total,
                currency=currencies.pop(),
                status=SESSION_PENDING,
                expires_at=now + timedelta(hours=self._config.checkout_session_ttl_hours),
                invoice_created=False,
                invoice_state=NOT_STARTED,
                invoice_attempts=0,
                updated_at=now,
            )
            session.add(cs)
            for o in orders:
                o.checkout_id = cs.id
                o.updated_at = now
            session.flush()
            log_event("info", "checkout.session_created", checkout_id=mask_token(cs.id), orders=len(orders), total=float(total))
            return {"checkout_id": cs.id, "total_amount": float(total), "expires_at": cs.expires_at.isoformat()}

    def get_checkout(self, checkout_id: str) -> Dict:
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            if cs is None:
                raise NotFoundError(REASON_NOT_FOUND)
            data = cs.provider_result()
            data.update(
                {
                    "checkout_id": cs.id,
                    "customer_id": cs.customer_id,
                    "status": cs.status,
                    "invoice_state": cs.invoice_state,
                    "order_ids": list(cs.order_ids or []),
                    "total_amount": float(cs.total_amount),
                }
            )
            return data

    # ----- invoice creation --------------------------------------------------

    def create_or_get_invoice(self, checkout_id: str, *, actor: Optional[Actor], guest_email: Optional[str] = None) -> Dict:
        if not is_uuid_v4(checkout_id):
            log_event("warning", "security.checkout_invalid_id", checkout_id=mask_token(checkout_id))
            raise SecurityError("Invalid checkout ID")

        now = utcnow()
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            if cs is None:
                raise NotFoundError(REASON_NOT_FOUND)
            if cs.expires_at < now:
                raise ValidationError("Checkout session has expired. Please create a new cart.")
            if cs.status in (SESSION_EXPIRED, SESSION_CANCELLED):
                raise ValidationError("Checkout session is no longer active")
            self._check_requester(session, cs, actor, guest_email)
            if cs.invoice_created and cs.has_provider_result:
                return cs.provider_result()

        claim = self.mark_invoice_created(checkout_id, now=now)
        if not claim.success:
            if claim.reason == REASON_ALREADY_CREATED:
                existing = self._await_result(checkout_id)
                if existing is not None:
                    return existing
                log_event("warning", "security.checkout_duplicate_attempt", checkout_id=mask_token(checkout_id))
                raise SecurityError("Checkout is already being created, please retry shortly")
            if claim.reason == REASON_RATE_LIMITED:
                log_event("warning", "security.checkout_rate_limited", checkout_id=mask_token(checkout_id))
                raise RateLimitError(REASON_RATE_LIMITED)
            raise NotFoundError(claim.reason or REASON_NOT_FOUND)

        log_event("info", "checkout.invoice_claimed", checkout_id=mask_token(checkout_id))
        try:
            request = self._build_request(checkout_id)
            self._set_state(checkout_id, EXTERNAL_CALL_IN_FLIGHT)
            result = self._provider.create_checkout(request)
        except ExternalProviderError as exc:
            if exc.definitive:
                self._release_claim(checkout_id, reason=str(exc))
            else:
                log_event("error", "checkout.provider_outcome_unknown", checkout_id=mask_token(checkout_id), error=str(exc))
            raise
        except ValidationError as exc:
            self._release_claim(checkout_id, reason=str(exc))
            raise
        return self._record_result(checkout_id, result)

    def create_single_order_invoice(self, order_id: str, *, actor: Actor) -> Dict:
        """Payment link for one order, reusing the order's checkout session if it has one."""
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).first()
            if order is None:
                raise NotFoundError("Order not found")
            checkout_id = order.checkout_id
            customer_id = order.customer_id
        if not checkout_id:
            checkout_id = self.create_session(customer_id=customer_id, order_ids=[order_id], actor=actor)["checkout_id"]
        result = self.create_or_get_invoice(checkout_id, actor=actor)
        result["checkout_id"] = checkout_id
        return result

    def refresh_payment_link(self, order_id: str, *, actor: Actor, now=None) -> Dict:
        """Payment link for an order that is still awaiting payment.

        A live link is handed back unchanged. Once the order's checkout has
        lapsed, a new checkout is opened for the orders of that session that
        are still unpaid and a fresh link is minted. ``is_expired`` tells the
        caller the old link is gone.
        """
        now = now or utcnow()
        checkout_id = None
        lapsed = False
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).first()
            if order is None:
                raise NotFoundError("Order not found")
            if actor.id != order.customer_id and not actor.is_privileged:
                raise SecurityError("Not allowed to access this order")
            if order.status != PENDING or order.payment_status != PAY_PENDING:
                raise ValidationError("Order is not awaiting payment")
            customer_id = order.customer_id
            order_ids = [order.id]
            cs = None
            if order.checkout_id:
                cs = session.query(CheckoutSession).filter(CheckoutSession.id == order.checkout_id).first()
            if cs is not None and cs.status == SESSION_PENDING and self._is_live(cs, now):
                checkout_id = cs.id
            elif cs is not None:
                lapsed = cs.has_provider_result
                unpaid = {
                    o.id
                    for o in session.query(Order)
                    .filter(
                        Order.id.in_(list(cs.order_ids or [])),
                        Order.is_deleted.is_(False),
                        Order.status == PENDING,
                        Order.payment_status == PAY_PENDING,
                    )
                    .all()
                }
                order_ids = [oid for oid in cs.order_ids if oid in unpaid] or [order.id]

        if checkout_id is None:
            checkout_id = self.create_session(customer_id=customer_id, order_ids=order_ids, actor=actor)["checkout_id"]
            if lapsed:
                log_event("info", "checkout.link_refreshed", order_id=order_id, checkout_id=mask_token(checkout_id))
        result = self.create_or_get_invoice(checkout_id, actor=actor)
        result["checkout_id"] = checkout_id
        result["is_expired"] = lapsed
        return result

    def mark_invoice_created(self, checkout_id: str, now=None) -> ClaimResult:
        """Atomically claim the right to create this session's provider checkout."""
        now = now or utcnow()
        window_start = now - timedelta(minutes=self._config.invoice_rate_window_minutes)
        window_elapsed = or_(
            CheckoutSession.last_invoice_attempt_at.is_(None),
            CheckoutSession.last_invoice_attempt_at <= window_start,
        )
        stmt = (
            update(CheckoutSession)
            .where(
                CheckoutSession.id == checkout_id,
                CheckoutSession.invoice_created.is_(False),
                or_(CheckoutSession.invoice_attempts < self._config.invoice_rate_limit, window_elapsed),
            )
            .values(
                invoice_created=True,
                invoice_state=INTENT_CLAIMED,
                invoice_attempts=case((window_elapsed, 1), else_=CheckoutSession.invoice_attempts + 1),
                last_invoice_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session_factory() as session:
            if session.execute(stmt).rowcount == 1:
                return ClaimResult(success=True)
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            if cs is None:
                return ClaimResult(success=False, reason=REASON_NOT_FOUND)
            if cs.invoice_created:
                return ClaimResult(success=False, reason=REASON_ALREADY_CREATED)
            return ClaimResult(success=False, reason=REASON_RATE_LIMITED)

    # ----- stuck sessions ----------------------------------------------------

    def flag_stuck_checkouts(self, now=None) -> List[str]:
        """Flag sessions whose claim never got a recorded result."""
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self._config.stuck_checkout_minutes)
        flagged = []
        with self._session_factory() as session:
            rows = (
                session.query(CheckoutSession)
                .filter(
                    CheckoutSession.invoice_created.is_(True),
                    CheckoutSession.invoice_state.in_(IN_PROGRESS_STATES),
                    CheckoutSession.last_invoice_attempt_at <= cutoff,
                    CheckoutSession.flagged_stuck_at.is_(None),
                )
                .all()
            )
            for cs in rows:
                cs.flagged_stuck_at = now
                flagged.append(cs.id)
                log_event("warning", "checkout.stuck", checkout_id=mask_token(cs.id), invoice_state=cs.invoice_state)
        for checkout_id in flagged:
            self._collab.safe_audit("checkout.stuck", "warning", {"checkout_id": checkout_id})
        return flagged

    def release_stuck_checkout(self, checkout_id: str, *, actor: Actor) -> Dict:
        """Operator action: allow a new provider checkout after checking the provider side by hand."""
        if not actor.is_admin:
            raise SecurityError("Only admins can release a checkout claim")
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            if cs is None:
                raise NotFoundError(REASON_NOT_FOUND)
            if cs.has_provider_result or cs.invoice_state not in IN_PROGRESS_STATES:
                raise ValidationError("Checkout is not stuck")
        self._release_claim(checkout_id, reason=f"released by {actor.id}")
        self._collab.safe_audit("checkout.released", "warning", {"checkout_id": checkout_id, "actor_id": actor.id})
        return self.get_checkout(checkout_id)

    # ----- internals ---------------------------------------------------------

    @staticmethod
    def _pending_sessions(session, orders: List[Order]) -> List[CheckoutSession]:
        ids = {o.checkout_id for o in orders if o.checkout_id}
        if not ids:
            return []
        return (
            session.query(CheckoutSession)
            .filter(CheckoutSession.id.in_(ids), CheckoutSession.status == SESSION_PENDING)
            .all()
        )

    @staticmethod
    def _is_live(cs: CheckoutSession, now) -> bool:
        """Session still inside its window and, if a hosted page exists, the page has not lapsed."""
        if cs.expires_at <= now:
            return False
        return cs.provider_expires_at is None or cs.provider_expires_at > now

    def _check_requester(self, session, cs: CheckoutSession, actor: Optional[Actor], guest_email: Optional[str]) -> None:
        if actor is not None:
            if actor.id != cs.customer_id and not actor.is_privileged:
                log_event("warning", "security.checkout_not_owner", checkout_id=mask_token(cs.id), actor_id=actor.id)
                raise SecurityError("Not allowed to access this checkout")
            return
        if not guest_email:
            raise SecurityError("Email verification required")
        orders = session.query(Order).filter(Order.id.in_(list(cs.order_ids or [])), Order.is_deleted.is_(False)).all()
        if not orders:
            raise NotFoundError("No valid orders found for email verification")
        order_email = orders[0].customer_email
        if not order_email or order_email.strip().lower() != guest_email.strip().lower():
            log_event("warning", "security.checkout_email_mismatch", checkout_id=mask_token(cs.id))
            raise SecurityError("Email verification failed")

    def _build_request(self, checkout_id: str) -> CheckoutRequest:
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            order_map = {
                o.id: o
                for o in session.query(Order).filter(Order.id.in_(list(cs.order_ids or []))).all()
            }
            orders = [order_map[oid] for oid in cs.order_ids if oid in order_map]
            order_numbers = [o.order_number for o in orders]
            stores = {o.organization_id for o in orders}
            if len(orders) == 1:
                description = f"Payment for order {order_numbers[0]}"
            else:
                description = (
                    f"Payment for {len(orders)} orders from {len(stores)} store(s): {', '.join(order_numbers)}"
                )
            line_items = build_line_items(
                [
                    {
                        "order_number": o.order_number,
                        "subtotal": o.subtotal,
                        "total_amount": o.total_amount,
                        "lines": load_order_lines(session, o),
                    }
                    for o in orders
                ]
            )
            first = orders[0] if orders else None
            base = self._config.app_base_url.rstrip("/")
            return CheckoutRequest(
                reference=checkout_reference(cs, order_numbers),
                checkout_id=cs.id,
                description=description,
                total_minor=to_minor(cs.total_amount),
                currency=cs.currency,
                customer_email=first.customer_email if first else None,
                customer_name=(first.customer_info or {}).get("name") if first else None,
                order_ids=[o.id for o in orders],
                line_items=line_items,
                success_url=f"{base}/orders/payment/success?checkoutId={cs.id}",
                failure_url=f"{base}/orders/payment/failed?checkoutId={cs.id}",
                expires_at=utcnow() + timedelta(hours=self._config.checkout_session_ttl_hours),
            )

    def _set_state(self, checkout_id: str, state: str) -> None:
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            cs.invoice_state = state
            cs.updated_at = utcnow()

    def _release_claim(self, checkout_id: str, reason: str) -> None:
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            if cs is None or cs.has_provider_result:
                return
            cs.invoice_created = False
            cs.invoice_state = FAILED
            cs.flagged_stuck_at = None
            cs.updated_at = utcnow()
        log_event("warning", "checkout.claim_released", checkout_id=mask_token(checkout_id), reason=reason)

    def _record_result(self, checkout_id: str, result) -> Dict:
        now = utcnow()
        with self._session_factory() as session:
            cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
            cs.payment_provider = result.provider
            cs.provider_resource_id = result.resource_id
            cs.provider_url = result.url
            cs.provider_expires_at = result.expires_at
            cs.invoice_state = RESULT_RECORDED
            cs.updated_at = now
            for order in session.query(Order).filter(Order.id.in_(list(cs.order_ids or []))).all():
                order.payment_provider = result.provider
                order.provider_checkout_id = result.resource_id
                order.provider_checkout_url = result.url
                order.provider_checkout_expires_at = result.expires_at
                order.updated_at = now
            session.flush()
            data = cs.provider_result()
        log_event("info", "checkout.invoice_recorded", checkout_id=mask_token(checkout_id), provider=result.provider)
        return data

    def _await_result(self, checkout_id: str) -> Optional[Dict]:
        """Wait briefly for a concurrent caller's provider result."""
        deadline = time.monotonic() + self._config.invoice_wait_seconds
        while True:
            with self._session_factory() as session:
                cs = session.query(CheckoutSession).filter(CheckoutSession.id == checkout_id).first()
                if cs is None or not cs.invoice_created:
                    return None
                if cs.has_provider_result:
                    return cs.provider_result()
            if time.monotonic() >= deadline:
                return None
            self._sleep(0.1)
