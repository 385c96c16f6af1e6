"""Order status / payment-status transitions, history and order logs."""

from datetime import datetime
from typing import Dict, List, Optional, Set
from uuid import uuid4

from ..db.session import get_session
from ..errors import NotFoundError, SecurityError, ValidationError
from ..models.order import Order, OrderItem, OrderLog
from ..models.payment import Payment
from ..utils.timeutil import utcnow
from .collaborators import Actor, Collaborators
from .inventory_service import InventoryLedger
from .logging import log_event


PENDING = "PENDING"
PROCESSING = "PROCESSING"
READY = "READY"
DELIVERED = "DELIVERED"
CANCELLED = "CANCELLED"
ORDER_STATUSES = (PENDING, PROCESSING, READY, DELIVERED, CANCELLED)
TERMINAL_STATUSES = {DELIVERED, CANCELLED}

STATUS_TRANSITIONS: Dict[str, Set[str]] = {
    PENDING: {PROCESSING, CANCELLED},
    PROCESSING: {READY, CANCELLED},
    READY: {DELIVERED, CANCELLED},
    DELIVERED: set(),
    CANCELLED: set(),
}

PAY_PENDING = "PENDING"
DOWNPAYMENT = "DOWNPAYMENT"
PAID = "PAID"
REFUNDED = "REFUNDED"
PAYMENT_STATUSES = (PAY_PENDING, DOWNPAYMENT, PAID, REFUNDED)

PAYMENT_TRANSITIONS: Dict[str, Set[str]] = {
    PAY_PENDING: {DOWNPAYMENT, PAID},
    DOWNPAYMENT: {PAID, REFUNDED},
    PAID: {REFUNDED},
    REFUNDED: set(),
}

# order log types
ORDER_CREATED = "ORDER_CREATED"
STATUS_CHANGE = "STATUS_CHANGE"
PAYMENT_UPDATE = "PAYMENT_UPDATE"
ITEM_MODIFICATION = "ITEM_MODIFICATION"
NOTE_ADDED = "NOTE_ADDED"
SYSTEM_UPDATE = "SYSTEM_UPDATE"
ORDER_CANCELLED = "ORDER_CANCELLED"

CANCELLATION_REASONS = ("OUT_OF_STOCK", "CUSTOMER_REQUEST", "PAYMENT_FAILED", "OTHERS")

HISTORY_LIMIT = 5
NOTIFY_ON_STATUS = {READY: "order_ready", DELIVERED: "order_delivered"}


def can_transition(current: str, new: str) -> bool:
    return new in STATUS_TRANSITIONS.get(current, set())


def can_transition_payment(current: str, new: str) -> bool:
    return new in PAYMENT_TRANSITIONS.get(current, set())


def append_history(order: Order, *, actor_id: Optional[str], previous: Optional[str], new: str, reason: Optional[str], now: datetime) -> None:
    entry = {
        "status": new,
        "previous": previous,
        "changed_by": actor_id,
        "reason": reason,
        "changed_at": now.isoformat(),
    }
    # newest first; reassign so the JSON column is flagged dirty
    order.recent_status_history = ([entry] + list(order.recent_status_history or []))[:HISTORY_LIMIT]


def write_log(
    session,
    order_id: str,
    *,
    log_type: str,
    reason: str,
    message: Optional[str] = None,
    actor_id: Optional[str] = None,
    is_system: bool = False,
    is_public: bool = False,
    previous_value: Optional[str] = None,
    new_value: Optional[str] = None,
    details: Optional[dict] = None,
) -> OrderLog:
    entry = OrderLog(
        id=str(uuid4()),
        order_id=order_id,
        log_type=log_type,
        reason=reason,
        message=message,
        actor_id=actor_id,
        is_system=is_system,
        is_public=is_public,
        previous_value=previous_value,
        new_value=new_value,
        details=details,
    )
    session.add(entry)
    return entry


def load_order_lines(session, order: Order) -> List[dict]:
    if order.uses_item_rows:
        rows = session.query(OrderItem).filter(OrderItem.order_id == order.id).all()
        return [row.to_line() for row in rows]
    return list(order.items or [])


class OrderStateMachine:
    """Guards every status and payment-status change of an order."""

    def __init__(self, collaborators: Optional[Collaborators] = None, inventory: Optional[InventoryLedger] = None, session_factory=get_session):
        self._collab = collaborators or Collaborators()
        self._inventory = inventory or InventoryLedger()
        self._session_factory = session_factory

    # ----- public operations -------------------------------------------------

    def update_status(self, order_id: str, new_status: str, *, actor: Actor, reason: Optional[str] = None, override: bool = False) -> Dict:
        if new_status not in ORDER_STATUSES:
            raise ValidationError(f"Unknown order status: {new_status}")
        if new_status == CANCELLED:
            return self.cancel_order(order_id, reason="OTHERS", message=reason, actor=actor, override=override)
        with self._session_factory() as session:
            order = self._get_order(session, order_id)
            self._require_staff(actor, order)
            self.apply_status(session, order, new_status, actor=actor, reason=reason, override=override)
            session.flush()
            return order.to_dict()

    def update_payment_status(self, order_id: str, new_status: str, *, actor: Actor, reason: Optional[str] = None, override: bool = False) -> Dict:
        if new_status not in PAYMENT_STATUSES:
            raise ValidationError(f"Unknown payment status: {new_status}")
        with self._session_factory() as session:
            order = self._get_order(session, order_id)
            self._require_staff(actor, order)
            self.apply_payment_status(session, order, new_status, actor=actor, reason=reason, override=override)
            session.flush()
            return order.to_dict()

    def cancel_order(self, order_id: str, *, reason: str, actor: Actor, message: Optional[str] = None, override: bool = False) -> Dict:
        with self._session_factory() as session:
            order = self._get_order(session, order_id)
            if not (actor.is_privileged or actor.id == order.customer_id):
                raise SecurityError("Not allowed to cancel this order")
            if not actor.is_privileged and order.status != PENDING:
                raise ValidationError("Only pending orders can be cancelled")
            if actor.is_privileged and not actor.is_admin:
                self._require_staff(actor, order)
            self.cancel_in_session(session, order, reason=reason, message=message, actor=actor, override=override)
            session.flush()
            return order.to_dict()

    def confirm_order_received(self, order_id: str, *, actor: Actor) -> Dict:
        """顧客確認已取貨：READY → DELIVERED，只有下單本人可以操作。"""
        with self._session_factory() as session:
            order = self._get_order(session, order_id)
            if actor.id != order.customer_id:
                raise SecurityError("Not allowed to confirm this order")
            if order.status != READY:
                raise ValidationError("Order must be ready for pickup before confirming receipt")
            self.apply_status(session, order, DELIVERED, actor=actor, reason="Customer confirmed order received")
            session.flush()
            return order.to_dict()

    def add_note(self, order_id: str, note: str, *, actor: Actor, is_public: bool = False) -> Dict:
        text = (note or "").strip()
        if not text:
            raise ValidationError("note required")
        with self._session_factory() as session:
            order = self._get_order(session, order_id)
            if not (actor.is_privileged or actor.id == order.customer_id):
                raise SecurityError("Not allowed to add notes to this order")
            entry = write_log(
                session,
                order.id,
                log_type=NOTE_ADDED,
                reason="Note added",
                message=text,
                actor_id=actor.id,
                is_public=is_public,
            )
            session.flush()
            return {"log_id": entry.id, "order_id": order.id}

    def list_logs(self, order_id: str) -> List[Dict]:
        with self._session_factory() as session:
            rows = (
                session.query(OrderLog)
                .filter(OrderLog.order_id == order_id)
                .order_by(OrderLog.created_at.asc(), OrderLog.id.asc())
                .all()
            )
            return [
                {
                    "log_type": r.log_type,
                    "reason": r.reason,
                    "message": r.message,
                    "actor_id": r.actor_id,
                    "previous_value": r.previous_value,
                    "new_value": r.new_value,
                }
                for r in rows
            ]

    # ----- in-transaction helpers (used by reconciliation too) ---------------

    def apply_status(self, session, order: Order, new_status: str, *, actor: Actor, reason: Optional[str] = None, override: bool = False, now: Optional[datetime] = None) -> bool:
        """Move ``order`` to ``new_status``. Returns False for a same-status no-op."""
        now = now or utcnow()
        previous = order.status
        if previous == new_status:
            return False
        if not can_transition(previous, new_status):
            if not (override and actor.is_admin):
                raise ValidationError(f"Invalid status transition {previous} -> {new_status}")
            log_event("warning", "order.status_override", order_id=order.id, previous=previous, new=new_status, actor_id=actor.id)
        order.status = new_status
        order.updated_at = now
        append_history(order, actor_id=actor.id, previous=previous, new=new_status, reason=reason, now=now)
        write_log(
            session,
            order.id,
            log_type=ORDER_CANCELLED if new_status == CANCELLED else STATUS_CHANGE,
            reason=reason or f"Status changed to {new_status}",
            actor_id=actor.id,
            is_system=actor.role == "system",
            is_public=True,
            previous_value=previous,
            new_value=new_status,
        )
        log_event("info", "order.status_changed", order_id=order.id, previous=previous, new=new_status, actor_id=actor.id)
        kind = NOTIFY_ON_STATUS.get(new_status)
        if kind:
            payload = {"order_id": order.id, "order_number": order.order_number, "customer_id": order.customer_id}
            self._collab.schedule(self._collab.safe_notify, 0, kind, payload)
        return True

    def apply_payment_status(self, session, order: Order, new_status: str, *, actor: Actor, reason: Optional[str] = None, override: bool = False, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        previous = order.payment_status
        if previous == new_status:
            return False
        if previous == REFUNDED and new_status == PAID:
            raise ValidationError("A refunded order cannot be marked paid again")
        if not can_transition_payment(previous, new_status):
            if not (override and actor.is_admin):
                raise ValidationError(f"Invalid payment status transition {previous} -> {new_status}")
        order.payment_status = new_status
        order.updated_at = now
        write_log(
            session,
            order.id,
            log_type=PAYMENT_UPDATE,
            reason=reason or f"Payment status changed to {new_status}",
            actor_id=actor.id,
            is_system=actor.role == "system",
            previous_value=previous,
            new_value=new_status,
        )
        log_event("info", "order.payment_status_changed", order_id=order.id, previous=previous, new=new_status)
        if new_status == PAID:
            order.paid_at = order.paid_at or now
            if order.status == PENDING:
                self.apply_status(session, order, PROCESSING, actor=actor, reason="Payment received", now=now)
        return True

    def cancel_in_session(self, session, order: Order, *, reason: str, actor: Actor, message: Optional[str] = None, override: bool = False, now: Optional[datetime] = None) -> bool:
        """Cancel, restock and cascade to payments. Already-cancelled is a no-op."""
        if reason not in CANCELLATION_REASONS:
            raise ValidationError(f"Unknown cancellation reason: {reason}")
        if order.status == CANCELLED:
            return False
        if order.status == DELIVERED and not (override and actor.is_admin):
            raise ValidationError("Delivered orders cannot be cancelled")
        now = now or utcnow()
        order.cancellation_reason = reason
        order.cancellation_message = message
        self.apply_status(session, order, CANCELLED, actor=actor, reason=message or reason, override=override, now=now)
        self._inventory.restock_order_lines(session, load_order_lines(session, order), order_id=order.id)
        self._cascade_payments(session, order, now)
        return True

    # ----- internals ---------------------------------------------------------

    def _cascade_payments(self, session, order: Order, now: datetime) -> None:
        try:
            pending = (
                session.query(Payment)
                .filter(Payment.order_id == order.id, Payment.status.in_(("PENDING", "PROCESSING")))
                .all()
            )
            for payment in pending:
                payment.status = "CANCELLED"
                payment.updated_at = now
                payment.status_history = list(payment.status_history or []) + [
                    {"status": "CANCELLED", "changed_at": now.isoformat(), "reason": "Order cancelled"}
                ]
        except Exception as exc:
            log_event("warning", "order.payment_cascade_failed", order_id=order.id, error=str(exc))

    def _require_staff(self, actor: Actor, order: Order) -> None:
        if not self._collab.check_permission(actor, order.organization_id, "orders", "update"):
            raise SecurityError("Not allowed to update this order")

    @staticmethod
    def _get_order(session, order_id: str) -> Order:
        order = session.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).first()
        if order is None:
            raise NotFoundError("Order not found")
        return order
