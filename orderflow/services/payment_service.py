import secrets
import string
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import uuid4

from sqlalchemy import func

from ..db.session import get_session
from ..errors import NotFoundError, SecurityError, ValidationError
from ..models.order import Order
from ..models.payment import Payment
from ..models.voucher import Voucher
from ..utils.money import quantize, to_decimal
from ..utils.timeutil import utcnow
from .collaborators import Actor, Collaborators
from .logging import log_event
from .order_state import CANCELLED, DOWNPAYMENT, PAID, REFUNDED, OrderStateMachine
from .pricing_service import REFUND as REFUND_VOUCHER


_CODE_CHARS = string.ascii_uppercase + string.digits


class PaymentService:
    """Manual payment entry, refunds and refund-credit vouchers."""

    def __init__(
        self,
        session_factory=get_session,
        state_machine: Optional[OrderStateMachine] = None,
        collaborators: Optional[Collaborators] = None,
    ):
        self._session_factory = session_factory
        self._collab = collaborators or Collaborators()
        self._states = state_machine or OrderStateMachine(self._collab, session_factory=session_factory)

    def record_manual_payment(
        self,
        order_id: str,
        *,
        amount,
        payment_method: str,
        reference_no: str,
        actor: Actor,
        transaction_id: Optional[str] = None,
        processing_fee=0,
        notes: Optional[str] = None,
    ) -> Dict:
        amount = quantize(amount)
        fee = quantize(processing_fee or 0)
        if amount <= 0:
            raise ValidationError("Amount must be > 0")
        if fee < 0:
            raise ValidationError("Processing fee must be >= 0")
        if not (reference_no or "").strip():
            raise ValidationError("reference_no required")
        now = utcnow()
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id, Order.is_deleted.is_(False)).first()
            if order is None:
                raise NotFoundError("Order not found")
            self._require(actor, order.organization_id, "create")
            if order.status == CANCELLED:
                raise ValidationError("Cannot record a payment for a cancelled order")
            if session.query(Payment.id).filter(Payment.reference_no == reference_no.strip()).first():
                raise ValidationError("A payment with this reference number already exists")
            if transaction_id and session.query(Payment.id).filter(Payment.transaction_id == transaction_id).first():
                raise ValidationError("A payment with this transaction ID already exists")

            paid_before = self._verified_total(session, order.id)
            remaining = quantize(Decimal(order.total_amount) - paid_before)
            payment = Payment(
                id=str(uuid4()),
                order_id=order.id,
                payer_id=order.customer_id,
                organization_id=order.organization_id,
                amount=amount,
                processing_fee=fee,
                net_amount=max(Decimal("0.00"), amount - fee),
                currency=order.currency,
                payment_method=payment_method.upper(),
                payment_provider="MANUAL",
                transaction_id=transaction_id,
                reference_no=reference_no.strip(),
                status="VERIFIED",
                status_history=[{"status": "VERIFIED", "changed_by": actor.id, "changed_at": now.isoformat(), "reason": "Recorded manually"}],
                reconciliation_status="MATCHED" if amount == remaining else "DISCREPANCY",
                notes=notes,
                payment_date=now,
                updated_at=now,
            )
            session.add(payment)
            session.flush()

            if order.payment_status not in (PAID, REFUNDED):
                target = PAID if paid_before + amount >= Decimal(order.total_amount) else DOWNPAYMENT
                self._states.apply_payment_status(session, order, target, actor=actor, reason=f"Manual payment {payment.reference_no}", now=now)
            session.flush()
            log_event("info", "payment.recorded", payment_id=payment.id, order_id=order.id, amount=float(amount))
            result = payment.to_dict()
        self._collab.safe_audit("payment.recorded", "info", {"payment_id": result["payment_id"], "actor_id": actor.id})
        return result

    def refund_payment(self, payment_id: str, *, amount, actor: Actor, reason: Optional[str] = None) -> Dict:
        refund = quantize(amount)
        if refund <= 0:
            raise ValidationError("Refund amount must be > 0")
        now = utcnow()
        with self._session_factory() as session:
            payment = session.query(Payment).filter(Payment.id == payment_id).first()
            if payment is None:
                raise NotFoundError("Payment not found")
            self._require(actor, payment.organization_id, "update")
            if payment.status not in ("VERIFIED", "REFUND_PENDING"):
                raise ValidationError(f"Cannot refund a payment in status {payment.status}")
            already = to_decimal(payment.refunded_amount or 0)
            if refund + already > to_decimal(payment.amount):
                raise ValidationError("Refund amount exceeds payment amount")
            payment.refunded_amount = quantize(already + refund)
            new_status = "REFUNDED" if payment.refunded_amount == quantize(payment.amount) else "REFUND_PENDING"
            payment.status = new_status
            payment.status_history = list(payment.status_history or []) + [
                {"status": new_status, "changed_by": actor.id, "changed_at": now.isoformat(), "reason": reason or "Refund initiated"}
            ]
            payment.updated_at = now

            if new_status == "REFUNDED":
                order = session.query(Order).filter(Order.id == payment.order_id).first()
                outstanding = (
                    session.query(func.count(Payment.id))
                    .filter(Payment.order_id == payment.order_id, Payment.status == "VERIFIED", Payment.id != payment.id)
                    .scalar()
                )
                if order is not None and not outstanding and order.payment_status in (PAID, DOWNPAYMENT):
                    self._states.apply_payment_status(session, order, REFUNDED, actor=actor, reason=reason or "Payment refunded", now=now)
            session.flush()
            log_event("info", "payment.refunded", payment_id=payment.id, amount=float(refund), status=new_status)
            result = payment.to_dict()
        self._collab.safe_audit(
            "payment.refunded",
            "high",
            {"payment_id": payment_id, "amount": float(refund), "actor_id": actor.id},
        )
        return result

    def issue_refund_voucher(self, order_id: str, *, amount, actor: Actor, reason: Optional[str] = None) -> Dict:
        """Single-use platform-wide credit for the customer of a cancelled, paid order."""
        value = quantize(amount)
        if value <= 0:
            raise ValidationError("Voucher amount must be > 0")
        with self._session_factory() as session:
            order = session.query(Order).filter(Order.id == order_id).first()
            if order is None:
                raise NotFoundError("Order not found")
            self._require(actor, order.organization_id, "update")
            if order.status != CANCELLED:
                raise ValidationError("Refund vouchers are only issued for cancelled orders")
            if order.payment_status not in (PAID, DOWNPAYMENT) and self._verified_total(session, order.id) <= 0:
                raise ValidationError("Refund vouchers are only issued for paid orders")
            if value > to_decimal(order.total_amount):
                raise ValidationError("Voucher amount exceeds order total")
            code = self._unique_refund_code(session)
            voucher = Voucher(
                id=str(uuid4()),
                code=code,
                name=f"Refund for {order.order_number}",
                organization_id=None,
                discount_type=REFUND_VOUCHER,
                discount_value=value,
                usage_limit=1,
                used_count=0,
                usage_limit_per_user=1,
                valid_from=utcnow(),
                valid_until=None,
                is_active=True,
                assigned_to_user_id=order.customer_id,
                created_by_id=actor.id,
            )
            session.add(voucher)
            session.flush()
            log_event("info", "voucher.refund_issued", order_id=order.id, code=code, amount=float(value))
            result = {"voucher_id": voucher.id, "code": code, "amount": float(value), "customer_id": order.customer_id}
        self._collab.safe_audit("voucher.refund_issued", "info", {"order_id": order_id, "code": code, "reason": reason})
        self._collab.safe_notify("refund_voucher_issued", result)
        return result

    def list_payments(self, order_id: str) -> List[Dict]:
        with self._session_factory() as session:
            return [p.to_dict() for p in session.query(Payment).filter(Payment.order_id == order_id).all()]

    # ----- helpers -----------------------------------------------------------

    def _require(self, actor: Actor, organization_id: Optional[str], action: str) -> None:
        if not self._collab.check_permission(actor, organization_id, "payments", action):
            raise SecurityError("Permission denied")

    @staticmethod
    def _verified_total(session, order_id: str) -> Decimal:
        total = (
            session.query(func.coalesce(func.sum(Payment.amount), 0))
            .filter(Payment.order_id == order_id, Payment.status == "VERIFIED")
            .scalar()
        )
        return quantize(total or 0)

    @staticmethod
    def _unique_refund_code(session) -> str:
        for _ in range(10):
            code = "REFUND-" + "".join(secrets.choice(_CODE_CHARS) for _ in range(6))
            if not session.query(Voucher.id).filter(Voucher.code == code).first():
                return code
        raise ValidationError("Could not allocate a voucher code, please retry")
