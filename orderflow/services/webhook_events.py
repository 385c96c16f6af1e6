"""
Provider webhook parsing.

Raw callbacks are validated with pydantic models and normalised into one of
four event variants. Unknown event types become :class:`IgnoredEvent`
rather than falling through.
"""
import hashlib
import hmac
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from ..utils.money import to_minor


PAYMONGO = "paymongo"
XENDIT = "xendit"

ORDER_NUMBER_RE = re.compile(r"(?:ORD|MSG)-[A-Z0-9-]+")


# ----- normalised events -----------------------------------------------------

@dataclass(frozen=True)
class PaymentSucceeded:
    provider: str
    transaction_id: str
    external_id: Optional[str]
    amount_minor: int
    fee_minor: int
    net_minor: int
    currency: str
    payment_method: Optional[str] = None
    order_numbers: Tuple[str, ...] = field(default_factory=tuple)
    kind: str = "payment_succeeded"


@dataclass(frozen=True)
class PaymentFailed:
    provider: str
    transaction_id: str
    external_id: Optional[str]
    reason: str = "Payment failed"
    kind: str = "payment_failed"


@dataclass(frozen=True)
class InvoiceExpired:
    provider: str
    transaction_id: str
    external_id: Optional[str]
    kind: str = "invoice_expired"


@dataclass(frozen=True)
class IgnoredEvent:
    provider: str
    event_type: str
    reason: str = "Unhandled event type"
    kind: str = "ignored"


WebhookEvent = Union[PaymentSucceeded, PaymentFailed, InvoiceExpired, IgnoredEvent]


# ----- raw payload models ----------------------------------------------------

class XenditInvoiceCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    external_id: str
    status: str
    amount: Decimal
    paid_amount: Optional[Decimal] = None
    fees_paid_amount: Optional[Decimal] = None
    currency: str = "PHP"
    payment_method: Optional[str] = None
    payment_channel: Optional[str] = None


class PayMongoResource(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    attributes: Dict[str, Any] = {}


class PayMongoEventAttributes(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: str
    livemode: bool = False
    data: PayMongoResource


class PayMongoEventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str = "event"
    attributes: PayMongoEventAttributes


class PayMongoWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: PayMongoEventData


class PayMongoPayment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: int
    fee: int = 0
    net_amount: Optional[int] = None
    currency: str = "PHP"
    description: Optional[str] = None
    status: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    source: Optional[Dict[str, Any]] = None
    failed_message: Optional[str] = None


# ----- signatures ------------------------------------------------------------

def parse_signature_header(header: str) -> Dict[str, str]:
    parts: Dict[str, str] = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key] = value
    return parts


def compute_paymongo_signature(raw_body: bytes, timestamp: str, secret: str) -> str:
    signed = timestamp.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_paymongo_signature(raw_body: bytes, header: Optional[str], secret: str) -> bool:
    """``t=<ts>,te=<test sig>,li=<live sig>``; the live signature wins when present."""
    if not header or not secret:
        return False
    parts = parse_signature_header(header)
    timestamp = parts.get("t")
    expected = parts.get("li") or parts.get("te")
    if not timestamp or not expected:
        return False
    computed = compute_paymongo_signature(raw_body, timestamp, secret)
    return hmac.compare_digest(computed, expected)


def verify_xendit_token(received: Optional[str], expected: str) -> bool:
    if not received or not expected:
        return False
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


# ----- parsing ---------------------------------------------------------------

def parse_xendit_event(payload: Dict[str, Any]) -> WebhookEvent:
    try:
        cb = XenditInvoiceCallback.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed Xendit callback", errors=exc.errors(include_url=False))
    status = cb.status.upper()
    if status in ("PAID", "SETTLED"):
        amount_minor = to_minor(cb.paid_amount if cb.paid_amount is not None else cb.amount)
        fee_minor = to_minor(cb.fees_paid_amount or 0)
        return PaymentSucceeded(
            provider=XENDIT,
            transaction_id=cb.id,
            external_id=cb.external_id,
            amount_minor=amount_minor,
            fee_minor=fee_minor,
            net_minor=max(0, amount_minor - fee_minor),
            currency=cb.currency,
            payment_method=cb.payment_channel or cb.payment_method,
        )
    if status == "EXPIRED":
        return InvoiceExpired(provider=XENDIT, transaction_id=cb.id, external_id=cb.external_id)
    if status == "FAILED":
        return PaymentFailed(provider=XENDIT, transaction_id=cb.id, external_id=cb.external_id)
    return IgnoredEvent(provider=XENDIT, event_type=f"invoice.{status.lower()}")


def _external_id(*sources: Optional[Dict[str, Any]]) -> Optional[str]:
    for source in sources:
        if not source:
            continue
        value = source.get("external_id") or source.get("reference_number")
        if value:
            return str(value)
    return None


def _order_numbers(description: Optional[str]) -> Tuple[str, ...]:
    found: List[str] = ORDER_NUMBER_RE.findall(description or "")
    return tuple(dict.fromkeys(n.rstrip("-") for n in found))


def _payment(resource: PayMongoResource) -> PayMongoPayment:
    return PayMongoPayment.model_validate(resource.attributes)


def _succeeded(payment_id: str, payment: PayMongoPayment, external_id: Optional[str], description: Optional[str]) -> PaymentSucceeded:
    net = payment.net_amount if payment.net_amount is not None else payment.amount - payment.fee
    return PaymentSucceeded(
        provider=PAYMONGO,
        transaction_id=payment_id,
        external_id=external_id,
        amount_minor=payment.amount,
        fee_minor=payment.fee,
        net_minor=max(0, net),
        currency=payment.currency.upper(),
        payment_method=(payment.source or {}).get("type"),
        order_numbers=() if external_id else _order_numbers(description or payment.description),
    )


def parse_paymongo_event(payload: Dict[str, Any]) -> WebhookEvent:
    try:
        event = PayMongoWebhook.model_validate(payload)
        event_type = event.data.attributes.type
        resource = event.data.attributes.data

        if event_type == "checkout_session.payment.paid":
            attrs = resource.attributes
            payments = [PayMongoResource.model_validate(p) for p in (attrs.get("payments") or [])]
            if not payments:
                return IgnoredEvent(provider=PAYMONGO, event_type=event_type, reason="No payments on checkout session")
            payment = _payment(payments[0])
            metadata = attrs.get("metadata") or {}
            external_id = _external_id(metadata, payment.metadata) or attrs.get("reference_number")
            return _succeeded(payments[0].id, payment, external_id, attrs.get("description"))

        if event_type == "payment.paid":
            payment = _payment(resource)
            return _succeeded(resource.id, payment, _external_id(payment.metadata), payment.description)

        if event_type == "payment.failed":
            payment = _payment(resource)
            external_id = _external_id(payment.metadata)
            if not external_id:
                numbers = _order_numbers(payment.description)
                external_id = numbers[0] if len(numbers) == 1 else None
            return PaymentFailed(
                provider=PAYMONGO,
                transaction_id=resource.id,
                external_id=external_id,
                reason=payment.failed_message or "Payment failed",
            )
    except PydanticValidationError as exc:
        raise ValidationError("Malformed PayMongo webhook", errors=exc.errors(include_url=False))
    return IgnoredEvent(provider=PAYMONGO, event_type=event_type)
