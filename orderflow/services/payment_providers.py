"""
Payment provider API clients (PayMongo checkout sessions, Xendit invoices).

Both clients take a provider-neutral :class:`CheckoutRequest` and return a
:class:`ProviderCheckout`. Amounts travel as integer minor units until the
request body is built.
"""
import base64
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import requests

from ..errors import ExternalProviderError, ValidationError
from ..utils.money import from_minor, to_minor
from ..utils.timeutil import parse_iso, utcnow
from .logging import log_event, mask_token


AMOUNT_TOLERANCE_MINOR = 2


@dataclass
class LineItem:
    name: str
    amount_minor: int  # per unit
    quantity: int

    @property
    def total_minor(self) -> int:
        return self.amount_minor * self.quantity


@dataclass
class CheckoutRequest:
    reference: str  # becomes external_id / reference_number on the provider side
    checkout_id: str
    description: str
    total_minor: int
    currency: str
    customer_email: Optional[str]
    customer_name: Optional[str]
    order_ids: List[str]
    line_items: List[LineItem]
    success_url: str
    failure_url: str
    expires_at: datetime
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderCheckout:
    provider: str
    resource_id: str
    url: str
    expires_at: datetime


def build_line_items(orders: List[Dict]) -> List[LineItem]:
    """Line items for the hosted page, voucher discounts spread over each order's lines.

    ``orders`` holds dicts with ``order_number``, ``subtotal``, ``total_amount``
    and ``lines``. When per-unit rounding drifts an order past the tolerance
    the order collapses into a single line carrying its exact total.
    """
    items: List[LineItem] = []
    for order in orders:
        total_minor = to_minor(order["total_amount"])
        if total_minor <= 0:
            continue
        subtotal_minor = to_minor(order["subtotal"])
        order_items = []
        for line in order["lines"]:
            unit_minor = to_minor(line["price"])
            if subtotal_minor > 0 and subtotal_minor != total_minor:
                unit_minor = (2 * unit_minor * total_minor + subtotal_minor) // (2 * subtotal_minor)
            if unit_minor <= 0:
                continue
            label = " - ".join(p for p in (line.get("product_name"), line.get("variant_name"), line.get("size_label")) if p)
            order_items.append(LineItem(name=label or order["order_number"], amount_minor=unit_minor, quantity=int(line["quantity"])))
        itemized = sum(it.total_minor for it in order_items)
        if not order_items or abs(itemized - total_minor) > AMOUNT_TOLERANCE_MINOR:
            order_items = [LineItem(name=f"Order {order['order_number']}", amount_minor=total_minor, quantity=1)]
        items.extend(order_items)
    return items


def check_line_totals(line_items: List[LineItem], total_minor: int) -> None:
    itemized = sum(it.total_minor for it in line_items)
    if abs(itemized - total_minor) > AMOUNT_TOLERANCE_MINOR:
        raise ValidationError(
            "Checkout amount mismatch",
            itemized_minor=itemized,
            expected_minor=total_minor,
        )


def _basic_auth(secret_key: str) -> str:
    token = base64.b64encode(f"{secret_key}:".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


class _ProviderClient:
    name = ""
    API_BASE_URL = ""

    def __init__(self, secret_key: str, timeout: int = 30, http=None) -> None:
        self.secret_key = secret_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": _basic_auth(self.secret_key),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _post(self, path: str, payload: Dict) -> Dict:
        if not self.secret_key:
            raise ExternalProviderError(f"{self.name} secret key is not configured", provider=self.name, definitive=True)
        url = f"{self.API_BASE_URL}{path}"
        try:
            response = self.http.post(url, headers=self._headers(), json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            log_event("error", f"provider.{self.name}.unreachable", path=path, error=str(exc))
            raise ExternalProviderError(f"{self.name} API unreachable", provider=self.name) from exc
        if response.status_code >= 400:
            detail = response.text[:200]
            try:
                data = response.json()
                errors = data.get("errors") or []
                if errors:
                    detail = errors[0].get("detail") or detail
                else:
                    detail = data.get("message") or detail
            except ValueError:
                pass
            log_event("error", f"provider.{self.name}.error", path=path, status=response.status_code, detail=detail)
            raise ExternalProviderError(
                f"{self.name} API error: {response.status_code}",
                provider=self.name,
                provider_status=response.status_code,
                detail=detail,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalProviderError(f"{self.name} returned invalid JSON", provider=self.name) from exc


class PayMongoClient(_ProviderClient):
    name = "paymongo"
    API_BASE_URL = "https://api.paymongo.com/v1"
    PAYMENT_METHOD_TYPES = ["gcash", "card", "paymaya", "grab_pay", "qrph"]

    def create_checkout(self, req: CheckoutRequest) -> ProviderCheckout:
        check_line_totals(req.line_items, req.total_minor)
        metadata = {
            "external_id": req.reference,
            "checkout_id": req.checkout_id,
            "order_ids": ",".join(req.order_ids),
        }
        if req.customer_email:
            metadata["customer_email"] = req.customer_email
        metadata.update(req.metadata)
        attributes = {
            "line_items": [
                {"name": it.name[:255], "amount": it.amount_minor, "currency": req.currency, "quantity": it.quantity}
                for it in req.line_items
            ],
            "payment_method_types": self.PAYMENT_METHOD_TYPES,
            "description": req.description,
            "reference_number": req.reference,
            "send_email_receipt": True,
            "show_description": True,
            "show_line_items": True,
            "success_url": req.success_url,
            "cancel_url": req.failure_url,
            "metadata": metadata,
        }
        if req.customer_email:
            attributes["billing"] = {"email": req.customer_email, "name": req.customer_name or req.customer_email}
        data = self._post("/checkout_sessions", {"data": {"attributes": attributes}})
        resource = data.get("data") or {}
        checkout_url = (resource.get("attributes") or {}).get("checkout_url")
        if not resource.get("id") or not checkout_url:
            raise ExternalProviderError("paymongo response missing checkout id/url", provider=self.name)
        log_event("info", "provider.paymongo.checkout_created", checkout_id=mask_token(req.checkout_id), resource_id=resource["id"])
        # checkout sessions carry no expiry of their own; the hosted page is honoured for the session window
        return ProviderCheckout(provider=self.name, resource_id=resource["id"], url=checkout_url, expires_at=req.expires_at)


class XenditClient(_ProviderClient):
    name = "xendit"
    API_BASE_URL = "https://api.xendit.co"

    def create_checkout(self, req: CheckoutRequest) -> ProviderCheckout:
        check_line_totals(req.line_items, req.total_minor)
        duration = max(60, int((req.expires_at - utcnow()).total_seconds()))
        payload = {
            "external_id": req.reference,
            "amount": float(from_minor(req.total_minor)),
            "description": req.description,
            "invoice_duration": duration,
            "currency": req.currency,
            "success_redirect_url": req.success_url,
            "failure_redirect_url": req.failure_url,
            "items": [
                {"name": it.name[:255], "quantity": it.quantity, "price": float(from_minor(it.amount_minor))}
                for it in req.line_items
            ],
            "metadata": {"checkout_id": req.checkout_id, "order_ids": ",".join(req.order_ids)},
        }
        if req.customer_email:
            payload["payer_email"] = req.customer_email
        data = self._post("/v2/invoices", payload)
        if not data.get("id") or not data.get("invoice_url"):
            raise ExternalProviderError("xendit response missing invoice id/url", provider=self.name)
        expires_at = parse_iso(data.get("expiry_date")) or (utcnow() + timedelta(seconds=duration))
        log_event("info", "provider.xendit.invoice_created", checkout_id=mask_token(req.checkout_id), resource_id=data["id"])
        return ProviderCheckout(provider=self.name, resource_id=data["id"], url=data["invoice_url"], expires_at=expires_at)


def build_provider(config) -> _ProviderClient:
    if config.payment_provider == "xendit":
        return XenditClient(config.xendit_secret_key)
    return PayMongoClient(config.paymongo_secret_key)
