"""Provider API clients, hosted-page line items and the Chatwoot reply client."""
import base64
from datetime import datetime, timedelta

import pytest
import requests

from orderflow.errors import ExternalProviderError, ValidationError
from orderflow.services.chatwoot_client import ChatwootClient, ChatwootCollaborators
from orderflow.services.payment_providers import (
    CheckoutRequest,
    LineItem,
    PayMongoClient,
    XenditClient,
    build_line_items,
    build_provider,
)
from orderflow.utils.timeutil import utcnow


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.posts = []

    def post(self, url, headers=None, json=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "json": json, "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.response


def checkout_request(total_minor=90000, line_items=None, **overrides):
    fields = dict(
        reference="ORD-20261019-ABC123",
        checkout_id="5f0c2b9e-0d4c-4c4e-9a53-3f1f7f9b8a10",
        description="Payment for order ORD-20261019-ABC123",
        total_minor=total_minor,
        currency="PHP",
        customer_email="buyer@example.com",
        customer_name="Buyer",
        order_ids=["o-1"],
        line_items=line_items if line_items is not None else [LineItem(name="Tee - Black", amount_minor=45000, quantity=2)],
        success_url="http://shop.test/ok",
        failure_url="http://shop.test/failed",
        expires_at=utcnow() + timedelta(hours=24),
    )
    fields.update(overrides)
    return CheckoutRequest(**fields)


class TestLineItems:
    def test_discount_spread_over_units(self):
        items = build_line_items(
            [
                {
                    "order_number": "ORD-1",
                    "subtotal": "1000.00",
                    "total_amount": "900.00",
                    "lines": [{"price": "500.00", "quantity": 2, "product_name": "Tee", "variant_name": "Black"}],
                }
            ]
        )
        assert items == [LineItem(name="Tee - Black", amount_minor=45000, quantity=2)]

    def test_rounding_drift_collapses_to_one_line(self):
        items = build_line_items(
            [{"order_number": "ORD-2", "subtotal": "10.00", "total_amount": "5.00", "lines": [{"price": "0.01", "quantity": 1000}]}]
        )
        assert items == [LineItem(name="Order ORD-2", amount_minor=500, quantity=1)]

    def test_free_orders_are_skipped(self):
        assert build_line_items([{"order_number": "ORD-3", "subtotal": "100", "total_amount": "0", "lines": [{"price": "100", "quantity": 1}]}]) == []


class TestPayMongoClient:
    def test_creates_checkout_session(self):
        http = FakeHttp(FakeResponse(200, {"data": {"id": "cs_1", "attributes": {"checkout_url": "https://checkout.test/cs_1"}}}))
        req = checkout_request()
        result = PayMongoClient("sk_test", http=http).create_checkout(req)

        assert result.resource_id == "cs_1"
        assert result.url == "https://checkout.test/cs_1"
        assert result.expires_at == req.expires_at
        sent = http.posts[0]
        assert sent["url"] == "https://api.paymongo.com/v1/checkout_sessions"
        assert sent["headers"]["Authorization"] == "Basic " + base64.b64encode(b"sk_test:").decode("ascii")
        attributes = sent["json"]["data"]["attributes"]
        assert attributes["reference_number"] == "ORD-20261019-ABC123"
        assert attributes["metadata"]["external_id"] == "ORD-20261019-ABC123"
        assert attributes["line_items"][0]["amount"] == 45000
        assert attributes["billing"]["email"] == "buyer@example.com"

    def test_rejection_is_definitive(self):
        http = FakeHttp(FakeResponse(400, {"errors": [{"detail": "amount is invalid"}]}))
        with pytest.raises(ExternalProviderError) as info:
            PayMongoClient("sk_test", http=http).create_checkout(checkout_request())
        assert info.value.definitive is True
        assert info.value.details["detail"] == "amount is invalid"

    def test_timeout_is_ambiguous(self):
        http = FakeHttp(error=requests.exceptions.Timeout("read timed out"))
        with pytest.raises(ExternalProviderError) as info:
            PayMongoClient("sk_test", http=http).create_checkout(checkout_request())
        assert info.value.definitive is False

    def test_missing_key_fails_before_calling(self):
        http = FakeHttp()
        with pytest.raises(ExternalProviderError) as info:
            PayMongoClient("", http=http).create_checkout(checkout_request())
        assert info.value.definitive is True
        assert http.posts == []

    def test_line_total_mismatch(self):
        with pytest.raises(ValidationError):
            PayMongoClient("sk_test", http=FakeHttp()).create_checkout(checkout_request(total_minor=100000))


class TestXenditClient:
    def test_creates_invoice(self):
        http = FakeHttp(
            FakeResponse(200, {"id": "inv_1", "invoice_url": "https://invoice.test/inv_1", "expiry_date": "2026-10-20T10:00:00.000Z"})
        )
        result = XenditClient("xnd_test", http=http).create_checkout(checkout_request())
        assert result.provider == "xendit"
        assert result.expires_at == datetime(2026, 10, 20, 10, 0)
        payload = http.posts[0]["json"]
        assert http.posts[0]["url"] == "https://api.xendit.co/v2/invoices"
        assert payload["external_id"] == "ORD-20261019-ABC123"
        assert payload["amount"] == 900.0
        assert payload["items"][0]["price"] == 450.0

    def test_incomplete_response(self):
        http = FakeHttp(FakeResponse(200, {"id": "inv_1"}))
        with pytest.raises(ExternalProviderError):
            XenditClient("xnd_test", http=http).create_checkout(checkout_request())

    def test_build_provider(self, config):
        assert isinstance(build_provider(config), PayMongoClient)
        config.payment_provider = "xendit"
        assert isinstance(build_provider(config), XenditClient)


class TestChatwoot:
    def test_unconfigured_client_only_logs(self):
        http = FakeHttp()
        collab = ChatwootCollaborators(ChatwootClient("", "", http=http))
        collab.send_chat_message("1", "7", "hello")
        assert http.posts == []

    def test_input_select_payload(self):
        http = FakeHttp(FakeResponse(200, {"id": 1}))
        collab = ChatwootCollaborators(ChatwootClient("https://chat.test/", "tok", http=http))
        collab.send_chat_message("1", "7", "Pick one", {"items": [{"title": "A", "value": "a"}]})
        sent = http.posts[0]
        assert sent["url"] == "https://chat.test/api/v1/accounts/1/conversations/7/messages"
        assert sent["headers"]["api_access_token"] == "tok"
        assert sent["json"]["content_type"] == "input_select"
        assert sent["json"]["content_attributes"]["items"][0]["value"] == "a"

    def test_send_failure_is_swallowed(self):
        http = FakeHttp(FakeResponse(500, text="boom"))
        collab = ChatwootCollaborators(ChatwootClient("https://chat.test", "tok", http=http))
        collab.send_chat_message("1", "7", "hello")
        assert len(http.posts) == 1

    def test_client_raises(self):
        http = FakeHttp(error=requests.exceptions.ConnectionError("down"))
        with pytest.raises(ExternalProviderError):
            ChatwootClient("https://chat.test", "tok", http=http).send_message("1", "7", {"content": "x"})
