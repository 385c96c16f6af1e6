"""Provider callback authentication and parsing into normalised events."""
import pytest

from orderflow.errors import ValidationError
from orderflow.services.webhook_events import (
    IgnoredEvent,
    InvoiceExpired,
    PaymentFailed,
    PaymentSucceeded,
    compute_paymongo_signature,
    parse_paymongo_event,
    parse_signature_header,
    parse_xendit_event,
    verify_paymongo_signature,
    verify_xendit_token,
)


SECRET = "whsk_test"
BODY = b'{"data":{"id":"evt_1"}}'


def paymongo_event(event_type, resource_id="pay_1", resource_type="payment", **attributes):
    return {
        "data": {
            "id": "evt_1",
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "data": {"id": resource_id, "type": resource_type, "attributes": attributes},
            },
        }
    }


class TestPayMongoSignature:
    def test_header_parsing(self):
        assert parse_signature_header("t=1, te=abc ,li=") == {"t": "1", "te": "abc", "li": ""}

    def test_test_mode_signature(self):
        sig = compute_paymongo_signature(BODY, "1700000000", SECRET)
        assert verify_paymongo_signature(BODY, f"t=1700000000,te={sig},li=", SECRET)

    def test_live_signature_preferred(self):
        sig = compute_paymongo_signature(BODY, "1700000000", SECRET)
        assert verify_paymongo_signature(BODY, f"t=1700000000,te=bogus,li={sig}", SECRET)
        assert not verify_paymongo_signature(BODY, f"t=1700000000,te={sig},li=bogus", SECRET)

    def test_tampered_body(self):
        sig = compute_paymongo_signature(BODY, "1700000000", SECRET)
        assert not verify_paymongo_signature(BODY + b" ", f"t=1700000000,te={sig}", SECRET)

    def test_missing_parts(self):
        assert not verify_paymongo_signature(BODY, None, SECRET)
        assert not verify_paymongo_signature(BODY, "te=abc", SECRET)
        assert not verify_paymongo_signature(BODY, "t=1,te=abc", "")


class TestXenditToken:
    def test_exact_match_only(self):
        assert verify_xendit_token("cb_token_test", "cb_token_test")
        assert not verify_xendit_token("cb_token_tes", "cb_token_test")
        assert not verify_xendit_token(None, "cb_token_test")
        assert not verify_xendit_token("anything", "")


class TestXenditParsing:
    def _callback(self, status, **extra):
        body = {"id": "inv_1", "external_id": "ORD-20261019-ABC123", "status": status, "amount": 1000}
        body.update(extra)
        return body

    @pytest.mark.parametrize("status", ["PAID", "SETTLED", "paid"])
    def test_paid(self, status):
        event = parse_xendit_event(self._callback(status, paid_amount="1000.00", fees_paid_amount="25.50", payment_channel="GCASH"))
        assert isinstance(event, PaymentSucceeded)
        assert event.amount_minor == 100000
        assert event.fee_minor == 2550
        assert event.net_minor == 97450
        assert event.payment_method == "GCASH"
        assert event.external_id == "ORD-20261019-ABC123"

    def test_expired(self):
        assert isinstance(parse_xendit_event(self._callback("EXPIRED")), InvoiceExpired)

    def test_pending_is_ignored(self):
        event = parse_xendit_event(self._callback("PENDING"))
        assert isinstance(event, IgnoredEvent)
        assert event.event_type == "invoice.pending"

    def test_malformed(self):
        with pytest.raises(ValidationError):
            parse_xendit_event({"status": "PAID"})


class TestPayMongoParsing:
    def test_checkout_session_paid(self):
        payload = paymongo_event(
            "checkout_session.payment.paid",
            resource_id="cs_1",
            resource_type="checkout_session",
            reference_number="checkout-abc",
            metadata={},
            payments=[
                {"id": "pay_9", "type": "payment", "attributes": {"amount": 150000, "fee": 3750, "currency": "php", "source": {"type": "gcash"}}}
            ],
        )
        event = parse_paymongo_event(payload)
        assert isinstance(event, PaymentSucceeded)
        assert event.transaction_id == "pay_9"
        assert event.external_id == "checkout-abc"
        assert event.currency == "PHP"
        assert event.net_minor == 146250
        assert event.payment_method == "gcash"

    def test_metadata_external_id_wins(self):
        payload = paymongo_event(
            "checkout_session.payment.paid",
            resource_type="checkout_session",
            reference_number="ORD-X",
            metadata={"external_id": "checkout-meta"},
            payments=[{"id": "pay_1", "type": "payment", "attributes": {"amount": 100}}],
        )
        assert parse_paymongo_event(payload).external_id == "checkout-meta"

    def test_checkout_without_payments_is_ignored(self):
        payload = paymongo_event("checkout_session.payment.paid", resource_type="checkout_session", payments=[])
        assert isinstance(parse_paymongo_event(payload), IgnoredEvent)

    def test_payment_paid_description_fallback(self):
        payload = paymongo_event(
            "payment.paid",
            amount=150000,
            fee=0,
            description="Payment for 2 orders from 2 store(s): ORD-20261019-AAAAAA, ORD-20261019-BBBBBB",
        )
        event = parse_paymongo_event(payload)
        assert event.external_id is None
        assert event.order_numbers == ("ORD-20261019-AAAAAA", "ORD-20261019-BBBBBB")

    def test_payment_failed(self):
        payload = paymongo_event(
            "payment.failed",
            amount=100000,
            description="Payment for order MSG-20261019-ZZZZZZ",
            failed_message="Card declined",
        )
        event = parse_paymongo_event(payload)
        assert isinstance(event, PaymentFailed)
        assert event.external_id == "MSG-20261019-ZZZZZZ"
        assert event.reason == "Card declined"

    def test_unknown_type(self):
        event = parse_paymongo_event(paymongo_event("source.chargeable", amount=1))
        assert isinstance(event, IgnoredEvent)
        assert event.event_type == "source.chargeable"

    def test_malformed(self):
        with pytest.raises(ValidationError):
            parse_paymongo_event({"data": {"attributes": {}}})
