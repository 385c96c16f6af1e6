"""
Chat ordering flow, driven message by message.

  - CODE trigger, variant / size / quantity / notes prompts
  - e-mail OTP verification and its attempt limit
  - cancel, idle expiry and session replacement
  - order + payment link creation and the payment confirmation reply
"""
import json
from datetime import timedelta
from types import SimpleNamespace

import pytest

from app import build_components
from orderflow.models import ChatOrderSession, EmailVerificationCode, Order
from orderflow.services.conversation_service import (
    CANCELLED,
    CHECKOUT,
    COMPLETED,
    EMAIL_INPUT,
    NOTES_INPUT,
    OTP_VERIFICATION,
    QUANTITY_INPUT,
    SIZE_SELECTION,
    SIZE_TITLE_RE,
    VARIANT_SELECTION,
    VARIANT_TITLE_RE,
    match_option,
)
from orderflow.utils.timeutil import utcnow

from .conftest import FakeProvider, definitive_error


EMAIL = "chat.buyer@example.com"


@pytest.fixture
def tee(seed):
    return seed.product(
        name="Logo Tee",
        code="TEE1",
        price="500.00",
        variants=[
            {
                "name": "Black",
                "price": "500.00",
                "inventory": 10,
                "sizes": [
                    {"label": "Small", "price": "500.00", "inventory": 5},
                    {"label": "Medium", "price": "520.00", "inventory": 5},
                    {"label": "Large", "price": "550.00", "inventory": 5},
                ],
            },
            {"name": "White", "price": "500.00", "inventory": 0},
        ],
    )


class Chat:
    """Sends messages into one conversation with a controllable clock."""

    def __init__(self, components, collab, conversation_id="conv-1"):
        self.service = components["conversation"]
        self.collab = collab
        self.conversation_id = conversation_id
        self.now = utcnow()

    def say(self, text, advance_minutes=0):
        self.now = self.now + timedelta(minutes=advance_minutes)
        return self.service.handle_message(
            account_id=1,
            conversation_id=self.conversation_id,
            contact_id=42,
            content=text,
            contact_name="Chat Buyer",
            now=self.now,
        )

    @property
    def last(self):
        return self.collab.chat_messages[-1]

    def item_titles(self):
        return [item["title"] for item in (self.last["content_attributes"] or {}).get("items", [])]

    def to_otp(self):
        self.say("CODE: TEE1")
        self.say("Black - ₱500.00")
        self.say("Large (+₱550.00)")
        self.say("2")
        self.say("skip_notes")
        return self.say(EMAIL)


@pytest.fixture
def chat(components, collab):
    return Chat(components, collab)


class TestMatchOption:
    options = [SimpleNamespace(id="1", name="Blue"), SimpleNamespace(id="2", name="Navy Blue")]

    def _match(self, text):
        return match_option(text, self.options, "variant_", lambda o: o.name, VARIANT_TITLE_RE)

    def test_token(self):
        assert self._match("variant_2").id == "2"
        assert self._match("variant_9") is None

    def test_title_with_price_suffix(self):
        assert self._match("Navy Blue - ₱1,200.00").id == "2"

    def test_case_insensitive(self):
        assert self._match("navy blue").id == "2"

    def test_longest_contained_name_wins(self):
        assert self._match("I want the navy blue one").id == "2"
        assert self._match("blue please").id == "1"

    def test_no_match(self):
        assert self._match("red") is None

    def test_size_suffix_is_stripped(self):
        sizes = [SimpleNamespace(id="s", label="Small"), SimpleNamespace(id="l", label="Large")]
        found = match_option("Large (+₱50.00)", sizes, "size_", lambda o: o.label, SIZE_TITLE_RE)
        assert found.id == "l"


class TestHappyPath:
    def test_full_flow_creates_messenger_order(self, chat, tee, provider, session_factory, collab):
        started = chat.say("code: tee1")
        assert started["step"] == VARIANT_SELECTION
        assert chat.item_titles() == ["Black - ₱500.00", "❌ Cancel Order"]

        assert chat.say("Black - ₱500.00")["step"] == SIZE_SELECTION
        assert "Large (+₱550.00)" in chat.item_titles()
        assert chat.say("Large (+₱550.00)")["step"] == QUANTITY_INPUT
        assert chat.say("2")["step"] == NOTES_INPUT
        assert chat.say("skip_notes")["step"] == EMAIL_INPUT
        assert chat.say(EMAIL)["step"] == OTP_VERIFICATION
        assert collab.otps[-1][0] == EMAIL

        done = chat.say(collab.last_otp())
        assert done["step"] == COMPLETED
        assert "https://pay.test/" in chat.last["content"]
        assert "₱1,100.00" in chat.last["content"]
        assert provider.calls == 1

        with session_factory() as s:
            chat_row = s.query(ChatOrderSession).filter(ChatOrderSession.id == done["session_id"]).one()
            assert chat_row.is_active is False
            order = s.query(Order).filter(Order.id == chat_row.order_id).one()
            assert order.source == "MESSENGER"
            assert order.order_number.startswith("MSG-")
            assert order.items[0]["size_label"] == "Large"
            assert order.items[0]["quantity"] == 2

    def test_variant_token_and_back(self, chat, tee):
        chat.say("CODE: TEE1")
        assert chat.say("variant_" + tee["variants"]["Black"])["step"] == SIZE_SELECTION
        assert chat.say("back_variant")["step"] == VARIANT_SELECTION

    def test_invalid_inputs_keep_the_step(self, chat, tee):
        chat.say("CODE: TEE1")
        assert chat.say("Purple")["step"] == VARIANT_SELECTION
        assert chat.last["content"] == "❌ Invalid variant selection. Please try again."
        chat.say("Black")
        chat.say("Small")
        for bad in ("abc", "0", "100", "1_0", "\u0661", "+5"):
            assert chat.say(bad)["step"] == QUANTITY_INPUT
        assert "between 1 and 99" in chat.last["content"]
        chat.say("1")
        chat.say("Please gift wrap")
        assert chat.say("not-an-email")["step"] == EMAIL_INPUT
        assert "valid email" in chat.last["content"]

    def test_product_without_variants(self, chat, seed):
        seed.product(name="Sticker", code="STK", price="50.00")
        assert chat.say("CODE: STK")["step"] == QUANTITY_INPUT

    def test_email_is_asked_per_session(self, components, collab, chat, tee, session_factory, provider):
        chat.to_otp()
        chat.say(collab.last_otp())
        second = Chat(components, collab, conversation_id="conv-1")
        second.now = chat.now
        second.say("CODE: TEE1")
        second.say("Black")
        second.say("Small")
        second.say("1")
        assert second.say("skip")["step"] == EMAIL_INPUT

    def test_payment_link_failure_allows_retry(self, config, session_factory, collab, tee):
        provider = FakeProvider(errors=[definitive_error()])
        components = build_components(config, session_factory=session_factory, collaborators=collab, provider=provider)
        chat = Chat(components, collab)
        chat.to_otp()
        assert chat.say(collab.last_otp())["step"] == CHECKOUT
        assert "try again" in chat.last["content"]
        retried = chat.say("retry")
        assert retried["step"] == COMPLETED
        assert provider.calls == 2
        with session_factory() as s:
            assert s.query(Order).count() == 1


class TestOtp:
    def test_three_wrong_codes_end_the_session(self, chat, tee, provider, session_factory):
        chat.to_otp()
        assert chat.say("000000")["step"] == OTP_VERIFICATION
        assert chat.last["content"] == "❌ Invalid code. 2 attempts remaining."
        assert chat.say("000000")["step"] == OTP_VERIFICATION
        assert chat.say("000000")["step"] == CANCELLED
        assert "Too many incorrect attempts" in chat.last["content"]

        assert chat.say("123456") == {"handled": False}
        with session_factory() as s:
            assert s.query(EmailVerificationCode).filter(EmailVerificationCode.email == EMAIL).one().attempts == 3
            assert s.query(Order).count() == 0
        assert provider.calls == 0

    def test_expired_code_asks_for_email_again(self, chat, tee, config):
        chat.to_otp()
        result = chat.say("111111", advance_minutes=config.otp_ttl_minutes)
        assert result["step"] == EMAIL_INPUT
        assert "expired" in chat.last["content"]


class TestSessionLifecycle:
    def test_cancel(self, chat, tee, session_factory):
        started = chat.say("CODE: TEE1")
        assert chat.say("Cancel")["step"] == CANCELLED
        assert chat.last["content"].startswith("❌ Order cancelled.")
        with session_factory() as s:
            assert s.query(ChatOrderSession).filter(ChatOrderSession.id == started["session_id"]).one().is_active is False

    def test_idle_session_expires_on_next_message(self, chat, tee, config):
        chat.say("CODE: TEE1")
        result = chat.say("Black", advance_minutes=config.chat_session_idle_minutes + 1)
        assert result["step"] == CANCELLED
        assert chat.last["content"] == "❌ Session expired. Please start a new order."

    def test_new_code_replaces_active_session(self, chat, tee, session_factory):
        first = chat.say("CODE: TEE1")
        second = chat.say("CODE: TEE1")
        assert first["session_id"] != second["session_id"]
        with session_factory() as s:
            active = s.query(ChatOrderSession).filter(ChatOrderSession.is_active.is_(True)).all()
            assert [row.id for row in active] == [second["session_id"]]

    def test_unknown_code(self, chat):
        result = chat.say("CODE: NOPE")
        assert result["step"] is None
        assert chat.last["content"].startswith("❌ Product NOPE not found")

    def test_out_of_stock_product(self, chat, seed):
        seed.product(name="Cap", code="CAP", variants=[{"name": "Red", "price": "200", "inventory": 0}])
        assert chat.say("CODE: CAP")["session_id"] is None
        assert "out of stock" in chat.last["content"]

    def test_variant_stocked_by_size(self, chat, seed):
        seed.product(
            name="Cap",
            code="CAP1",
            variants=[{"name": "Blue", "price": "200", "inventory": None, "sizes": [{"label": "Free", "price": "200", "inventory": 3}]}],
        )
        assert chat.say("CODE: CAP1")["step"] == VARIANT_SELECTION
        assert chat.say("Blue")["step"] == SIZE_SELECTION

    def test_messages_without_session_are_not_handled(self, chat):
        assert chat.say("hello") == {"handled": False}

    def test_expiry_sweep(self, components, chat, tee, config):
        started = chat.say("CODE: TEE1")
        later = chat.now + timedelta(minutes=config.chat_session_idle_minutes + 1)
        assert components["conversation"].expire_chat_sessions(now=later) == [started["session_id"]]


class TestPaymentConfirmation:
    def test_paid_webhook_sends_chat_reply(self, components, chat, tee, collab, session_factory):
        chat.to_otp()
        done = chat.say(collab.last_otp())
        with session_factory() as s:
            order_id = s.query(ChatOrderSession).filter(ChatOrderSession.id == done["session_id"]).one().order_id
            order = s.query(Order).filter(Order.id == order_id).one()
            order_number, total = order.order_number, str(order.total_amount)

        body = json.dumps(
            {"id": "inv_9", "external_id": order_number, "status": "PAID", "amount": total, "paid_amount": total}
        ).encode("utf-8")
        components["reconciliation"].handle_provider_webhook("xendit", body, {"X-Callback-Token": "cb_token_test"})

        assert "Payment Received" in chat.last["content"]
        assert order_number in chat.last["content"]
        assert chat.last["conversation_id"] == "conv-1"

    def test_listener_ignores_unknown_orders(self, components):
        assert components["conversation"].send_payment_confirmation({"order_id": "nope"}) is False
