"""
Shared fixtures: an in-memory SQLite database per test, a recording
collaborator set and a scripted payment provider.
"""
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

import pytest

from app import build_components, create_app
from orderflow.config import AppConfig
from orderflow.db.session import build_engine, make_session_factory
from orderflow.errors import ExternalProviderError
from orderflow.models import Base, Product, ProductSize, ProductVariant, User, Voucher
from orderflow.services.collaborators import Actor, Collaborators
from orderflow.services.payment_providers import ProviderCheckout


class RecordingCollaborators(Collaborators):
    def __init__(self):
        super().__init__()
        self.notifications = []
        self.audits = []
        self.chat_messages = []
        self.otps = []

    def notify(self, kind, payload):
        self.notifications.append((kind, dict(payload)))
        super().notify(kind, payload)

    def audit(self, action, severity, metadata):
        self.audits.append((action, severity, dict(metadata)))

    def send_otp(self, email, code):
        self.otps.append((email, code))

    def send_chat_message(self, account_id, conversation_id, content, content_attributes=None):
        self.chat_messages.append(
            {"account_id": account_id, "conversation_id": conversation_id, "content": content, "content_attributes": content_attributes}
        )

    def last_otp(self) -> str:
        return self.otps[-1][1]


class FakeProvider:
    """Stands in for PayMongo/Xendit; ``errors`` are raised in order before succeeding."""

    name = "paymongo"

    def __init__(self, errors: Optional[List[Exception]] = None, always_fail: Optional[Exception] = None):
        self.requests = []
        self.errors = list(errors or [])
        self.always_fail = always_fail

    @property
    def calls(self) -> int:
        return len(self.requests)

    def create_checkout(self, req):
        self.requests.append(req)
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return ProviderCheckout(
            provider=self.name,
            resource_id=f"cs_{len(self.requests)}",
            url=f"https://pay.test/{req.checkout_id}",
            expires_at=req.expires_at,
        )


def definitive_error() -> ExternalProviderError:
    return ExternalProviderError("paymongo API error: 400", provider="paymongo", provider_status=400)


class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    def user(self, email: Optional[str] = "buyer@example.com", role: str = "customer", user_id: Optional[str] = None, contact_id=None) -> str:
        uid = user_id or str(uuid4())
        with self.session_factory() as s:
            s.add(User(id=uid, email=email, name="Buyer", role=role, chat_contact_id=contact_id))
        return uid

    def product(
        self,
        *,
        name: str = "Hoodie",
        code: Optional[str] = None,
        organization_id: str = "org-1",
        inventory_type: str = "STOCK",
        inventory: Optional[int] = None,
        price="1000.00",
        variants: Optional[List[dict]] = None,
    ) -> dict:
        """``variants``: dicts with name/price/inventory and optional sizes (label/price/inventory)."""
        pid = str(uuid4())
        ids = {"product_id": pid, "variants": {}, "sizes": {}}
        with self.session_factory() as s:
            product = Product(
                id=pid,
                organization_id=organization_id,
                code=code,
                name=name,
                inventory_type=inventory_type,
                inventory=inventory,
                min_price=Decimal(price) if price is not None else None,
                currency="PHP",
                is_active=True,
            )
            s.add(product)
            for order_idx, row in enumerate(variants or []):
                vid = str(uuid4())
                ids["variants"][row["name"]] = vid
                s.add(
                    ProductVariant(
                        id=vid,
                        product_id=pid,
                        name=row["name"],
                        price=Decimal(row["price"]) if row.get("price") is not None else None,
                        inventory=row.get("inventory"),
                        is_active=row.get("is_active", True),
                        sort_order=order_idx,
                    )
                )
                for size_idx, size in enumerate(row.get("sizes") or []):
                    sid = str(uuid4())
                    ids["sizes"][(row["name"], size["label"])] = sid
                    s.add(
                        ProductSize(
                            id=sid,
                            variant_id=vid,
                            label=size["label"],
                            price=Decimal(size["price"]) if size.get("price") is not None else None,
                            inventory=size.get("inventory"),
                            sort_order=size_idx,
                        )
                    )
        return ids

    def voucher(self, code: str, discount_type: str = "PERCENTAGE", value="10", **fields) -> str:
        vid = str(uuid4())
        fields.setdefault("is_active", True)
        with self.session_factory() as s:
            s.add(
                Voucher(
                    id=vid,
                    code=code,
                    name=code,
                    discount_type=discount_type,
                    discount_value=Decimal(value),
                    used_count=0,
                    **fields,
                )
            )
        return vid


@pytest.fixture
def config():
    return AppConfig(
        database_url="sqlite://",
        secret_key="test",
        log_level="WARNING",
        app_base_url="http://shop.test",
        currency="PHP",
        payment_provider="paymongo",
        paymongo_webhook_secret="whsk_test",
        xendit_callback_token="cb_token_test",
        system_actor_id="system",
        invoice_wait_seconds=0,
    )


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def seed(session_factory):
    return Seeder(session_factory)


@pytest.fixture
def collab():
    return RecordingCollaborators()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def components(config, session_factory, collab, provider):
    return build_components(config, session_factory=session_factory, collaborators=collab, provider=provider)


@pytest.fixture
def system():
    return Actor(id="system", role="system")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role="admin")


@pytest.fixture
def client(config, components):
    app = create_app(config, components=components)
    app.config["TESTING"] = True
    return app.test_client()
