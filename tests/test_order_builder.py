"""Order creation: numbering, authorization, idempotency and item storage."""
import re

import pytest

from orderflow.errors import NotFoundError, SecurityError, ValidationError
from orderflow.models import Order
from orderflow.services.collaborators import Actor
from orderflow.services.order_service import EMBEDDED_ITEM_LIMIT, SOURCE_MESSENGER, generate_order_number
from orderflow.utils.timeutil import utcnow


ORDER_NUMBER = re.compile(r"^ORD-\d{8}-[0-9A-Z]{6}$")


@pytest.fixture
def mug(seed):
    return seed.product(name="Mug", variants=[{"name": "White", "price": "250.00", "inventory": 100}])


def _item(ids, variant="White", quantity=1, **extra):
    item = {"product_id": ids["product_id"], "variant_id": ids["variants"][variant], "quantity": quantity}
    item.update(extra)
    return item


class TestOrderNumbers:
    def test_format(self):
        assert ORDER_NUMBER.match(generate_order_number(utcnow()))

    def test_messenger_prefix(self):
        assert generate_order_number(utcnow(), "MSG").startswith("MSG-")


class TestCreateOrder:
    def test_basic_order(self, components, seed, mug, collab):
        customer = seed.user()
        order = components["order_service"].create_order(
            customer_id=customer, items=[_item(mug, quantity=2)], actor=Actor(id=customer)
        )
        assert ORDER_NUMBER.match(order["order_number"])
        assert order["status"] == "PENDING"
        assert order["payment_status"] == "PENDING"
        assert order["total_amount"] == 500.0
        assert order["organization_id"] == "org-1"
        assert order["recent_status_history"][0]["status"] == "PENDING"
        assert ("order.created", "info") in [(a, s) for a, s, _ in collab.audits]

    def test_order_created_log(self, components, seed, mug):
        customer = seed.user()
        order = components["order_service"].create_order(customer_id=customer, items=[_item(mug)], actor=Actor(id=customer))
        logs = components["state_machine"].list_logs(order["order_id"])
        assert [entry["log_type"] for entry in logs] == ["ORDER_CREATED"]

    def test_rejects_empty_and_bad_quantity(self, components, seed, mug):
        customer = seed.user()
        service = components["order_service"]
        with pytest.raises(ValidationError):
            service.create_order(customer_id=customer, items=[], actor=Actor(id=customer))
        with pytest.raises(ValidationError):
            service.create_order(customer_id=customer, items=[_item(mug, quantity=0)], actor=Actor(id=customer))

    def test_unknown_product(self, components, seed):
        customer = seed.user()
        with pytest.raises(NotFoundError):
            components["order_service"].create_order(
                customer_id=customer, items=[{"product_id": "nope", "quantity": 1}], actor=Actor(id=customer)
            )

    def test_single_store_only(self, components, seed, mug):
        customer = seed.user()
        other = seed.product(name="Cap", organization_id="org-2", variants=[{"name": "White", "price": "100", "inventory": 5}])
        with pytest.raises(ValidationError, match="same store"):
            components["order_service"].create_order(
                customer_id=customer, items=[_item(mug), _item(other)], actor=Actor(id=customer)
            )

    def test_customer_cannot_order_for_someone_else(self, components, seed, mug):
        customer = seed.user(email="a@example.com")
        other = seed.user(email="b@example.com")
        with pytest.raises(SecurityError):
            components["order_service"].create_order(customer_id=other, items=[_item(mug)], actor=Actor(id=customer))


class TestPriceOverrides:
    def test_customer_override_is_refused(self, components, seed, mug):
        customer = seed.user()
        with pytest.raises(SecurityError):
            components["order_service"].create_order(
                customer_id=customer, items=[_item(mug, price="1.00")], actor=Actor(id=customer)
            )

    def test_staff_override_is_tagged(self, components, seed, mug):
        customer = seed.user()
        staff = Actor(id="staff-1", role="staff", organization_ids=("org-1",))
        service = components["order_service"]
        order = service.create_order(customer_id=customer, items=[_item(mug, price="200.00")], actor=staff)
        assert order["total_amount"] == 200.0
        assert order["discount_amount"] == 50.0
        line = service.get_order(order["order_id"])["items"][0]
        assert line["applied_role"] == "STAFF_OVERRIDE"
        assert line["original_price"] == "250.00"

    def test_trusted_channel_override(self, components, seed, mug, system):
        customer = seed.user()
        order = components["order_service"].create_order(
            customer_id=customer, items=[_item(mug, price="240.00")], actor=system, source=SOURCE_MESSENGER
        )
        assert order["order_number"].startswith("MSG-")
        line = components["order_service"].get_order(order["order_id"])["items"][0]
        assert line["applied_role"] == "SYSTEM_OVERRIDE"

    def test_same_price_stays_standard(self, components, seed, mug, system):
        customer = seed.user()
        order = components["order_service"].create_order(
            customer_id=customer, items=[_item(mug, price="250.00")], actor=system, source=SOURCE_MESSENGER
        )
        line = components["order_service"].get_order(order["order_id"])["items"][0]
        assert line["applied_role"] == "STANDARD"


class TestIdempotencyAndStorage:
    def test_request_id_replays_the_same_order(self, components, seed, mug, session_factory):
        customer = seed.user()
        service = components["order_service"]
        first = service.create_order(customer_id=customer, items=[_item(mug, quantity=3)], actor=Actor(id=customer), request_id="req-1")
        second = service.create_order(customer_id=customer, items=[_item(mug, quantity=3)], actor=Actor(id=customer), request_id="req-1")
        assert first["order_id"] == second["order_id"]
        with session_factory() as s:
            assert s.query(Order).count() == 1

    def test_large_orders_use_item_rows(self, components, seed, mug, session_factory):
        customer = seed.user()
        items = [_item(mug) for _ in range(EMBEDDED_ITEM_LIMIT + 1)]
        order = components["order_service"].create_order(customer_id=customer, items=items, actor=Actor(id=customer))
        with session_factory() as s:
            row = s.query(Order).filter(Order.id == order["order_id"]).one()
            assert row.uses_item_rows is True
            assert row.items is None
        assert len(components["order_service"].get_order(order["order_id"])["items"]) == EMBEDDED_ITEM_LIMIT + 1

    def test_soft_delete_hides_order(self, components, seed, mug, admin):
        customer = seed.user()
        service = components["order_service"]
        order = service.create_order(customer_id=customer, items=[_item(mug)], actor=Actor(id=customer))
        with pytest.raises(SecurityError):
            service.soft_delete(order["order_id"], actor=Actor(id=customer))
        service.soft_delete(order["order_id"], actor=admin)
        assert service.get_order(order["order_id"]) == {}
