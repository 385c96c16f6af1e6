"""顧客端下單與結帳 API。"""

from __future__ import annotations

from flask import Blueprint, jsonify

from orderflow.errors import NotFoundError, SecurityError, ValidationError
from orderflow.services.order_service import SOURCE_WEB

from .context import components, current_actor, json_body, optional_actor


checkout_bp = Blueprint("orderflow_checkout", __name__, url_prefix="/api")


@checkout_bp.post("/orders")
def create_order():
    actor = current_actor()
    payload = json_body()
    items = payload.get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    order = components()["order_service"].create_order(
        customer_id=str(payload.get("customer_id") or actor.id),
        items=items,
        actor=actor,
        organization_id=payload.get("organization_id"),
        voucher_code=payload.get("voucher_code"),
        source=SOURCE_WEB,
        request_id=payload.get("request_id"),
    )
    return jsonify(order), 201


@checkout_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    actor = current_actor()
    order = components()["order_service"].get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if order["customer_id"] != actor.id and not actor.is_privileged:
        raise SecurityError("Not allowed to view this order")
    return jsonify(order)


@checkout_bp.post("/orders/<order_id>/cancel")
def cancel_own_order(order_id: str):
    actor = current_actor()
    payload = json_body()
    order = components()["state_machine"].cancel_order(
        order_id,
        reason="CUSTOMER_REQUEST",
        message=payload.get("message"),
        actor=actor,
    )
    return jsonify(order)


@checkout_bp.post("/checkout-sessions")
def create_checkout_session():
    actor = current_actor()
    payload = json_body()
    order_ids = payload.get("order_ids")
    if not isinstance(order_ids, list) or not order_ids:
        raise ValidationError("order_ids must be a non-empty list")
    result = components()["checkout_service"].create_session(
        customer_id=str(payload.get("customer_id") or actor.id),
        order_ids=[str(o) for o in order_ids],
        actor=actor,
    )
    return jsonify(result), 201


@checkout_bp.get("/checkout-sessions/<checkout_id>")
def get_checkout_session(checkout_id: str):
    actor = current_actor()
    data = components()["checkout_service"].get_checkout(checkout_id)
    if data["customer_id"] != actor.id and not actor.is_privileged:
        raise SecurityError("Not allowed to access this checkout")
    return jsonify(data)


@checkout_bp.post("/checkout-sessions/<checkout_id>/invoice")
def create_invoice(checkout_id: str):
    # 訪客以訂單上的 email 驗證身分
    payload = json_body()
    result = components()["checkout_service"].create_or_get_invoice(
        checkout_id,
        actor=optional_actor(),
        guest_email=payload.get("email"),
    )
    return jsonify(result)


@checkout_bp.post("/orders/<order_id>/payment-link")
def refresh_payment_link(order_id: str):
    result = components()["checkout_service"].refresh_payment_link(order_id, actor=current_actor())
    return jsonify(result)


@checkout_bp.post("/orders/<order_id>/confirm-received")
def confirm_received(order_id: str):
    order = components()["state_machine"].confirm_order_received(order_id, actor=current_actor())
    return jsonify(order)
