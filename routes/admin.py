"""管理後台 API：訂單狀態、付款、退款與排程清理。"""

from __future__ import annotations

from flask import Blueprint, jsonify

from orderflow.errors import SecurityError, ValidationError

from .context import components, current_actor, json_body


admin_bp = Blueprint("orderflow_admin", __name__, url_prefix="/admin")


@admin_bp.before_request
def guard_private_routes():
    actor = current_actor()
    if not actor.is_privileged:
        raise SecurityError(f"Actor {actor.id} is not staff")
    return None


def _required(payload: dict, key: str) -> str:
    value = str(payload.get(key) or "").strip()
    if not value:
        raise ValidationError(f"{key} required")
    return value


@admin_bp.post("/orders/<order_id>/status")
def update_status(order_id: str):
    payload = json_body()
    order = components()["state_machine"].update_status(
        order_id,
        _required(payload, "status").upper(),
        actor=current_actor(),
        reason=payload.get("reason"),
        override=bool(payload.get("override")),
    )
    return jsonify(order)


@admin_bp.post("/orders/<order_id>/payment-status")
def update_payment_status(order_id: str):
    payload = json_body()
    order = components()["state_machine"].update_payment_status(
        order_id,
        _required(payload, "payment_status").upper(),
        actor=current_actor(),
        reason=payload.get("reason"),
        override=bool(payload.get("override")),
    )
    return jsonify(order)


@admin_bp.post("/orders/<order_id>/cancel")
def cancel_order(order_id: str):
    payload = json_body()
    order = components()["state_machine"].cancel_order(
        order_id,
        reason=_required(payload, "reason").upper(),
        message=payload.get("message"),
        actor=current_actor(),
        override=bool(payload.get("override")),
    )
    return jsonify(order)


@admin_bp.post("/orders/<order_id>/notes")
def add_note(order_id: str):
    payload = json_body()
    result = components()["state_machine"].add_note(
        order_id,
        _required(payload, "note"),
        actor=current_actor(),
        is_public=bool(payload.get("is_public")),
    )
    return jsonify(result), 201


@admin_bp.get("/orders/<order_id>/logs")
def list_logs(order_id: str):
    return jsonify({"logs": components()["state_machine"].list_logs(order_id)})


@admin_bp.delete("/orders/<order_id>")
def delete_order(order_id: str):
    components()["order_service"].soft_delete(order_id, actor=current_actor())
    return jsonify({"status": "ok"})


@admin_bp.get("/orders/<order_id>/payments")
def list_payments(order_id: str):
    return jsonify({"payments": components()["payment_service"].list_payments(order_id)})


@admin_bp.post("/orders/<order_id>/payments")
def record_manual_payment(order_id: str):
    payload = json_body()
    if payload.get("amount") is None:
        raise ValidationError("amount required")
    payment = components()["payment_service"].record_manual_payment(
        order_id,
        amount=payload["amount"],
        payment_method=_required(payload, "payment_method"),
        reference_no=_required(payload, "reference_no"),
        actor=current_actor(),
        transaction_id=payload.get("transaction_id"),
        processing_fee=payload.get("processing_fee") or 0,
        notes=payload.get("notes"),
    )
    return jsonify(payment), 201


@admin_bp.post("/payments/<payment_id>/refund")
def refund_payment(payment_id: str):
    payload = json_body()
    if payload.get("amount") is None:
        raise ValidationError("amount required")
    result = components()["payment_service"].refund_payment(
        payment_id,
        amount=payload["amount"],
        actor=current_actor(),
        reason=payload.get("reason"),
    )
    return jsonify(result)


@admin_bp.post("/orders/<order_id>/refund-voucher")
def issue_refund_voucher(order_id: str):
    payload = json_body()
    if payload.get("amount") is None:
        raise ValidationError("amount required")
    result = components()["payment_service"].issue_refund_voucher(
        order_id,
        amount=payload["amount"],
        actor=current_actor(),
        reason=payload.get("reason"),
    )
    return jsonify(result), 201


@admin_bp.post("/checkout-sessions/<checkout_id>/release")
def release_stuck_checkout(checkout_id: str):
    result = components()["checkout_service"].release_stuck_checkout(checkout_id, actor=current_actor())
    return jsonify(result)


@admin_bp.post("/sweeps/<name>")
def run_sweep(name: str):
    # 排程器（cron）定期呼叫
    sweeps = {
        "expired-checkouts": components()["reconciliation"].expire_checkout_sessions,
        "stuck-checkouts": components()["checkout_service"].flag_stuck_checkouts,
        "chat-sessions": components()["conversation"].expire_chat_sessions,
    }
    sweep = sweeps.get(name)
    if sweep is None:
        return jsonify({"error": f"Unknown sweep: {name}", "available": sorted(sweeps)}), 404
    ids = sweep()
    return jsonify({"sweep": name, "count": len(ids), "ids": ids})
