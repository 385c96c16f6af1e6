"""付款服務商 webhook 路由。"""

from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.errors import AuthenticationError, ValidationError
from orderflow.services.logging import log_event
from orderflow.services.webhook_events import PAYMONGO, XENDIT

from .context import components


webhooks_bp = Blueprint("orderflow_webhooks", __name__, url_prefix="/webhooks")


def _handle(provider: str):
    reconciliation = components()["reconciliation"]
    raw_body = request.get_data()
    try:
        result = reconciliation.handle_provider_webhook(provider, raw_body, request.headers)
    except AuthenticationError as exc:
        log_event("warning", "webhook.unauthorized", provider=provider, error=exc.message)
        return jsonify({"error": "Unauthorized"}), 401
    except ValidationError as exc:
        return jsonify({"error": exc.message}), 400
    except Exception as exc:
        # 回 500 讓服務商依自己的排程重送
        log_event("error", "webhook.failed", provider=provider, error=str(exc), kind=type(exc).__name__)
        return jsonify({"error": "Internal error"}), 500
    return jsonify(result.to_dict()), result.status_code


@webhooks_bp.post("/xendit")
def xendit_callback():
    return _handle(XENDIT)


@webhooks_bp.post("/paymongo")
def paymongo_callback():
    return _handle(PAYMONGO)
