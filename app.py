"""訂單 / 付款流程服務 Flask 應用。"""

from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Flask, jsonify, request

from orderflow.config import AppConfig, load_env
from orderflow.db.session import get_session, init_engine
from orderflow.errors import ExternalProviderError, OrderflowError, SecurityError
from orderflow.models import Base
from orderflow.services.chatwoot_client import ChatwootClient, ChatwootCollaborators
from orderflow.services.checkout_service import CheckoutService
from orderflow.services.conversation_service import ConversationService
from orderflow.services.email_verification import EmailVerificationService
from orderflow.services.inventory_service import InventoryLedger
from orderflow.services.logging import configure_logging, log_event
from orderflow.services.order_service import OrderService
from orderflow.services.order_state import OrderStateMachine
from orderflow.services.payment_providers import build_provider
from orderflow.services.payment_service import PaymentService
from orderflow.services.pricing_service import PricingService
from orderflow.services.reconciliation_service import ReconciliationService
from routes import admin, chat, checkout, webhooks


GENERIC_DENIALS = {401: "Unauthorized", 403: "Access denied", 429: "Too many requests, please try again later"}


def build_components(config: AppConfig, session_factory=get_session, collaborators=None, provider=None) -> Dict[str, Any]:
    collab = collaborators or ChatwootCollaborators(ChatwootClient(config.chatwoot_base_url, config.chatwoot_api_token))
    inventory = InventoryLedger()
    states = OrderStateMachine(collab, inventory=inventory, session_factory=session_factory)
    orders = OrderService(
        session_factory=session_factory,
        pricing=PricingService(),
        inventory=inventory,
        collaborators=collab,
        currency=config.currency,
    )
    checkout_service = CheckoutService(config, provider or build_provider(config), session_factory, collab)
    conversation = ConversationService(
        config,
        orders=orders,
        checkout=checkout_service,
        verification=EmailVerificationService(config, session_factory, collab),
        session_factory=session_factory,
        collaborators=collab,
    )
    collab.subscribe("chat_payment_confirmed", conversation.send_payment_confirmation)
    return {
        "collaborators": collab,
        "inventory": inventory,
        "state_machine": states,
        "order_service": orders,
        "checkout_service": checkout_service,
        "reconciliation": ReconciliationService(config, states, session_factory, collab),
        "payment_service": PaymentService(session_factory, states, collab),
        "conversation": conversation,
    }


def create_app(config: Optional[AppConfig] = None, components: Optional[Dict[str, Any]] = None) -> Flask:
    config = config or load_env()
    configure_logging(config.log_level)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["ORDERFLOW_CONFIG"] = config

    if components is None:
        engine = init_engine(config.database_url)
        Base.metadata.create_all(engine)
        components = build_components(config)
    app.extensions["orderflow_components"] = components

    app.register_blueprint(webhooks.webhooks_bp)
    app.register_blueprint(checkout.checkout_bp)
    app.register_blueprint(chat.chat_bp)
    app.register_blueprint(admin.admin_bp)

    @app.errorhandler(OrderflowError)
    def handle_orderflow_error(exc: OrderflowError):
        if isinstance(exc, SecurityError):
            # 對外只回通用訊息，細節只進 log
            log_event("warning", "security.denied", error=exc.message, kind=type(exc).__name__, path=request.path)
            return jsonify({"error": GENERIC_DENIALS.get(exc.status_code, "Access denied")}), exc.status_code
        body = {"error": exc.message}
        if isinstance(exc, ExternalProviderError):
            body["retryable"] = exc.retryable
            log_event("error", "request.provider_failed", error=exc.message, provider=exc.provider)
        return jsonify(body), exc.status_code

    @app.get("/healthz")
    def healthz():
        return jsonify({"status": "ok", "provider": config.payment_provider})

    log_event("info", "app.started", provider=config.payment_provider, currency=config.currency)
    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=5000, debug=False)


if __name__ == "__main__":
    main()
