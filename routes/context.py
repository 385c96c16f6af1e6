"""Request-scoped helpers shared by the blueprints."""

from __future__ import annotations

from typing import Any, Dict, Optional

from flask import current_app, request

from orderflow.errors import AuthenticationError
from orderflow.services.collaborators import Actor


ACTOR_ID_HEADER = "X-Actor-Id"
ACTOR_ROLE_HEADER = "X-Actor-Role"
ACTOR_ORGS_HEADER = "X-Actor-Organizations"


def components() -> Dict[str, Any]:
    return current_app.extensions["orderflow_components"]


def config():
    return current_app.config["ORDERFLOW_CONFIG"]


def optional_actor() -> Optional[Actor]:
    # 身分由前置的驗證閘道寫入 header
    actor_id = (request.headers.get(ACTOR_ID_HEADER) or "").strip()
    if not actor_id:
        return None
    role = (request.headers.get(ACTOR_ROLE_HEADER) or "customer").strip().lower()
    orgs = tuple(o.strip() for o in (request.headers.get(ACTOR_ORGS_HEADER) or "").split(",") if o.strip())
    return Actor(id=actor_id, role=role, organization_ids=orgs)


def current_actor() -> Actor:
    actor = optional_actor()
    if actor is None:
        raise AuthenticationError("Authentication required")
    return actor


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}
