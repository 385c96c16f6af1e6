"""Hooks into systems outside the engine.

Notifications, audit records, permission checks, delayed jobs, OTP e-mail
and chat replies are all owned by other services. The engine talks to them
through :class:`Collaborators`; the defaults below only log, and the app
factory swaps in real clients where they are configured.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from .logging import log_event, mask_token


PRIVILEGED_ROLES = {"staff", "admin", "system"}


@dataclass(frozen=True)
class Actor:
    id: str
    role: str = "customer"
    organization_ids: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES

    @property
    def is_admin(self) -> bool:
        return self.role in ("admin", "system")


def system_actor(system_actor_id: str) -> Actor:
    return Actor(id=system_actor_id, role="system")


class Collaborators:
    """Default collaborator set: every call is logged, and notifications also
    reach whatever in-process listeners subscribed to their kind."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[[Dict[str, Any]], Any]]] = {}

    def subscribe(self, kind: str, listener: Callable[[Dict[str, Any]], Any]) -> None:
        self._listeners.setdefault(kind, []).append(listener)

    def notify(self, kind: str, payload: Dict[str, Any]) -> None:
        log_event("info", "notify", kind=kind, **payload)
        for listener in self._listeners.get(kind, []):
            listener(payload)

    def audit(self, action: str, severity: str, metadata: Dict[str, Any]) -> None:
        log_event("info", "audit", action=action, severity=severity, **metadata)

    def check_permission(self, actor: Optional[Actor], organization_id: Optional[str], capability: str, action: str) -> bool:
        if actor is None:
            return False
        if actor.is_admin:
            return True
        if actor.role == "staff":
            return not actor.organization_ids or organization_id in actor.organization_ids
        return False

    def send_otp(self, email: str, code: str) -> None:
        log_event("info", "otp.dispatched", email=email, code=mask_token(code, keep=1))

    def send_chat_message(self, account_id: str, conversation_id: str, content: str, content_attributes: Optional[dict] = None) -> None:
        log_event(
            "info",
            "chat.message",
            account_id=account_id,
            conversation_id=conversation_id,
            content=content,
            input_select=bool(content_attributes),
        )

    def schedule(self, fn: Callable[..., Any], delay_seconds: float, *args, **kwargs) -> None:
        """Run ``fn`` later, fire-and-forget; failures are logged, never raised."""

        def _run():
            try:
                fn(*args, **kwargs)
            except Exception as exc:
                log_event("warning", "scheduled_job.failed", job=getattr(fn, "__name__", str(fn)), error=str(exc))

        if delay_seconds and delay_seconds > 0:
            timer = threading.Timer(delay_seconds, _run)
            timer.daemon = True
            timer.start()
        else:
            _run()

    # Safe wrappers used by services for non-blocking side effects.

    def safe_notify(self, kind: str, payload: Dict[str, Any]) -> None:
        try:
            self.notify(kind, payload)
        except Exception as exc:
            log_event("warning", "notify.failed", kind=kind, error=str(exc))

    def safe_audit(self, action: str, severity: str, metadata: Dict[str, Any]) -> None:
        try:
            self.audit(action, severity, metadata)
        except Exception as exc:
            log_event("warning", "audit.failed", action=action, error=str(exc))
