"""Chatwoot 訊息 webhook：只處理顧客傳入的訊息。"""

from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint, jsonify, request
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from orderflow.errors import ValidationError

from .context import components


chat_bp = Blueprint("orderflow_chat", __name__, url_prefix="/chat")


class _Ref(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: Optional[str] = None


class ChatwootMessageEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    message_type: Optional[str] = None
    content: Optional[str] = None
    content_attributes: Optional[Dict[str, Any]] = None
    conversation: Optional[_Ref] = None
    account: Optional[_Ref] = None
    sender: Optional[_Ref] = None

    def reply_text(self) -> str:
        # input_select 的選項回覆會帶 submitted_values
        submitted = (self.content_attributes or {}).get("submitted_values") or []
        if submitted and isinstance(submitted[0], dict) and submitted[0].get("value"):
            return str(submitted[0]["value"])
        return self.content or ""


@chat_bp.post("/webhook")
def chat_webhook():
    try:
        event = ChatwootMessageEvent.model_validate(request.get_json(silent=True) or {})
    except PydanticValidationError as exc:
        raise ValidationError("Malformed chat event", errors=exc.errors(include_url=False))

    if event.event != "message_created" or event.message_type != "incoming":
        return jsonify({"handled": False, "reason": "ignored event"})
    if event.conversation is None or event.account is None or event.sender is None:
        return jsonify({"handled": False, "reason": "missing conversation"})

    result = components()["conversation"].handle_message(
        account_id=event.account.id,
        conversation_id=event.conversation.id,
        contact_id=event.sender.id,
        content=event.reply_text(),
        contact_name=event.sender.name,
    )
    return jsonify(result)
