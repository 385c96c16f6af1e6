"""
Chatwoot API client
回覆聊天訊息用；沒有設定 token 時只記錄 log
"""
from typing import Any, Dict, Optional

import requests

from ..errors import ExternalProviderError
from .collaborators import Collaborators
from .logging import log_event


class ChatwootClient:
    def __init__(self, base_url: str, api_token: str, timeout: int = 10, http=None) -> None:
        self.base_url = (base_url or "").rstrip("/")
        self.api_token = api_token
        self.timeout = timeout
        self.http = http or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_token)

    def send_message(self, account_id: str, conversation_id: str, payload: Dict[str, Any]) -> Dict:
        url = f"{self.base_url}/api/v1/accounts/{account_id}/conversations/{conversation_id}/messages"
        try:
            response = self.http.post(
                url,
                headers={"Content-Type": "application/json", "api_access_token": self.api_token},
                json=payload,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise ExternalProviderError("Chatwoot API unreachable", provider="chatwoot") from exc
        if response.status_code >= 400:
            raise ExternalProviderError(
                f"Chatwoot API error: {response.status_code}",
                provider="chatwoot",
                provider_status=response.status_code,
                detail=response.text[:200],
            )
        try:
            return response.json()
        except ValueError:
            return {}


class ChatwootCollaborators(Collaborators):
    """Collaborators whose chat replies go out through Chatwoot."""

    def __init__(self, client: ChatwootClient) -> None:
        super().__init__()
        self.client = client

    def send_chat_message(self, account_id: str, conversation_id: str, content: str, content_attributes: Optional[dict] = None) -> None:
        if not self.client.configured:
            super().send_chat_message(account_id, conversation_id, content, content_attributes)
            return
        payload: Dict[str, Any] = {
            "content": content,
            "content_type": "input_select" if content_attributes else "text",
            "message_type": "outgoing",
            "private": False,
        }
        if content_attributes:
            payload["content_attributes"] = content_attributes
        try:
            self.client.send_message(account_id, conversation_id, payload)
        except ExternalProviderError as exc:
            # a lost reply must not roll back the order step that produced it
            log_event("error", "chat.send_failed", conversation_id=conversation_id, error=str(exc))
