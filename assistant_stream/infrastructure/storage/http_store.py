"""基于 REST 接口的 ConversationStore。

- create_conversation -> ``POST /api/personal-chats``
- get_conversation    -> ``GET /api/personal-chats/{id}?userId=...``

后端 JSON 使用 camelCase，这里负责转换成项目内部的 Conversation /
MessageRecord。本类本身不缓存，缓存与失效由 CachedConversationStore 负责。
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from assistant_stream.domain.conversation import Conversation, ConversationDetail, MessageRecord
from assistant_stream.domain.exceptions import NetworkError, RateLimitError, StoreError
from assistant_stream.transport.http_transport import ERROR_BODY_PREVIEW


def _parse_ts(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class HttpConversationStore:
    def __init__(self, settings):
        self._settings = settings

    async def create_conversation(self, agent_ref: Optional[str], meta: Dict[str, Any]) -> Conversation:
        body: Dict[str, Any] = {"aiFriendId": agent_ref}
        if self._settings.user_id:
            body["userId"] = self._settings.user_id
        if meta.get("title"):
            body["title"] = meta["title"]
        data = await self._request("POST", "/api/personal-chats", json=body)
        return self._to_conversation(data)

    async def get_conversation(self, conversation_id: str) -> ConversationDetail:
        params = {"userId": self._settings.user_id} if self._settings.user_id else None
        data = await self._request("GET", f"/api/personal-chats/{conversation_id}", params=params)
        messages = [self._to_message(m) for m in data.get("messages") or []]
        messages.sort(key=lambda m: m.created_at)
        return ConversationDetail(conversation=self._to_conversation(data), messages=messages)

    async def invalidate(self, conversation_id: str) -> None:
        return None

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self._settings.backend_base_url.rstrip('/')}{path}"
        headers = {"Content-Type": "application/json"}
        if self._settings.auth_token:
            headers["Authorization"] = f"Bearer {self._settings.auth_token}"
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="chat backend rate limit", http_status=429)
        if resp.status_code >= 400:
            message = f"HTTP {resp.status_code}"
            if resp.text:
                message = f"{message}: {resp.text[:ERROR_BODY_PREVIEW]}"
            raise StoreError(code="STORE_HTTP_ERROR", message=message, http_status=resp.status_code)
        try:
            data = resp.json()
        except ValueError as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"invalid JSON from {path}: {e}")
        if not isinstance(data, dict):
            raise StoreError(code="STORE_READ_ERROR", message=f"unexpected payload from {path}")
        return data

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        try:
            cid = data["id"]
        except KeyError:
            raise StoreError(code="STORE_READ_ERROR", message="conversation payload has no id")
        meta: Dict[str, Any] = {}
        if data.get("lastMessageAt"):
            meta["last_message_at"] = data["lastMessageAt"]
        if data.get("aiFriend"):
            meta["ai_friend"] = data["aiFriend"]
        return Conversation(
            id=cid,
            title=data.get("title") or "",
            agent_ref=data.get("aiFriendId"),
            created_at=_parse_ts(data.get("createdAt")),
            updated_at=_parse_ts(data.get("updatedAt")),
            meta=meta,
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> MessageRecord:
        try:
            return MessageRecord(
                id=data["id"],
                conversation_id=data.get("conversationId") or "",
                role=data.get("role") or "assistant",
                content=data.get("content") or "",
                created_at=_parse_ts(data.get("createdAt")),
                image_url=data.get("imageUrl"),
                generated_image_url=data.get("generatedImageUrl"),
                meta=data.get("metadata") or {},
            )
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=f"invalid message payload: {e!r}")
