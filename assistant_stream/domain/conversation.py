from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Literal, Protocol
from datetime import datetime


MessageRole = Literal["user", "assistant"]


@dataclass
class Conversation:
    id: str
    title: str
    agent_ref: Optional[str]
    created_at: datetime
    updated_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime
    image_url: Optional[str] = None
    generated_image_url: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ConversationDetail:
    """会话及其已持久化的消息列表（按时间排序）。"""

    conversation: Conversation
    messages: List[MessageRecord]

    @property
    def last_message(self) -> Optional[MessageRecord]:
        return self.messages[-1] if self.messages else None


class ConversationStore(Protocol):
    async def create_conversation(self, agent_ref: Optional[str], meta: Dict[str, Any]) -> Conversation:
        ...

    async def get_conversation(self, conversation_id: str) -> ConversationDetail:
        ...

    async def invalidate(self, conversation_id: str) -> None:
        """丢弃该会话的本地缓存，下次读取时重新拉取。"""

        ...
