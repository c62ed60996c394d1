"""请求侧的统一数据模型。

- OutboundMessage: 用户发出的一条消息（文本 + 可选图片）。
- StreamRequest: 交给 Transport 的完整流式请求。
- ToolCallState: 工具调用的当前状态，供累积器与快照共用。

所有 Transport 实现都只依赖这些模型，并负责把它们转换成具体的 HTTP 请求体。
"""

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Tuple


# 回答的推理强度，与后端 reasoning_effort / thinking_level 字段取值一致
ReasoningEffort = Literal["none", "low", "medium", "high"]
REASONING_EFFORTS: Tuple[str, ...] = ("none", "low", "medium", "high")

ToolCallStatus = Literal["starting", "in_progress", "completed"]

# 会话状态机的状态；idle 仅在 start() 之前出现
TerminalState = Literal["idle", "running", "done", "error", "aborted"]
TERMINAL_STATES: Tuple[str, ...] = ("done", "error", "aborted")


@dataclass(frozen=True)
class OutboundMessage:
    """用户撰写的消息，提交后不再修改。

    - text: 纯文本内容。
    - image_url: 可选的单张附图地址（上传由外部完成）。
    - agent_ref: 可选的 AI 好友 / Agent 标识，新建会话时一并使用。
    """

    text: str
    image_url: Optional[str] = None
    agent_ref: Optional[str] = None


@dataclass(frozen=True)
class StreamRequest:
    conversation_id: str
    message: OutboundMessage
    user_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """转换成后端 /messages/stream 接口的 JSON 请求体。"""

        payload: Dict[str, Any] = {"content": self.message.text}
        if self.user_id:
            payload["userId"] = self.user_id
        if self.message.image_url:
            payload["imageUrl"] = self.message.image_url
        if self.message.agent_ref:
            payload["aiFriendId"] = self.message.agent_ref
        return payload


@dataclass(frozen=True)
class ToolCallState:
    """一次工具调用（如 web_search、image_generation）的状态。"""

    name: str
    status: ToolCallStatus = "starting"
    sources: Tuple[Dict[str, Any], ...] = ()
