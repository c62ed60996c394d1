"""流式响应的帧与事件模型。

- StreamFrame: 解析器产出的原始 (event_type, data) 记录，只在解析器与解码器之间流动。
- StreamEvent: 解码后的封闭事件集合，每个变体只携带与自己相关的字段。

解码只在边界处做一次，状态机内部按类型分派，不再比较事件名字符串。
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

from assistant_stream.domain.models import ReasoningEffort


@dataclass(frozen=True)
class StreamFrame:
    event_type: str
    data: str


@dataclass(frozen=True)
class Connected:
    conversation_id: Optional[str] = None


@dataclass(frozen=True)
class Ping:
    pass


@dataclass(frozen=True)
class UserMessageAck:
    """后端确认用户消息已落库。"""

    id: str


@dataclass(frozen=True)
class ReasoningEffortSet:
    effort: ReasoningEffort


@dataclass(frozen=True)
class ThinkingStarted:
    pass


@dataclass(frozen=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True)
class ThinkingEnded:
    # 部分后端会在结束时附带完整思考文本，仅作参考
    text: Optional[str] = None


@dataclass(frozen=True)
class ToolCallStarted:
    name: str
    tool_input: Any = None


@dataclass(frozen=True)
class ToolCallProgress:
    data: Dict[str, Any]


@dataclass(frozen=True)
class ToolCallEnded:
    name: str
    sources: Tuple[Dict[str, Any], ...] = ()


@dataclass(frozen=True)
class ContentDelta:
    text: str


@dataclass(frozen=True)
class ContentEnded:
    text: Optional[str] = None


@dataclass(frozen=True)
class ImageGenerated:
    image_id: str


@dataclass(frozen=True)
class AssistantMessageAck:
    """后端确认助手消息已落库。"""

    id: str


@dataclass(frozen=True)
class Done:
    """成功结束标记，之后不会再有事件。"""

    updated_title: Optional[str] = None


@dataclass(frozen=True)
class Error:
    """失败结束标记，之后不会再有事件。"""

    message: str


@dataclass(frozen=True)
class Unknown:
    """无法识别或无法解析的事件，状态机忽略它。"""

    event_type: str
    payload: str


StreamEvent = Union[
    Connected,
    Ping,
    UserMessageAck,
    ReasoningEffortSet,
    ThinkingStarted,
    ThinkingDelta,
    ThinkingEnded,
    ToolCallStarted,
    ToolCallProgress,
    ToolCallEnded,
    ContentDelta,
    ContentEnded,
    ImageGenerated,
    AssistantMessageAck,
    Done,
    Error,
    Unknown,
]

TERMINAL_EVENTS = (Done, Error)
