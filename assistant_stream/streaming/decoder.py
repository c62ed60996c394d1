"""事件解码器：StreamFrame -> StreamEvent。

这里是“后端事件 JSON ⇄ 项目内部事件模型”的唯一转换点。解析失败
（非 JSON、非对象、字段取值非法）一律降级为 Unknown 并记录 warning，
不会中断会话。
"""

import json
from typing import Any, Callable, Dict, Optional, Tuple

from assistant_stream.domain.events import (
    AssistantMessageAck,
    Connected,
    ContentDelta,
    ContentEnded,
    Done,
    Error,
    ImageGenerated,
    Ping,
    ReasoningEffortSet,
    StreamEvent,
    StreamFrame,
    ThinkingDelta,
    ThinkingEnded,
    ThinkingStarted,
    ToolCallEnded,
    ToolCallProgress,
    ToolCallStarted,
    Unknown,
    UserMessageAck,
)
from assistant_stream.domain.models import REASONING_EFFORTS
from assistant_stream.infrastructure.logging.logger import logger


class PayloadError(ValueError):
    """payload 缺少必需字段或取值非法。"""


def _str_field(data: Dict[str, Any], *keys: str, required: bool = True) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str):
            return value
    if required:
        raise PayloadError(f"missing string field {keys[0]!r}")
    return None


def _effort(data: Dict[str, Any], key: str) -> ReasoningEffortSet:
    value = _str_field(data, key)
    if value not in REASONING_EFFORTS:
        raise PayloadError(f"unknown reasoning effort {value!r}")
    return ReasoningEffortSet(effort=value)  # type: ignore[arg-type]


def _sources(data: Dict[str, Any]) -> Tuple[Dict[str, Any], ...]:
    raw = data.get("sources") or []
    if not isinstance(raw, list):
        return ()
    return tuple(s for s in raw if isinstance(s, dict))


def _error_message(data: Dict[str, Any]) -> str:
    message = data.get("error") or data.get("message")
    return str(message) if message else "Unknown streaming error"


_DECODERS: Dict[str, Callable[[Dict[str, Any]], StreamEvent]] = {
    "connected": lambda d: Connected(conversation_id=_str_field(d, "conversationId", required=False)),
    "ping": lambda d: Ping(),
    "user_message": lambda d: UserMessageAck(id=_str_field(d, "id")),
    "reasoning_effort": lambda d: _effort(d, "effort"),
    "thinking_level": lambda d: _effort(d, "level"),
    "thinking_start": lambda d: ThinkingStarted(),
    "thinking_delta": lambda d: ThinkingDelta(text=_str_field(d, "content", required=False) or ""),
    "thinking_end": lambda d: ThinkingEnded(text=_str_field(d, "content", required=False)),
    "tool_call_start": lambda d: ToolCallStarted(name=_str_field(d, "toolName", "name"), tool_input=d.get("toolInput")),
    "tool_call_progress": lambda d: ToolCallProgress(data=d),
    "tool_call_end": lambda d: ToolCallEnded(name=_str_field(d, "toolName", "name"), sources=_sources(d)),
    "content_delta": lambda d: ContentDelta(text=_str_field(d, "content", required=False) or ""),
    "content_end": lambda d: ContentEnded(text=_str_field(d, "content", required=False)),
    "image_generated": lambda d: ImageGenerated(image_id=_str_field(d, "imageId", "id")),
    "assistant_message": lambda d: AssistantMessageAck(id=_str_field(d, "id")),
    "done": lambda d: Done(updated_title=_str_field(d, "updatedTitle", required=False)),
    "error": lambda d: Error(message=_error_message(d)),
}


def decode_frame(frame: StreamFrame) -> StreamEvent:
    """把一帧解码为事件；任何解析问题都返回 Unknown。"""

    decoder = _DECODERS.get(frame.event_type)
    if decoder is None:
        logger.info(
            "Unknown stream event",
            extra={"extra": {"event_type": frame.event_type}},
        )
        return Unknown(event_type=frame.event_type, payload=frame.data)
    try:
        data = json.loads(frame.data)
    except json.JSONDecodeError as e:
        logger.warning(
            "Failed to parse event data",
            extra={"extra": {"event_type": frame.event_type, "error": str(e)}},
        )
        return Unknown(event_type=frame.event_type, payload=frame.data)
    if not isinstance(data, dict):
        logger.warning(
            "Event data is not an object",
            extra={"extra": {"event_type": frame.event_type}},
        )
        return Unknown(event_type=frame.event_type, payload=frame.data)
    try:
        return decoder(data)
    except PayloadError as e:
        logger.warning(
            "Invalid event payload",
            extra={"extra": {"event_type": frame.event_type, "error": str(e)}},
        )
        return Unknown(event_type=frame.event_type, payload=frame.data)
