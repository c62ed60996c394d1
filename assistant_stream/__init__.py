"""Assistant Stream 顶层包。

该包实现个人聊天中助手回答的流式客户端：SSE 帧解析、事件解码、
会话状态机、会话生命周期（按需创建会话、取消、结束后与存储对账）。
"""

from assistant_stream.domain.models import OutboundMessage
from assistant_stream.session.controller import SessionController, StreamSession
from assistant_stream.streaming.state_machine import ResponseSnapshot

__all__ = ["OutboundMessage", "ResponseSnapshot", "SessionController", "StreamSession"]
