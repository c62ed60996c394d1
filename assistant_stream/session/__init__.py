"""会话生命周期：创建会话、驱动流式管线、取消与对账。"""

from assistant_stream.session.controller import SessionController, SessionRegistry, StreamSession

__all__ = ["SessionController", "SessionRegistry", "StreamSession"]
