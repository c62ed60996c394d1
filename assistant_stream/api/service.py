"""对外 API 服务模块。

提供简化的函数接口供上层应用（UI 层）调用。
"""

from typing import Optional, Dict, Any, List

from assistant_stream.config.settings import settings
from assistant_stream.domain.conversation import ConversationDetail
from assistant_stream.domain.models import OutboundMessage
from assistant_stream.infrastructure.logging.logger import logger
from assistant_stream.infrastructure.storage.cache import CachedConversationStore
from assistant_stream.infrastructure.storage.http_store import HttpConversationStore
from assistant_stream.session.controller import SessionController, StreamSession
from assistant_stream.streaming.state_machine import UpdateListener
from assistant_stream.transport import create_transport


_store: Optional[CachedConversationStore] = None
_controller: Optional[SessionController] = None


def get_default_controller() -> SessionController:
    """获取默认的 SessionController 实例（单例）。"""
    global _store, _controller
    if _store is None:
        _store = CachedConversationStore(HttpConversationStore(settings))
    if _controller is None:
        _controller = SessionController(
            store=_store,
            transport=create_transport(),
            user_id=settings.user_id,
            default_agent_ref=settings.default_agent_ref,
            stream_deadline=settings.stream_deadline,
        )
    return _controller


async def start_stream(
    content: str,
    conversation_id: Optional[str] = None,
    image_url: Optional[str] = None,
    agent_ref: Optional[str] = None,
    on_update: Optional[UpdateListener] = None,
) -> StreamSession:
    """发送一条消息并返回正在进行的会话，调用方可随时 cancel()。"""

    controller = get_default_controller()
    message = OutboundMessage(text=content, image_url=image_url, agent_ref=agent_ref)
    listeners = [on_update] if on_update else None
    return await controller.start_session(conversation_id, message, listeners=listeners)


async def send_message(
    content: str,
    conversation_id: Optional[str] = None,
    image_url: Optional[str] = None,
    agent_ref: Optional[str] = None,
    on_update: Optional[UpdateListener] = None,
) -> Dict[str, Any]:
    """发送消息并等待流式回答结束。

    Args:
        content: 用户输入内容
        conversation_id: 会话ID（可选，不提供则创建新会话）
        image_url: 附带图片地址（可选）
        agent_ref: AI 好友 / Agent 标识（可选）
        on_update: 每次状态变化时收到 ResponseSnapshot 的回调（可选）

    Returns:
        包含会话ID、最终状态、回答内容与对账后消息列表的字典

    Raises:
        各种 domain.exceptions 中定义的异常（仅限流开始之前的失败）
    """
    try:
        session = await start_stream(content, conversation_id, image_url, agent_ref, on_update)
    except Exception as e:
        logger.error(f"Send failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "error": str(e),
        }})
        raise
    snap = await session.wait()
    return {
        "conversation_id": session.conversation_id,
        "state": snap.terminal_state,
        "content": snap.content_text,
        "thinking": snap.thinking_text,
        "reasoning_effort": snap.reasoning_effort,
        "error": snap.error_message,
        "user_message_id": snap.user_message_id,
        "assistant_message_id": snap.assistant_message_id,
        "generated_image_ids": list(snap.generated_image_ids),
        "updated_title": snap.updated_title,
        "messages": _messages_to_dicts(session.reconciled) if session.reconciled else None,
    }


def cancel_stream(conversation_id: str) -> bool:
    """取消某会话上正在进行的流；没有活动流时返回 False。"""

    session = get_default_controller().active_session(conversation_id)
    if session is None:
        return False
    session.cancel()
    return True


async def get_conversation_messages(conversation_id: str) -> List[Dict[str, Any]]:
    """获取会话的所有消息（优先走缓存）。"""

    detail = await get_default_controller().store.get_conversation(conversation_id)
    return _messages_to_dicts(detail)


def _messages_to_dicts(detail: ConversationDetail) -> List[Dict[str, Any]]:
    return [
        {
            "id": m.id,
            "role": m.role,
            "content": m.content,
            "image_url": m.image_url,
            "generated_image_url": m.generated_image_url,
            "created_at": m.created_at.isoformat(),
        }
        for m in detail.messages
    ]
