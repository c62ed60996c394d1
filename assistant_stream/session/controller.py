"""流式会话控制器。

负责一次“发送消息 -> 消费流式回答”的完整生命周期：

1. 没有会话 ID 时，先通过 Store 创建会话；失败则整个发送失败，不打开流。
2. 以新的 CancellationToken 打开 Transport 流。
3. 驱动 chunk -> FrameParser -> decode_frame -> SessionStateMachine 管线，
   直到流结束、收到终止事件或被取消。
4. 无论成功、失败还是取消，都执行一次对账：invalidate + get_conversation，
   让 UI 的数据源反映后端已持久化的最终消息，然后释放会话。

同一会话同一时刻只允许一个活动的 StreamSession，重复启动抛 SessionBusyError。
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from assistant_stream.domain.conversation import ConversationDetail, ConversationStore
from assistant_stream.domain.events import StreamFrame
from assistant_stream.domain.exceptions import (
    BusinessError,
    ConversationCreateError,
    SessionBusyError,
    ValidationError,
)
from assistant_stream.domain.models import OutboundMessage, StreamRequest
from assistant_stream.infrastructure.logging.logger import logger
from assistant_stream.streaming.cancellation import CancellationToken
from assistant_stream.streaming.decoder import decode_frame
from assistant_stream.streaming.frame_parser import FrameParser
from assistant_stream.streaming.state_machine import ResponseSnapshot, SessionStateMachine, UpdateListener
from assistant_stream.transport.base import StreamTransport


ReconciledListener = Callable[[ConversationDetail], None]


class StreamSession:
    """一次流式回答的会话，由 SessionController 创建。

    调用方只通过 on_update / on_reconciled 监听结果、通过 cancel() 停止、
    通过 wait() 等待最终快照；累积器只在会话自己的任务中修改。
    """

    def __init__(
        self,
        conversation_id: str,
        message: OutboundMessage,
        transport: StreamTransport,
        store: ConversationStore,
        *,
        user_id: Optional[str] = None,
        listeners: Optional[List[UpdateListener]] = None,
        deadline: Optional[float] = None,
        on_finished: Optional[Callable[["StreamSession"], None]] = None,
    ):
        self.id = f"s-{uuid4().hex}"
        self.conversation_id = conversation_id
        self.message = message
        self.reconciled: Optional[ConversationDetail] = None
        self.reconcile_error: Optional[Exception] = None
        self._transport = transport
        self._store = store
        self._user_id = user_id
        self._deadline = deadline
        self._on_finished = on_finished
        self._token = CancellationToken()
        self._machine = SessionStateMachine(listeners)
        self._parser = FrameParser()
        self._reconciled_listeners: List[ReconciledListener] = []
        self._task: Optional[asyncio.Task] = None
        self._read_task: Optional[asyncio.Future] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watchdog: Optional[asyncio.TimerHandle] = None
        self._event_count = 0
        self._log_ctx: Dict[str, Any] = {
            "session_id": self.id,
            "conversation_id": conversation_id,
        }

    @property
    def snapshot(self) -> ResponseSnapshot:
        return self._machine.snapshot()

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    @property
    def finished(self) -> bool:
        return self._task is not None and self._task.done()

    def on_update(self, listener: UpdateListener) -> None:
        self._machine.on_update(listener)

    def on_reconciled(self, listener: ReconciledListener) -> None:
        self._reconciled_listeners.append(listener)

    def cancel(self, reason: str = "user") -> None:
        """停止读取流；可重复调用。服务端已开始的工作不会被终止。"""

        if self._token.cancel(reason):
            self._log(logging.INFO, "Cancellation requested", reason=reason)

    async def wait(self) -> ResponseSnapshot:
        """等待会话结束（含对账），返回最终快照。"""

        if self._task is None:
            raise RuntimeError("session has not been started")
        # 调用方放弃等待时不应连带取消会话本身
        return await asyncio.shield(self._task)

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("session already started")
        self._loop = asyncio.get_running_loop()
        self._machine.start()
        self._token.add_callback(self._abort_read)
        self._task = self._loop.create_task(self._run(), name=f"stream-session-{self.id}")
        if self._deadline:
            self._watchdog = self._loop.call_later(self._deadline, self._on_deadline)

    async def _run(self) -> ResponseSnapshot:
        start_time = time.time()
        self._log(logging.INFO, "Stream session started", has_image=bool(self.message.image_url))
        try:
            await self._drive()
        finally:
            if self._watchdog is not None:
                self._watchdog.cancel()
            try:
                await self._reconcile()
            finally:
                # 对账途中任务被外部取消也要释放会话
                if self._on_finished is not None:
                    self._on_finished(self)
            snap = self._machine.snapshot()
            self._log(
                logging.INFO,
                "Stream session finished",
                state=snap.terminal_state,
                events=self._event_count,
                content_length=len(snap.content_text),
                elapsed_seconds=round(time.time() - start_time, 2),
            )
        return self._machine.snapshot()

    async def _drive(self) -> None:
        if self._token.cancelled:
            self._machine.abort()
            return
        self._read_task = asyncio.ensure_future(self._pump())
        try:
            await self._read_task
        except asyncio.CancelledError:
            self._machine.abort()
            if not self._token.cancelled:
                # 外部直接取消了会话任务，而不是通过 cancel()
                self._token.cancel("task_cancelled")
                raise
            self._log(logging.INFO, "Stream aborted", reason=self._token.reason)
        except BusinessError as e:
            self._log(logging.WARNING, "Stream failed", code=e.code, error=e.message)
            self._machine.fail(e.message)
        except Exception as e:
            logger.exception("Unexpected stream failure", extra={"extra": dict(self._log_ctx)})
            self._machine.fail(str(e) or type(e).__name__)
        else:
            if self._token.cancelled:
                self._machine.abort()
            elif not self._machine.is_terminal:
                self._log(logging.INFO, "Stream ended without done event, marking complete")
                self._machine.complete()

    async def _pump(self) -> None:
        request = StreamRequest(
            conversation_id=self.conversation_id,
            message=self.message,
            user_id=self._user_id,
        )
        stream = self._transport.open_stream(request, self._token)
        try:
            async for chunk in stream:
                if self._token.cancelled:
                    return
                for frame in self._parser.feed(chunk):
                    if self._dispatch(frame):
                        return
            for frame in self._parser.close():
                if self._dispatch(frame):
                    return
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    def _dispatch(self, frame: StreamFrame) -> bool:
        """处理一帧，返回读循环是否应停止。"""

        # 已取消时，同一 chunk 里剩余的帧也不再处理
        if self._token.cancelled:
            return True
        event = decode_frame(frame)
        self._event_count += 1
        self._machine.apply(event)
        return self._machine.is_terminal

    async def _reconcile(self) -> None:
        try:
            await self._store.invalidate(self.conversation_id)
            detail = await self._store.get_conversation(self.conversation_id)
        except Exception as e:
            # 不重试，也不重新打开流；下次手动刷新时会恢复一致
            self.reconcile_error = e
            self._log(logging.WARNING, "Reconciliation failed", error=str(e))
            return
        self.reconciled = detail
        self._log(logging.INFO, "Reconciled conversation", message_count=len(detail.messages))
        for listener in list(self._reconciled_listeners):
            try:
                listener(detail)
            except Exception:
                logger.exception("Reconciled listener failed", extra={"extra": dict(self._log_ctx)})

    def _abort_read(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._cancel_read_task)

    def _cancel_read_task(self) -> None:
        if self._read_task is not None and not self._read_task.done():
            self._read_task.cancel()

    def _on_deadline(self) -> None:
        self._log(logging.WARNING, "Stream deadline reached", deadline_seconds=self._deadline)
        self.cancel("deadline")

    def _log(self, level: int, message: str, **fields: Any) -> None:
        payload = dict(self._log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})


class SessionRegistry:
    """conversation_id -> 活动会话。"""

    def __init__(self) -> None:
        self._sessions: Dict[str, StreamSession] = {}

    def get(self, conversation_id: str) -> Optional[StreamSession]:
        return self._sessions.get(conversation_id)

    def register(self, session: StreamSession) -> None:
        if session.conversation_id in self._sessions:
            raise SessionBusyError(session.conversation_id)
        self._sessions[session.conversation_id] = session

    def release(self, session: StreamSession) -> None:
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]

    def active(self) -> List[StreamSession]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


class SessionController:
    def __init__(
        self,
        store: ConversationStore,
        transport: StreamTransport,
        *,
        user_id: Optional[str] = None,
        default_agent_ref: Optional[str] = None,
        stream_deadline: Optional[float] = None,
        registry: Optional[SessionRegistry] = None,
    ):
        self._store = store
        self._transport = transport
        self._user_id = user_id
        self._default_agent_ref = default_agent_ref
        self._stream_deadline = stream_deadline
        self._registry = registry or SessionRegistry()

    @property
    def store(self) -> ConversationStore:
        return self._store

    def active_session(self, conversation_id: str) -> Optional[StreamSession]:
        return self._registry.get(conversation_id)

    async def start_session(
        self,
        conversation_id: Optional[str],
        message: OutboundMessage,
        *,
        listeners: Optional[List[UpdateListener]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StreamSession:
        """启动一次流式会话并立即返回，读循环在后台任务中运行。

        Args:
            conversation_id: 会话ID（可选，不提供则先创建会话）
            message: 待发送的消息
            listeners: 启动前就注册的快照监听器，保证不漏掉第一次推送
            meta: 新建会话时附带的元数据（如 title）

        Raises:
            ValidationError: 消息为空
            SessionBusyError: 该会话已有活动的流
            ConversationCreateError: 创建会话失败，此时没有打开任何流
        """
        if not message.text.strip() and not message.image_url:
            raise ValidationError(code="EMPTY_MESSAGE", message="message has no text or image")
        if conversation_id and self._registry.get(conversation_id) is not None:
            raise SessionBusyError(conversation_id)

        if not conversation_id:
            agent_ref = message.agent_ref or self._default_agent_ref
            try:
                conv = await self._store.create_conversation(agent_ref, dict(meta or {}))
            except BusinessError as e:
                logger.error(
                    "Failed to create conversation",
                    extra={"extra": {"agent_ref": agent_ref, "code": e.code, "error": e.message}},
                )
                raise ConversationCreateError(
                    code="CONVERSATION_CREATE_FAILED",
                    message=e.message,
                    http_status=e.http_status,
                    cause_code=e.code,
                ) from e
            conversation_id = conv.id
            logger.info("Created new conversation", extra={"extra": {"conversation_id": conv.id}})

        session = StreamSession(
            conversation_id,
            message,
            self._transport,
            self._store,
            user_id=self._user_id,
            listeners=listeners,
            deadline=self._stream_deadline,
            on_finished=self._registry.release,
        )
        self._registry.register(session)
        session.start()
        return session

    async def send(
        self,
        conversation_id: Optional[str],
        message: OutboundMessage,
        *,
        listeners: Optional[List[UpdateListener]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> StreamSession:
        """启动会话并等待其结束（含对账）。"""

        session = await self.start_session(conversation_id, message, listeners=listeners, meta=meta)
        await session.wait()
        return session

    async def cancel_all(self) -> None:
        sessions = self._registry.active()
        for session in sessions:
            session.cancel("shutdown")
        for session in sessions:
            await session.wait()
