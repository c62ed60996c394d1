"""会话状态机与响应累积器。

状态：idle -> running -> {done, error, aborted}，终态没有出边。

累积器（ResponseAccumulator）只由所属会话的读循环修改；外部只能通过
on_update 注册的监听器拿到不可变快照（ResponseSnapshot）。
"""

from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Tuple

from assistant_stream.domain.events import (
    AssistantMessageAck,
    ContentDelta,
    Done,
    Error,
    ImageGenerated,
    ReasoningEffortSet,
    StreamEvent,
    ThinkingDelta,
    ThinkingEnded,
    ThinkingStarted,
    ToolCallEnded,
    ToolCallProgress,
    ToolCallStarted,
    UserMessageAck,
)
from assistant_stream.domain.models import (
    ReasoningEffort,
    TerminalState,
    TERMINAL_STATES,
    ToolCallState,
)
from assistant_stream.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class ResponseSnapshot:
    """某一时刻累积器的只读副本。"""

    terminal_state: TerminalState
    content_text: str = ""
    thinking_text: str = ""
    is_thinking: bool = False
    reasoning_effort: Optional[ReasoningEffort] = None
    active_tool_call: Optional[ToolCallState] = None
    completed_tool_calls: Tuple[ToolCallState, ...] = ()
    generated_image_ids: Tuple[str, ...] = ()
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    error_message: Optional[str] = None
    updated_title: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.terminal_state in TERMINAL_STATES

    @property
    def is_streaming(self) -> bool:
        return self.terminal_state == "running"


@dataclass
class ResponseAccumulator:
    terminal_state: TerminalState = "idle"
    content_text: str = ""
    thinking_text: str = ""
    is_thinking: bool = False
    reasoning_effort: Optional[ReasoningEffort] = None
    active_tool_call: Optional[ToolCallState] = None
    completed_tool_calls: List[ToolCallState] = field(default_factory=list)
    generated_image_ids: List[str] = field(default_factory=list)
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    error_message: Optional[str] = None
    updated_title: Optional[str] = None

    def snapshot(self) -> ResponseSnapshot:
        return ResponseSnapshot(
            terminal_state=self.terminal_state,
            content_text=self.content_text,
            thinking_text=self.thinking_text,
            is_thinking=self.is_thinking,
            reasoning_effort=self.reasoning_effort,
            active_tool_call=self.active_tool_call,
            completed_tool_calls=tuple(self.completed_tool_calls),
            generated_image_ids=tuple(self.generated_image_ids),
            user_message_id=self.user_message_id,
            assistant_message_id=self.assistant_message_id,
            error_message=self.error_message,
            updated_title=self.updated_title,
        )


UpdateListener = Callable[[ResponseSnapshot], None]


class SessionStateMachine:
    """把有序事件序列折叠进 ResponseAccumulator。

    - start(): idle -> running，并清空累积内容。
    - apply(event): running 状态下按转移表更新累积器。
    - complete() / fail(message) / abort(): 由会话控制器在流结束、
      传输失败或取消时强制进入终态。

    每次状态确实发生变化后，向所有监听器推送一次快照。进入终态后
    的任何事件都会被忽略。
    """

    def __init__(self, listeners: Optional[List[UpdateListener]] = None):
        self._acc = ResponseAccumulator()
        self._listeners: List[UpdateListener] = list(listeners or [])

    @property
    def state(self) -> TerminalState:
        return self._acc.terminal_state

    @property
    def is_terminal(self) -> bool:
        return self._acc.terminal_state in TERMINAL_STATES

    def snapshot(self) -> ResponseSnapshot:
        return self._acc.snapshot()

    def on_update(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._acc.terminal_state != "idle":
            raise RuntimeError(f"cannot start from state {self._acc.terminal_state!r}")
        self._acc = ResponseAccumulator(terminal_state="running")
        self._publish()

    def apply(self, event: StreamEvent) -> bool:
        """应用一个事件，返回累积器是否发生了变化。"""

        if self._acc.terminal_state != "running":
            logger.debug(
                "Ignored event outside running state",
                extra={"extra": {"state": self._acc.terminal_state, "event": type(event).__name__}},
            )
            return False
        changed = self._transition(event)
        if changed:
            self._publish()
        return changed

    def complete(self) -> bool:
        return self._terminate("done")

    def fail(self, message: str) -> bool:
        return self._terminate("error", error_message=message)

    def abort(self) -> bool:
        return self._terminate("aborted")

    def _transition(self, event: StreamEvent) -> bool:
        acc = self._acc
        if isinstance(event, ContentDelta):
            if not event.text:
                return False
            acc.content_text += event.text
        elif isinstance(event, ThinkingDelta):
            if not event.text:
                return False
            acc.thinking_text += event.text
        elif isinstance(event, ThinkingStarted):
            acc.is_thinking = True
            acc.thinking_text = ""
        elif isinstance(event, ThinkingEnded):
            acc.is_thinking = False
        elif isinstance(event, ReasoningEffortSet):
            acc.reasoning_effort = event.effort
        elif isinstance(event, ToolCallStarted):
            acc.active_tool_call = ToolCallState(name=event.name, status="starting")
        elif isinstance(event, ToolCallProgress):
            if acc.active_tool_call is None:
                return False
            acc.active_tool_call = replace(acc.active_tool_call, status="in_progress")
        elif isinstance(event, ToolCallEnded):
            acc.active_tool_call = None
            acc.completed_tool_calls.append(
                ToolCallState(name=event.name, status="completed", sources=event.sources)
            )
        elif isinstance(event, ImageGenerated):
            acc.generated_image_ids.append(event.image_id)
        elif isinstance(event, UserMessageAck):
            acc.user_message_id = event.id
        elif isinstance(event, AssistantMessageAck):
            acc.assistant_message_id = event.id
        elif isinstance(event, Done):
            acc.updated_title = event.updated_title
            return self._enter_terminal("done")
        elif isinstance(event, Error):
            acc.error_message = event.message
            return self._enter_terminal("error")
        else:
            # Connected / Ping / ContentEnded / Unknown
            return False
        return True

    def _terminate(self, state: TerminalState, error_message: Optional[str] = None) -> bool:
        if self.is_terminal:
            return False
        if error_message is not None:
            self._acc.error_message = error_message
        self._enter_terminal(state)
        self._publish()
        return True

    def _enter_terminal(self, state: TerminalState) -> bool:
        self._acc.terminal_state = state
        self._acc.is_thinking = False
        self._acc.active_tool_call = None
        return True

    def _publish(self) -> None:
        snap = self._acc.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("Update listener failed")
