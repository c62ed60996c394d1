"""流式响应处理管线。

- frame_parser: 原始 chunk -> StreamFrame。
- decoder: StreamFrame -> StreamEvent。
- state_machine: StreamEvent -> ResponseAccumulator / ResponseSnapshot。
- cancellation: 贯穿各层的协作式取消令牌。
"""

from assistant_stream.streaming.cancellation import CancellationToken
from assistant_stream.streaming.decoder import decode_frame
from assistant_stream.streaming.frame_parser import FrameParser, aiter_frames
from assistant_stream.streaming.state_machine import (
    ResponseAccumulator,
    ResponseSnapshot,
    SessionStateMachine,
    UpdateListener,
)

__all__ = [
    "CancellationToken",
    "FrameParser",
    "ResponseAccumulator",
    "ResponseSnapshot",
    "SessionStateMachine",
    "UpdateListener",
    "aiter_frames",
    "decode_frame",
]
