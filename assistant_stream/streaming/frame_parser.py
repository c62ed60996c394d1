"""SSE 帧解析器。

把传输层按任意边界切开的文本/字节块还原为完整的 StreamFrame：

    event: content_delta
    data: {"content": "Hi"}
    <空行>

规则：
1. 只保留最后一个不完整行作为跨 chunk 的缓冲；完整行立即处理。
2. 一条记录 = 一行 ``event:`` + 若干行 ``data:``（多行 data 以 ``\\n`` 拼接），
   以空行结束；若记录已有 data 时又遇到新的 ``event:``，前一条记录也视为完整。
3. 没有 data 的 event 行、没有 event 行在前的 data 行都会被丢弃。
4. ``id:``、``retry:`` 以及 ``:`` 开头的注释行被忽略。
5. 解析器从不抛异常，坏行只计数丢弃，保证后续记录能继续解析。

同一个 chunk 中的多条记录按原始顺序一次性返回。
"""

import codecs
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from assistant_stream.domain.events import StreamFrame


Chunk = Union[str, bytes, bytearray]


class FrameParser:
    """增量式 SSE 帧解析器，每个会话一个实例。"""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._event_type: Optional[str] = None
        self._data_lines: List[str] = []
        self.dropped_lines = 0

    def feed(self, chunk: Chunk) -> List[StreamFrame]:
        """输入一个 chunk，返回本次已完整的全部帧。"""

        if isinstance(chunk, (bytes, bytearray)):
            text = self._decoder.decode(bytes(chunk))
        else:
            text = chunk
        if not text:
            return []
        frames: List[StreamFrame] = []
        *lines, self._buffer = (self._buffer + text).split("\n")
        for line in lines:
            self._consume_line(line.rstrip("\r"), frames)
        return frames

    def close(self) -> List[StreamFrame]:
        """传输结束：把缓冲中尚未以空行结束的记录也输出。"""

        frames: List[StreamFrame] = []
        self._buffer += self._decoder.decode(b"", final=True)
        if self._buffer:
            line, self._buffer = self._buffer, ""
            self._consume_line(line.rstrip("\r"), frames)
        self._finish_record(frames)
        return frames

    def _consume_line(self, line: str, frames: List[StreamFrame]) -> None:
        if not line:
            self._finish_record(frames)
            return
        if line.startswith(":"):
            return
        name, sep, value = line.partition(":")
        if not sep:
            self.dropped_lines += 1
            return
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            if self._data_lines:
                self._finish_record(frames)
            elif self._event_type is not None:
                # 上一个 event 行没有等到 data
                self.dropped_lines += 1
            self._event_type = value.strip()
        elif name == "data":
            if self._event_type is None:
                self.dropped_lines += 1
                return
            self._data_lines.append(value)
        elif name in ("id", "retry"):
            return
        else:
            self.dropped_lines += 1

    def _finish_record(self, frames: List[StreamFrame]) -> None:
        if self._event_type and self._data_lines:
            frames.append(StreamFrame(event_type=self._event_type, data="\n".join(self._data_lines)))
        elif self._event_type is not None or self._data_lines:
            self.dropped_lines += 1
        self._event_type = None
        self._data_lines = []


async def aiter_frames(
    chunks: AsyncIterable[Chunk],
    parser: Optional[FrameParser] = None,
) -> AsyncIterator[StreamFrame]:
    """惰性地把异步 chunk 序列转换为帧序列。"""

    parser = parser or FrameParser()
    async for chunk in chunks:
        for frame in parser.feed(chunk):
            yield frame
    for frame in parser.close():
        yield frame
