"""Transport 抽象接口。

会话控制器不直接依赖 httpx，而是依赖此协议：

- open_stream(req, token) 返回一个惰性的文本 chunk 异步序列。
- 序列可能正常结束、抛出 BusinessError（网络/HTTP 错误），或因任务取消而中止。
- 实现者需在每个 chunk 之前检查 token，已取消时停止产出。
"""

from typing import AsyncIterator, Protocol

from assistant_stream.domain.models import StreamRequest
from assistant_stream.streaming.cancellation import CancellationToken


class StreamTransport(Protocol):
    name: str

    def open_stream(self, req: StreamRequest, token: CancellationToken) -> AsyncIterator[str]:
        ...
