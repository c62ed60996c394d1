"""Transport 集成层。

该包下的模块负责：
- 定义 Transport 抽象接口 (base)。
- 提供基于 httpx 的具体实现 (http_transport)。
"""

from typing import Optional

from assistant_stream.config.settings import settings
from assistant_stream.transport.base import StreamTransport
from assistant_stream.transport.http_transport import HttpStreamTransport


def create_transport(name: Optional[str] = None) -> StreamTransport:
    """根据名称创建 Transport 实例，目前只有 http 一种实现。"""

    transport_name = (name or "http").lower()
    if transport_name != "http":
        raise KeyError(f"Unknown transport: {name!r}")
    return HttpStreamTransport(settings)


__all__ = ["HttpStreamTransport", "StreamTransport", "create_transport"]
