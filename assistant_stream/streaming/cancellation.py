"""协作式取消令牌。

令牌贯穿 Transport 与读循环：读循环在每个 chunk / 每个事件前检查
``cancelled``，Transport 通过 ``add_callback`` 注册中止底层请求的回调。
``cancel()`` 可重复调用，回调只触发一次。
"""

import threading
from typing import Callable, List, Optional

from assistant_stream.infrastructure.logging.logger import logger


class CancellationToken:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._reason: Optional[str] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "user") -> bool:
        """请求取消；首次调用返回 True，之后的调用不做任何事。"""

        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            self._reason = reason
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception:
                logger.exception("Cancellation callback failed")
        return True

    def add_callback(self, cb: Callable[[], None]) -> None:
        """注册取消回调；令牌已取消时立即执行。"""

        with self._lock:
            if not self._cancelled:
                self._callbacks.append(cb)
                return
        cb()
