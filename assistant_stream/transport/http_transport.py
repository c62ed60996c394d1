"""基于 httpx 的流式 Transport。

本模块负责：

1. 接收统一的 StreamRequest。
2. 将其转换为后端 ``POST /api/personal-chats/{id}/messages/stream`` 请求。
3. 以文本 chunk 的形式逐块产出响应体，不做任何 SSE 解析。
4. 把网络错误 / HTTP 错误映射为 domain.exceptions 中的业务异常。

取消分两层：每个 chunk 前检查令牌；读循环任务被取消时，
``async with`` 会关闭响应并中止底层连接。
"""

from typing import AsyncIterator, Dict

import httpx

from assistant_stream.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from assistant_stream.domain.models import StreamRequest
from assistant_stream.infrastructure.logging.logger import logger
from assistant_stream.streaming.cancellation import CancellationToken


# 错误响应体只截取前 100 个字符，避免把整页 HTML 塞进错误信息
ERROR_BODY_PREVIEW = 100


class HttpStreamTransport:
    """聊天后端的流式 Transport 实现。"""

    name = "http"

    def __init__(self, settings):
        # Settings 里包含 backend_base_url、auth_token、超时等配置
        self._settings = settings

    def stream_url(self, conversation_id: str) -> str:
        base = self._settings.backend_base_url.rstrip("/")
        return f"{base}/api/personal-chats/{conversation_id}/messages/stream"

    async def open_stream(self, req: StreamRequest, token: CancellationToken) -> AsyncIterator[str]:
        """打开流式响应并逐块产出文本。"""

        if not req.conversation_id:
            raise ValidationError(code="MISSING_CONVERSATION", message="conversation id is required")
        url = self.stream_url(req.conversation_id)
        payload = req.to_payload()
        if "userId" not in payload and getattr(self._settings, "user_id", None):
            payload["userId"] = self._settings.user_id
        timeout = httpx.Timeout(self._settings.http_timeout, read=self._settings.stream_read_timeout)
        logger.info(
            "Opening stream",
            extra={"extra": {"conversation_id": req.conversation_id, "has_image": bool(req.message.image_url)}},
        )
        try:
            async with httpx.AsyncClient(timeout=timeout, trust_env=False) as client:
                async with client.stream("POST", url, json=payload, headers=self._headers()) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="chat backend rate limit", http_status=429)
                    if resp.status_code >= 400:
                        raise ApiError(
                            code="API_ERROR",
                            message=await self._error_text(resp),
                            http_status=resp.status_code,
                        )
                    async for text in resp.aiter_text():
                        if token.cancelled:
                            logger.info(
                                "Stream read stopped by cancellation",
                                extra={"extra": {"conversation_id": req.conversation_id}},
                            )
                            return
                        if text:
                            yield text
        except httpx.RequestError as e:
            # 网络错误：连接失败、中途断开、读超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e) or type(e).__name__)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        token = getattr(self._settings, "auth_token", None)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    @staticmethod
    async def _error_text(resp) -> str:
        error_text = f"HTTP {resp.status_code}"
        try:
            body = await resp.aread()
        except httpx.HTTPError:
            return error_text
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else str(body)
        if text:
            error_text = f"{error_text}: {text[:ERROR_BODY_PREVIEW]}"
        return error_text
