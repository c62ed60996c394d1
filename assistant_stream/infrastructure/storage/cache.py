"""带缓存的 ConversationStore 包装。

UI 以缓存中的 ConversationDetail 作为数据来源；流式会话结束后，
控制器调用 invalidate + get_conversation 让缓存重新反映后端已持久化的消息。

invalidate 之前已经发出的读取可能带回旧数据：每个会话有一个代际标记，
读取前记录、读取后比对，标记变了就不写入缓存，之后的读取会重新拉取。
"""

import asyncio
import weakref
from typing import Any, Dict, Optional

from assistant_stream.domain.conversation import Conversation, ConversationDetail, ConversationStore


class CachedConversationStore:
    def __init__(self, inner: ConversationStore):
        self._inner = inner
        self._cache: Dict[str, ConversationDetail] = {}
        # 只在缓存项存在或读取进行中时保留
        self._generations: Dict[str, object] = {}
        # 没有协程持有时锁自动释放
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def cached(self, conversation_id: str) -> Optional[ConversationDetail]:
        return self._cache.get(conversation_id)

    async def create_conversation(self, agent_ref: Optional[str], meta: Dict[str, Any]) -> Conversation:
        return await self._inner.create_conversation(agent_ref, meta)

    async def get_conversation(self, conversation_id: str) -> ConversationDetail:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        # 同一会话的并发读取只打一次后端
        async with lock:
            detail = self._cache.get(conversation_id)
            if detail is not None:
                return detail
            generation = self._generations.setdefault(conversation_id, object())
            detail = await self._inner.get_conversation(conversation_id)
            if self._generations.get(conversation_id) is generation:
                self._cache[conversation_id] = detail
            return detail

    async def invalidate(self, conversation_id: str) -> None:
        self._cache.pop(conversation_id, None)
        self._generations.pop(conversation_id, None)
        await self._inner.invalidate(conversation_id)
