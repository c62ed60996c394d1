import asyncio
import json
from datetime import datetime, timezone

import pytest

from assistant_stream.domain.conversation import Conversation, ConversationDetail, MessageRecord
from assistant_stream.domain.exceptions import (
    ApiError,
    ConversationCreateError,
    NetworkError,
    SessionBusyError,
    StoreError,
    ValidationError,
)
from assistant_stream.domain.models import OutboundMessage
from assistant_stream.session.controller import SessionController


def sse(event, payload):
    return f"event: {event}\ndata: {json.dumps(payload)}\n\n"


class ScriptedTransport:
    """按脚本逐块产出 chunk；可在结尾抛错或一直挂起。"""

    name = "fake"

    def __init__(self, chunks=(), error=None, stall=False):
        self.chunks = list(chunks)
        self.error = error
        self.stall = stall
        self.requests = []
        self.closed = False

    async def open_stream(self, req, token):
        self.requests.append(req)
        try:
            for chunk in self.chunks:
                yield chunk
            if self.error is not None:
                raise self.error
            if self.stall:
                await asyncio.Event().wait()
        finally:
            self.closed = True


class FakeStore:
    def __init__(self, create_id="c1", create_error=None, get_error=None):
        self.create_id = create_id
        self.create_error = create_error
        self.get_error = get_error
        self.created = []
        self.invalidated = []
        self.fetched = []

    async def create_conversation(self, agent_ref, meta):
        if self.create_error is not None:
            raise self.create_error
        self.created.append(agent_ref)
        now = datetime.now(timezone.utc)
        return Conversation(id=self.create_id, title="", agent_ref=agent_ref, created_at=now, updated_at=now)

    async def get_conversation(self, conversation_id):
        self.fetched.append(conversation_id)
        if self.get_error is not None:
            raise self.get_error
        now = datetime.now(timezone.utc)
        conv = Conversation(id=conversation_id, title="t", agent_ref=None, created_at=now, updated_at=now)
        msg = MessageRecord(id="a1", conversation_id=conversation_id, role="assistant", content="persisted", created_at=now)
        return ConversationDetail(conversation=conv, messages=[msg])

    async def invalidate(self, conversation_id):
        self.invalidated.append(conversation_id)


def states(seen):
    return [s.terminal_state for s in seen]


@pytest.mark.asyncio
async def test_full_stream_reaches_done_and_reconciles():
    transport = ScriptedTransport([
        sse("connected", {"conversationId": "c9"}),
        sse("user_message", {"id": "u1"}) + sse("thinking_start", {}),
        sse("thinking_delta", {"content": "rea"}) + sse("thinking_delta", {"content": "son"}),
        sse("thinking_end", {}) + 'event: content_delta\ndata: {"conte',
        'nt":"42"}\n\n' + sse("assistant_message", {"id": "a1"}),
        sse("done", {"success": True, "updatedTitle": "Answer"}),
    ])
    store = FakeStore()
    controller = SessionController(store, transport, user_id="user-1")

    session = await controller.send("c9", OutboundMessage(text="meaning of life?"))
    snap = session.snapshot

    assert snap.terminal_state == "done"
    assert snap.thinking_text == "reason"
    assert snap.content_text == "42"
    assert snap.user_message_id == "u1"
    assert snap.assistant_message_id == "a1"
    assert snap.updated_title == "Answer"
    assert store.invalidated == ["c9"]
    assert store.fetched == ["c9"]
    assert session.reconciled.messages[0].content == "persisted"
    assert transport.requests[0].user_id == "user-1"
    assert transport.closed is True
    assert controller.active_session("c9") is None


@pytest.mark.asyncio
async def test_creates_conversation_then_reconciles_even_on_stream_error():
    transport = ScriptedTransport(error=NetworkError(code="NETWORK_ERROR", message="connection refused"))
    store = FakeStore(create_id="c1")
    controller = SessionController(store, transport, default_agent_ref="friend-1")

    session = await controller.start_session(None, OutboundMessage(text="hello"))
    snap = await session.wait()

    assert session.conversation_id == "c1"
    assert store.created == ["friend-1"]
    assert transport.requests[0].conversation_id == "c1"
    assert snap.terminal_state == "error"
    assert snap.error_message == "connection refused"
    assert store.fetched == ["c1"]


@pytest.mark.asyncio
async def test_cancel_after_two_deltas_keeps_partial_content():
    transport = ScriptedTransport(
        [sse("content_delta", {"content": "Hel"}), sse("content_delta", {"content": "lo"})],
        stall=True,
    )
    store = FakeStore()
    controller = SessionController(store, transport)
    seen = []
    got_both = asyncio.Event()

    def listener(snap):
        seen.append(snap)
        if snap.content_text == "Hello":
            got_both.set()

    session = await controller.start_session("c1", OutboundMessage(text="hi"), listeners=[listener])
    await asyncio.wait_for(got_both.wait(), 1)
    session.cancel()
    snap = await asyncio.wait_for(session.wait(), 1)

    assert snap.terminal_state == "aborted"
    assert snap.content_text == "Hello"
    assert snap.error_message is None
    assert store.fetched == ["c1"]
    assert states(seen).count("aborted") == 1
    assert transport.closed is True


@pytest.mark.asyncio
async def test_repeated_cancel_aborts_and_reconciles_once():
    transport = ScriptedTransport([sse("content_delta", {"content": "a"})], stall=True)
    store = FakeStore()
    controller = SessionController(store, transport)
    seen = []
    first = asyncio.Event()

    def listener(snap):
        seen.append(snap)
        if snap.content_text:
            first.set()

    session = await controller.start_session("c1", OutboundMessage(text="hi"), listeners=[listener])
    await asyncio.wait_for(first.wait(), 1)
    for _ in range(5):
        session.cancel()
    await asyncio.wait_for(session.wait(), 1)
    session.cancel()

    assert states(seen).count("aborted") == 1
    assert store.fetched == ["c1"]
    assert store.invalidated == ["c1"]


@pytest.mark.asyncio
async def test_cancel_before_first_chunk_skips_transport():
    transport = ScriptedTransport([sse("content_delta", {"content": "never"})])
    store = FakeStore()
    controller = SessionController(store, transport)

    session = await controller.start_session("c1", OutboundMessage(text="hi"))
    session.cancel()
    snap = await asyncio.wait_for(session.wait(), 1)

    assert snap.terminal_state == "aborted"
    assert snap.content_text == ""
    assert transport.requests == []
    assert store.fetched == ["c1"]


@pytest.mark.asyncio
async def test_cancel_from_listener_stops_buffered_frames():
    chunk = "".join(sse("content_delta", {"content": c}) for c in "abcd") + sse("done", {})
    transport = ScriptedTransport([chunk])
    controller = SessionController(FakeStore(), transport)
    holder = {}

    def listener(snap):
        if snap.content_text == "ab":
            holder["session"].cancel()

    session = await controller.start_session("c1", OutboundMessage(text="hi"), listeners=[listener])
    holder["session"] = session
    snap = await asyncio.wait_for(session.wait(), 1)

    assert snap.terminal_state == "aborted"
    assert snap.content_text == "ab"


@pytest.mark.asyncio
async def test_frames_after_done_are_not_processed():
    transport = ScriptedTransport([
        sse("content_delta", {"content": "ok"}) + sse("done", {}) + sse("content_delta", {"content": "late"}),
        sse("error", {"error": "late"}),
    ])
    controller = SessionController(FakeStore(), transport)

    session = await controller.send("c1", OutboundMessage(text="hi"))

    assert session.snapshot.terminal_state == "done"
    assert session.snapshot.content_text == "ok"
    assert session.snapshot.error_message is None


@pytest.mark.asyncio
async def test_stream_ending_without_done_is_completed():
    transport = ScriptedTransport([sse("content_delta", {"content": "partial"})])
    controller = SessionController(FakeStore(), transport)

    session = await controller.send("c1", OutboundMessage(text="hi"))

    assert session.snapshot.terminal_state == "done"
    assert session.snapshot.content_text == "partial"


@pytest.mark.asyncio
async def test_http_error_before_frames_is_terminal_error():
    transport = ScriptedTransport(error=ApiError(code="API_ERROR", message="HTTP 500: oops", http_status=500))
    store = FakeStore()
    controller = SessionController(store, transport)

    session = await controller.send("c1", OutboundMessage(text="hi"))

    assert session.snapshot.terminal_state == "error"
    assert session.snapshot.error_message == "HTTP 500: oops"
    assert store.fetched == ["c1"]


@pytest.mark.asyncio
async def test_unexpected_transport_exception_is_reported_as_error():
    transport = ScriptedTransport([sse("content_delta", {"content": "x"})], error=RuntimeError("socket gone"))
    controller = SessionController(FakeStore(), transport)

    session = await controller.send("c1", OutboundMessage(text="hi"))

    assert session.snapshot.terminal_state == "error"
    assert session.snapshot.error_message == "socket gone"
    assert session.snapshot.content_text == "x"


@pytest.mark.asyncio
async def test_second_session_on_same_conversation_is_rejected():
    transport = ScriptedTransport(stall=True)
    controller = SessionController(FakeStore(), transport)

    first = await controller.start_session("c1", OutboundMessage(text="one"))
    with pytest.raises(SessionBusyError) as exc:
        await controller.start_session("c1", OutboundMessage(text="two"))
    assert exc.value.http_status == 409
    assert controller.active_session("c1") is first

    first.cancel()
    await asyncio.wait_for(first.wait(), 1)
    assert controller.active_session("c1") is None

    # 会话释放后可以再次发送
    transport.stall = False
    second = await controller.send("c1", OutboundMessage(text="again"))
    assert second.snapshot.terminal_state == "done"


@pytest.mark.asyncio
async def test_conversation_creation_failure_opens_no_stream():
    transport = ScriptedTransport([sse("done", {})])
    store = FakeStore(create_error=StoreError(code="STORE_HTTP_ERROR", message="db down", http_status=500))
    controller = SessionController(store, transport)

    with pytest.raises(ConversationCreateError) as exc:
        await controller.start_session(None, OutboundMessage(text="hi"))

    assert exc.value.extra["cause_code"] == "STORE_HTTP_ERROR"
    assert transport.requests == []
    assert store.fetched == []
    assert store.invalidated == []


@pytest.mark.asyncio
async def test_empty_message_is_rejected():
    controller = SessionController(FakeStore(), ScriptedTransport())
    with pytest.raises(ValidationError):
        await controller.start_session("c1", OutboundMessage(text="   "))


@pytest.mark.asyncio
async def test_image_only_message_is_sent():
    transport = ScriptedTransport([sse("done", {})])
    controller = SessionController(FakeStore(), transport)

    await controller.send("c1", OutboundMessage(text="", image_url="https://img/1.png"))

    assert transport.requests[0].to_payload()["imageUrl"] == "https://img/1.png"


@pytest.mark.asyncio
async def test_reconciliation_failure_is_logged_not_raised():
    store = FakeStore(get_error=StoreError(code="STORE_HTTP_ERROR", message="502"))
    controller = SessionController(store, ScriptedTransport([sse("done", {})]))

    session = await controller.send("c1", OutboundMessage(text="hi"))

    assert session.snapshot.terminal_state == "done"
    assert session.reconciled is None
    assert isinstance(session.reconcile_error, StoreError)
    assert store.fetched == ["c1"]
    assert controller.active_session("c1") is None


@pytest.mark.asyncio
async def test_deadline_cancels_stalled_stream():
    transport = ScriptedTransport([sse("content_delta", {"content": "slow"})], stall=True)
    store = FakeStore()
    controller = SessionController(store, transport, stream_deadline=0.05)

    session = await controller.start_session("c1", OutboundMessage(text="hi"))
    snap = await asyncio.wait_for(session.wait(), 1)

    assert snap.terminal_state == "aborted"
    assert snap.content_text == "slow"
    assert session.cancelled is True
    assert store.fetched == ["c1"]


@pytest.mark.asyncio
async def test_waiter_cancellation_does_not_cancel_session():
    transport = ScriptedTransport(stall=True)
    controller = SessionController(FakeStore(), transport)
    session = await controller.start_session("c1", OutboundMessage(text="hi"))

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(session.wait(), 0.05)
    assert session.finished is False
    assert session.snapshot.terminal_state == "running"

    session.cancel()
    snap = await asyncio.wait_for(session.wait(), 1)
    assert snap.terminal_state == "aborted"


@pytest.mark.asyncio
async def test_cancel_all_stops_every_session():
    controller = SessionController(FakeStore(), ScriptedTransport(stall=True))
    a = await controller.start_session("c1", OutboundMessage(text="a"))
    b = await controller.start_session("c2", OutboundMessage(text="b"))

    await asyncio.wait_for(controller.cancel_all(), 1)

    assert a.snapshot.terminal_state == "aborted"
    assert b.snapshot.terminal_state == "aborted"
    assert controller.active_session("c1") is None
    assert controller.active_session("c2") is None


class HangingStore(FakeStore):
    """对账读取一直不返回。"""

    def __init__(self):
        super().__init__()
        self.fetch_started = asyncio.Event()

    async def get_conversation(self, conversation_id):
        self.fetched.append(conversation_id)
        self.fetch_started.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_session_released_when_cancelled_during_reconciliation():
    store = HangingStore()
    controller = SessionController(store, ScriptedTransport([sse("done", {})]))

    session = await controller.start_session("c1", OutboundMessage(text="hi"))
    await asyncio.wait_for(store.fetch_started.wait(), 1)
    task = next(t for t in asyncio.all_tasks() if t.get_name() == f"stream-session-{session.id}")
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await asyncio.wait_for(session.wait(), 1)
    assert controller.active_session("c1") is None
    assert session.snapshot.terminal_state == "done"
