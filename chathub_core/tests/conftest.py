"""Shared fakes for chathub_core tests."""

import asyncio
import json

import pytest

from chathub_core.domain.models import ImageUploadResult, SessionHandle
from chathub_core.transport.framing import HANDSHAKE_FRAME, RECORD_SEPARATOR


class SettingsStub:
    host = "https://chat.example.test"
    chathub_url = "wss://chat.example.test/ChatHub"
    user_token = "token"
    cookies = None
    proxy = None
    tone_style = "balanced"
    http_timeout = 1.0
    turn_timeout = 5.0
    keepalive_interval = 15.0
    image_gen_enable = False
    image_gen_type = "iframe"


def frame(obj) -> str:
    return json.dumps(obj) + RECORD_SEPARATOR


def bot_message(text, **extra):
    return {
        "author": "bot",
        "text": text,
        "adaptiveCards": [{"type": "AdaptiveCard", "body": [{"type": "TextBlock", "text": text}]}],
        **extra,
    }


def partial_event(text, **extra):
    return {"type": 1, "target": "update", "arguments": [{"messages": [bot_message(text, **extra)]}]}


def terminal_event(messages, result=None, **item_extra):
    item = {"messages": messages, "result": result or {"value": "Success"}, **item_extra}
    return {"type": 2, "invocationId": "0", "item": item}


class FakeWebSocket:
    """Minimal stand-in for a websockets client connection.

    Acknowledges the negotiation frame with an empty object and replays
    ``script`` once the chat invocation frame (type 4) arrives.
    """

    def __init__(self, script=None, ack_handshake=True):
        self.script = list(script or [])
        self.ack_handshake = ack_handshake
        self.sent = []
        self.close_calls = 0
        self.url = None
        self.connect_kwargs = None
        self._inbox = asyncio.Queue()

    def feed(self, raw) -> None:
        self._inbox.put_nowait(raw)

    def end(self) -> None:
        self._inbox.put_nowait(None)

    async def send(self, data) -> None:
        self.sent.append(data)
        if data == HANDSHAKE_FRAME:
            if self.ack_handshake:
                self.feed("{}" + RECORD_SEPARATOR)
            return
        payload = json.loads(data.rstrip(RECORD_SEPARATOR))
        if payload.get("type") == 4:
            for raw in self.script:
                self.feed(raw if isinstance(raw, str) else frame(raw))

    async def close(self) -> None:
        self.close_calls += 1
        self.end()

    def sent_frames(self):
        return [json.loads(s.rstrip(RECORD_SEPARATOR)) for s in self.sent if s != HANDSHAKE_FRAME]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeTransport:
    """In-memory transport for driving the assembler directly."""

    def __init__(self, events=None):
        self._queue = asyncio.Queue()
        self.close_calls = 0
        self.closed = False
        for event in events or []:
            self.push(event)

    def push(self, event) -> None:
        self._queue.put_nowait(event)

    async def events(self):
        while True:
            item = await self._queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakeBootstrapper:
    def __init__(self, handle=None):
        self.calls = 0
        self._handle = handle or SessionHandle(
            session_id="conv-1",
            participant_id="client-1",
            session_signature="sig/1+",
        )

    async def bootstrap(self):
        self.calls += 1
        return self._handle


class FakeServer:
    """websockets.connect 的替身：每次连接新建一个 FakeWebSocket。

    scripts 按连接顺序消费；prefeed 在握手前就放进新连接的收件箱。
    """

    def __init__(self):
        self.scripts = []
        self.prefeed = []
        self.ack_handshake = True
        self.connect_error = None
        self.sockets = []

    @property
    def last(self) -> FakeWebSocket:
        return self.sockets[-1]

    async def connect(self, url, **kwargs):
        if self.connect_error is not None:
            raise self.connect_error
        ws = FakeWebSocket(self.scripts.pop(0) if self.scripts else [], ack_handshake=self.ack_handshake)
        ws.url = url
        ws.connect_kwargs = kwargs
        for raw in self.prefeed:
            ws.feed(raw)
        self.sockets.append(ws)
        return ws


class FakeImageClient:
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.resolved = []
        self.uploaded = []

    async def resolve(self, image_url):
        self.resolved.append(image_url)
        return "aW1hZ2U="

    async def upload(self, image_base64):
        if self.fail_with is not None:
            raise self.fail_with
        self.uploaded.append(image_base64)
        return ImageUploadResult(blob_id="blob-1", process_blob_id="blob-1p")


class FakeImageGenerator:
    def __init__(self, refs=None, fail_with=None, delay=0.0):
        self.refs = refs or []
        self.fail_with = fail_with
        self.delay = delay
        self.calls = []

    async def generate(self, prompt, correlation_id, on_progress):
        self.calls.append((prompt, correlation_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return list(self.refs)


@pytest.fixture
def fake_server(monkeypatch):
    server = FakeServer()
    monkeypatch.setattr("websockets.connect", server.connect)
    return server
