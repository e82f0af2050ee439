"""全双工连接的生命周期管理。

TransportSession 负责：

1. 建立 websocket 连接并发送协商帧。
2. 等待握手完成（收到空对象），期间的帧只做诊断日志。
3. 握手完成后启动 keep-alive，按固定间隔发送 ping 帧。
4. 接收循环把解析后的文档按顺序放进一个队列，组装器通过 events() 消费。
5. close() 是唯一的拆除路径：停掉 keep-alive、接收循环并关闭连接，可重复调用。
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import quote

import websockets

from chathub_core.domain.exceptions import TransportError
from chathub_core.infrastructure.logging.logger import log_event
from chathub_core.transport.framing import (
    HANDSHAKE_FRAME,
    PING_FRAME,
    encode_frame,
    is_handshake_ack,
    split_frames,
)


class TransportSession:
    def __init__(self, settings, headers: Optional[Dict[str, str]] = None, log_ctx: Optional[Dict[str, Any]] = None):
        self._settings = settings
        self._headers = headers or {}
        self._log_ctx = dict(log_ctx or {})
        self._ws = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._handshake = asyncio.Event()
        self._failure: Optional[TransportError] = None
        self._receiver_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def handshake_done(self) -> bool:
        return self._handshake.is_set() and self._failure is None

    async def open(self, session_signature: str) -> "TransportSession":
        """连接并完成握手，失败时已经拆除连接再抛出 TransportError。"""

        url = f"{self._settings.chathub_url}?sec_access_token={quote(session_signature, safe='')}"
        kwargs: Dict[str, Any] = {
            "additional_headers": self._headers,
            # keep-alive 由协议层的 ping 帧负责
            "ping_interval": None,
            "open_timeout": self._settings.http_timeout,
        }
        proxy = getattr(self._settings, "proxy", None)
        if proxy:
            kwargs["proxy"] = proxy
        try:
            self._ws = await websockets.connect(url, **kwargs)
        except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
            await self.close()
            raise TransportError(code="CONNECT_FAILED", message=str(e) or type(e).__name__)

        self._receiver_task = asyncio.create_task(self._receive_loop())
        log_event(logging.DEBUG, "Performing handshake", self._log_ctx)
        try:
            await self._send_raw(HANDSHAKE_FRAME)
            await asyncio.wait_for(self._handshake.wait(), timeout=self._settings.http_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise TransportError(code="HANDSHAKE_TIMEOUT", message="Timed out waiting for handshake.")
        except TransportError:
            await self.close()
            raise
        if self._failure is not None:
            await self.close()
            raise self._failure
        log_event(logging.DEBUG, "Handshake established", self._log_ctx)
        return self

    async def send(self, frame: Any) -> None:
        payload = frame if isinstance(frame, str) else encode_frame(frame)
        log_event(logging.DEBUG, "Sending frame", self._log_ctx, frame=payload[:2000])
        await self._send_raw(payload)

    async def events(self) -> AsyncIterator[Any]:
        """按到达顺序产出入站文档；连接中断时抛出 TransportError。"""

        while True:
            item = await self._events.get()
            if isinstance(item, TransportError):
                raise item
            yield item

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        tasks = [t for t in (self._keepalive_task, self._receiver_task) if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if self._ws is not None:
            try:
                await self._ws.close()
            except (OSError, websockets.exceptions.WebSocketException) as e:
                log_event(logging.DEBUG, "Error while closing socket", self._log_ctx, error=str(e))
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log_event(logging.DEBUG, "Disconnected", self._log_ctx)

    async def _send_raw(self, payload: str) -> None:
        if self._closed or self._ws is None:
            raise TransportError(code="NOT_CONNECTED", message="Connection is not open.")
        try:
            await self._ws.send(payload)
        except websockets.ConnectionClosed as e:
            raise TransportError(code="CONNECTION_CLOSED", message=str(e))

    async def _receive_loop(self) -> None:
        error = TransportError(code="CONNECTION_CLOSED", message="Connection closed before the response completed.")
        try:
            async for raw in self._ws:
                documents = split_frames(raw)
                if not documents:
                    continue
                if not self._handshake.is_set():
                    if is_handshake_ack(documents):
                        self._handshake.set()
                        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
                        documents = documents[1:]
                    else:
                        log_event(logging.DEBUG, "Pre-handshake frame", self._log_ctx, documents=documents)
                        continue
                for document in documents:
                    self._events.put_nowait(document)
        except websockets.ConnectionClosed as e:
            error = TransportError(code="CONNECTION_CLOSED", message=str(e))
        except OSError as e:
            error = TransportError(code="SOCKET_ERROR", message=str(e))
        log_event(logging.WARNING, "Socket receive loop ended", self._log_ctx, error=error.message)
        self._failure = error
        # 唤醒还在等握手的 open()
        self._handshake.set()
        self._events.put_nowait(error)

    async def _keepalive_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.keepalive_interval)
            try:
                await self._ws.send(PING_FRAME)
            except websockets.ConnectionClosed as e:
                log_event(logging.WARNING, "Keep-alive ping failed", self._log_ctx, error=str(e))
                return
