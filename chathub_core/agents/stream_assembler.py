"""流式响应组装器。

消费 TransportSession 的入站事件，驱动一轮对话的状态机：

    AwaitingFirstEvent -> Streaming -> Resolved | Failed

- type=1 局部更新：计算新增后缀推给进度回调，检测停止标记。
- type=2 终止事件：按服务端结果决定成功/失败/部分成功。
- type=7 连接带错误关闭：失败。
- 其他携带 error 的事件：失败。
- 总时限与外部取消信号与终止事件竞争，只有先到的那一个生效。

累积文本和终止标记只在事件消费协程里修改。连接只在 run() 的 finally 里拆除一次，
各分支只负责产出结果或抛出异常。
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from chathub_core.domain.exceptions import (
    ModerationError,
    ProtocolError,
    SessionInvalidError,
    TransportError,
    TurnCancelledError,
    TurnTimeoutError,
)
from chathub_core.domain.models import AssembledReply, ImageAttachment, ProgressCallback
from chathub_core.infrastructure.logging.logger import log_event
from chathub_core.providers.base import ImageGenerator

STOP_TOKEN = "\n\n[user](#message)"
MODERATION_PLACEHOLDER = "[Error: The moderation filter triggered. Try again with different wording.]"
DEFAULT_TURN_TIMEOUT = 300.0

EVENT_PARTIAL_UPDATE = 1
EVENT_TERMINAL = 2
EVENT_CLOSE_WITH_ERROR = 7


class AssemblerState(str, Enum):
    AWAITING_FIRST_EVENT = "awaiting_first_event"
    STREAMING = "streaming"
    RESOLVED = "resolved"
    FAILED = "failed"


@dataclass
class _ImageJob:
    task: asyncio.Task
    prompt: str
    type: str


def _set_display_text(message: Dict[str, Any], text: str) -> None:
    """同时改写消息正文与自适应卡片里展示的文本。"""

    message["text"] = text
    body = _card_body(message)
    if body is not None:
        body["text"] = text


def _append_card_text(message: Dict[str, Any], suffix: str) -> None:
    body = _card_body(message)
    if body is not None:
        body["text"] = (body.get("text") or "") + suffix


def _card_body(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    cards = message.get("adaptiveCards") or []
    if not cards or not isinstance(cards[0], dict):
        return None
    body = cards[0].get("body") or []
    if not body or not isinstance(body[0], dict):
        return None
    return body[0]


def format_image_refs(refs: List[str], image_type: str, prompt: str) -> str:
    if image_type == "markdown_list":
        return "\n".join(f"![{idx}.{prompt}]({ref})" for idx, ref in enumerate(refs, start=1))
    if image_type == "url_list":
        return "\n".join(f"{idx}.{ref}" for idx, ref in enumerate(refs, start=1))
    return "\n".join(refs)


class StreamAssembler:
    def __init__(
        self,
        transport,
        *,
        threaded: bool = False,
        on_progress: Optional[ProgressCallback] = None,
        image_generator: Optional[ImageGenerator] = None,
        image_gen_type: str = "iframe",
        timeout: float = DEFAULT_TURN_TIMEOUT,
        cancel_event: Optional[asyncio.Event] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ):
        self._transport = transport
        self._threaded = threaded
        self._on_progress = on_progress
        self._image_generator = image_generator
        self._image_gen_type = image_gen_type
        self._timeout = timeout
        self._cancel_event = cancel_event
        self._log_ctx = dict(log_ctx or {})
        self._image_job: Optional[_ImageJob] = None

        self.state = AssemblerState.AWAITING_FIRST_EVENT
        self.reply_so_far = ""
        self.stop_token_found = False

    async def run(self) -> AssembledReply:
        """驱动状态机直到出现唯一的终止结果。

        终止事件、总时限、取消信号三者竞争；无论哪条路径胜出，
        连接都只会被拆除一次，输掉的一方随之被撤销。
        """

        consumer = asyncio.create_task(self._consume())
        cancel_waiter: Optional[asyncio.Task] = None
        waiters = {consumer}
        if self._cancel_event is not None:
            cancel_waiter = asyncio.create_task(self._cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=self._timeout, return_when=asyncio.FIRST_COMPLETED)
            if consumer in done:
                reply = consumer.result()
                self.state = AssemblerState.RESOLVED
                return reply
            if cancel_waiter is not None and cancel_waiter in done:
                log_event(logging.INFO, "Turn cancelled by caller", self._log_ctx)
                raise TurnCancelledError(code="REQUEST_ABORTED", message="Request aborted")
            log_event(logging.WARNING, "Turn timed out", self._log_ctx, timeout=self._timeout)
            raise TurnTimeoutError(
                code="TURN_TIMEOUT",
                message="Timed out waiting for response. Try enabling debug mode to see more information.",
            )
        except BaseException:
            self.state = AssemblerState.FAILED
            if self._image_job is not None and not self._image_job.task.done():
                self._image_job.task.cancel()
            raise
        finally:
            pending = [t for t in (consumer, cancel_waiter) if t is not None and not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            await self._transport.close()

    async def _consume(self) -> AssembledReply:
        async for event in self._transport.events():
            if not isinstance(event, dict):
                continue
            if self.state is AssemblerState.AWAITING_FIRST_EVENT:
                self.state = AssemblerState.STREAMING
            reply = await self._handle_event(event)
            if reply is not None:
                return reply
        raise TransportError(code="CONNECTION_CLOSED", message="Event stream ended without a terminal event.")

    async def _handle_event(self, event: Dict[str, Any]) -> Optional[AssembledReply]:
        event_type = event.get("type")
        if event_type == EVENT_PARTIAL_UPDATE:
            self._on_partial_update(event)
            return None
        if event_type == EVENT_TERMINAL:
            return await self._on_terminal(event)
        if event_type == EVENT_CLOSE_WITH_ERROR:
            # [{"type":7,"error":"Connection closed with an error.","allowReconnect":true}]
            raise TransportError(
                code="CONNECTION_CLOSED_WITH_ERROR",
                message=event.get("error") or "Connection closed with an error.",
            )
        if event.get("error"):
            raise ProtocolError(
                code="EVENT_ERROR",
                message=f"Event Type('{event_type}'): {event['error']}",
                event_type=event_type,
            )
        return None

    # ---- 局部更新 ----

    def _on_partial_update(self, event: Dict[str, Any]) -> None:
        if self.stop_token_found:
            return
        arguments = event.get("arguments") or []
        messages = (arguments[0] or {}).get("messages") if arguments else None
        if not messages:
            return
        first = messages[0]
        if first.get("author") != "bot" or first.get("contentOrigin") == "Apology":
            return
        if first.get("contentType") == "IMAGE":
            self._start_image_job(first)
            return

        updated = first.get("text")
        if not updated or updated == self.reply_so_far:
            return
        # 假设新文本是旧文本的延伸；变短或分叉时结果没有意义，保持原样
        self._emit(updated[len(self.reply_so_far):])
        if updated.strip().endswith(STOP_TOKEN):
            self.stop_token_found = True
            self.reply_so_far = updated.replace(STOP_TOKEN, "", 1).strip()
            log_event(logging.DEBUG, "Stop token found", self._log_ctx, reply_length=len(self.reply_so_far))
            return
        self.reply_so_far = updated

    def _start_image_job(self, message: Dict[str, Any]) -> None:
        if self._image_generator is None:
            log_event(logging.WARNING, "Image result received without an image generator", self._log_ctx)
            return
        if self._image_job is not None:
            return
        prompt = message.get("text") or ""
        correlation_id = message.get("messageId") or ""
        task = asyncio.create_task(self._generate_images(prompt, correlation_id))
        self._image_job = _ImageJob(task=task, prompt=prompt, type=self._image_gen_type)
        log_event(logging.INFO, "Image generation started", self._log_ctx, prompt=prompt)

    async def _generate_images(self, prompt: str, correlation_id: str) -> Tuple[Optional[List[str]], Optional[str]]:
        try:
            refs = await self._image_generator.generate(prompt, correlation_id, self._emit)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # 生成失败不影响文本回复，错误信息会拼进最终消息
            log_event(logging.WARNING, "Image generation failed", self._log_ctx, error=str(e))
            self._emit(str(e))
            return None, str(e)
        return list(refs or []), None

    # ---- 终止事件 ----

    async def _on_terminal(self, event: Dict[str, Any]) -> AssembledReply:
        item = event.get("item") or {}
        result = item.get("result") or {}
        if result.get("value") == "InvalidSession":
            raise SessionInvalidError(code="InvalidSession", message=f"{result['value']}: {result.get('message')}")

        messages: List[Dict[str, Any]] = item.get("messages") or []
        candidate = messages[-1] if messages else None
        expiry_time = item.get("conversationExpiryTime")

        if result.get("error"):
            log_event(
                logging.DEBUG,
                "Terminal event carries a result error",
                self._log_ctx,
                value=result.get("value"),
                message=result.get("message"),
                error=result.get("error"),
                exception=result.get("exception"),
            )
            if self.reply_so_far and candidate is not None:
                _set_display_text(candidate, self.reply_so_far)
                return AssembledReply(
                    final_text=self.reply_so_far,
                    message=candidate,
                    expiry_time=expiry_time,
                    raw=event,
                )
            raise ModerationError(
                code=result.get("value") or "RESULT_ERROR",
                message=f"{result.get('value')}: {result.get('message')}",
            )

        if candidate is None:
            raise ProtocolError(code="NO_MESSAGE", message="No message was generated.")
        if candidate.get("author") != "bot":
            raise ProtocolError(code="UNEXPECTED_AUTHOR", message="Unexpected message author.")

        if self._threaded and self._moderation_triggered(messages):
            if not self.reply_so_far:
                self.reply_so_far = MODERATION_PLACEHOLDER
            _set_display_text(candidate, self.reply_so_far)
            # 审核触发时的推荐回复没有意义
            candidate.pop("suggestedResponses", None)

        attachment = None
        if self._image_job is not None:
            # 带图片时最后几条是图片创建事件，回退到真正的文本消息
            idx = len(messages) - 1
            while candidate.get("contentType") == "IMAGE" and idx > 0:
                idx -= 1
                candidate = messages[idx]
            attachment = await self._merge_images(candidate)

        return AssembledReply(
            final_text=candidate.get("text") or "",
            message=candidate,
            expiry_time=expiry_time,
            raw=event,
            image_attachment=attachment,
        )

    def _moderation_triggered(self, messages: List[Dict[str, Any]]) -> bool:
        first = messages[0]
        return bool(
            self.stop_token_found
            or first.get("topicChangerText")
            or first.get("offense") == "OffenseTrigger"
            or (len(messages) > 1 and messages[1].get("contentOrigin") == "Apology")
        )

    async def _merge_images(self, message: Dict[str, Any]) -> ImageAttachment:
        job = self._image_job
        refs, error = await job.task
        if error is None:
            formatted = format_image_refs(refs, job.type, job.prompt)
            _append_card_text(message, f"\n{formatted}")
            attachment = ImageAttachment(
                type=job.type,
                prompt=job.prompt,
                images=refs if job.type != "iframe" else None,
            )
        else:
            message["text"] = (message.get("text") or "") + f"\n{error}"
            _append_card_text(message, f"\n{error}")
            attachment = ImageAttachment(type=job.type, prompt=job.prompt, is_error=True)
        message["bic"] = attachment.to_dict()
        return attachment

    def _emit(self, text: str) -> None:
        if self._on_progress is not None and text:
            self._on_progress(text)
