"""对话轮次编排。

把 bootstrap、历史还原、传输、组装与持久化串成一次 send_message 调用。
"""

import logging
import secrets
import time
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

from chathub_core.agents.stream_assembler import StreamAssembler
from chathub_core.config.settings import settings as default_settings
from chathub_core.domain.conversation import ConversationRecord, ConversationStore, Message
from chathub_core.domain.exceptions import ApiError, BusinessError, NetworkError, ValidationError
from chathub_core.domain.history import format_injected_context, index_messages, resolve_history
from chathub_core.domain.models import ImageUploadResult, TurnOptions, TurnResult
from chathub_core.infrastructure.logging.logger import log_event
from chathub_core.providers.base import ImageGenerator, ImageResolver, ImageUploader, SessionBootstrapper
from chathub_core.providers.headers import build_headers
from chathub_core.providers.registry import get_tone_config
from chathub_core.transport.request import build_chat_frame
from chathub_core.transport.session import TransportSession

TransportFactory = Callable[..., Any]


class TurnOrchestrator:
    def __init__(
        self,
        store: ConversationStore,
        bootstrapper: SessionBootstrapper,
        image_resolver: Optional[ImageResolver] = None,
        image_uploader: Optional[ImageUploader] = None,
        image_generator: Optional[ImageGenerator] = None,
        settings=default_settings,
        transport_factory: TransportFactory = TransportSession,
    ):
        self._store = store
        self._bootstrapper = bootstrapper
        self._image_resolver = image_resolver
        self._image_uploader = image_uploader
        self._image_generator = image_generator
        self._settings = settings
        self._transport_factory = transport_factory

    async def send_message(self, text: str, options: Optional[TurnOptions] = None) -> TurnResult:
        """执行一轮对话。

        Args:
            text: 用户输入内容
            options: 会话、语气、上下文、图片、进度回调与取消信号等可选参数

        Returns:
            TurnResult，session.invocation_index 已加 1；线程化对话还会带上
            conversation_key 与新消息的 id / parent id，供下一轮串联。

        Raises:
            domain.exceptions 中定义的各类异常，失败前连接均已拆除。
        """

        opts = options or TurnOptions()
        start_time = time.time()
        log_ctx: Dict[str, Any] = {"trace_id": f"tr-{uuid4().hex}"}

        if not text or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="Message text must not be empty")
        tone_style = (opts.tone_style or getattr(self._settings, "tone_style", "balanced")).lower()
        try:
            get_tone_config(tone_style)
        except KeyError as e:
            raise ValidationError(code="INVALID_TONE_STYLE", message=str(e))

        # 1. 获取会话凭据；线程化对话每轮都换新会话，历史全部由本地注入
        session = opts.session
        if session is None or not session.is_complete() or opts.threaded:
            session = await self._bootstrapper.bootstrap()
            log_event(logging.INFO, "Created new session", log_ctx, session_id=session.session_id)
        log_ctx["session_id"] = session.session_id
        log_ctx["invocation_index"] = session.invocation_index

        # 2. 线程化对话：还原历史并生成注入上下文
        conversation_key: Optional[str] = None
        record: Optional[ConversationRecord] = None
        injected_context: Optional[str] = None
        if opts.threaded:
            conversation_key = opts.conversation_key or str(uuid4())
            log_ctx["conversation_key"] = conversation_key
            record = self._store.get(conversation_key) or ConversationRecord()
            history = resolve_history(index_messages(record.messages), opts.parent_message_id)
            injected_context = format_injected_context(
                history,
                text,
                system_message=opts.system_message,
                context=opts.context,
            )
            log_event(logging.INFO, "Resolved history", log_ctx, history_length=len(history))

        # 3. 先记录用户消息，失败时也能保留提问
        user_message = Message(
            id=str(uuid4()),
            parent_message_id=opts.parent_message_id,
            role="User",
            text=text,
        )
        if record is not None:
            record.append(user_message)
            self._store.set(conversation_key, record)
            log_event(logging.INFO, "Stored user message", log_ctx, message_id=user_message.id)

        # 4. 可选图片
        image = await self._prepare_image(opts, log_ctx)

        # 5. 建连、发送、组装
        image_gen = bool(self._image_generator) and bool(getattr(self._settings, "image_gen_enable", False))
        frame = build_chat_frame(
            text,
            session,
            tone_style,
            threaded=opts.threaded,
            injected_context=injected_context,
            context=opts.context,
            image=image,
            image_gen=image_gen,
            trace_id=secrets.token_hex(16),
        )
        transport = self._transport_factory(self._settings, build_headers(self._settings), log_ctx)
        try:
            await transport.open(session.session_signature)
            assembler = StreamAssembler(
                transport,
                threaded=opts.threaded,
                on_progress=opts.on_progress,
                image_generator=self._image_generator if image_gen else None,
                image_gen_type=getattr(self._settings, "image_gen_type", "iframe"),
                timeout=self._settings.turn_timeout,
                cancel_event=opts.cancel_event,
                log_ctx=log_ctx,
            )
            await transport.send(frame)
            reply = await assembler.run()
        except BusinessError as e:
            log_event(logging.ERROR, "Turn failed", log_ctx, code=e.code, error=e.message)
            raise
        finally:
            await transport.close()

        # 6. 记录回复
        reply_message = Message(
            id=str(uuid4()),
            parent_message_id=user_message.id,
            role="Bot",
            text=reply.final_text,
            details=reply.message,
        )
        if record is not None:
            record.append(reply_message)
            self._store.set(conversation_key, record)
            log_event(logging.INFO, "Stored reply message", log_ctx, message_id=reply_message.id)

        result = TurnResult(
            session=session.next(),
            response=reply.final_text,
            details=reply.message,
            expiry_time=reply.expiry_time,
            image_attachment=reply.image_attachment,
        )
        if record is not None:
            result.conversation_key = conversation_key
            result.message_id = reply_message.id
            result.parent_message_id = reply_message.parent_message_id

        log_event(
            logging.INFO,
            "Completed turn",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            reply_length=len(reply.final_text),
        )
        return result

    async def _prepare_image(self, opts: TurnOptions, log_ctx: Dict[str, Any]) -> Optional[ImageUploadResult]:
        """取图并上传；任一步失败都只记日志，本轮不带图片继续。"""

        if not opts.image_url and not opts.image_base64:
            return None
        if self._image_uploader is None:
            log_event(logging.WARNING, "Image supplied but no uploader configured", log_ctx)
            return None
        try:
            image_base64 = opts.image_base64
            if opts.image_url:
                if self._image_resolver is None:
                    log_event(logging.WARNING, "Image URL supplied but no resolver configured", log_ctx)
                    return None
                image_base64 = await self._image_resolver.resolve(opts.image_url)
            uploaded = await self._image_uploader.upload(image_base64)
        except (NetworkError, ApiError) as e:
            log_event(logging.WARNING, "Image upload failed", log_ctx, code=e.code, error=e.message)
            return None
        log_event(logging.INFO, "Uploaded image", log_ctx, blob_id=uploaded.blob_id)
        return uploaded
