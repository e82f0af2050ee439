"""出站对话帧的构造。

每一轮只发送一帧 type=4 的调用请求，包含语气开关、会话凭据、
可选的图片引用以及注入的上下文（previousMessages）。
"""

import secrets
from typing import Any, Dict, List, Optional

from chathub_core.domain.models import ImageUploadResult, SessionHandle
from chathub_core.providers.image_client import blob_url
from chathub_core.providers.registry import SLICE_IDS, build_option_sets

THREADED_PROMPT = "Continue the conversation in context. Assistant:"
CONTEXT_MESSAGE_ID = "discover-web--page-ping-mriduna-----"


def context_entry(description: str) -> Dict[str, Any]:
    """模拟 Edge 侧边栏的“网页摘要”上下文条目。"""

    return {
        "author": "user",
        "description": description,
        "contextType": "WebPage",
        "messageType": "Context",
        "messageId": CONTEXT_MESSAGE_ID,
    }


def build_chat_frame(
    text: str,
    session: SessionHandle,
    tone_style: str,
    *,
    threaded: bool = False,
    injected_context: Optional[str] = None,
    context: Optional[str] = None,
    image: Optional[ImageUploadResult] = None,
    image_gen: bool = False,
    trace_id: Optional[str] = None,
) -> Dict[str, Any]:
    """构造一次调用请求。

    线程化对话不直接发送用户原文，而是把整段历史放进 previousMessages，
    再用固定的提示语让模型“接着说”。
    """

    message: Dict[str, Any] = {}
    if image is not None:
        message["imageUrl"] = blob_url(image.blob_id)
        message["originalImageUrl"] = blob_url(image.process_blob_id)
    message.update(
        {
            "author": "user",
            "text": THREADED_PROMPT if threaded else text,
            "messageType": "SearchQuery" if threaded else "Chat",
        }
    )

    previous_messages: List[Dict[str, Any]] = []
    if injected_context:
        previous_messages.append(context_entry(injected_context))
    # 非线程化时上下文单独作为一条网页摘要
    if not threaded and context:
        previous_messages.append(context_entry(context))

    argument: Dict[str, Any] = {
        "source": "cib",
        "optionsSets": build_option_sets(tone_style, image_gen=image_gen),
        "sliceIds": list(SLICE_IDS),
        "traceId": trace_id or secrets.token_hex(16),
        "isStartOfSession": session.invocation_index == 0,
        "message": message,
        "encryptedConversationSignature": session.session_signature,
        "participant": {"id": session.participant_id},
        "conversationId": session.session_id,
    }
    if previous_messages:
        argument["previousMessages"] = previous_messages

    return {
        "arguments": [argument],
        "invocationId": str(session.invocation_index),
        "target": "chat",
        "type": 4,
    }
