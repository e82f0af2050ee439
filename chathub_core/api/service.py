"""对外 API 服务模块。

提供简化的函数接口供上层应用调用。
"""

from typing import Optional, Dict, Any

from chathub_core.agents.turn_orchestrator import TurnOrchestrator
from chathub_core.config.settings import settings
from chathub_core.domain.conversation import ConversationStore
from chathub_core.domain.history import index_messages, resolve_history
from chathub_core.domain.models import TurnOptions
from chathub_core.infrastructure.logging.logger import logger
from chathub_core.infrastructure.storage.json_store import JsonConversationStore
from chathub_core.providers import create_bootstrapper, create_image_client


_store: Optional[ConversationStore] = None
_orchestrator: Optional[TurnOrchestrator] = None


def get_default_orchestrator() -> TurnOrchestrator:
    """获取默认的 TurnOrchestrator 实例（单例）。"""
    global _store, _orchestrator
    if _store is None:
        _store = JsonConversationStore(root=settings.storage_root)
    if _orchestrator is None:
        image_client = create_image_client()
        _orchestrator = TurnOrchestrator(
            store=_store,
            bootstrapper=create_bootstrapper(),
            image_resolver=image_client,
            image_uploader=image_client,
            settings=settings,
        )
    return _orchestrator


async def send_message(text: str, options: Optional[TurnOptions] = None) -> Dict[str, Any]:
    """运行一轮对话。

    Args:
        text: 用户输入内容
        options: 轮次参数（可选，不提供则为一次无状态对话）

    Returns:
        包含会话凭据、回复文本以及线程化对话串联字段的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        result = await get_default_orchestrator().send_message(text, options)
    except Exception as e:
        logger.error(f"Turn failed: {e}", extra={"extra": {
            "conversation_key": options.conversation_key if options else None,
            "error": str(e),
        }})
        raise

    payload: Dict[str, Any] = {
        "conversationId": result.session.session_id,
        "clientId": result.session.participant_id,
        "encryptedConversationSignature": result.session.session_signature,
        "invocationId": result.session.invocation_index,
        "conversationExpiryTime": result.expiry_time,
        "response": result.response,
        "details": result.details,
    }
    if result.image_attachment is not None:
        payload["image"] = result.image_attachment.to_dict()
    if result.conversation_key:
        payload["jailbreakConversationId"] = result.conversation_key
        payload["parentMessageId"] = result.parent_message_id
        payload["messageId"] = result.message_id
    return payload


def get_conversation_messages(conversation_key: str, leaf_message_id: Optional[str] = None) -> list[Dict[str, Any]]:
    """获取线程化对话的消息。

    Args:
        conversation_key: 会话 key
        leaf_message_id: 指定时只返回从根到该消息的一条链

    Returns:
        消息列表
    """
    get_default_orchestrator()
    record = _store.get(conversation_key)
    if record is None:
        return []
    messages = record.messages
    if leaf_message_id:
        messages = resolve_history(index_messages(messages), leaf_message_id)
    return [m.to_dict() for m in messages]
