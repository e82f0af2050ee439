"""统一的会话与结果数据模型。

本模块定义了各组件之间共享的标准数据结构：

- SessionHandle: 一次 bootstrap 得到的会话凭据，可跨轮次携带。
- AssembledReply: StreamAssembler 组装出的最终回复。
- TurnOptions / TurnResult: 对外入口 send_message 的参数与返回值。

传输层、组装器与编排器都只依赖这些模型，厂商 JSON 只在边界处解析。
"""

import asyncio
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Literal, Optional


# 会话内消息角色（持久化使用）
Role = Literal["User", "Bot"]

# 语气风格，由 registry 映射为具体的 optionsSets 开关
ToneStyle = Literal["creative", "precise", "fast", "balanced"]

# 图片生成结果的呈现方式
ImageGenType = Literal["iframe", "url_list", "markdown_list"]

ProgressCallback = Callable[[str], None]


@dataclass(frozen=True)
class SessionHandle:
    """远端会话凭据。

    - session_id: 服务端分配的会话 ID（conversationId）。
    - participant_id: 参与者 ID（clientId）。
    - session_signature: 传输层鉴权用的不透明签名。
    - invocation_index: 本会话上已成功完成的轮次数，从 0 开始。
    """

    session_id: str
    participant_id: str
    session_signature: str
    invocation_index: int = 0

    def is_complete(self) -> bool:
        return bool(self.session_id and self.participant_id and self.session_signature)

    def next(self) -> "SessionHandle":
        return replace(self, invocation_index=self.invocation_index + 1)


@dataclass
class ImageUploadResult:
    blob_id: str
    process_blob_id: str


@dataclass
class ImageAttachment:
    """图片生成旁路的结果。"""

    type: ImageGenType
    prompt: str
    images: Optional[List[str]] = None
    is_error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "prompt": self.prompt}
        if self.images is not None:
            payload["images"] = list(self.images)
        if self.is_error:
            payload["isError"] = True
        return payload


@dataclass
class AssembledReply:
    """一轮流式响应组装后的结果。

    - final_text: 最终展示文本。
    - message: 终止事件里选中的候选消息（已做过文本替换）。
    - expiry_time: 会话过期时间（服务端可能不返回）。
    - raw: 完整的终止事件 payload，用于调试。
    - image_attachment: 仅当图片生成旁路完成时才有值。
    """

    final_text: str
    message: Dict[str, Any]
    expiry_time: Optional[str] = None
    raw: Optional[dict] = None
    image_attachment: Optional[ImageAttachment] = None


@dataclass
class TurnOptions:
    """send_message 的可选参数。

    conversation_key / new_conversation 决定是否为“线程化”对话：
    线程化对话会在本地存储中保存历史，并在首轮把历史注入请求。
    """

    conversation_key: Optional[str] = None
    new_conversation: bool = False
    session: Optional[SessionHandle] = None
    tone_style: Optional[ToneStyle] = None
    system_message: Optional[str] = None
    context: Optional[str] = None
    parent_message_id: Optional[str] = None
    image_url: Optional[str] = None
    image_base64: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None
    cancel_event: Optional[asyncio.Event] = None

    @property
    def threaded(self) -> bool:
        return bool(self.conversation_key) or self.new_conversation


@dataclass
class TurnResult:
    session: SessionHandle
    response: str
    details: Dict[str, Any] = field(default_factory=dict)
    expiry_time: Optional[str] = None
    image_attachment: Optional[ImageAttachment] = None
    # 仅线程化对话会填充以下字段，用于下一轮串联
    conversation_key: Optional[str] = None
    message_id: Optional[str] = None
    parent_message_id: Optional[str] = None
