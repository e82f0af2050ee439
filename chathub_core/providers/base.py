"""外部协作方的抽象接口。

TurnOrchestrator 不直接依赖具体的 HTTP 客户端，而是依赖这些协议：

- SessionBootstrapper: 一次性请求，分配会话 ID、参与者 ID 与签名。
- ImageResolver / ImageUploader: 图片识别前的取图与上传。
- ImageGenerator: 服务端返回图片类型结果时调用的生成能力。

测试里可以直接传入实现了同名方法的假对象。
"""

from typing import Callable, List, Protocol

from chathub_core.domain.models import ImageUploadResult, SessionHandle


class SessionBootstrapper(Protocol):
    async def bootstrap(self) -> SessionHandle:
        ...


class ImageResolver(Protocol):
    async def resolve(self, image_url: str) -> str:
        """下载图片并返回 base64 字符串。"""

        ...


class ImageUploader(Protocol):
    async def upload(self, image_base64: str) -> ImageUploadResult:
        ...


class ImageGenerator(Protocol):
    """图片生成能力。

    generate 返回图片引用列表；iframe 模式下每个元素是一段可嵌入的 HTML，
    列表模式下是图片 URL。失败时直接抛出异常，由组装器转成错误提示。
    """

    async def generate(
        self,
        prompt: str,
        correlation_id: str,
        on_progress: Callable[[str], None],
    ) -> List[str]:
        ...
