"""外部协作方集成层。

该包下的模块负责：
- 定义协作方抽象接口 (base)。
- 维护语气风格与请求开关配置 (registry)。
- 提供具体的 HTTP 实现 (bootstrap_client、image_client)。
"""

from chathub_core.config.settings import settings
from chathub_core.providers.base import SessionBootstrapper
from chathub_core.providers.bootstrap_client import BootstrapClient
from chathub_core.providers.image_client import ImageClient


def create_bootstrapper() -> SessionBootstrapper:
    """根据当前配置创建会话 bootstrap 客户端。"""

    return BootstrapClient(settings)


def create_image_client() -> ImageClient:
    return ImageClient(settings)
