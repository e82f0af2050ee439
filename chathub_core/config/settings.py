"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


TONE_STYLES = ("creative", "precise", "fast", "balanced")
IMAGE_GEN_TYPES = ("iframe", "url_list", "markdown_list")


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHATHUB_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
        Path(__file__).resolve().parents[1] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class PydanticSettings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 服务端地址 ----
    host: str = Field(default="https://www.bing.com", description="会话创建接口所在的站点")
    chathub_url: str = Field(
        default="wss://sydney.bing.com/sydney/ChatHub",
        description="全双工流式对话端点",
    )

    # ---- 鉴权 ----
    user_token: Optional[str] = Field(default=None, description="_U cookie 的值")
    cookies: Optional[str] = Field(default=None, description="完整 cookie 串，优先于 user_token")
    proxy: Optional[str] = Field(default=None, description="HTTP 与 websocket 使用的代理地址")

    # ---- 对话行为 ----
    tone_style: str = Field(default="balanced", description="默认语气：creative/precise/fast/balanced")
    http_timeout: float = Field(default=20.0, ge=1.0, description="HTTP 调用与握手超时时间（秒）")
    turn_timeout: float = Field(default=300.0, gt=0, description="单轮对话等待终止事件的上限（秒）")
    keepalive_interval: float = Field(default=15.0, gt=0, description="握手完成后的 ping 间隔（秒）")

    # ---- 图片生成 ----
    image_gen_enable: bool = Field(default=False, description="是否开启图片生成旁路")
    image_gen_type: str = Field(default="iframe", description="图片结果呈现方式：iframe/url_list/markdown_list")

    # ---- 存储与日志 ----
    storage_root: str = Field(default=".storage", description="存储根目录")
    store_namespace: str = Field(default="bing", description="会话存储的命名空间（子目录）")
    log_dir: str = Field(default="logs", description="日志目录")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")
    debug: bool = Field(default=False, description="输出 DEBUG 级别的协议日志")

    model_config = SettingsConfigDict(
        env_prefix="CHATHUB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("tone_style")
    @classmethod
    def validate_tone_style(cls, v: str) -> str:
        v = (v or "balanced").lower()
        if v not in TONE_STYLES:
            raise ValueError(f"tone_style must be one of {', '.join(TONE_STYLES)}")
        return v

    @field_validator("image_gen_type")
    @classmethod
    def validate_image_gen_type(cls, v: str) -> str:
        if v not in IMAGE_GEN_TYPES:
            raise ValueError(f"image_gen_type must be one of {', '.join(IMAGE_GEN_TYPES)}")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = PydanticSettings()

# 类型别名，让外部代码可以使用 Settings 类型
Settings = type(settings)
