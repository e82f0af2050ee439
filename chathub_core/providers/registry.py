"""语气风格与请求开关配置。

本模块把“逻辑语气名”与服务端的 optionsSets 开关解耦：

- 逻辑名（tone_style）：调用方使用的统一名称，例如 "creative"。
- option：服务端实际识别的开关，例如 "h3imaginative"。

上层只关心逻辑名，具体开关由这里集中配置，服务端改名时只需改这一处。"""

from dataclasses import dataclass
from typing import List, Mapping


@dataclass
class ToneConfig:
    """单个语气风格的配置。"""

    tone_style: str
    option: str
    # 是否允许开启图片生成（服务端只在 creative 下返回图片事件）
    supports_image_gen: bool = False


BASE_OPTION_SETS: List[str] = [
    "nlu_direct_response_filter",
    "deepleo",
    "disable_emoji_spoken_text",
    "responsible_ai_policy_235",
    "enablemm",
]

EXTRA_OPTION_SETS: List[str] = [
    "iyxapbing",
    "iycapbing",
    "dtappid",
    "cricinfo",
    "cricinfov2",
    "dv3sugg",
    "nojbfedge",
]

IMAGE_GEN_OPTION = "gencontentv3"

SLICE_IDS: List[str] = [
    "222dtappid",
    "225cricinfo",
    "224locals0",
]

TONE_REGISTRY: Mapping[str, ToneConfig] = {
    "creative": ToneConfig(tone_style="creative", option="h3imaginative", supports_image_gen=True),
    "precise": ToneConfig(tone_style="precise", option="h3precise"),
    # 新版 Balanced
    "fast": ToneConfig(tone_style="fast", option="galileo"),
    # 旧版 Balanced
    "balanced": ToneConfig(tone_style="balanced", option="harmonyv3"),
}


def get_tone_config(tone_style: str) -> ToneConfig:
    """根据名称获取 ToneConfig，名称不区分大小写。"""

    key = (tone_style or "").lower()
    for k, cfg in TONE_REGISTRY.items():
        if k == key:
            return cfg
    raise KeyError(f"Unknown tone style: {tone_style!r}")


def build_option_sets(tone_style: str, image_gen: bool = False) -> List[str]:
    """拼出一次请求的 optionsSets 列表。"""

    cfg = get_tone_config(tone_style)
    options: List[str] = [*BASE_OPTION_SETS, cfg.option, *EXTRA_OPTION_SETS]
    if image_gen and cfg.supports_image_gen:
        options.append(IMAGE_GEN_OPTION)
    return options
