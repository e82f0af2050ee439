"""请求头构造。

只负责鉴权 cookie 与最基本的浏览器标识，不追求完整复刻厂商指纹。
"""

import uuid
from typing import Dict, Optional

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/113.0.0.0 Safari/537.36 Edg/113.0.1774.50"
)
REFERER = "https://www.bing.com/search?q=Bing+AI&showconv=1"


def cookie_header(settings) -> Optional[str]:
    cookies = getattr(settings, "cookies", None)
    if cookies:
        return cookies
    token = getattr(settings, "user_token", None)
    return f"_U={token}" if token else None


def build_headers(settings) -> Dict[str, str]:
    headers = {
        "accept": "application/json",
        "accept-language": "en-US,en;q=0.9",
        "content-type": "application/json",
        "x-ms-client-request-id": str(uuid.uuid4()),
        "user-agent": USER_AGENT,
        "cookie": cookie_header(settings),
        "Referer": REFERER,
        "Referrer-Policy": "origin-when-cross-origin",
    }
    # 没有配置的字段不下发
    return {k: v for k, v in headers.items() if v is not None}
