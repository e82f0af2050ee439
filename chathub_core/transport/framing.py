"""线上帧格式。

双向 payload 都是若干个独立的 JSON 文档，每个文档后面跟一个记录分隔符
(0x1E)。接收方按分隔符切开、丢弃空片段、逐个解析；解析失败的片段视为
心跳，直接跳过。
"""

import json
from typing import Any, List

from chathub_core.infrastructure.logging.logger import logger

RECORD_SEPARATOR = "\x1e"

HANDSHAKE_FRAME = '{"protocol":"json","version":1}' + RECORD_SEPARATOR
PING_FRAME = '{"type":6}' + RECORD_SEPARATOR


def encode_frame(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False) + RECORD_SEPARATOR


def split_frames(raw: str | bytes) -> List[Any]:
    """把一条 websocket 消息拆成解析后的文档列表。"""

    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    documents: List[Any] = []
    for fragment in raw.split(RECORD_SEPARATOR):
        if not fragment.strip():
            continue
        try:
            documents.append(json.loads(fragment))
        except json.JSONDecodeError:
            logger.debug("Skipped non-JSON fragment", extra={"extra": {"fragment": fragment[:200]}})
    return documents


def is_handshake_ack(documents: List[Any]) -> bool:
    """握手完成的标志：第一个文档是空对象。"""

    return bool(documents) and isinstance(documents[0], dict) and not documents[0]
