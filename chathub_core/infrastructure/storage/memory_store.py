from typing import Any, Dict, Optional

from chathub_core.domain.conversation import ConversationStore, ConversationRecord


class InMemoryConversationStore(ConversationStore):
    """进程内存储，保存序列化后的副本，避免调用方修改影响已存数据。"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[ConversationRecord]:
        data = self._data.get(key)
        if data is None:
            return None
        return ConversationRecord.from_dict(data)

    def set(self, key: str, record: ConversationRecord) -> None:
        self._data[key] = record.to_dict()

    def __contains__(self, key: str) -> bool:
        return key in self._data
