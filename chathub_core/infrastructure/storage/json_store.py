import hashlib
import json
import os
from pathlib import Path
from typing import Optional
from uuid import uuid4

from chathub_core.config.settings import settings
from chathub_core.domain.conversation import ConversationStore, ConversationRecord
from chathub_core.domain.exceptions import BusinessError, StoreError


class JsonConversationStore(ConversationStore):
    """按会话 key 落盘的存储，每个 key 一个 JSON 文件。"""

    def __init__(self, root: str | Path | None = None, namespace: Optional[str] = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._ns_root = self._root / (namespace or settings.store_namespace)
        self._ns_root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> Optional[ConversationRecord]:
        path = self._path_for(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ConversationRecord.from_dict(data["record"])
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), key=key)

    def set(self, key: str, record: ConversationRecord) -> None:
        path = self._path_for(key)
        tmp_path = path.with_name(f"{path.stem}.{uuid4().hex}.json.tmp")
        obj = {"key": key, "record": record.to_dict()}
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), key=key)

    def delete(self, key: str) -> None:
        path = self._path_for(key)
        if not path.exists():
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=key)
        try:
            path.unlink()
        except OSError as e:
            raise StoreError(code="STORE_DELETE_ERROR", message=str(e), key=key)

    def _path_for(self, key: str) -> Path:
        # key 由调用方提供，可能包含路径分隔符，统一哈希成文件名
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._ns_root / f"{digest}.json"
