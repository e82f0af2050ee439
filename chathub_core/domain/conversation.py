from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Protocol

from .models import Role


@dataclass(frozen=True)
class Message:
    id: str
    parent_message_id: Optional[str]
    role: Role
    text: str
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "parentMessageId": self.parent_message_id,
            "role": self.role,
            "message": self.text,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            id=data["id"],
            parent_message_id=data.get("parentMessageId"),
            role=data.get("role") or "User",
            text=data.get("message") or "",
            details=data.get("details"),
        )


@dataclass
class ConversationRecord:
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationRecord":
        created_raw = data.get("createdAt")
        created_at = (
            datetime.fromisoformat(str(created_raw).replace("Z", "+00:00"))
            if created_raw
            else datetime.now(timezone.utc)
        )
        return cls(
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            created_at=created_at,
        )


class ConversationStore(Protocol):
    def get(self, key: str) -> Optional[ConversationRecord]:
        ...

    def set(self, key: str, record: ConversationRecord) -> None:
        ...
