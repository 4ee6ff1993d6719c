from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Protocol
from datetime import datetime
from .models import Role


@dataclass
class Conversation:
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)
    deleted_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


@dataclass
class MessageRecord:
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)


class ConversationStore(Protocol):
    """外部会话存储。

    核心层只通过这些操作读写会话，且从不重试写入：失败直接抛出 StoreError，
    由调用方决定是否重试。
    """

    def create_conversation(self, title: str, meta: Optional[Dict[str, Any]] = None) -> Conversation:
        ...

    def get_conversation(self, conversation_id: str) -> Conversation:
        ...

    def list_conversations(self) -> List[Conversation]:
        ...

    def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        ...

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        ...

    def soft_delete_conversation(self, conversation_id: str) -> None:
        ...
