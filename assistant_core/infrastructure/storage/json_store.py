import json
import os
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, List, Optional
from uuid import uuid4

from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ConversationStore, Conversation, MessageRecord
from assistant_core.domain.exceptions import StoreError
from assistant_core.domain.models import Role


def _iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class JsonConversationStore(ConversationStore):
    """基于 JSON 文件的会话存储。

    目录结构：<root>/conversations/<id>/meta.json + messages.jsonl。
    删除为软删除：只写入 deleted_at，文件保留。
    """

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._conv_root = self._root / "conversations"
        self._conv_root.mkdir(parents=True, exist_ok=True)

    def create_conversation(self, title: str, meta: Optional[Dict[str, Any]] = None) -> Conversation:
        cid = f"c-{uuid4().hex}"
        cdir = self._conv_root / cid
        try:
            cdir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
        now = datetime.now(timezone.utc)
        conv = Conversation(id=cid, title=title, created_at=now, updated_at=now, meta=dict(meta or {}))
        self._write_meta(cdir, conv)
        return conv

    def get_conversation(self, conversation_id: str) -> Conversation:
        meta_path = self._conv_root / conversation_id / "meta.json"
        if not meta_path.exists():
            raise StoreError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        try:
            data = json.loads(meta_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))
        return self._to_conversation(data)

    def list_conversations(self) -> List[Conversation]:
        items: List[Conversation] = []
        for cdir in sorted(self._conv_root.glob("*/")):
            meta_path = cdir / "meta.json"
            if not meta_path.exists():
                continue
            try:
                conv = self._to_conversation(json.loads(meta_path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError, KeyError):
                continue
            if not conv.is_deleted:
                items.append(conv)
        items.sort(key=lambda c: c.updated_at, reverse=True)
        return items

    def append_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> MessageRecord:
        conv = self.get_conversation(conversation_id)
        if conv.is_deleted:
            raise StoreError(code="CONVERSATION_DELETED", message=conversation_id, http_status=410)
        record = MessageRecord(
            id=f"m-{uuid4().hex}",
            conversation_id=conversation_id,
            role=role,
            content=content,
            created_at=datetime.now(timezone.utc),
            meta=dict(meta or {}),
        )
        cdir = self._conv_root / conversation_id
        payload = asdict(record)
        payload["created_at"] = _iso(record.created_at)
        try:
            with (cdir / "messages.jsonl").open("a", encoding="utf-8") as f:
                f.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))
        conv.updated_at = record.created_at
        self._write_meta(cdir, conv)
        return record

    def list_messages(self, conversation_id: str) -> List[MessageRecord]:
        msgs_path = self._conv_root / conversation_id / "messages.jsonl"
        items: List[MessageRecord] = []
        if not msgs_path.exists():
            return items
        for line in msgs_path.read_text(encoding="utf-8").splitlines():
            try:
                items.append(self._to_message(json.loads(line)))
            except (json.JSONDecodeError, KeyError):
                continue
        items.sort(key=lambda m: m.created_at)
        return items

    def soft_delete_conversation(self, conversation_id: str) -> None:
        conv = self.get_conversation(conversation_id)
        if conv.is_deleted:
            return
        conv.deleted_at = datetime.now(timezone.utc)
        self._write_meta(self._conv_root / conversation_id, conv)

    def update_conversation_title(self, conversation_id: str, title: str) -> None:
        """更新会话标题。"""
        conv = self.get_conversation(conversation_id)
        conv.title = title
        conv.updated_at = datetime.now(timezone.utc)
        self._write_meta(self._conv_root / conversation_id, conv)

    def _write_meta(self, cdir: Path, conv: Conversation) -> None:
        meta_path = cdir / "meta.json"
        tmp_path = cdir / f"meta.{uuid4().hex}.json.tmp"
        obj = {
            "id": conv.id,
            "title": conv.title,
            "created_at": _iso(conv.created_at),
            "updated_at": _iso(conv.updated_at),
            "deleted_at": _iso(conv.deleted_at),
            "meta": conv.meta,
        }
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, meta_path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e))

    @staticmethod
    def _to_conversation(data: Dict[str, Any]) -> Conversation:
        return Conversation(
            id=data["id"],
            title=data.get("title") or "",
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
            meta=data.get("meta") or {},
            deleted_at=_parse_dt(data.get("deleted_at")),
        )

    @staticmethod
    def _to_message(data: Dict[str, Any]) -> MessageRecord:
        return MessageRecord(
            id=data["id"],
            conversation_id=data["conversation_id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=_parse_dt(data["created_at"]),
            meta=data.get("meta") or {},
        )
