import tempfile
from pathlib import Path

import pytest

from assistant_core.domain.exceptions import StoreError
from assistant_core.infrastructure.storage.json_store import JsonConversationStore


def test_json_store_create_and_messages():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create_conversation("first question", {"source": "test"})
        store.append_message(conv.id, "user", "hi")
        rec = store.append_message(conv.id, "assistant", "hello", meta={"truncated": True})
        msgs = store.list_messages(conv.id)
        assert [(m.role, m.content) for m in msgs] == [("user", "hi"), ("assistant", "hello")]
        assert msgs[1].id == rec.id
        assert msgs[1].meta == {"truncated": True}
        loaded = store.get_conversation(conv.id)
        assert loaded.title == "first question"
        assert loaded.meta == {"source": "test"}
        assert loaded.updated_at >= loaded.created_at


def test_json_store_soft_delete():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        keep = store.create_conversation("keep")
        gone = store.create_conversation("gone")
        store.soft_delete_conversation(gone.id)
        # 软删除保留目录
        assert (root / "conversations" / gone.id).exists()
        assert store.get_conversation(gone.id).is_deleted
        assert [c.id for c in store.list_conversations()] == [keep.id]
        with pytest.raises(StoreError) as exc:
            store.append_message(gone.id, "user", "late")
        assert exc.value.code == "CONVERSATION_DELETED"


def test_json_store_missing_conversation():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        with pytest.raises(StoreError) as exc:
            store.get_conversation("c-missing")
        assert exc.value.http_status == 404
        assert store.list_messages("c-missing") == []


def test_json_store_orders_by_recent_activity():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d))
        older = store.create_conversation("older")
        newer = store.create_conversation("newer")
        store.append_message(older.id, "user", "bump")
        assert store.list_conversations()[0].id == older.id
        store.update_conversation_title(newer.id, "renamed")
        first = store.list_conversations()[0]
        assert first.id == newer.id
        assert first.title == "renamed"
