"""对外 API 服务模块。

提供简化的函数接口供上层应用调用：发送消息、加载会话、取消进行中的请求等。
每个会话对应一个 ChatSessionController，按会话 ID 保存在进程内的注册表中。
"""

import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ConversationStore
from assistant_core.domain.models import Attachment, Turn
from assistant_core.flows.runner import get_catalog
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.infrastructure.storage.json_store import JsonConversationStore
from assistant_core.prompts import Personalization
from assistant_core.providers import create_dispatcher
from assistant_core.providers.dispatcher import RetryingDispatcher
from assistant_core.session.controller import ChatSession, ChatSessionController, SendResult


_store: Optional[ConversationStore] = None
_dispatcher: Optional[RetryingDispatcher] = None
_sessions: Dict[str, ChatSessionController] = {}
_registry_lock = threading.Lock()


def get_default_store() -> ConversationStore:
    """获取默认的会话存储（单例）。"""
    global _store
    if _store is None:
        _store = JsonConversationStore(root=settings.storage_root)
    return _store


def get_default_dispatcher() -> RetryingDispatcher:
    """获取默认的调度器（单例），与请求规划共用同一个 ProviderCatalog。"""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = create_dispatcher(get_catalog())
    return _dispatcher


def _register(controller: ChatSessionController, conversation_id: str) -> None:
    with _registry_lock:
        _sessions.setdefault(conversation_id, controller)


def _new_controller(conversation_id: Optional[str] = None) -> ChatSessionController:
    controller = ChatSessionController(
        dispatcher=get_default_dispatcher(),
        store=get_default_store(),
        session=ChatSession(conversation_id=conversation_id),
    )
    controller.on_conversation_created = lambda cid: _register(controller, cid)
    return controller


def get_controller(conversation_id: str) -> ChatSessionController:
    """获取会话对应的控制器，不存在时创建并从存储中加载历史。"""

    with _registry_lock:
        controller = _sessions.get(conversation_id)
    if controller is not None:
        return controller
    controller = _new_controller(conversation_id)
    controller.load(conversation_id)
    with _registry_lock:
        return _sessions.setdefault(conversation_id, controller)


def _result_to_dict(result: SendResult) -> Dict[str, Any]:
    assistant = None
    if result.turn is not None:
        assistant = {
            "content": result.turn.content,
            "truncated": result.turn.truncated,
            "created_at": result.turn.created_at.isoformat(),
            "meta": result.turn.meta,
        }
    return {
        "conversation_id": result.conversation_id,
        "status": result.status,
        "assistant_message": assistant,
        "error_message": result.error_message,
        "reminders": [
            {"title": r.title, "remind_at": r.remind_at.isoformat()} for r in result.reminders
        ],
    }


def send_message(
    conversation_id: Optional[str],
    text: str,
    attachments: Sequence[Attachment] = (),
    document_context: Optional[str] = None,
    personalization: Optional[Personalization] = None,
    on_update: Optional[Callable[[str], None]] = None,
) -> Dict[str, Any]:
    """发送一条消息并返回最终结果。

    Args:
        conversation_id: 会话ID（可选，不提供则创建新会话）
        text: 用户输入内容
        attachments: 内联图片
        document_context: 用户上传的文档内容（可选）
        personalization: 用户称呼与回答风格（可选）
        on_update: 每次助手消息快照更新时的回调

    Returns:
        包含会话ID、状态、助手消息、错误提示与提醒列表的字典

    Raises:
        AlreadyInFlight / ConfigurationError / BadRequest / StoreError
    """
    if conversation_id:
        controller = get_controller(conversation_id)
    else:
        controller = _new_controller()
    try:
        result = controller.send(
            text,
            attachments=attachments,
            document_context=document_context,
            personalization=personalization,
            on_update=on_update,
        )
    except Exception as e:
        logger.error(f"Send failed: {e}", extra={"extra": {
            "conversation_id": conversation_id or controller.session.conversation_id,
            "error": str(e),
        }})
        raise
    return _result_to_dict(result)


def load_conversation(conversation_id: str) -> List[Turn]:
    """加载会话历史（重新从存储读取）。"""

    controller = get_controller(conversation_id)
    return controller.load(conversation_id)


def cancel_in_flight(conversation_id: str) -> bool:
    """取消会话中进行中的请求；没有进行中的请求时返回 False。"""

    with _registry_lock:
        controller = _sessions.get(conversation_id)
    if controller is None:
        return False
    return controller.cancel()


def close_conversation(conversation_id: str) -> None:
    """关闭会话：取消进行中的请求并从注册表移除。"""

    with _registry_lock:
        controller = _sessions.pop(conversation_id, None)
    if controller is not None:
        controller.cancel()


def list_conversations() -> List[Dict[str, Any]]:
    """列出所有未删除的会话。

    Returns:
        会话列表，每项包含 id, title, created_at, updated_at, meta
    """
    return [
        {
            "id": c.id,
            "title": c.title,
            "created_at": c.created_at.isoformat(),
            "updated_at": c.updated_at.isoformat(),
            "meta": c.meta,
        }
        for c in get_default_store().list_conversations()
    ]


def delete_conversation(conversation_id: str) -> None:
    """软删除会话。"""

    close_conversation(conversation_id)
    get_default_store().soft_delete_conversation(conversation_id)
