"""会话控制器。

ChatSessionController 负责一个会话内“发送一条消息”的完整流程：

    Ready --send--> Sending --首个分块到达--> Streaming --done/error/cancel--> Ready

- 同一会话同一时间只允许一个进行中的请求，重复发送直接抛出 AlreadyInFlight，
  不会产生任何网络调用。
- 用户消息乐观地立即加入历史并落库；随后加入一条空的助手占位消息（DraftTurn），
  流式过程中只做整体替换。
- 流正常结束时把最终文本落库；流被截断但已有内容时以 truncated=True 落库；
  没有任何内容就失败时丢弃占位消息，只给出友好提示。
- ConfigurationError 与 BadRequest 在会话回到 Ready 之后原样抛给调用方，
  其他调度失败一律降级为友好提示，原始错误只写日志。
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Optional, Sequence
from uuid import uuid4

from assistant_core.config.settings import settings
from assistant_core.domain.conversation import ConversationStore
from assistant_core.domain.exceptions import (
    AlreadyInFlight,
    BusinessError,
    DispatchExhausted,
    RequestCancelled,
    ValidationError,
)
from assistant_core.domain.models import Attachment, DraftTurn, StreamEvent, Turn
from assistant_core.flows.runner import plan_request
from assistant_core.infrastructure.logging.logger import log_event
from assistant_core.prompts import Personalization
from assistant_core.providers.dispatcher import RetryingDispatcher
from assistant_core.providers.normalizer import encode_events
from assistant_core.providers.registry import ProviderCatalog
from assistant_core.session.reminders import Reminder, extract_reminders
from assistant_core.streaming.consumer import CancellationToken, ClientStreamConsumer


TITLE_MAX_CHARS = 50

SendStatus = Literal["done", "truncated", "failed", "cancelled"]


class SessionState(str, Enum):
    READY = "ready"
    SENDING = "sending"
    STREAMING = "streaming"


@dataclass
class ChatSession:
    """单个会话在客户端的状态。只由所属的控制器修改。"""

    conversation_id: Optional[str] = None
    turns: List[Turn] = field(default_factory=list)
    is_request_in_flight: bool = False
    state: SessionState = SessionState.READY
    draft: Optional[DraftTurn] = None
    personalization: Optional[Personalization] = None


@dataclass
class SendResult:
    status: SendStatus
    conversation_id: Optional[str] = None
    turn: Optional[Turn] = None
    error_message: Optional[str] = None
    reminders: List[Reminder] = field(default_factory=list)

    @property
    def truncated(self) -> bool:
        return self.status == "truncated"


def conversation_title(text: str) -> str:
    """由首条消息生成会话标题（前 50 个字符）。"""

    text = text.strip()
    if not text:
        return "New conversation"
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


def with_document_context(text: str, document: Optional[str], limit: Optional[int] = None) -> str:
    """把文档内容附加到用户输入之后。"""

    if not document:
        return text
    limit = limit or settings.document_context_chars
    return f"{text}\n\n[Document Content]\n{document[:limit]}\n[End Document]"


class ChatSessionController:
    def __init__(
        self,
        dispatcher: RetryingDispatcher,
        store: ConversationStore,
        catalog: Optional[ProviderCatalog] = None,
        session: Optional[ChatSession] = None,
        on_update: Optional[Callable[[str], None]] = None,
        consumer: Optional[ClientStreamConsumer] = None,
        cfg=settings,
        on_conversation_created: Optional[Callable[[str], None]] = None,
    ):
        self.session = session or ChatSession()
        self._dispatcher = dispatcher
        self._store = store
        self._catalog = catalog or dispatcher.catalog
        self.on_update = on_update
        # 新会话落库后立即回调，此时请求仍在进行中、已可取消
        self.on_conversation_created = on_conversation_created
        self._consumer = consumer
        self._cfg = cfg
        self._lock = threading.Lock()
        self._cancel: Optional[CancellationToken] = None
        self._active_update: Optional[Callable[[str], None]] = None

    # ---- 对外操作 ----

    def send(
        self,
        text: str,
        attachments: Sequence[Attachment] = (),
        document_context: Optional[str] = None,
        personalization: Optional[Personalization] = None,
        on_update: Optional[Callable[[str], None]] = None,
    ) -> SendResult:
        """发送一条用户消息并阻塞直到回答结束。

        personalization 与 on_update 只在通过进行中检查之后才生效；
        on_update 只作用于本次请求，缺省时使用控制器上的 on_update。

        Raises:
            AlreadyInFlight: 本会话已有进行中的请求。
            ConfigurationError: 没有可用的 Provider。
            BadRequest: 请求被拒绝（含附件超限）。
            StoreError: 落库失败（不重试）。
        """

        if not (text or "").strip() and not attachments:
            raise ValidationError(code="EMPTY_MESSAGE", message="Message text is empty")

        with self._lock:
            if self.session.is_request_in_flight:
                raise AlreadyInFlight(
                    code="ALREADY_IN_FLIGHT",
                    message="A request is already in flight for this conversation",
                    http_status=409,
                    conversation_id=self.session.conversation_id,
                )
            self.session.is_request_in_flight = True
            self.session.state = SessionState.SENDING
            if personalization is not None:
                self.session.personalization = personalization
            self._active_update = on_update or self.on_update
            cancel = CancellationToken()
            self._cancel = cancel

        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": self.session.conversation_id,
        }
        try:
            return self._send(text, tuple(attachments), document_context, cancel, log_ctx)
        finally:
            self.session.draft = None
            self.session.state = SessionState.READY
            self.session.is_request_in_flight = False
            self._cancel = None
            self._active_update = None

    def cancel(self) -> bool:
        """取消进行中的请求；没有进行中的请求时返回 False。"""

        token = self._cancel
        if token is None:
            return False
        token.cancel()
        return True

    def load(self, conversation_id: str) -> List[Turn]:
        """从存储中加载会话历史，替换当前会话内容。"""

        if self.session.is_request_in_flight:
            raise AlreadyInFlight(
                code="ALREADY_IN_FLIGHT",
                message="Cannot load while a request is in flight",
                http_status=409,
                conversation_id=self.session.conversation_id,
            )
        self._store.get_conversation(conversation_id)
        turns = [
            Turn(
                role=rec.role,
                content=rec.content,
                created_at=rec.created_at,
                truncated=bool(rec.meta.get("truncated", False)),
                meta=dict(rec.meta, message_id=rec.id),
            )
            for rec in self._store.list_messages(conversation_id)
        ]
        self.session.conversation_id = conversation_id
        self.session.turns = turns
        self.session.draft = None
        return list(turns)

    # ---- 内部流程 ----

    def _send(
        self,
        text: str,
        attachments: tuple,
        document_context: Optional[str],
        cancel: CancellationToken,
        log_ctx: Dict[str, Any],
    ) -> SendResult:
        session = self.session
        content = with_document_context(text, document_context, self._cfg.document_context_chars)
        user_turn = Turn(role="user", content=content, attachments=attachments)
        session.turns.append(user_turn)

        if not session.conversation_id:
            conv = self._store.create_conversation(conversation_title(text))
            session.conversation_id = conv.id
            log_ctx["conversation_id"] = conv.id
            log_event(logging.INFO, "Created new conversation", log_ctx)
            if self.on_conversation_created is not None:
                self.on_conversation_created(conv.id)
        self._store.append_message(
            session.conversation_id,
            "user",
            content,
            meta={"attachments": len(attachments)} if attachments else None,
        )

        draft = DraftTurn()
        session.draft = draft

        plan = plan_request(
            session.turns,
            catalog=self._catalog,
            personalization=session.personalization,
            has_attachments=bool(attachments),
        )
        log_ctx["category"] = plan.category.value

        try:
            result = self._dispatcher.dispatch(plan, cancel=cancel, log_ctx=log_ctx)
        except RequestCancelled:
            return self._cancelled(log_ctx)
        except DispatchExhausted as exc:
            last = exc.extra.get("last_error")
            log_event(
                logging.ERROR,
                "Dispatch exhausted",
                log_ctx,
                error_code=last.code if isinstance(last, BusinessError) else None,
            )
            return SendResult(
                status="failed",
                conversation_id=session.conversation_id,
                error_message=self._cfg.busy_message,
            )

        failures: List[BusinessError] = []
        consumer = self._consumer or ClientStreamConsumer(log_ctx=log_ctx)
        with result:
            outcome = consumer.consume(
                self._wire(result.events()),
                on_delta=self._apply_snapshot,
                on_done=lambda final_text, truncated: self._apply_snapshot(final_text),
                on_error=failures.append,
                cancel=cancel,
            )

        if outcome.status == "cancelled":
            return self._cancelled(log_ctx)
        if outcome.status == "error" or not draft.content:
            log_event(
                logging.WARNING,
                "Answer failed without content",
                log_ctx,
                provider=result.provider_id,
                error_code=failures[0].code if failures else None,
            )
            return SendResult(
                status="failed",
                conversation_id=session.conversation_id,
                error_message=self._cfg.fallback_message,
            )

        turn = draft.finalize(
            truncated=outcome.truncated,
            provider=result.provider_id,
            model=result.model_id,
        )
        session.turns.append(turn)
        session.draft = None
        record = self._store.append_message(
            session.conversation_id,
            "assistant",
            turn.content,
            meta={"provider": result.provider_id, "model": result.model_id, "truncated": turn.truncated},
        )
        log_event(
            logging.INFO,
            "Stored assistant message",
            log_ctx,
            message_id=record.id,
            provider=result.provider_id,
            model=result.model_id,
            truncated=turn.truncated,
            chars=len(turn.content),
        )
        return SendResult(
            status="truncated" if turn.truncated else "done",
            conversation_id=session.conversation_id,
            turn=turn,
            reminders=extract_reminders(turn.content),
        )

    def _wire(self, events: Iterable[StreamEvent]) -> Iterator[bytes]:
        for chunk in encode_events(events):
            if self.session.state == SessionState.SENDING:
                self.session.state = SessionState.STREAMING
            yield chunk

    def _apply_snapshot(self, snapshot: str) -> None:
        draft = self.session.draft
        if draft is None or snapshot == draft.content or not draft.replace(snapshot):
            return
        if self._active_update is not None:
            self._active_update(snapshot)

    def _cancelled(self, log_ctx: Dict[str, Any]) -> SendResult:
        log_event(logging.INFO, "Request cancelled, draft dropped", log_ctx)
        return SendResult(status="cancelled", conversation_id=self.session.conversation_id)
