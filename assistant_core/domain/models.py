"""统一的对话、调度与流式事件数据模型。

本模块定义了在分类、选路、请求构造、调度、流式归一化与客户端消费之间
共享的标准数据结构：

- Turn / Attachment: 会话中的一条消息及其内联图片。
- DraftTurn: 唯一可变的“进行中”助手消息，只允许整体替换为更长的快照。
- TaskCategory: 由最新一轮用户输入推导出的任务类别，不落库。
- StreamEvent: 归一化后的增量事件（delta/done/error）。
- DispatchAttempt: 单次 HTTP 尝试的临时记录，仅用于退避决策与日志。
- ProviderRequest / RequestPlan: 发往具体 Provider 的请求以及一次发送的完整计划。

各 Provider 的 JSON 结构只在 providers 包内出现，其他模块只依赖这里的模型。
"""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from assistant_core.providers.registry import ProviderDescriptor


# 消息角色（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["user", "assistant", "system"]

StreamEventKind = Literal["delta", "done", "error"]

AttemptOutcome = Literal["success", "retryable-failure", "fatal-failure"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskCategory(str, Enum):
    """任务类别，用于挑选模型。"""

    TEXT = "text"
    VISION = "vision"
    REASONING = "reasoning"
    DOCUMENT = "document"
    SEARCH = "search"


@dataclass(frozen=True)
class Attachment:
    """以 base64 形式内联的一张图片。"""

    data_base64: str
    mime_type: str

    @property
    def byte_size(self) -> int:
        """解码后的字节数；无法解码时按 base64 文本长度估算。"""

        try:
            return len(base64.b64decode(self.data_base64, validate=True))
        except (binascii.Error, ValueError):
            return len(self.data_base64)

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data_base64}"


@dataclass(frozen=True)
class Turn:
    """会话中的一条消息，创建后不可变。

    - role: user/assistant/system。
    - content: 纯文本内容。
    - attachments: 按顺序内联的图片。
    - truncated: 助手消息在流未正常结束时为 True（部分回答）。
    - meta: 附加元数据（provider、model、存储 id 等），不直接发给 Provider。
    """

    role: Role
    content: str
    attachments: Tuple[Attachment, ...] = ()
    created_at: datetime = field(default_factory=utcnow)
    truncated: bool = False
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DraftTurn:
    """进行中的助手消息。

    客户端消费者每次回调给出的是“到目前为止的完整文本”，因此这里只做整体替换；
    快照长度必须单调不减，变短的快照会被拒绝。
    """

    content: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def replace(self, snapshot: str) -> bool:
        if len(snapshot) < len(self.content):
            return False
        self.content = snapshot
        return True

    def finalize(self, truncated: bool = False, **meta: Any) -> Turn:
        return Turn(
            role="assistant",
            content=self.content,
            created_at=self.created_at,
            truncated=truncated,
            meta=dict(meta),
        )


@dataclass(frozen=True)
class StreamEvent:
    """归一化后的流式事件。一次回答的事件序列以恰好一个 done 或 error 结束。"""

    kind: StreamEventKind
    text: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind in ("done", "error")


@dataclass(frozen=True)
class DispatchAttempt:
    """单次调度尝试的记录（不落库）。"""

    provider_id: str
    model_id: str
    attempt_number: int
    outcome: AttemptOutcome
    elapsed_ms: int
    status_code: Optional[int] = None
    error_code: Optional[str] = None


@dataclass
class ProviderRequest:
    """发往某个 Provider 的完整 HTTP 请求描述。"""

    provider_id: str
    model_id: str
    url: str
    headers: Dict[str, str]
    payload: Dict[str, Any]
    stream: bool


@dataclass
class RequestPlan:
    """一次发送的调度计划。

    candidates 为按能力匹配度排好序的 (ProviderDescriptor, model_id) 列表，
    第一个为主 Provider，其余为故障切换链。
    """

    category: TaskCategory
    system_prompt: str
    turns: List[Turn]
    candidates: List[Tuple["ProviderDescriptor", str]]
