"""任务分类器。

根据最新一轮用户输入把请求归入 TaskCategory，纯函数、确定、永不失败。

优先级（从高到低）：
1. 携带图片附件 -> vision（Provider 要求有内联图片时必须使用支持视觉的模型）。
2. 命中推理关键词 -> reasoning。
3. 含文档上下文标记 -> document。
4. 含实时搜索结果标记 -> search。
5. 其他 -> text。

一条消息可能同时含文档标记与推理关键词，此时按上面的顺序取 reasoning。
"""

import re
from typing import Optional, Sequence

from assistant_core.domain.models import TaskCategory, Turn


REASONING_KEYWORDS = (
    "solve",
    "calculate",
    "prove",
    "derive",
    "explain step",
    "math",
    "physics",
    "code",
    "algorithm",
    "debug",
    "why does",
    "how does",
    "analyze",
    "evaluate",
)

DOCUMENT_MARKER = "[document content]"
SEARCH_MARKER = "[live search results]"

# 只要求关键词前有词边界：calculates / debugging 命中，decode 不命中 code
_REASONING_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(k) for k in REASONING_KEYWORDS) + r")",
    re.IGNORECASE,
)


def latest_user_turn(turns: Sequence[Turn]) -> Optional[Turn]:
    for turn in reversed(turns):
        if turn.role == "user":
            return turn
    return None


def classify(turns: Sequence[Turn], has_attachments: bool = False) -> TaskCategory:
    """把最新一轮用户输入分类为 TaskCategory。"""

    latest = latest_user_turn(turns)
    if has_attachments or (latest is not None and latest.attachments):
        return TaskCategory.VISION
    if latest is None:
        return TaskCategory.TEXT

    text = latest.content or ""
    if _REASONING_RE.search(text):
        return TaskCategory.REASONING
    lowered = text.lower()
    if DOCUMENT_MARKER in lowered:
        return TaskCategory.DOCUMENT
    if SEARCH_MARKER in lowered:
        return TaskCategory.SEARCH
    return TaskCategory.TEXT
