"""High-level entry point for request planning."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from assistant_core.domain.models import RequestPlan, Turn
from assistant_core.flows.graph import build_planning_graph
from assistant_core.flows.state import PlanState
from assistant_core.prompts import Personalization
from assistant_core.providers import create_catalog
from assistant_core.providers.registry import ProviderCatalog

_catalog = create_catalog()
_graph = build_planning_graph(_catalog)


def plan_request(
    turns: Sequence[Turn],
    *,
    catalog: Optional[ProviderCatalog] = None,
    personalization: Optional[Personalization] = None,
    now: Optional[datetime] = None,
    has_attachments: bool = False,
) -> RequestPlan:
    """Classify the latest turn, build the system prompt and resolve the provider chain.

    Args:
        turns: 完整会话历史（含个性化载体消息）
        catalog: 指定目录；为空时使用按配置创建的默认目录
        personalization: 载体消息缺失时使用的个性化设置
        now: 写入提示词的当前时间
        has_attachments: 本次发送是否携带图片

    Raises:
        NoProviderConfigured: 目录为空或没有 Provider 能处理该类别。
    """

    graph = _graph if catalog is None or catalog is _catalog else build_planning_graph(catalog)
    history = list(turns)
    state: PlanState = {
        "turns": history,
        "has_attachments": has_attachments,
        "personalization": personalization,
        "now": now,
        "category": None,
        "system_prompt": None,
        "candidates": [],
    }
    result = graph.invoke(state)
    return RequestPlan(
        category=result["category"],
        system_prompt=result["system_prompt"],
        turns=history,
        candidates=list(result["candidates"]),
    )


def get_catalog() -> ProviderCatalog:
    """Return the default catalog; passing it to plan_request reuses the compiled graph."""

    return _catalog


def set_catalog(catalog: ProviderCatalog) -> None:
    """Replace the default catalog used by plan_request."""

    global _catalog, _graph
    _catalog = catalog
    _graph = build_planning_graph(catalog)
