"""LangGraph construction and node implementations for request planning."""

from __future__ import annotations

from langgraph.graph import END, StateGraph
from langgraph.graph.state import CompiledStateGraph

from assistant_core.flows.state import PlanState
from assistant_core.infrastructure.logging.logger import logger
from assistant_core.prompts import build_system_prompt, extract_personalization
from assistant_core.providers.registry import ProviderCatalog
from assistant_core.routing import classify


def classify_node(state: PlanState) -> PlanState:
    category = classify(state["turns"], state.get("has_attachments", False))
    state["category"] = category
    logger.info("classify_node.end", extra={"extra": {"category": category.value, "turns": len(state["turns"])}})
    return state


def prompt_node(state: PlanState) -> PlanState:
    # 载体消息优先于调用方传入的默认值
    personalization = extract_personalization(state["turns"], default=state.get("personalization"))
    state["personalization"] = personalization
    state["system_prompt"] = build_system_prompt(state["category"], personalization, now=state.get("now"))
    return state


def resolve_node(state: PlanState, catalog: ProviderCatalog) -> PlanState:
    candidates = catalog.resolve(state["category"])
    state["candidates"] = candidates
    logger.info(
        "resolve_node.end",
        extra={"extra": {"chain": [f"{d.id}:{m}" for d, m in candidates]}},
    )
    return state


def build_planning_graph(catalog: ProviderCatalog) -> CompiledStateGraph:
    graph = StateGraph(PlanState)
    graph.add_node("classify", classify_node)
    graph.add_node("prompt", prompt_node)
    graph.add_node("resolve", lambda s: resolve_node(s, catalog))
    graph.set_entry_point("classify")
    graph.add_edge("classify", "prompt")
    graph.add_edge("prompt", "resolve")
    graph.add_edge("resolve", END)
    return graph.compile()
