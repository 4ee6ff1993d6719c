"""请求分类与选路前置逻辑。"""

from assistant_core.routing.classifier import classify

__all__ = ["classify"]
