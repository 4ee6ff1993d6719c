"""LLM Provider 集成层。

该包下的模块负责：
- 维护 Provider 与模型目录 (registry)。
- 把统一的 Turn 列表转换为各厂商的请求 (request_builder)。
- 执行调用、重试与故障切换 (dispatcher)。
- 把各厂商的响应归一化为统一的事件流 (normalizer)。
"""

from typing import Callable, Optional

from assistant_core.config.settings import settings
from assistant_core.providers.dispatcher import RetryingDispatcher
from assistant_core.providers.registry import ProviderCatalog


def create_catalog(cfg=settings) -> ProviderCatalog:
    """根据配置创建 ProviderCatalog，只包含配置了密钥的 Provider。"""

    return ProviderCatalog.from_settings(cfg)


def create_dispatcher(
    catalog: Optional[ProviderCatalog] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> RetryingDispatcher:
    """创建调度器，默认使用配置生成的目录。"""

    return RetryingDispatcher(catalog or create_catalog(), sleep=sleep)
