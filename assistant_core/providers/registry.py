"""Provider 与模型目录。

本模块把“任务类别”与“具体厂商模型名”解耦：

- ProviderDescriptor：某个 Provider 的静态描述（端点、认证方式、各类别对应的模型、是否流式）。
- BUILTIN_PROVIDERS：内置的 Provider 表，进程启动时加载一次，之后只读。
- ProviderCatalog：按任务类别给出排好序的 (Provider, 模型) 候选链，首个为主 Provider，
  其余为故障切换顺序。

上层只关心任务类别，具体用哪个底层模型由这里集中配置，便于后续升级或切换。
"""

from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from assistant_core.config.settings import settings
from assistant_core.domain.exceptions import NoProviderConfigured
from assistant_core.domain.models import TaskCategory

# 请求构造与响应归一化按 kind 选择实现，而不是按运行时类型判断
ProviderKind = Literal["chat_completions", "generate_content"]
AuthScheme = Literal["bearer", "api_key_header"]


@dataclass(frozen=True)
class ProviderDescriptor:
    """单个 Provider 的配置。"""

    id: str
    endpoint: str
    auth_scheme: AuthScheme
    models_by_category: Dict[TaskCategory, str]
    supports_streaming: bool
    kind: ProviderKind = "chat_completions"
    api_key_header: str = "Authorization"

    def model_for(self, category: TaskCategory) -> Optional[str]:
        """返回该类别使用的模型；不支持视觉的 Provider 对 vision 返回 None。"""

        model = self.models_by_category.get(category)
        if model:
            return model
        if category == TaskCategory.VISION:
            return None
        return self.models_by_category.get(TaskCategory.TEXT)


GATEWAY = ProviderDescriptor(
    id="gateway",
    endpoint="https://ai.gateway.lovable.dev/v1/chat/completions",
    auth_scheme="bearer",
    models_by_category={
        TaskCategory.TEXT: "google/gemini-3-flash-preview",
        TaskCategory.VISION: "google/gemini-3-pro-preview",
        TaskCategory.REASONING: "google/gemini-3-pro-preview",
    },
    supports_streaming=True,
)

OPENAI = ProviderDescriptor(
    id="openai",
    endpoint="https://api.openai.com/v1/chat/completions",
    auth_scheme="bearer",
    models_by_category={
        TaskCategory.TEXT: "gpt-4o-mini",
        TaskCategory.VISION: "gpt-4o",
        TaskCategory.REASONING: "gpt-4o",
    },
    supports_streaming=True,
)

# Gemini 走原生 generateContent 接口，一次性返回完整 JSON
GEMINI = ProviderDescriptor(
    id="gemini",
    endpoint="https://generativelanguage.googleapis.com/v1beta",
    auth_scheme="api_key_header",
    api_key_header="x-goog-api-key",
    models_by_category={
        TaskCategory.TEXT: "gemini-2.0-flash",
        TaskCategory.VISION: "gemini-2.0-flash",
        TaskCategory.REASONING: "gemini-2.5-pro",
        TaskCategory.DOCUMENT: "gemini-2.5-pro",
    },
    supports_streaming=False,
    kind="generate_content",
)

DEEPSEEK = ProviderDescriptor(
    id="deepseek",
    endpoint="https://api.deepseek.com/chat/completions",
    auth_scheme="bearer",
    models_by_category={
        TaskCategory.TEXT: "deepseek-chat",
        TaskCategory.REASONING: "deepseek-reasoner",
    },
    supports_streaming=True,
)

BUILTIN_PROVIDERS: Tuple[ProviderDescriptor, ...] = (GATEWAY, OPENAI, GEMINI, DEEPSEEK)

# 各类别下 Provider 的能力匹配顺序
CATEGORY_PRIORITY: Mapping[TaskCategory, Tuple[str, ...]] = {
    TaskCategory.VISION: ("gemini", "openai", "gateway", "deepseek"),
    TaskCategory.REASONING: ("deepseek", "gemini", "gateway", "openai"),
    TaskCategory.DOCUMENT: ("gemini", "gateway", "openai", "deepseek"),
    TaskCategory.SEARCH: ("gateway", "gemini", "openai", "deepseek"),
    TaskCategory.TEXT: ("gateway", "gemini", "deepseek", "openai"),
}


def get_provider_descriptor(name: str) -> ProviderDescriptor:
    """根据名称获取内置 ProviderDescriptor，名称不区分大小写。"""

    key = name.lower()
    for desc in BUILTIN_PROVIDERS:
        if desc.id == key:
            return desc
    raise KeyError(f"Unknown provider: {name!r}")


@dataclass
class ProviderCatalog:
    """可用 Provider 的只读目录，可在所有会话间共享。"""

    providers: Sequence[ProviderDescriptor]
    api_keys: Mapping[str, str] = field(default_factory=dict)
    preferred: Optional[str] = None

    @classmethod
    def from_settings(cls, cfg=settings) -> "ProviderCatalog":
        """只收录配置了 API 密钥的内置 Provider，并应用基础 URL 覆盖。"""

        providers: List[ProviderDescriptor] = []
        keys: Dict[str, str] = {}
        for desc in BUILTIN_PROVIDERS:
            key = getattr(cfg, f"{desc.id}_api_key", None)
            if not key:
                continue
            base = getattr(cfg, f"{desc.id}_base_url", None)
            if base:
                desc = ProviderDescriptor(
                    id=desc.id,
                    endpoint=base.rstrip("/"),
                    auth_scheme=desc.auth_scheme,
                    models_by_category=dict(desc.models_by_category),
                    supports_streaming=desc.supports_streaming,
                    kind=desc.kind,
                    api_key_header=desc.api_key_header,
                )
            providers.append(desc)
            keys[desc.id] = key
        return cls(providers=providers, api_keys=keys, preferred=getattr(cfg, "preferred_provider", None))

    def resolve(self, category: TaskCategory) -> List[Tuple[ProviderDescriptor, str]]:
        """返回该类别的候选链：首个为主 Provider，其余为故障切换顺序。

        Raises:
            NoProviderConfigured: 目录为空，或没有任何 Provider 能处理该类别。
        """

        if not self.providers:
            raise NoProviderConfigured()

        order = CATEGORY_PRIORITY.get(category, CATEGORY_PRIORITY[TaskCategory.TEXT])

        def rank(desc: ProviderDescriptor) -> Tuple[int, int]:
            if self.preferred and desc.id == self.preferred:
                return (0, 0)
            if desc.id in order:
                return (1, order.index(desc.id))
            return (2, 0)

        chain: List[Tuple[ProviderDescriptor, str]] = []
        for desc in sorted(self.providers, key=rank):
            model = desc.model_for(category)
            if model:
                chain.append((desc, model))
        if not chain:
            raise NoProviderConfigured(
                message=f"No provider configured for task category {category.value!r}",
                category=category.value,
            )
        return chain

    def api_key_for(self, descriptor: ProviderDescriptor) -> Optional[str]:
        return self.api_keys.get(descriptor.id)
