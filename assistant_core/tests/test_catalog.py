import pytest

from assistant_core.domain.exceptions import NoProviderConfigured
from assistant_core.domain.models import TaskCategory
from assistant_core.providers import create_catalog
from assistant_core.providers.registry import (
    BUILTIN_PROVIDERS,
    DEEPSEEK,
    GATEWAY,
    GEMINI,
    OPENAI,
    ProviderCatalog,
    get_provider_descriptor,
)


class SettingsStub:
    gateway_api_key = "gw-key-0123456789"
    openai_api_key = None
    gemini_api_key = "gm-key-0123456789"
    deepseek_api_key = "ds-key-0123456789"
    gateway_base_url = None
    openai_base_url = None
    gemini_base_url = "https://proxy.example.com/v1beta/"
    deepseek_base_url = None
    preferred_provider = None


def _ids(chain):
    return [d.id for d, _ in chain]


def test_empty_catalog_raises_immediately():
    with pytest.raises(NoProviderConfigured) as exc:
        ProviderCatalog(providers=[]).resolve(TaskCategory.TEXT)
    assert exc.value.code == "NO_PROVIDER_CONFIGURED"


def test_category_ranking():
    catalog = ProviderCatalog(providers=list(BUILTIN_PROVIDERS))
    assert _ids(catalog.resolve(TaskCategory.TEXT)) == ["gateway", "gemini", "deepseek", "openai"]
    assert _ids(catalog.resolve(TaskCategory.REASONING)) == ["deepseek", "gemini", "gateway", "openai"]
    assert _ids(catalog.resolve(TaskCategory.DOCUMENT)) == ["gemini", "gateway", "openai", "deepseek"]


def test_vision_chain_excludes_providers_without_vision_model():
    catalog = ProviderCatalog(providers=list(BUILTIN_PROVIDERS))
    chain = catalog.resolve(TaskCategory.VISION)
    assert _ids(chain) == ["gemini", "openai", "gateway"]
    assert dict((d.id, m) for d, m in chain)["openai"] == "gpt-4o"


def test_vision_only_non_vision_provider_raises():
    catalog = ProviderCatalog(providers=[DEEPSEEK])
    with pytest.raises(NoProviderConfigured):
        catalog.resolve(TaskCategory.VISION)


def test_model_falls_back_to_text_model():
    assert DEEPSEEK.model_for(TaskCategory.SEARCH) == "deepseek-chat"
    assert DEEPSEEK.model_for(TaskCategory.REASONING) == "deepseek-reasoner"
    assert GEMINI.model_for(TaskCategory.DOCUMENT) == "gemini-2.5-pro"


def test_preferred_provider_goes_first():
    catalog = ProviderCatalog(providers=[GATEWAY, OPENAI, DEEPSEEK], preferred="openai")
    assert _ids(catalog.resolve(TaskCategory.TEXT))[0] == "openai"
    assert _ids(catalog.resolve(TaskCategory.REASONING)) == ["openai", "deepseek", "gateway"]


def test_from_settings_only_keyed_providers():
    catalog = ProviderCatalog.from_settings(SettingsStub())
    assert sorted(d.id for d in catalog.providers) == ["deepseek", "gateway", "gemini"]
    gemini = [d for d in catalog.providers if d.id == "gemini"][0]
    assert gemini.endpoint == "https://proxy.example.com/v1beta"
    assert gemini.kind == "generate_content"
    assert catalog.api_key_for(gemini) == "gm-key-0123456789"
    assert catalog.api_key_for(OPENAI) is None


def test_create_catalog_uses_settings():
    catalog = create_catalog(SettingsStub())
    assert "openai" not in {d.id for d in catalog.providers}


def test_get_provider_descriptor():
    assert get_provider_descriptor("Gemini") is GEMINI
    with pytest.raises(KeyError):
        get_provider_descriptor("unknown")
