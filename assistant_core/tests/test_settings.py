import tempfile
from pathlib import Path

import pydantic
import pytest

from assistant_core.config import settings as settings_module
from assistant_core.config.settings import Settings


KEY_VARS = ("GATEWAY_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "DEEPSEEK_API_KEY", "MAX_RETRIES", "PREFERRED_PROVIDER")


def _clear_env(monkeypatch):
    for name in KEY_VARS:
        monkeypatch.delenv(name, raising=False)


def test_yaml_source_is_loaded(monkeypatch):
    _clear_env(monkeypatch)
    with tempfile.TemporaryDirectory() as d:
        cfg = Path(d) / "config.yaml"
        cfg.write_text(
            "max_retries: 5\npreferred_provider: ' Gemini '\ngemini_api_key: gm-key-0123456789\n",
            encoding="utf-8",
        )
        monkeypatch.setenv("ASSISTANT_CONFIG_FILE", str(cfg))
        s = Settings()
        assert s.max_retries == 5
        assert s.preferred_provider == "gemini"
        assert s.gemini_api_key == "gm-key-0123456789"


def test_env_overrides_yaml(monkeypatch):
    _clear_env(monkeypatch)
    with tempfile.TemporaryDirectory() as d:
        cfg = Path(d) / "config.yaml"
        cfg.write_text("max_retries: 5\n", encoding="utf-8")
        monkeypatch.setenv("ASSISTANT_CONFIG_FILE", str(cfg))
        monkeypatch.setenv("MAX_RETRIES", "2")
        assert Settings().max_retries == 2


def test_defaults(monkeypatch):
    _clear_env(monkeypatch)
    monkeypatch.setattr(settings_module, "_load_config_from_yaml", lambda: {})
    s = Settings(_env_file=None)
    assert s.max_retries == 3
    assert s.retry_base_delay == 1.0
    assert s.http_timeout == 75.0
    assert s.max_image_bytes == 20 * 1024 * 1024
    assert s.document_context_chars == 8000


def test_short_api_key_rejected():
    with pytest.raises(pydantic.ValidationError):
        Settings(openai_api_key="short")


def test_non_mapping_yaml_is_ignored(monkeypatch):
    with tempfile.TemporaryDirectory() as d:
        cfg = Path(d) / "config.yaml"
        cfg.write_text("- a\n- b\n", encoding="utf-8")
        monkeypatch.setenv("ASSISTANT_CONFIG_FILE", str(cfg))
        monkeypatch.chdir(d)
        with pytest.warns(UserWarning):
            data = settings_module._load_config_from_yaml()
        assert data == {}
