"""
Test conftest — isolate BUILDERIQ_* environment variables so that Settings
tests are not affected by a developer's shell or .env file.
"""
import os

import pytest


@pytest.fixture(autouse=True)
def _isolate_builderiq_env(monkeypatch):
    """Remove BUILDERIQ_* env vars for every test so Settings() sees only
    field defaults and whatever the test sets explicitly.
    Also disables .env file loading so a local .env cannot leak in."""
    for var in list(os.environ):
        if var.upper().startswith("BUILDERIQ_"):
            monkeypatch.delenv(var, raising=False)

    import builderiq_voice.config.settings as settings_module
    from pydantic_settings import SettingsConfigDict
    patched_config = SettingsConfigDict(
        env_prefix="BUILDERIQ_",
        env_file=None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )
    monkeypatch.setattr(settings_module.Settings, "model_config", patched_config)
