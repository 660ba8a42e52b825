"""Tests for config loading, interpolation, deep merge, and redaction.

Validates:
- Defaults, YAML file, env overrides and explicit overrides layer in order
- {env:VAR} interpolation with allowlist
- Typed ChatSettings construction
- Secret redaction in configs, headers, and strings
"""

import os
import sys

import pytest

# Ensure adapters/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config_loader import (
    REDACTED,
    ChatSettings,
    deep_merge,
    interpolate_config,
    interpolate_value,
    load_config,
    redact_config,
    redact_headers,
    redact_string,
    settings_from_config,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for var in ("JUSTDEEN_API_URL", "JUSTDEEN_API_TIMEOUT", "JUSTDEEN_DEBUG"):
        monkeypatch.delenv(var, raising=False)
    # No stray .justdeen.config.yaml from the working directory
    monkeypatch.chdir(tmp_path)


# ── Loading ───────────────────────────────────────────────────────────


class TestLoadConfig:
    def test_defaults(self):
        settings = settings_from_config(load_config())
        assert settings == ChatSettings()
        assert settings.base_url == "http://localhost:8787"
        assert settings.title_max_chars == 50
        assert settings.history_max_messages is None

    def test_yaml_file_merged(self, tmp_path):
        path = tmp_path / "chat.yaml"
        path.write_text(
            "api:\n"
            "  base_url: https://rag.example.dev/\n"
            "  read_timeout_ms: 90000\n"
            "history:\n"
            "  max_messages: 12\n"
        )
        settings = settings_from_config(load_config(str(path)))
        assert settings.base_url == "https://rag.example.dev"
        assert settings.read_timeout_ms == 90000
        assert settings.connect_timeout_ms == 5000
        assert settings.history_max_messages == 12

    def test_default_file_in_working_directory(self, tmp_path):
        (tmp_path / ".justdeen.config.yaml").write_text("debug: true\n")
        assert settings_from_config(load_config()).debug is True

    def test_missing_explicit_file_raises(self, tmp_path):
        with pytest.raises(ValueError, match="not found"):
            load_config(str(tmp_path / "nope.yaml"))

    def test_non_mapping_file_raises(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_config(str(path))

    def test_empty_file_is_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert settings_from_config(load_config(str(path))) == ChatSettings()

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "chat.yaml"
        path.write_text("api:\n  base_url: https://from-file.dev\n")
        monkeypatch.setenv("JUSTDEEN_API_URL", "https://from-env.dev")
        monkeypatch.setenv("JUSTDEEN_API_TIMEOUT", "2500")
        monkeypatch.setenv("JUSTDEEN_DEBUG", "true")
        settings = settings_from_config(load_config(str(path)))
        assert settings.base_url == "https://from-env.dev"
        assert settings.api_timeout_ms == 2500
        assert settings.debug is True

    def test_explicit_overrides_win(self, monkeypatch):
        monkeypatch.setenv("JUSTDEEN_API_URL", "https://from-env.dev")
        config = load_config(overrides={"api": {"base_url": "https://override.dev"}})
        assert config["api"]["base_url"] == "https://override.dev"

    def test_token_interpolated_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JUSTDEEN_ACCESS_TOKEN", "eyJ-test")
        path = tmp_path / "chat.yaml"
        path.write_text('auth:\n  token: "{env:JUSTDEEN_ACCESS_TOKEN}"\n  user_id: auth0|1\n')
        settings = settings_from_config(load_config(str(path)))
        assert settings.auth_token == "eyJ-test"
        assert settings.user_id == "auth0|1"

    def test_invalid_number_raises(self):
        with pytest.raises(ValueError, match="Invalid chat client config"):
            settings_from_config({"api": {"read_timeout_ms": "soon"}})


# ── Env interpolation ────────────────────────────────────────────────


class TestEnvInterpolation:
    def test_resolve_allowed_env_var(self, monkeypatch):
        monkeypatch.setenv("JUSTDEEN_ACCESS_TOKEN", "tok")
        assert interpolate_value("{env:JUSTDEEN_ACCESS_TOKEN}") == "tok"

    def test_reject_disallowed_env_var(self):
        with pytest.raises(ValueError, match="not in the allowlist"):
            interpolate_value("{env:HOME}")

    def test_missing_env_var_raises(self, monkeypatch):
        monkeypatch.delenv("JUSTDEEN_NONEXISTENT", raising=False)
        with pytest.raises(ValueError, match="is not set"):
            interpolate_value("{env:JUSTDEEN_NONEXISTENT}")

    def test_passthrough_no_interpolation(self):
        assert interpolate_value("plain string") == "plain string"

    def test_mixed_text_and_interpolation(self, monkeypatch):
        monkeypatch.setenv("JUSTDEEN_HOST", "localhost")
        assert interpolate_value("http://{env:JUSTDEEN_HOST}:8787") == "http://localhost:8787"

    def test_recursive_interpolation(self, monkeypatch):
        monkeypatch.setenv("JUSTDEEN_ACCESS_TOKEN", "tok")
        config = {"auth": {"token": "{env:JUSTDEEN_ACCESS_TOKEN}", "user_id": "u"}}
        result = interpolate_config(config)
        assert result == {"auth": {"token": "tok", "user_id": "u"}}

    def test_non_string_values_preserved(self):
        config = {"timeout_ms": 3000, "debug": True, "max_messages": None}
        assert interpolate_config(config) == config


# ── Deep merge ────────────────────────────────────────────────────────


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"x": {"a": 1, "b": 2}, "y": 10}
        overlay = {"x": {"b": 3, "c": 4}}
        assert deep_merge(base, overlay) == {"x": {"a": 1, "b": 3, "c": 4}, "y": 10}

    def test_overlay_replaces_non_dict(self):
        assert deep_merge({"x": {"nested": True}}, {"x": "replaced"})["x"] == "replaced"

    def test_no_mutation(self):
        base = {"a": {"b": 1}}
        overlay = {"a": {"c": 2}}
        deep_merge(base, overlay)
        assert "c" not in base["a"]
        assert "b" not in overlay["a"]


# ── Redaction ─────────────────────────────────────────────────────────


class TestRedaction:
    def test_redacts_token_in_config(self):
        config = {"auth": {"token": "eyJ-secret", "user_id": "u1"}, "api": {"base_url": "http://x"}}
        result = redact_config(config)
        assert result["auth"]["token"] == REDACTED
        assert result["auth"]["user_id"] == "u1"
        assert result["api"]["base_url"] == "http://x"

    def test_empty_token_left_visible(self):
        assert redact_config({"token": ""}) == {"token": ""}

    def test_redacts_authorization_header(self):
        result = redact_headers({"Authorization": "Bearer eyJ", "Content-Type": "application/json"})
        assert result == {"Authorization": REDACTED, "Content-Type": "application/json"}

    def test_redacts_bearer_in_string(self):
        result = redact_string("Authorization: Bearer eyJ-abc was sent")
        assert "eyJ-abc" not in result
        assert REDACTED in result

    def test_redacts_secret_env_values(self, monkeypatch):
        monkeypatch.setenv("JUSTDEEN_ACCESS_TOKEN", "eyJ-real-secret")
        result = redact_string("Error with eyJ-real-secret in message")
        assert "eyJ-real-secret" not in result

    def test_plain_string_unchanged(self):
        text = "Just a normal error message"
        assert redact_string(text) == text
