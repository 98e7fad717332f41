"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for engine configs.
"""

import os
import tempfile

import pytest
import yaml

from shopbot_engine.config.loader import (
    API_KEY_ENV_VAR,
    DEFAULT_TOKEN_LIMITS,
    EngineConfig,
    PlanEntitlement,
    load_engine_config,
    resolve_api_key,
)
from shopbot_engine.core.errors import ConfigurationError


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        config_path = self._write_config({
            "budget": {"daily": 2.0, "monthly": 40.0, "alert_threshold": 75},
            "retry": {"max_retries": 1, "initial_delay": 0.5},
            "models": {"tiers": {"fast": "gpt-4o-mini", "standard": "gpt-4.1"}, "default_tier": "fast"},
            "storage": {"db_path": "/tmp/engine.db"},
        })
        config = load_engine_config(config_path)

        assert config.budget.daily == 2.0
        assert config.budget.monthly == 40.0
        assert config.budget.alert_threshold == 75
        assert config.retry.max_retries == 1
        assert config.retry.max_delay == 10.0
        assert config.models.model_for_tier(None) == "gpt-4o-mini"
        assert config.models.model_for_tier("standard") == "gpt-4.1"
        assert config.models.model_for_tier("unknown") == "gpt-4o-mini"
        assert config.storage.db_path == "/tmp/engine.db"
        # Untouched sections keep their defaults
        assert config.circuit_breaker.threshold == 5
        assert config.optimization.switch_model_threshold == 80.0

    def test_empty_file_gives_defaults(self):
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, "w").close()
        assert load_engine_config(config_path) == EngineConfig.default()

    def test_missing_file_raises(self):
        with pytest.raises(FileNotFoundError):
            load_engine_config(os.path.join(self.temp_dir, "missing.yaml"))

    def test_invalid_yaml_raises(self):
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w", encoding="utf-8") as f:
            f.write("budget: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_engine_config(config_path)

    def test_root_must_be_mapping(self):
        with pytest.raises(ValueError, match="root must be a dictionary"):
            load_engine_config(self._write_config(["budget"]))

    def test_unknown_top_level_key_fails(self):
        with pytest.raises(ValueError, match="Unknown keys in configuration"):
            load_engine_config(self._write_config({"features": {}}))

    def test_unknown_section_key_fails(self):
        with pytest.raises(ValueError, match="Unknown keys in budget"):
            load_engine_config(self._write_config({"budget": {"daily": 1.0, "weekly": 7.0}}))

    @pytest.mark.parametrize("section,values", [
        ("budget", {"daily": 0}),
        ("budget", {"monthly": -1}),
        ("budget", {"alert_threshold": 120}),
        ("retry", {"max_retries": -1}),
        ("retry", {"jitter": 1.5}),
        ("circuit_breaker", {"threshold": 0}),
        ("generation", {"temperature": 3}),
        ("optimization", {"reduce_context_threshold": 85}),
    ])
    def test_invalid_values_fail(self, section, values):
        with pytest.raises(ValueError, match=f"Invalid {section}"):
            load_engine_config(self._write_config({section: values}))

    def test_unknown_default_tier_fails(self):
        with pytest.raises(ValueError, match="default_tier"):
            load_engine_config(self._write_config({"models": {"default_tier": "turbo"}}))

    def test_commerce_plans(self):
        config = load_engine_config(self._write_config({
            "commerce": {
                "plans": {
                    "starter": {"enabled": True, "limit": 5},
                    "pro": {"enabled": True, "limit": None},
                    "free": {"enabled": False},
                },
                "assisted_only_plans": ["brand"],
                "upgrade_targets": {"starter": "our Growth"},
            }
        }))
        commerce = config.commerce
        assert commerce.plans["starter"] == PlanEntitlement(enabled=True, limit=5)
        assert commerce.plans["pro"].limit is None
        assert not commerce.plans["free"].enabled
        assert commerce.assisted_only_plans == frozenset({"brand"})
        assert commerce.upgrade_targets == {"starter": "our Growth"}
        assert commerce.default_upgrade_target == "a higher tier"

    @pytest.mark.parametrize("plan", [
        {"enabled": "yes"},
        {"enabled": True, "limit": "ten"},
        {"enabled": True, "limit": -1},
        {"enabled": True, "quota": 3},
    ])
    def test_invalid_plan_fails(self, plan):
        with pytest.raises(ValueError, match="commerce.plans.starter"):
            load_engine_config(self._write_config({"commerce": {"plans": {"starter": plan}}}))

    def test_prompt_tones_and_flags(self):
        config = load_engine_config(self._write_config({
            "prompt": {
                "global_instruction": "Be brief.",
                "allow_product_catalog": False,
                "tones": {"friendly": {"description": "Warm", "must_include": "emojis"}},
                "language_names": {"my": "Burmese"},
            }
        }))
        assert config.prompt.global_instruction == "Be brief."
        assert not config.prompt.allow_product_catalog
        assert config.prompt.allow_training_data
        assert config.prompt.tones["friendly"].must_include == "emojis"
        assert config.prompt.tones["friendly"].must_avoid == ""
        assert config.prompt.language_names == {"my": "Burmese"}

    def test_tone_requires_description(self):
        with pytest.raises(ValueError, match="Missing required 'description'"):
            load_engine_config(self._write_config({"prompt": {"tones": {"calm": {"must_avoid": "caps"}}}}))

    def test_prompt_flag_must_be_bool(self):
        with pytest.raises(ValueError, match="allow_training_data"):
            load_engine_config(self._write_config({"prompt": {"allow_training_data": "no"}}))

    def test_token_limits_merge_with_defaults(self):
        config = load_engine_config(self._write_config({
            "token_limits": {"suggestion": {"max_input": 100, "max_output": 50, "max_total": 150}}
        }))
        assert config.token_limits["suggestion"].max_input == 100
        assert config.token_limits["chat_message"] == DEFAULT_TOKEN_LIMITS["chat_message"]


class TestApiKey:
    """Provider credentials come from the environment and must be present."""

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV_VAR, "env-key")
        assert resolve_api_key("explicit") == "explicit"

    def test_environment_key(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV_VAR, " env-key ")
        assert resolve_api_key() == "env-key"

    def test_missing_key_fails_loudly(self, monkeypatch):
        monkeypatch.delenv(API_KEY_ENV_VAR, raising=False)
        with pytest.raises(ConfigurationError, match=API_KEY_ENV_VAR):
            resolve_api_key()

    def test_blank_key_fails(self, monkeypatch):
        monkeypatch.setenv(API_KEY_ENV_VAR, "   ")
        with pytest.raises(ConfigurationError):
            resolve_api_key()
