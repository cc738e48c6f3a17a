"""Tests for input validation and configuration."""

import logging

import pytest

from aigate.config import (
    Settings,
    configure_logging,
    get_model_chain,
    get_pricing,
    set_model_chain,
)
from aigate.errors import BudgetExceededError, GatewayTimeoutError, UpstreamModelError, ValidationError
from aigate.validation import validate_operation, validate_tags, validate_text, validate_ttl_ms


class TestValidators:
    """Test request field validators."""

    @pytest.mark.parametrize("operation", ["enhance", "ai.chat", "org:1/insights", "a-b_c"])
    def test_valid_operations(self, operation):
        assert validate_operation(operation) == operation

    @pytest.mark.parametrize("operation", ["", "  ", None, 5, "has space", "x" * 129])
    def test_invalid_operations(self, operation):
        with pytest.raises(ValidationError) as exc_info:
            validate_operation(operation)
        assert exc_info.value.details[0]["field"] == "operation"

    def test_text_limits(self):
        assert validate_text("x" * 5000) == "x" * 5000
        with pytest.raises(ValidationError, match="too long"):
            validate_text("x" * 5001)

    def test_tags(self):
        assert validate_tags(None) == []
        assert validate_tags(("a", "b")) == ["a", "b"]
        with pytest.raises(ValidationError):
            validate_tags("a")
        with pytest.raises(ValidationError):
            validate_tags(["a", ""])
        with pytest.raises(ValidationError):
            validate_tags([str(i) for i in range(33)])

    def test_ttl_is_converted_to_seconds(self):
        assert validate_ttl_ms(None) is None
        assert validate_ttl_ms(1500) == 1.5

    @pytest.mark.parametrize("ttl", [0, -1, True, "60", 31 * 24 * 3600 * 1000])
    def test_invalid_ttl(self, ttl):
        with pytest.raises(ValidationError):
            validate_ttl_ms(ttl)

    def test_validation_error_is_a_value_error(self):
        assert isinstance(ValidationError.for_field("x", "bad"), ValueError)


class TestErrors:
    """Test the status code of each error."""

    def test_status_codes(self):
        assert ValidationError("x").status_code == 400
        assert BudgetExceededError("x").status_code == 402
        assert UpstreamModelError("x").status_code == 503
        assert GatewayTimeoutError("x").status_code == 504
        assert isinstance(GatewayTimeoutError("x"), UpstreamModelError)


class TestConfig:
    """Test settings and model chains."""

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("AIGATE_API_KEY", "k")
        monkeypatch.setenv("AIGATE_AI_REQUESTS_PER_HOUR", "10")
        monkeypatch.setenv("AIGATE_CACHE_MEMORY_MB", "not-a-number")
        monkeypatch.setenv("AIGATE_LOG_LEVEL", "debug")

        settings = Settings.from_env()

        assert settings.api_key == "k"
        assert settings.ai_requests_per_hour == 10
        assert settings.cache_memory_mb == 512
        assert settings.log_level == "DEBUG"

    def test_default_chain(self):
        assert get_model_chain("text")[0] == "openai/gpt-4o-mini"

    def test_unknown_tier(self):
        with pytest.raises(ValueError):
            get_model_chain("nope")

    def test_chain_env_override(self, monkeypatch):
        monkeypatch.setenv("AIGATE_MODEL_CHAINS_JSON", '{"text": ["acme/small"]}')
        assert get_model_chain("text") == ["acme/small"]

    def test_invalid_env_json_is_ignored(self, monkeypatch):
        monkeypatch.setenv("AIGATE_PRICING_JSON", "{not json")
        assert "openai/gpt-4o-mini" in get_pricing()

    def test_set_model_chain_rejects_empty(self):
        with pytest.raises(ValueError):
            set_model_chain("text", [])

    def test_configure_logging(self):
        logger = configure_logging("warning")
        assert logger.name == "aigate"
        assert logger.level == logging.WARNING
