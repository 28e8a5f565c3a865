"""
Tests for service configuration.
"""

import pytest
from pydantic import ValidationError

from shared.config import get_config


class TestConfig:
    """Test cases for environment-driven configuration."""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("CHATROOM_STICKER_CACHE_TTL_SECONDS", raising=False)

        config = get_config("stickers", 8020)

        assert config.service_name == "stickers"
        assert config.port == 8020
        assert config.sticker_cache_ttl_seconds == 3600

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("CHATROOM_REDIS_URL", "redis://cache:6379/2")
        monkeypatch.setenv("CHATROOM_STICKER_CACHE_TTL_SECONDS", "60")

        config = get_config("stickers", 8020)

        assert config.redis_url == "redis://cache:6379/2"
        assert config.sticker_cache_ttl_seconds == 60

    def test_ttl_must_be_positive(self, monkeypatch):
        monkeypatch.setenv("CHATROOM_STICKER_CACHE_TTL_SECONDS", "0")

        with pytest.raises(ValidationError):
            get_config("stickers", 8020)
