"""Tests for settings."""

from furvino_ingest.core.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.default_part_size_bytes == 8 * 1024 * 1024
    assert settings.min_part_size_bytes == 1024 * 1024
    assert settings.max_part_size_bytes == 128 * 1024 * 1024
    assert settings.session_ttl_seconds == 24 * 3600
    assert settings.STRICT_SHARE_HARDENING is True


def test_stack_configured_requires_all_credentials():
    assert not Settings(_env_file=None, STACK_API_URL="https://stack.test").stack_configured
    assert Settings(
        _env_file=None, STACK_API_URL="https://stack.test", STACK_USERNAME="u", STACK_PASSWORD="p"
    ).stack_configured


def test_share_base_url():
    """Test the precedence of share URL settings."""
    assert Settings(_env_file=None, STACK_SHARE_BASE_URL="https://cdn.test/s/").share_base_url == "https://cdn.test/s"
    assert Settings(_env_file=None, STACK_SHARE_HOST="share.test").share_base_url == "https://share.test/s"
    assert Settings(_env_file=None, STACK_SHARE_HOST="http://share.test/").share_base_url == "http://share.test/s"
    assert Settings(_env_file=None).share_base_url == ""


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("DEFAULT_PART_SIZE_MB", "16")
    monkeypatch.setenv("SHARE_ON_COMPLETE", "true")

    settings = Settings(_env_file=None)

    assert settings.default_part_size_bytes == 16 * 1024 * 1024
    assert settings.SHARE_ON_COMPLETE is True
