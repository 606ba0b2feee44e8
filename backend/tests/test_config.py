"""Tests for environment-driven settings."""
from threatharvest.config import Settings


class TestSettings:
    def test_environment_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_SCRAPES", "9")
        monkeypatch.setenv("FORCED_BROWSER_DOMAINS", '["example.com"]')
        settings = Settings(_env_file=None)
        assert settings.MAX_CONCURRENT_SCRAPES == 9
        assert settings.FORCED_BROWSER_DOMAINS == ["example.com"]

    def test_unknown_variables_are_ignored(self, monkeypatch):
        # DEBUG is not a setting; verbosity comes from LOG_LEVEL or the CLI's -v
        monkeypatch.setenv("DEBUG", "true")
        monkeypatch.delenv("LOG_LEVEL", raising=False)
        settings = Settings(_env_file=None)
        assert "DEBUG" not in Settings.model_fields
        assert not hasattr(settings, "DEBUG")
        assert settings.LOG_LEVEL == "INFO"
