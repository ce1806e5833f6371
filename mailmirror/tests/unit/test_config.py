"""
Test settings loading.
"""
from mailmirror.core import config
from mailmirror.core.config import Settings, get_settings, reload_settings


class TestSettings:

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        settings = Settings(_env_file=None)

        assert settings.page_size == 40
        assert settings.max_search_results == 50
        assert "embedding_dimension" not in Settings.model_fields
        assert settings.embedding_max_seq_len == 1024
        assert settings.embedding_token_budget == 16384
        assert settings.embedding_batch_cap == 64
        assert settings.backfill_interval_seconds == 30.0
        assert settings.embedding_idle_interval_seconds == 60.0
        assert settings.embedding_active_interval_seconds == 1.0

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("IMAP_HOST", "imap.example.com")
        monkeypatch.setenv("PAGE_SIZE", "25")
        monkeypatch.setenv("EMBEDDING_BATCH_CAP", "16")

        settings = Settings(_env_file=None)

        assert settings.imap_host == "imap.example.com"
        assert settings.page_size == 25
        assert settings.embedding_batch_cap == 16

    def test_singleton_and_reload(self, monkeypatch):
        monkeypatch.setattr(config, "_settings", None)
        monkeypatch.setenv("PAGE_SIZE", "10")

        first = get_settings()
        assert get_settings() is first
        assert first.page_size == 10

        monkeypatch.setenv("PAGE_SIZE", "20")
        assert reload_settings().page_size == 20
        assert get_settings().page_size == 20
