"""
Tests for the service ledger configuration loader.
"""

from entitlement_ledger.config.ledger_settings import LedgerConfigLoader, get_ledger_settings


class TestLedgerConfigLoader:
    """Tests for file, environment and fallback resolution."""

    def test_reads_yaml_file(self, make_yaml_config):
        path = make_yaml_config("service_ledger.yml", {
            "archive": {"default_archive_after_days": 30, "default_delete_after_archive": True},
            "holds": {"sweep_batch_size": 7},
        })

        settings = LedgerConfigLoader(config_path=str(path)).settings()

        assert settings.default_archive_after_days == 30
        assert settings.default_delete_after_archive is True
        assert settings.hold_sweep_batch_size == 7
        # Missing keys fall back to built-in defaults
        assert settings.long_unreleased_hours == 24
        assert settings.event_max_retries == 5

    def test_env_overrides_file(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("service_ledger.yml", {"archive": {"default_archive_after_days": 30}})
        monkeypatch.setenv("ARCHIVE_AFTER_DAYS", "45")
        monkeypatch.setenv("DELETE_AFTER_ARCHIVE", "yes")

        settings = LedgerConfigLoader(config_path=str(path)).settings()

        assert settings.default_archive_after_days == 45
        assert settings.default_delete_after_archive is True

    def test_database_pool_settings(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("service_ledger.yml", {"database": {"pool_size": 8}})
        monkeypatch.setenv("DB_MAX_OVERFLOW", "2")

        settings = LedgerConfigLoader(config_path=str(path)).settings()

        assert settings.db_pool_size == 8
        assert settings.db_max_overflow == 2
        assert settings.db_pool_recycle_seconds == 1800

    def test_quoted_boolean_in_yaml(self, make_yaml_config):
        path = make_yaml_config("service_ledger.yml", {
            "archive": {"default_delete_after_archive": "false"},
        })

        settings = LedgerConfigLoader(config_path=str(path)).settings()

        assert settings.default_delete_after_archive is False

    def test_event_retention_days(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("service_ledger.yml", {"events": {"retention_days": 14}})

        assert LedgerConfigLoader(config_path=str(path)).settings().event_retention_days == 14

        monkeypatch.setenv("EVENT_RETENTION_DAYS", "3")
        assert LedgerConfigLoader(config_path=str(path)).settings().event_retention_days == 3

    def test_invalid_env_value_ignored(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("service_ledger.yml", {"holds": {"sweep_batch_size": 12}})
        monkeypatch.setenv("HOLD_SWEEP_BATCH_SIZE", "lots")

        assert LedgerConfigLoader(config_path=str(path)).settings().hold_sweep_batch_size == 12

    def test_missing_file_uses_fallbacks(self, temp_config_dir):
        settings = LedgerConfigLoader(config_path=str(temp_config_dir / "absent.yml")).settings()

        assert settings.default_archive_after_days == 90
        assert settings.default_delete_after_archive is False
        assert settings.outbox_batch_size == 100

    def test_singleton_and_reset(self, make_yaml_config):
        path = make_yaml_config("service_ledger.yml", {"events": {"outbox_batch_size": 3}})

        first = LedgerConfigLoader(config_path=str(path))
        assert LedgerConfigLoader() is first
        assert get_ledger_settings().outbox_batch_size == 3

        LedgerConfigLoader.reset_instance()
        assert LedgerConfigLoader() is not first

    def test_reload_picks_up_changes(self, make_yaml_config):
        path = make_yaml_config("service_ledger.yml", {"holds": {"long_unreleased_hours": 6}})
        loader = LedgerConfigLoader(config_path=str(path))
        make_yaml_config("service_ledger.yml", {"holds": {"long_unreleased_hours": 12}})

        loader.reload()

        assert loader.settings().long_unreleased_hours == 12
