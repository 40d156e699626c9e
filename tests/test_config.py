"""
Tests for scheduler configuration.
"""

import pytest

from newsdigest.scheduler import ConfigurationError, SchedulerSettings, load_settings
from newsdigest.scheduler.config import DEFAULT_SCHEDULES, RetrySettings


class TestDefaults:

    def test_production_defaults(self):
        settings = SchedulerSettings()

        assert settings.max_concurrency == 10
        assert settings.max_retries == 3
        assert settings.poll_interval == 1.0
        assert settings.retry.initial_delay == 5.0
        assert settings.retry.multiplier == 2.0
        assert settings.retry.max_delay == 300.0
        assert settings.recover_on_start is True
        assert settings.webhook_url is None

    def test_default_schedules(self):
        definitions = {d.name: d for d in SchedulerSettings().schedule_definitions()}

        assert set(definitions) == set(DEFAULT_SCHEDULES)
        assert len(definitions) == 8
        assert definitions["rss_check"].cron == "*/5 * * * *"
        assert definitions["daily_digest"].job_type == "email_send"
        assert definitions["cleanup_expired"].job_type == "cleanup"
        assert definitions["index_optimization"].cron == "0 2 * * 0"
        assert all(d.enabled for d in definitions.values())

    def test_defaults_are_not_shared(self):
        first = SchedulerSettings()
        first.schedules["rss_check"].enabled = False

        assert SchedulerSettings().schedules["rss_check"].enabled is True


class TestTimeoutFor:

    @pytest.mark.parametrize(
        "job_type,expected",
        [
            ("rss_check", 60.0),
            ("ai_analysis", 300.0),
            ("email_send", 120.0),
            ("cleanup", 600.0),
            ("backup", 300.0),
            ("health_check", 300.0),
        ],
    )
    def test_category_lookup(self, job_type, expected):
        assert SchedulerSettings().timeout_for(job_type) == expected

    def test_exact_match_wins(self):
        settings = SchedulerSettings(job_timeouts={"rss": 60, "rss_check": 15})

        assert settings.timeout_for("rss_check") == 15
        assert settings.timeout_for("rss_import") == 60
        assert settings.timeout_for("other") == 300.0

    def test_non_positive_timeout_rejected(self):
        with pytest.raises(ValueError):
            SchedulerSettings(job_timeouts={"default": 0})


class TestRetrySettings:

    def test_max_below_initial_rejected(self):
        with pytest.raises(ValueError):
            RetrySettings(initial_delay=10, max_delay=5)

    def test_multiplier_below_one_rejected(self):
        with pytest.raises(ValueError):
            RetrySettings(multiplier=0.5)


class TestLoadSettings:

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SCHEDULER_MAX_CONCURRENCY", "4")
        monkeypatch.setenv("SCHEDULER_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("SCHEDULER_RETRY_INITIAL_DELAY", "2")
        monkeypatch.setenv("SCHEDULER_RETRY_MAX_DELAY", "60")
        monkeypatch.setenv("SCHEDULER_DB_PATH", str(tmp_path / "jobs.sqlite"))
        monkeypatch.setenv("SCHEDULER_WEBHOOK_URL", "https://example.com/hook")
        monkeypatch.setenv("SCHEDULER_RECOVER_ON_START", "false")
        monkeypatch.setenv("SCHEDULER_HEALTH_CHECK_URLS", "http://a/health, http://b/health,")

        settings = load_settings(env_file=tmp_path / "missing.env")

        assert settings.max_concurrency == 4
        assert settings.poll_interval == 0.5
        assert settings.retry.initial_delay == 2.0
        assert settings.retry.max_delay == 60.0
        assert settings.retry.multiplier == 2.0
        assert settings.db_path == tmp_path / "jobs.sqlite"
        assert settings.webhook_url == "https://example.com/hook"
        assert settings.recover_on_start is False
        assert settings.health_check_urls == ["http://a/health", "http://b/health"]

    def test_env_file_is_loaded(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("SCHEDULER_MAX_RETRIES=6\n")

        settings = load_settings(env_file=env_file)

        assert settings.max_retries == 6

    def test_explicit_overrides_win(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SCHEDULER_MAX_CONCURRENCY", "4")

        settings = load_settings(env_file=tmp_path / "missing.env", max_concurrency=2)

        assert settings.max_concurrency == 2

    def test_disabled_schedules(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SCHEDULER_DISABLED_SCHEDULES", "backup,health_check,unknown")

        settings = load_settings(env_file=tmp_path / "missing.env")
        enabled = {d.name for d in settings.schedule_definitions() if d.enabled}

        assert "backup" not in enabled
        assert "health_check" not in enabled
        assert "rss_check" in enabled

    def test_schedules_json_merged_over_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv(
            "SCHEDULER_SCHEDULES",
            '{"daily_digest": {"cron": "30 7 * * *", "job_type": "email_send"}, '
            '"weekly_digest": {"cron": "0 9 * * 1", "job_type": "email_send", "enabled": false}}',
        )

        settings = load_settings(env_file=tmp_path / "missing.env")
        definitions = {d.name: d for d in settings.schedule_definitions()}

        assert definitions["daily_digest"].cron == "30 7 * * *"
        assert definitions["weekly_digest"].enabled is False
        assert definitions["rss_check"].cron == DEFAULT_SCHEDULES["rss_check"]["cron"]
        assert len(definitions) == len(DEFAULT_SCHEDULES) + 1

    @pytest.mark.parametrize(
        "name,value",
        [
            ("SCHEDULER_MAX_CONCURRENCY", "0"),
            ("SCHEDULER_MAX_CONCURRENCY", "many"),
            ("SCHEDULER_POLL_INTERVAL", "-1"),
            ("SCHEDULER_RETRY_MULTIPLIER", "0.1"),
            ("SCHEDULER_SCHEDULES", "{not json"),
            ("SCHEDULER_SCHEDULES", "[1, 2]"),
            ("SCHEDULER_SCHEDULES", '{"backup": {"job_type": "backup"}}'),
        ],
    )
    def test_invalid_values_raise_configuration_error(self, monkeypatch, tmp_path, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ConfigurationError):
            load_settings(env_file=tmp_path / "missing.env")
