"""Settings loading and runtime wiring."""

from unittest.mock import patch

import pytest
from pydantic import ValidationError

from chatcoord.config import Settings, get_settings, reset_settings_cache
from chatcoord.service.runtime import Runtime, get_runtime, reset_runtime_for_tests
from chatcoord.storage.memory import MemoryKeyValueStore
from chatcoord.storage.redis_store import RedisKeyValueStore


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("SESSION_TTL_SECONDS", "BATCH_TTL_SECONDS", "JOB_MAX_CONCURRENCY"):
            monkeypatch.delenv(name, raising=False)
        settings = Settings.from_env()
        assert settings.session_ttl_seconds == 3600
        assert settings.batch_ttl_seconds == 900
        assert settings.job_max_concurrency == 3
        assert settings.job_failed_retention_seconds > settings.job_completed_retention_seconds

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LOCK_DEFAULT_TTL_MS", "2500")
        monkeypatch.setenv("ALLOW_REDIS_FALLBACK_DEV", "false")
        settings = Settings.from_env()
        assert settings.lock_default_ttl_ms == 2500
        assert settings.allow_store_fallback is False

    def test_dotenv_values_used_when_not_exported(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("BATCH_TTL_SECONDS", raising=False)
        (tmp_path / ".env").write_text("BATCH_TTL_SECONDS=120\n")
        assert Settings.from_env().batch_ttl_seconds == 120

    @pytest.mark.parametrize(
        "env,value",
        [("SESSION_TTL_SECONDS", "0"), ("JOB_MAX_CONCURRENCY", "-1"), ("JOB_POLL_INTERVAL_SECONDS", "0")],
    )
    def test_rejects_non_positive_values(self, monkeypatch, env, value):
        monkeypatch.setenv(env, value)
        with pytest.raises(ValidationError):
            Settings.from_env()

    def test_settings_are_cached_until_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings() is not first


class TestRuntime:
    def test_memory_store_wiring(self):
        runtime = get_runtime()
        assert isinstance(runtime.store, MemoryKeyValueStore)
        assert runtime.sessions.store is runtime.store
        assert runtime.locks.store is runtime.store
        assert runtime.jobs.name == "reports"
        assert runtime.worker.concurrency == runtime.settings.job_max_concurrency

    def test_rate_limiter_fail_open_is_configurable(self):
        assert get_runtime().safe_ops.rate_limiter.fail_open is True
        settings = Settings(use_memory_store=True, rate_limit_fail_open=False)
        assert Runtime(settings).safe_ops.rate_limiter.fail_open is False

    def test_reset_replaces_singleton(self):
        first = get_runtime()
        assert reset_runtime_for_tests() is not first

    def test_unreachable_redis_is_fatal_outside_test_mode(self):
        settings = Settings(use_memory_store=False, test_mode=False, allow_store_fallback=False)
        with patch.object(
            RedisKeyValueStore, "verify_connection", side_effect=ConnectionError("refused")
        ):
            with pytest.raises(RuntimeError):
                Runtime(settings)

    def test_unreachable_redis_falls_back_when_allowed(self):
        settings = Settings(use_memory_store=False, test_mode=False, allow_store_fallback=True)
        with patch.object(
            RedisKeyValueStore, "verify_connection", side_effect=ConnectionError("refused")
        ):
            runtime = Runtime(settings)
        assert runtime.store.backend == "memory"

    def test_reachable_redis_is_used(self):
        settings = Settings(use_memory_store=False)
        with patch.object(RedisKeyValueStore, "verify_connection", return_value=None):
            runtime = Runtime(settings)
        assert runtime.store.backend == "redis"

    def test_attach_collaborators_registers_report_handler(self):
        runtime = get_runtime()
        generator = object()
        runtime.attach_collaborators(report_generator=generator)
        assert "generate-report" in runtime.worker.handlers
        assert "cleanup-temp-file" in runtime.worker.handlers
