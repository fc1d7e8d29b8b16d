from __future__ import annotations

import pytest

from herald.config import get_settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
  for name in ("HERALD_SERVICE_SECRET", "HERALD_STORE_BACKEND", "HERALD_REDIS_URL", "HERALD_PUSH_ENABLED", "HERALD_ALLOWED_ORIGINS", "HERALD_BATCH_SIZE", "HERALD_RATE_BACKOFF_MULTIPLIER"):
    monkeypatch.delenv(name, raising=False)


def test_defaults():
  settings = get_settings()
  assert settings.store_backend == "memory"
  assert settings.service_secret is None
  assert settings.batch_size == 10
  assert settings.max_retries == 3
  assert settings.circuit_failure_threshold == 5
  assert settings.push_enabled is False
  assert settings.allowed_origins == ()


def test_settings_are_cached():
  assert get_settings() is get_settings()


def test_allowed_origins_are_split(monkeypatch):
  monkeypatch.setenv("HERALD_ALLOWED_ORIGINS", "https://app.example.com, https://admin.example.com")
  assert get_settings().allowed_origins == ("https://app.example.com", "https://admin.example.com")


def test_wildcard_origin_is_rejected(monkeypatch):
  monkeypatch.setenv("HERALD_ALLOWED_ORIGINS", "*")
  with pytest.raises(ValueError, match="wildcard"):
    get_settings()


def test_redis_backend_requires_url(monkeypatch):
  monkeypatch.setenv("HERALD_STORE_BACKEND", "redis")
  with pytest.raises(ValueError, match="HERALD_REDIS_URL"):
    get_settings()


def test_unknown_backend_is_rejected(monkeypatch):
  monkeypatch.setenv("HERALD_STORE_BACKEND", "etcd")
  with pytest.raises(ValueError, match="HERALD_STORE_BACKEND"):
    get_settings()


def test_push_requires_vapid_keys(monkeypatch):
  monkeypatch.setenv("HERALD_PUSH_ENABLED", "true")
  monkeypatch.delenv("HERALD_PUSH_VAPID_PUBLIC_KEY", raising=False)
  with pytest.raises(ValueError, match="HERALD_PUSH_VAPID_PUBLIC_KEY"):
    get_settings()


def test_non_positive_batch_size_is_rejected(monkeypatch):
  monkeypatch.setenv("HERALD_BATCH_SIZE", "0")
  with pytest.raises(ValueError, match="HERALD_BATCH_SIZE"):
    get_settings()


def test_backoff_multiplier_must_grow(monkeypatch):
  monkeypatch.setenv("HERALD_RATE_BACKOFF_MULTIPLIER", "0.5")
  with pytest.raises(ValueError, match="HERALD_RATE_BACKOFF_MULTIPLIER"):
    get_settings()
