"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

from herald.utils.env import default_env_path, load_env_file

load_env_file(default_env_path(), override=False)

_STORE_BACKENDS = {"memory", "redis"}


@dataclass(frozen=True)
class Settings:
  """Typed settings for the Herald notification engine."""

  environment: str
  debug: bool
  allowed_origins: tuple[str, ...]
  log_dir: str | None
  log_max_bytes: int
  log_backup_count: int
  service_secret: str | None
  store_backend: str
  redis_url: str | None
  batch_size: int
  max_batch_wait_ms: int
  max_queue_size: int
  partition_spill_threshold: int
  queue_high_water_mark: int
  memory_pressure_mb: int
  memory_limit_mb: int
  dedup_ttl_seconds: int
  rate_max_per_minute: int
  rate_max_per_hour: int
  rate_max_per_day: int
  rate_burst_limit: int
  rate_burst_window_seconds: int
  rate_global_max_per_minute: int
  rate_global_max_per_hour: int
  rate_backoff_multiplier: float
  rate_max_backoff_ms: int
  rate_breach_decay_seconds: int
  circuit_failure_threshold: int
  circuit_reset_timeout_ms: int
  circuit_monitoring_window_ms: int
  circuit_half_open_max_calls: int
  circuit_call_timeout_ms: int
  dispatch_concurrency: int
  max_retries: int
  retry_delay_ms: int
  circuit_open_retry_ms: int
  scheduler_enabled: bool
  scheduler_interval_seconds: float
  metrics_interval_seconds: float
  preferences_url: str | None
  preferences_cache_ttl_seconds: int
  preferences_timeout_seconds: float
  push_enabled: bool
  push_vapid_public_key: str | None
  push_vapid_private_key: str | None
  push_vapid_sub: str | None


def _parse_origins(raw: str | None) -> tuple[str, ...]:
  if not raw:
    return ()

  origins = [origin.strip() for origin in raw.split(",") if origin.strip()]

  if "*" in origins:
    raise ValueError("HERALD_ALLOWED_ORIGINS must not include wildcard origins.")

  return tuple(origins)


def _parse_bool(raw: str | None, *, default: bool = False) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None or raw.strip() == "":
    return default

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _positive_int(name: str, default: int) -> int:
  value = int(os.getenv(name, str(default)))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _positive_float(name: str, default: float) -> float:
  value = float(os.getenv(name, str(default)))
  if value <= 0:
    raise ValueError(f"{name} must be a positive number.")
  return value


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("HERALD_ENV", "development").lower()
  debug = _parse_bool(os.getenv("HERALD_DEBUG"))

  log_max_bytes = _positive_int("HERALD_LOG_MAX_BYTES", 10 * 1024 * 1024)
  log_backup_count = int(os.getenv("HERALD_LOG_BACKUP_COUNT", "5"))
  if log_backup_count < 0:
    raise ValueError("HERALD_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Resolve the shared store; every engine component reads and writes through it.
  store_backend = (os.getenv("HERALD_STORE_BACKEND") or "memory").strip().lower()
  if store_backend not in _STORE_BACKENDS:
    raise ValueError(f"HERALD_STORE_BACKEND must be one of {sorted(_STORE_BACKENDS)}.")

  redis_url = _optional_str(os.getenv("HERALD_REDIS_URL"))
  if store_backend == "redis" and not redis_url:
    raise ValueError("HERALD_REDIS_URL must be set when HERALD_STORE_BACKEND is 'redis'.")

  rate_backoff_multiplier = float(os.getenv("HERALD_RATE_BACKOFF_MULTIPLIER", "2.0"))
  if rate_backoff_multiplier < 1.0:
    raise ValueError("HERALD_RATE_BACKOFF_MULTIPLIER must be at least 1.0.")

  max_retries = int(os.getenv("HERALD_MAX_RETRIES", "3"))
  if max_retries < 0:
    raise ValueError("HERALD_MAX_RETRIES must be zero or a positive integer.")

  push_enabled = _parse_bool(os.getenv("HERALD_PUSH_ENABLED"))
  push_vapid_public_key = _optional_str(os.getenv("HERALD_PUSH_VAPID_PUBLIC_KEY"))
  push_vapid_private_key = _optional_str(os.getenv("HERALD_PUSH_VAPID_PRIVATE_KEY"))
  push_vapid_sub = _optional_str(os.getenv("HERALD_PUSH_VAPID_SUB"))

  # Validate push configuration only when push delivery is enabled.
  if push_enabled:
    if not push_vapid_public_key:
      raise ValueError("HERALD_PUSH_VAPID_PUBLIC_KEY must be set when push delivery is enabled.")

    if not push_vapid_private_key:
      raise ValueError("HERALD_PUSH_VAPID_PRIVATE_KEY must be set when push delivery is enabled.")

    if not push_vapid_sub:
      raise ValueError("HERALD_PUSH_VAPID_SUB must be set when push delivery is enabled.")

    if not (push_vapid_sub.startswith("mailto:") or push_vapid_sub.startswith("https://")):
      raise ValueError("HERALD_PUSH_VAPID_SUB must start with 'mailto:' or 'https://'.")

  return Settings(
    environment=environment,
    debug=debug,
    allowed_origins=_parse_origins(os.getenv("HERALD_ALLOWED_ORIGINS")),
    log_dir=_optional_str(os.getenv("HERALD_LOG_DIR")),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    service_secret=_optional_str(os.getenv("HERALD_SERVICE_SECRET")),
    store_backend=store_backend,
    redis_url=redis_url,
    batch_size=_positive_int("HERALD_BATCH_SIZE", 10),
    max_batch_wait_ms=_positive_int("HERALD_MAX_BATCH_WAIT_MS", 30000),
    max_queue_size=_positive_int("HERALD_MAX_QUEUE_SIZE", 10000),
    partition_spill_threshold=_positive_int("HERALD_PARTITION_SPILL_THRESHOLD", 100),
    queue_high_water_mark=_positive_int("HERALD_QUEUE_HIGH_WATER_MARK", 500),
    memory_pressure_mb=_positive_int("HERALD_MEMORY_PRESSURE_MB", 200),
    memory_limit_mb=_positive_int("HERALD_MEMORY_LIMIT_MB", 256),
    dedup_ttl_seconds=_positive_int("HERALD_DEDUP_TTL_SECONDS", 300),
    rate_max_per_minute=_positive_int("HERALD_RATE_MAX_PER_MINUTE", 10),
    rate_max_per_hour=_positive_int("HERALD_RATE_MAX_PER_HOUR", 100),
    rate_max_per_day=_positive_int("HERALD_RATE_MAX_PER_DAY", 500),
    rate_burst_limit=_positive_int("HERALD_RATE_BURST_LIMIT", 5),
    rate_burst_window_seconds=_positive_int("HERALD_RATE_BURST_WINDOW_SECONDS", 30),
    rate_global_max_per_minute=_positive_int("HERALD_RATE_GLOBAL_MAX_PER_MINUTE", 1000),
    rate_global_max_per_hour=_positive_int("HERALD_RATE_GLOBAL_MAX_PER_HOUR", 10000),
    rate_backoff_multiplier=rate_backoff_multiplier,
    rate_max_backoff_ms=_positive_int("HERALD_RATE_MAX_BACKOFF_MS", 300000),
    rate_breach_decay_seconds=_positive_int("HERALD_RATE_BREACH_DECAY_SECONDS", 3600),
    circuit_failure_threshold=_positive_int("HERALD_CIRCUIT_FAILURE_THRESHOLD", 5),
    circuit_reset_timeout_ms=_positive_int("HERALD_CIRCUIT_RESET_TIMEOUT_MS", 60000),
    circuit_monitoring_window_ms=_positive_int("HERALD_CIRCUIT_MONITORING_WINDOW_MS", 300000),
    circuit_half_open_max_calls=_positive_int("HERALD_CIRCUIT_HALF_OPEN_MAX_CALLS", 3),
    circuit_call_timeout_ms=_positive_int("HERALD_CIRCUIT_CALL_TIMEOUT_MS", 5000),
    dispatch_concurrency=_positive_int("HERALD_DISPATCH_CONCURRENCY", 5),
    max_retries=max_retries,
    retry_delay_ms=_positive_int("HERALD_RETRY_DELAY_MS", 5000),
    circuit_open_retry_ms=_positive_int("HERALD_CIRCUIT_OPEN_RETRY_MS", 60000),
    scheduler_enabled=_parse_bool(os.getenv("HERALD_SCHEDULER_ENABLED"), default=True),
    scheduler_interval_seconds=_positive_float("HERALD_SCHEDULER_INTERVAL_SECONDS", 15.0),
    metrics_interval_seconds=_positive_float("HERALD_METRICS_INTERVAL_SECONDS", 30.0),
    preferences_url=_optional_str(os.getenv("HERALD_PREFERENCES_URL")),
    preferences_cache_ttl_seconds=_positive_int("HERALD_PREFERENCES_CACHE_TTL_SECONDS", 60),
    preferences_timeout_seconds=_positive_float("HERALD_PREFERENCES_TIMEOUT_SECONDS", 2.0),
    push_enabled=push_enabled,
    push_vapid_public_key=push_vapid_public_key,
    push_vapid_private_key=push_vapid_private_key,
    push_vapid_sub=push_vapid_sub,
  )
