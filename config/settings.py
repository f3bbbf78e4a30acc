"""Worker settings assembled from defaults, an optional JSON config file and the environment."""

from __future__ import annotations

import json
import os
import socket
from dataclasses import dataclass, fields, replace

from engine.paths import DB_PATH, LOG_DIR, STORAGE_ROOT, TEMP_DIR, resolve_config_path

ENV_PREFIX = "TRENDVAULT_"

STORAGE_PROVIDERS = {"local", "s3"}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120 Safari/537.36"
)


def default_worker_id():
    return f"worker-{socket.gethostname()}-{os.getpid()}"


@dataclass(frozen=True)
class WorkerSettings:
    worker_id: str = ""
    poll_interval_ms: int = 10000
    max_concurrent: int = 2
    extraction_timeout_seconds: float = 45.0
    transfer_timeout_seconds: float = 120.0
    connect_timeout_seconds: float = 15.0
    shutdown_grace_seconds: float = 2.0
    min_file_size_bytes: int = 1000
    max_attempts: int = 3
    storage_provider: str = "local"
    storage_bucket: str = "videos"
    storage_root: str = str(STORAGE_ROOT)
    s3_endpoint_url: str | None = None
    s3_region: str | None = None
    s3_access_key: str | None = None
    s3_secret_key: str | None = None
    signed_url_ttl_seconds: int = 3600
    db_path: str = str(DB_PATH)
    temp_dir: str = str(TEMP_DIR)
    log_dir: str = str(LOG_DIR)
    log_level: str = "INFO"
    user_agent: str = DEFAULT_USER_AGENT
    referer: str | None = None
    enable_browser_extraction: bool = False

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


_FIELD_TYPES = {f.name: f.type for f in fields(WorkerSettings)}


def load_config(path):
    with open(path, "r") as f:
        return json.load(f)


def _coerce(name, raw):
    kind = _FIELD_TYPES[name]
    if isinstance(raw, str):
        raw = raw.strip()
        if raw == "":
            return None if "None" in kind else raw
    if kind == "int":
        return int(raw)
    if kind == "float":
        return float(raw)
    if kind == "bool":
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
    return None if raw is None else str(raw)


def _env_overrides(env):
    overrides = {}
    for name in _FIELD_TYPES:
        key = f"{ENV_PREFIX}{name.upper()}"
        if key in env and str(env[key]).strip() != "":
            overrides[name] = env[key]
    return overrides


def validate_settings(settings: WorkerSettings) -> list[str]:
    errors = []
    if not settings.worker_id:
        errors.append("worker_id must not be empty")
    if settings.poll_interval_ms <= 0:
        errors.append("poll_interval_ms must be positive")
    if settings.max_concurrent < 1:
        errors.append("max_concurrent must be at least 1")
    if settings.extraction_timeout_seconds <= 0:
        errors.append("extraction_timeout_seconds must be positive")
    if settings.transfer_timeout_seconds <= 0:
        errors.append("transfer_timeout_seconds must be positive")
    if settings.connect_timeout_seconds <= 0:
        errors.append("connect_timeout_seconds must be positive")
    if settings.shutdown_grace_seconds < 0:
        errors.append("shutdown_grace_seconds must not be negative")
    if settings.min_file_size_bytes < 0:
        errors.append("min_file_size_bytes must not be negative")
    if settings.max_attempts < 1:
        errors.append("max_attempts must be at least 1")
    if settings.storage_provider not in STORAGE_PROVIDERS:
        errors.append(f"storage_provider must be one of {sorted(STORAGE_PROVIDERS)}")
    if not settings.storage_bucket:
        errors.append("storage_bucket must not be empty")
    if settings.signed_url_ttl_seconds <= 0:
        errors.append("signed_url_ttl_seconds must be positive")
    return errors


def load_settings(config_path=None, *, env=None, **overrides) -> WorkerSettings:
    """Build settings: defaults < JSON config file < ``TRENDVAULT_*`` env < keyword overrides.

    The config file is optional; a missing default file is ignored but an explicitly
    named file that does not exist is an error.
    """
    env = os.environ if env is None else env
    values = {}

    explicit_path = config_path or env.get(f"{ENV_PREFIX}CONFIG")
    path = resolve_config_path(explicit_path)
    if os.path.exists(path):
        config = load_config(path)
        if not isinstance(config, dict):
            raise ValueError("config must be a JSON object")
        unknown = sorted(set(config) - set(_FIELD_TYPES))
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        values.update(config)
    elif explicit_path:
        raise ValueError(f"config file not found: {path}")

    values.update(_env_overrides(env))
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        coerced = {name: _coerce(name, raw) for name, raw in values.items()}
    except (TypeError, ValueError) as exc:
        raise ValueError(f"invalid setting value: {exc}") from exc

    settings = replace(WorkerSettings(), **coerced)
    if not settings.worker_id:
        settings = replace(settings, worker_id=default_worker_id())

    errors = validate_settings(settings)
    if errors:
        raise ValueError("; ".join(errors))
    return settings
