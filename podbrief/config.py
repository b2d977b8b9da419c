"""Configuration management for podbrief."""

import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Mapping

from .models import FALLBACK_ELIGIBLE_KINDS


class ConfigError(ValueError):
    """Invalid configuration value."""

    pass


@dataclass
class TaddyConfig:
    """Credentials for the primary transcript provider."""

    endpoint: str = "https://api.taddy.org/graphql"
    user_id_env: str = "TADDY_USER_ID"
    api_key_env: str = "TADDY_API_KEY"
    timeout: float = 30.0

    @property
    def user_id(self) -> str | None:
        """Get user ID from environment variable."""
        return os.environ.get(self.user_id_env)

    @property
    def api_key(self) -> str | None:
        """Get API key from environment variable."""
        return os.environ.get(self.api_key_env)


@dataclass
class FallbackConfig:
    """Configuration for the paid fallback transcriber (Deepgram)."""

    enabled: bool = True
    max_per_run: int = 50
    max_file_size_mb: int = 500
    statuses: list[str] = field(
        default_factory=lambda: ["no_match", "not_found", "error"]
    )
    model: str = "nova-3"
    api_key_env: str = "DEEPGRAM_API_KEY"
    timeout: float = 600.0

    @property
    def api_key(self) -> str | None:
        """Get API key from environment variable."""
        return os.environ.get(self.api_key_env)


@dataclass
class StorageConfig:
    """S3-compatible object storage for transcript blobs."""

    bucket: str = "transcripts"
    endpoint_env: str = "S3_ENDPOINT"
    access_key_env: str = "S3_ACCESS_KEY"
    secret_key_env: str = "S3_SECRET_KEY"

    @property
    def endpoint(self) -> str | None:
        return os.environ.get(self.endpoint_env)

    @property
    def access_key(self) -> str | None:
        return os.environ.get(self.access_key_env)

    @property
    def secret_key(self) -> str | None:
        return os.environ.get(self.secret_key_env)


@dataclass
class WorkerConfig:
    """Transcript worker run settings."""

    enabled: bool = True
    interval_seconds: int = 86400
    jitter_seconds: int = 300
    lookback_hours: int = 24
    max_requests: int = 15
    concurrency: int = 10
    use_advisory_lock: bool = True
    recheck_mode: bool = False
    recheck_count: int = 10


@dataclass
class Config:
    """Main configuration for podbrief."""

    worker: WorkerConfig = field(default_factory=WorkerConfig)
    fallback: FallbackConfig = field(default_factory=FallbackConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    taddy: TaddyConfig = field(default_factory=TaddyConfig)
    database_url: str | None = None


def load_config(path: str | None = None, env: Mapping[str, str] | None = None) -> Config:
    """Load configuration from a TOML file, then apply environment overrides.

    Args:
        path: Path to the config file. If None, starts from defaults.
        env: Environment mapping to read overrides from (defaults to os.environ).

    Returns:
        A validated Config object.

    Raises:
        FileNotFoundError: If path is given but does not exist.
        ConfigError: If any value is out of range.
    """
    if path is None:
        config = Config()
    else:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        import tomli

        with open(config_path, "rb") as f:
            data = tomli.load(f)
        config = _parse_config(data)

    apply_env_overrides(config, os.environ if env is None else env)
    validate_config(config)
    return config


def _parse_config(data: dict[str, Any]) -> Config:
    """Parse configuration dictionary into Config object.

    Args:
        data: Dictionary from TOML file.

    Returns:
        Parsed Config object.
    """
    worker_data = data.get("worker", {})
    fallback_data = data.get("fallback", {})
    storage_data = data.get("storage", {})
    taddy_data = data.get("taddy", {})

    defaults = WorkerConfig()
    worker_config = WorkerConfig(
        enabled=worker_data.get("enabled", defaults.enabled),
        interval_seconds=worker_data.get("interval_seconds", defaults.interval_seconds),
        jitter_seconds=worker_data.get("jitter_seconds", defaults.jitter_seconds),
        lookback_hours=worker_data.get("lookback_hours", defaults.lookback_hours),
        max_requests=worker_data.get("max_requests", defaults.max_requests),
        concurrency=worker_data.get("concurrency", defaults.concurrency),
        use_advisory_lock=worker_data.get("use_advisory_lock", defaults.use_advisory_lock),
        recheck_mode=worker_data.get("recheck_mode", defaults.recheck_mode),
        recheck_count=worker_data.get("recheck_count", defaults.recheck_count),
    )

    fallback_defaults = FallbackConfig()
    fallback_config = FallbackConfig(
        enabled=fallback_data.get("enabled", fallback_defaults.enabled),
        max_per_run=fallback_data.get("max_per_run", fallback_defaults.max_per_run),
        max_file_size_mb=fallback_data.get(
            "max_file_size_mb", fallback_defaults.max_file_size_mb
        ),
        statuses=list(fallback_data.get("statuses", fallback_defaults.statuses)),
        model=fallback_data.get("model", fallback_defaults.model),
        api_key_env=fallback_data.get("api_key_env", fallback_defaults.api_key_env),
        timeout=fallback_data.get("timeout", fallback_defaults.timeout),
    )

    storage_config = StorageConfig(
        bucket=storage_data.get("bucket", "transcripts"),
        endpoint_env=storage_data.get("endpoint_env", "S3_ENDPOINT"),
        access_key_env=storage_data.get("access_key_env", "S3_ACCESS_KEY"),
        secret_key_env=storage_data.get("secret_key_env", "S3_SECRET_KEY"),
    )

    taddy_config = TaddyConfig(
        endpoint=taddy_data.get("endpoint", "https://api.taddy.org/graphql"),
        user_id_env=taddy_data.get("user_id_env", "TADDY_USER_ID"),
        api_key_env=taddy_data.get("api_key_env", "TADDY_API_KEY"),
        timeout=taddy_data.get("timeout", 30.0),
    )

    return Config(
        worker=worker_config,
        fallback=fallback_config,
        storage=storage_config,
        taddy=taddy_config,
        database_url=data.get("database_url"),
    )


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f'Invalid {name}: "{raw}". Must be an integer.')


def apply_env_overrides(config: Config, env: Mapping[str, str]) -> Config:
    """Override config values from environment variables.

    Environment variables:
        TRANSCRIPT_WORKER_ENABLED: Set to "false" to disable the worker
        TRANSCRIPT_WORKER_INTERVAL: Seconds between scheduled runs
        TRANSCRIPT_WORKER_JITTER: Random jitter added to the interval
        TRANSCRIPT_LOOKBACK: Hours to look back for new episodes
        TRANSCRIPT_MAX_REQUESTS: Maximum episodes processed per run
        TRANSCRIPT_CONCURRENCY: Maximum concurrent episode tasks
        TRANSCRIPT_ADVISORY_LOCK: Set to "false" to skip the advisory lock
        TRANSCRIPT_WORKER_L10: Set to "true" to re-check recent episodes
        TRANSCRIPT_WORKER_L10_COUNT: How many episodes re-check mode covers
        DISABLE_DEEPGRAM_FALLBACK: Set to "true" to disable the fallback
        MAX_DEEPGRAM_FALLBACKS_PER_RUN: Fallback budget per run
        MAX_DEEPGRAM_FILE_SIZE_MB: Largest audio file sent to the fallback
        DEEPGRAM_FALLBACK_STATUSES: Comma-separated result kinds to recover
        TRANSCRIPTS_BUCKET: Object storage bucket name
        DATABASE_URL: SQLAlchemy database URL
    """
    worker = config.worker
    if "TRANSCRIPT_WORKER_ENABLED" in env:
        worker.enabled = env["TRANSCRIPT_WORKER_ENABLED"].lower() != "false"
    worker.interval_seconds = _env_int(env, "TRANSCRIPT_WORKER_INTERVAL", worker.interval_seconds)
    worker.jitter_seconds = _env_int(env, "TRANSCRIPT_WORKER_JITTER", worker.jitter_seconds)
    worker.lookback_hours = _env_int(env, "TRANSCRIPT_LOOKBACK", worker.lookback_hours)
    worker.max_requests = _env_int(env, "TRANSCRIPT_MAX_REQUESTS", worker.max_requests)
    worker.concurrency = _env_int(env, "TRANSCRIPT_CONCURRENCY", worker.concurrency)
    if "TRANSCRIPT_ADVISORY_LOCK" in env:
        worker.use_advisory_lock = env["TRANSCRIPT_ADVISORY_LOCK"].lower() != "false"
    if "TRANSCRIPT_WORKER_L10" in env:
        worker.recheck_mode = env["TRANSCRIPT_WORKER_L10"].lower() == "true"
    worker.recheck_count = _env_int(env, "TRANSCRIPT_WORKER_L10_COUNT", worker.recheck_count)

    fallback = config.fallback
    if "DISABLE_DEEPGRAM_FALLBACK" in env:
        fallback.enabled = env["DISABLE_DEEPGRAM_FALLBACK"].lower() != "true"
    fallback.max_per_run = _env_int(env, "MAX_DEEPGRAM_FALLBACKS_PER_RUN", fallback.max_per_run)
    fallback.max_file_size_mb = _env_int(
        env, "MAX_DEEPGRAM_FILE_SIZE_MB", fallback.max_file_size_mb
    )
    if env.get("DEEPGRAM_FALLBACK_STATUSES"):
        fallback.statuses = [
            s.strip() for s in env["DEEPGRAM_FALLBACK_STATUSES"].split(",") if s.strip()
        ]

    if env.get("TRANSCRIPTS_BUCKET"):
        config.storage.bucket = env["TRANSCRIPTS_BUCKET"]
    if env.get("DATABASE_URL"):
        config.database_url = env["DATABASE_URL"]

    return config


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if value < low or value > high:
        raise ConfigError(f'Invalid {name}: "{value}". Must be a number between {low} and {high}.')


def validate_config(config: Config) -> None:
    """Validate ranges and cross-field constraints.

    Raises:
        ConfigError: On the first invalid value.
    """
    worker = config.worker
    _check_range("TRANSCRIPT_LOOKBACK", worker.lookback_hours, 1, 168)
    _check_range("TRANSCRIPT_MAX_REQUESTS", worker.max_requests, 1, 100)
    _check_range("TRANSCRIPT_CONCURRENCY", worker.concurrency, 1, 50)
    _check_range("TRANSCRIPT_WORKER_L10_COUNT", worker.recheck_count, 1, 100)
    if worker.concurrency > worker.max_requests:
        raise ConfigError(
            f"TRANSCRIPT_CONCURRENCY ({worker.concurrency}) cannot exceed "
            f"TRANSCRIPT_MAX_REQUESTS ({worker.max_requests})."
        )
    if worker.interval_seconds < 60:
        raise ConfigError(
            f'Invalid TRANSCRIPT_WORKER_INTERVAL: "{worker.interval_seconds}". Must be at least 60.'
        )
    if worker.jitter_seconds < 0:
        raise ConfigError(
            f'Invalid TRANSCRIPT_WORKER_JITTER: "{worker.jitter_seconds}". Must not be negative.'
        )

    fallback = config.fallback
    _check_range("MAX_DEEPGRAM_FALLBACKS_PER_RUN", fallback.max_per_run, 0, 1000)
    _check_range("MAX_DEEPGRAM_FILE_SIZE_MB", fallback.max_file_size_mb, 1, 2000)
    unknown = set(fallback.statuses) - FALLBACK_ELIGIBLE_KINDS
    if unknown:
        raise ConfigError(
            f"Invalid DEEPGRAM_FALLBACK_STATUSES: {sorted(unknown)}. "
            f"Allowed: {sorted(FALLBACK_ELIGIBLE_KINDS)}."
        )


def config_summary(config: Config) -> dict[str, Any]:
    """Get a loggable view of the configuration (no secrets)."""
    return {
        "worker": asdict(config.worker),
        "fallback": {
            "enabled": config.fallback.enabled,
            "max_per_run": config.fallback.max_per_run,
            "max_file_size_mb": config.fallback.max_file_size_mb,
            "statuses": list(config.fallback.statuses),
            "model": config.fallback.model,
            "has_api_key": bool(config.fallback.api_key),
        },
        "storage": {
            "bucket": config.storage.bucket,
            "endpoint": config.storage.endpoint,
        },
        "taddy": {
            "endpoint": config.taddy.endpoint,
            "has_api_key": bool(config.taddy.api_key),
        },
        "database_url": _redact_url(config.database_url),
    }


def _redact_url(url: str | None) -> str | None:
    if not url:
        return url
    from sqlalchemy.engine import make_url

    return make_url(url).render_as_string(hide_password=True)
