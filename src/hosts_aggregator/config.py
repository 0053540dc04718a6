"""
Configuration dataclasses for the hosts aggregator.

This module defines all configuration structures used throughout the system,
including fetching, health tracking, normalization, output, scheduling,
persistence, logging and HTTP server settings, together with helpers to load
them from a JSON file and from ``HOSTS_AGGREGATOR_*`` environment variables.
"""

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


ENV_PREFIX = "HOSTS_AGGREGATOR_"
DEFAULT_HOME = Path.home() / ".hosts_aggregator"


@dataclass
class FetchConfig:
    """Source fetching configuration."""

    timeout_seconds: float = 10.0
    max_concurrency: int = 8
    user_agent: str = "hosts-aggregator/1.0"
    require_tls: bool = False
    max_content_bytes: int = 50 * 1024 * 1024


@dataclass
class HealthConfig:
    """Source health tracking configuration."""

    failure_threshold: int = 3
    log_retention: int = 100  # Fetch logs kept per source


@dataclass
class NormalizerConfig:
    """Domain normalization configuration."""

    strip_www: bool = False


@dataclass
class OutputConfig:
    """Unified hosts file configuration."""

    output_dir: Path = field(default_factory=lambda: DEFAULT_HOME / "output")
    blocking_ip: str = "0.0.0.0"
    include_allow_section: bool = True
    retain_files: int = 10  # newest generated files kept, 0 keeps all


@dataclass
class ScheduleConfig:
    """Scheduled and automatic aggregation configuration."""

    cron: Optional[str] = None
    auto_aggregate_on_change: bool = True
    backoff_base_seconds: float = 300.0
    backoff_max_seconds: float = 86400.0


@dataclass
class PersistenceConfig:
    """Persistence and state storage configuration."""

    state_file_path: Optional[Path] = None
    hmac_secret: str = "default-secret-change-me"


@dataclass
class LoggingConfig:
    """Logging and audit configuration."""

    level: str = "info"
    audit_mode: bool = False
    audit_signing_key: Optional[str] = None
    output_format: str = "text"  # 'json', 'text', 'both'


@dataclass
class ServerConfig:
    """HTTP server configuration."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class AppConfig:
    """Main configuration combining all sub-configurations."""

    fetch: FetchConfig = field(default_factory=FetchConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    normalizer: NormalizerConfig = field(default_factory=NormalizerConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def create_default_config(
    state_file: Optional[Path] = None,
    output_dir: Optional[Path] = None,
    hmac_secret: str = "default-secret-change-me",
) -> AppConfig:
    """
    Create a default configuration.

    Args:
        state_file: Path to state file for persistence
        output_dir: Directory receiving unified hosts files
        hmac_secret: Secret for HMAC protection

    Returns:
        AppConfig with default settings
    """
    if state_file is None:
        state_file = DEFAULT_HOME / "state.json"

    config = AppConfig(
        persistence=PersistenceConfig(
            state_file_path=state_file,
            hmac_secret=hmac_secret,
        ),
    )
    if output_dir is not None:
        config.output.output_dir = output_dir
    return config


def validate_config(config: AppConfig) -> list[str]:
    """
    Check a configuration for invalid values.

    Returns:
        List of human-readable problems, empty when the config is valid
    """
    problems = []
    if config.fetch.timeout_seconds <= 0:
        problems.append("fetch.timeout_seconds must be positive")
    if config.fetch.max_concurrency < 1:
        problems.append("fetch.max_concurrency must be at least 1")
    if config.fetch.max_content_bytes < 1:
        problems.append("fetch.max_content_bytes must be at least 1")
    if config.health.failure_threshold < 1:
        problems.append("health.failure_threshold must be at least 1")
    if config.health.log_retention < 1:
        problems.append("health.log_retention must be at least 1")
    if config.output.retain_files < 0:
        problems.append("output.retain_files must not be negative")
    if config.schedule.backoff_base_seconds < 0:
        problems.append("schedule.backoff_base_seconds must not be negative")
    if config.schedule.backoff_max_seconds < config.schedule.backoff_base_seconds:
        problems.append("schedule.backoff_max_seconds must be >= backoff_base_seconds")
    if config.schedule.cron:
        from .scheduler import CronParser

        try:
            CronParser.parse(config.schedule.cron)
        except ValueError as e:
            problems.append(f"schedule.cron is invalid: {e}")
    if config.logging.level not in ("debug", "info", "warn", "error"):
        problems.append(f"logging.level must be debug/info/warn/error, got {config.logging.level!r}")
    if config.logging.output_format not in ("json", "text", "both"):
        problems.append(f"logging.output_format must be json/text/both, got {config.logging.output_format!r}")
    if config.logging.audit_mode and not config.logging.audit_signing_key:
        problems.append("logging.audit_signing_key is required in audit mode")
    if not 0 < config.server.port < 65536:
        problems.append("server.port must be between 1 and 65535")
    return problems


def load_config_from_file(config_path: Path) -> Optional[AppConfig]:
    """
    Load configuration from a JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        AppConfig if successful, None otherwise
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = json.load(f)

        defaults = AppConfig()

        fetch_data = data.get("fetch", {})
        fetch = FetchConfig(
            timeout_seconds=fetch_data.get("timeout_seconds", defaults.fetch.timeout_seconds),
            max_concurrency=fetch_data.get("max_concurrency", defaults.fetch.max_concurrency),
            user_agent=fetch_data.get("user_agent", defaults.fetch.user_agent),
            require_tls=fetch_data.get("require_tls", False),
            max_content_bytes=fetch_data.get("max_content_bytes", defaults.fetch.max_content_bytes),
        )

        health_data = data.get("health", {})
        health = HealthConfig(
            failure_threshold=health_data.get("failure_threshold", 3),
            log_retention=health_data.get("log_retention", 100),
        )

        normalizer = NormalizerConfig(
            strip_www=data.get("normalizer", {}).get("strip_www", False),
        )

        output_data = data.get("output", {})
        output_dir = output_data.get("output_dir")
        output = OutputConfig(
            output_dir=Path(output_dir) if output_dir else defaults.output.output_dir,
            blocking_ip=output_data.get("blocking_ip", "0.0.0.0"),
            include_allow_section=output_data.get("include_allow_section", True),
            retain_files=output_data.get("retain_files", defaults.output.retain_files),
        )

        schedule_data = data.get("schedule", {})
        schedule = ScheduleConfig(
            cron=schedule_data.get("cron"),
            auto_aggregate_on_change=schedule_data.get("auto_aggregate_on_change", True),
            backoff_base_seconds=schedule_data.get(
                "backoff_base_seconds", defaults.schedule.backoff_base_seconds
            ),
            backoff_max_seconds=schedule_data.get(
                "backoff_max_seconds", defaults.schedule.backoff_max_seconds
            ),
        )

        persistence_data = data.get("persistence", {})
        state_file_path = persistence_data.get("state_file_path")
        persistence = PersistenceConfig(
            state_file_path=Path(state_file_path) if state_file_path else None,
            hmac_secret=persistence_data.get("hmac_secret", "default-secret-change-me"),
        )

        logging_data = data.get("logging", {})
        logging_config = LoggingConfig(
            level=logging_data.get("level", "info"),
            audit_mode=logging_data.get("audit_mode", False),
            audit_signing_key=logging_data.get("audit_signing_key"),
            output_format=logging_data.get("output_format", "text"),
        )

        server_data = data.get("server", {})
        server = ServerConfig(
            host=server_data.get("host", "127.0.0.1"),
            port=server_data.get("port", 8000),
        )

        return AppConfig(
            fetch=fetch,
            health=health,
            normalizer=normalizer,
            output=output,
            schedule=schedule,
            persistence=persistence,
            logging=logging_config,
            server=server,
        )

    except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        return None
    except FileNotFoundError:
        return None


def config_to_dict(config: AppConfig) -> dict:
    """Convert a configuration to the JSON file layout."""
    return {
        "fetch": {
            "timeout_seconds": config.fetch.timeout_seconds,
            "max_concurrency": config.fetch.max_concurrency,
            "user_agent": config.fetch.user_agent,
            "require_tls": config.fetch.require_tls,
            "max_content_bytes": config.fetch.max_content_bytes,
        },
        "health": {
            "failure_threshold": config.health.failure_threshold,
            "log_retention": config.health.log_retention,
        },
        "normalizer": {
            "strip_www": config.normalizer.strip_www,
        },
        "output": {
            "output_dir": str(config.output.output_dir),
            "blocking_ip": config.output.blocking_ip,
            "include_allow_section": config.output.include_allow_section,
            "retain_files": config.output.retain_files,
        },
        "schedule": {
            "cron": config.schedule.cron,
            "auto_aggregate_on_change": config.schedule.auto_aggregate_on_change,
            "backoff_base_seconds": config.schedule.backoff_base_seconds,
            "backoff_max_seconds": config.schedule.backoff_max_seconds,
        },
        "persistence": {
            "state_file_path": (
                str(config.persistence.state_file_path)
                if config.persistence.state_file_path else None
            ),
            "hmac_secret": config.persistence.hmac_secret,
        },
        "logging": {
            "level": config.logging.level,
            "audit_mode": config.logging.audit_mode,
            "audit_signing_key": config.logging.audit_signing_key,
            "output_format": config.logging.output_format,
        },
        "server": {
            "host": config.server.host,
            "port": config.server.port,
        },
    }


def save_config_to_file(config: AppConfig, config_path: Path) -> bool:
    """
    Save configuration to a JSON file.

    Args:
        config: AppConfig to save
        config_path: Path to save the configuration

    Returns:
        True if successful, False otherwise
    """
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            json.dump(config_to_dict(config), f, indent=2, ensure_ascii=False)
        return True
    except (OSError, TypeError) as e:
        print(f"Error saving config: {e}", file=sys.stderr)
        return False


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(ENV_PREFIX + name, str(default)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(ENV_PREFIX + name, str(default)))
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _str_env(name: str, default: Optional[str]) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None:
        return default
    return value.strip() or default


def apply_env_overrides(config: AppConfig, load_env_file: bool = True) -> AppConfig:
    """
    Override configuration values from HOSTS_AGGREGATOR_* environment variables.

    A ``.env`` file in the working directory is read first when
    ``load_env_file`` is set. Existing process variables take precedence
    over the file.
    """
    if load_env_file:
        load_dotenv()

    config.fetch.timeout_seconds = _float_env("FETCH_TIMEOUT", config.fetch.timeout_seconds)
    config.fetch.max_concurrency = _int_env("MAX_CONCURRENCY", config.fetch.max_concurrency)
    config.fetch.user_agent = _str_env("USER_AGENT", config.fetch.user_agent)
    config.fetch.require_tls = _bool_env("REQUIRE_TLS", config.fetch.require_tls)

    config.health.failure_threshold = _int_env("FAILURE_THRESHOLD", config.health.failure_threshold)

    config.normalizer.strip_www = _bool_env("STRIP_WWW", config.normalizer.strip_www)

    output_dir = _str_env("OUTPUT_DIR", None)
    if output_dir:
        config.output.output_dir = Path(output_dir)
    config.output.blocking_ip = _str_env("BLOCKING_IP", config.output.blocking_ip)
    config.output.retain_files = _int_env("RETAIN_FILES", config.output.retain_files)

    config.schedule.cron = _str_env("CRON", config.schedule.cron)
    config.schedule.auto_aggregate_on_change = _bool_env(
        "AUTO_AGGREGATE", config.schedule.auto_aggregate_on_change
    )

    state_file = _str_env("STATE_FILE", None)
    if state_file:
        config.persistence.state_file_path = Path(state_file)
    config.persistence.hmac_secret = _str_env("HMAC_SECRET", config.persistence.hmac_secret)

    config.logging.level = _str_env("LOG_LEVEL", config.logging.level)
    config.logging.output_format = _str_env("LOG_FORMAT", config.logging.output_format)

    config.server.host = _str_env("HOST", config.server.host)
    config.server.port = _int_env("PORT", config.server.port)

    return config


def load_config(config_path: Optional[Path] = None, load_env_file: bool = True) -> AppConfig:
    """
    Resolve the effective configuration: file (or defaults), then environment.

    Raises:
        ValueError: If an explicitly given config file cannot be parsed
    """
    if config_path is not None and config_path.exists():
        config = load_config_from_file(config_path)
        if config is None:
            raise ValueError(f"Invalid configuration file: {config_path}")
    else:
        config = create_default_config()
    return apply_env_overrides(config, load_env_file=load_env_file)
