"""Configuration loading and validation."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("~/.config/declutter/config.yaml")
DEFAULT_ROOT_DIR = Path("~/.local/lib/declutter")
DEFAULT_LOG_LEVEL = "info"
DEFAULT_MARKER_LABEL = "Declutter/Archived"
DEFAULT_SIGNAL_PROVENANCE = "classifier"
BULK_MODIFY_LIMIT = 1000


class ConfigError(ValueError):
    """Raised when configuration is invalid or missing."""


@dataclass(frozen=True)
class LoggingConfig:
    """Logging-related configuration."""

    level: str = DEFAULT_LOG_LEVEL
    debug_file: bool = False


@dataclass(frozen=True)
class ClassificationConfig:
    """Controls whether upstream classifier signals are trusted."""

    enabled: bool = False
    provenance: str = DEFAULT_SIGNAL_PROVENANCE
    min_confidence: float | None = None


@dataclass(frozen=True)
class ExecutionLimits:
    """Bounds applied to every pipeline invocation."""

    max_per_run: int = 100
    page_size: int = 500
    max_scan: int = 50_000
    concurrency: int = 3
    batch_delay: float = 0.5
    timeout: float = 30.0
    bulk_batch_size: int = BULK_MODIFY_LIMIT


@dataclass(frozen=True)
class GmailAccountConfig:
    credentials_path: Path
    token_path: Path
    user_id: str = "me"


@dataclass(frozen=True)
class AccountConfig:
    """Configured mailbox account."""

    name: str
    gmail: GmailAccountConfig | None = None


@dataclass(frozen=True)
class Config:
    """Fully parsed configuration."""

    root_dir: Path
    rules_dir: Path
    items_dir: Path
    accounts: list[AccountConfig]
    marker_label: str = DEFAULT_MARKER_LABEL
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    execution: ExecutionLimits = field(default_factory=ExecutionLimits)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def account(self, name: str) -> AccountConfig:
        for account in self.accounts:
            if account.name == name:
                return account
        raise ConfigError(f"Unknown account '{name}'.")


def load_config(path: Path | str | None = None) -> Config:
    """Load and validate configuration from YAML."""

    config_path = resolve_config_path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with config_path.open("r", encoding="utf-8") as handle:
        try:
            raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be a mapping.")

    return _parse_config(raw)


def resolve_config_path(explicit: Path | str | None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    env_path = os.environ.get("DECLUTTER_CONFIG")
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_CONFIG_PATH.expanduser()


def _parse_config(raw: dict[str, Any]) -> Config:
    root_dir = Path(raw.get("root_dir") or raw.get("rootdir") or DEFAULT_ROOT_DIR).expanduser()
    rules_dir = _optional_path(raw.get("rules_dir"), "rules_dir") or root_dir / "rules"
    items_dir = _optional_path(raw.get("items_dir"), "items_dir") or root_dir / "items"
    marker = raw.get("marker_label", DEFAULT_MARKER_LABEL)
    if not isinstance(marker, str) or not marker.strip():
        raise ConfigError("marker_label must be a non-empty string.")
    return Config(
        root_dir=root_dir,
        rules_dir=rules_dir,
        items_dir=items_dir,
        accounts=_parse_accounts(raw.get("accounts")),
        marker_label=marker.strip(),
        classification=_parse_classification(raw.get("classification")),
        execution=_parse_execution(raw.get("execution")),
        logging=_parse_logging(raw.get("logging")),
    )


def _optional_path(value: Any, field_name: str) -> Path | None:
    if value is None:
        return None
    if not isinstance(value, (str, Path)) or not str(value).strip():
        raise ConfigError(f"{field_name} must be a path string.")
    return Path(value).expanduser()


def _parse_accounts(value: Any) -> list[AccountConfig]:
    if value is None:
        raise ConfigError("At least one account must be configured.")
    if not isinstance(value, list):
        raise ConfigError("accounts must be a list.")
    if not value:
        raise ConfigError("At least one account must be configured.")

    accounts: list[AccountConfig] = []
    seen: set[str] = set()
    for idx, entry in enumerate(value, start=1):
        if not isinstance(entry, dict):
            raise ConfigError(f"accounts[{idx}] must be a mapping.")
        name = entry.get("name")
        if not name or not str(name).strip():
            raise ConfigError(f"accounts[{idx}] requires 'name'.")
        name = str(name).strip()
        if name in seen:
            raise ConfigError(f"accounts[{idx}] duplicates account '{name}'.")
        seen.add(name)
        accounts.append(
            AccountConfig(name=name, gmail=_parse_gmail(entry.get("gmail"), f"accounts[{idx}]"))
        )
    return accounts


def _parse_gmail(value: Any, prefix: str) -> GmailAccountConfig | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"{prefix}.gmail must be a mapping.")
    credentials = value.get("credentials_path")
    token = value.get("token_path")
    if not credentials or not token:
        raise ConfigError(f"{prefix}.gmail requires 'credentials_path' and 'token_path'.")
    return GmailAccountConfig(
        credentials_path=Path(credentials).expanduser(),
        token_path=Path(token).expanduser(),
        user_id=str(value.get("user_id") or "me"),
    )


def _parse_classification(value: Any) -> ClassificationConfig:
    if value is None:
        return ClassificationConfig()
    if not isinstance(value, dict):
        raise ConfigError("classification must be a mapping.")
    provenance = str(value.get("provenance") or DEFAULT_SIGNAL_PROVENANCE).strip()
    min_confidence = value.get("min_confidence")
    if min_confidence is not None:
        min_confidence = _number(min_confidence, "classification.min_confidence")
        if not 0.0 <= min_confidence <= 1.0:
            raise ConfigError("classification.min_confidence must be between 0 and 1.")
    return ClassificationConfig(
        enabled=bool(value.get("enabled", False)),
        provenance=provenance or DEFAULT_SIGNAL_PROVENANCE,
        min_confidence=min_confidence,
    )


def _parse_execution(value: Any) -> ExecutionLimits:
    if value is None:
        return ExecutionLimits()
    if not isinstance(value, dict):
        raise ConfigError("execution must be a mapping.")
    defaults = ExecutionLimits()
    limits = ExecutionLimits(
        max_per_run=_positive_int(value.get("max_per_run", defaults.max_per_run), "max_per_run"),
        page_size=_positive_int(value.get("page_size", defaults.page_size), "page_size"),
        max_scan=_positive_int(value.get("max_scan", defaults.max_scan), "max_scan"),
        concurrency=_positive_int(value.get("concurrency", defaults.concurrency), "concurrency"),
        batch_delay=_number(value.get("batch_delay", defaults.batch_delay), "execution.batch_delay"),
        timeout=_number(value.get("timeout", defaults.timeout), "execution.timeout"),
        bulk_batch_size=_positive_int(
            value.get("bulk_batch_size", defaults.bulk_batch_size), "bulk_batch_size"
        ),
    )
    if limits.batch_delay < 0:
        raise ConfigError("execution.batch_delay cannot be negative.")
    if limits.timeout <= 0:
        raise ConfigError("execution.timeout must be positive.")
    if limits.bulk_batch_size > BULK_MODIFY_LIMIT:
        raise ConfigError(f"execution.bulk_batch_size cannot exceed {BULK_MODIFY_LIMIT}.")
    if limits.concurrency > 5:
        LOGGER.warning(
            "execution.concurrency=%s exceeds the recommended window of 5 per account.",
            limits.concurrency,
        )
    return limits


def _positive_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"execution.{field_name} must be a positive integer.")
    return value


def _number(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{field_name} must be a number.")
    number = float(value)
    if not math.isfinite(number):
        raise ConfigError(f"{field_name} must be finite.")
    return number


def _parse_logging(value: Any) -> LoggingConfig:
    if value is None:
        return LoggingConfig()
    if not isinstance(value, dict):
        raise ConfigError("logging must be a mapping.")
    level = str(value.get("level", DEFAULT_LOG_LEVEL)).lower()
    debug_file = bool(value.get("debug_file", False))
    return LoggingConfig(level=level, debug_file=debug_file)


__all__ = [
    "AccountConfig",
    "BULK_MODIFY_LIMIT",
    "ClassificationConfig",
    "Config",
    "ConfigError",
    "ExecutionLimits",
    "GmailAccountConfig",
    "LoggingConfig",
    "load_config",
    "resolve_config_path",
]
