"""
Filing Reminders -- Configuration Module

Centralizes all configuration for the reminder engine.
Every setting has a dataclass default; config.yaml, when present, overrides
individual keys section by section.

Usage:
    from filing_reminders.config import get_config
    cfg = get_config()                         # project-root config.yaml, if any
    cfg = get_config("/etc/practice/reminders.yaml")
    print(cfg.batch.send_hour)                 # 9
    print(cfg.batch.timezone)                  # "Europe/London"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
_THIS_DIR = Path(__file__).resolve().parent          # filing_reminders/
PROJECT_ROOT = _THIS_DIR.parent                       # repository root
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"


# ===================================================================
# 1. Batch Processing
# ===================================================================

@dataclass
class BatchConfig:
    """Settings read once per batch run and passed into the scheduler.

    ``send_hour`` is the UK local hour (0-23) at which filing reminders
    become due.  Custom schedules may carry their own send hour.
    """
    send_hour: int = 9
    timezone: str = "Europe/London"
    lock_id: str = "cron_reminders"
    lock_ttl_minutes: int = 5
    render_timeout_seconds: float = 10.0
    accountant_name: str = "Peninsula Accounting"

    def __post_init__(self):
        validate_send_hour(self.send_hour)


def validate_send_hour(hour: int) -> int:
    """Raise ValueError unless ``hour`` is an integer in 0..23."""
    if isinstance(hour, bool) or not isinstance(hour, int) or not 0 <= hour <= 23:
        raise ValueError(f"Send hour must be an integer between 0 and 23, got {hour!r}")
    return hour


# ===================================================================
# 2. Bank Holidays
# ===================================================================

@dataclass
class BankHolidayConfig:
    """Where UK bank holidays come from and how long they are trusted."""
    url: str = "https://www.gov.uk/bank-holidays.json"
    division: str = "england-and-wales"
    cache_ttl_days: int = 7
    request_timeout_seconds: float = 10.0


# ===================================================================
# 3. Store
# ===================================================================

@dataclass
class StoreConfig:
    """SQLite database location (relative to project root unless absolute)."""
    db_path: str = "data/reminders.db"

    @property
    def resolved_path(self) -> Path:
        p = Path(self.db_path)
        if not p.is_absolute():
            p = PROJECT_ROOT / p
        return p


# ===================================================================
# 4. Logging
# ===================================================================

@dataclass
class LoggingConfig:
    """Log level and format used by the CLI."""
    level: str = "INFO"
    log_file: str = ""          # empty = console only
    format: str = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
    datefmt: str = "%H:%M:%S"


# ===================================================================
# Master Config
# ===================================================================

@dataclass
class ReminderConfig:
    """Top-level configuration container for the reminder engine."""
    batch: BatchConfig = field(default_factory=BatchConfig)
    bank_holidays: BankHolidayConfig = field(default_factory=BankHolidayConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ===================================================================
# YAML Loading
# ===================================================================

def _apply_yaml_to_config(cfg: ReminderConfig, data: dict) -> None:
    """Apply a parsed YAML dict onto a ReminderConfig instance."""
    _section_map = {
        "batch": cfg.batch,
        "bank_holidays": cfg.bank_holidays,
        "store": cfg.store,
        "logging": cfg.logging,
    }

    for section_key, section_obj in _section_map.items():
        if section_key in data and isinstance(data[section_key], dict):
            for attr, val in data[section_key].items():
                if hasattr(section_obj, attr):
                    setattr(section_obj, attr, val)

    validate_send_hour(cfg.batch.send_hour)


def _apply_env_overrides(cfg: ReminderConfig) -> None:
    """Environment variables win over both defaults and config.yaml."""
    db_path = os.environ.get("FILING_REMINDERS_DB", "")
    if db_path:
        cfg.store.db_path = db_path


def get_config(yaml_path: Optional[str | Path] = None) -> ReminderConfig:
    """Build a ReminderConfig, optionally overlaying values from a YAML file.

    FILING_REMINDERS_DB, when set, replaces store.db_path afterwards.

    Args:
        yaml_path: YAML file to overlay.  Defaults to config.yaml in the
                   project root; a missing file leaves every default
                   in place.

    Returns:
        Fully populated ReminderConfig instance.

    Raises:
        ValueError: If the file is not a YAML mapping, or the overlaid
                    send hour is outside 0..23.
    """
    cfg = ReminderConfig()

    path = Path(yaml_path) if yaml_path else DEFAULT_CONFIG_PATH
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise ValueError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"{path} must contain a mapping of config sections")
        _apply_yaml_to_config(cfg, data)

    _apply_env_overrides(cfg)
    return cfg
