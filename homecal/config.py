"""
Configuration parser for homecal.

Handles TOML file parsing, feature flags with environment overrides and
secret retrieval via an external password program.
"""

import logging
import os
import re
import subprocess
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)

COLOR_RE = re.compile(r"^#[0-9a-fA-F]{6}$")

_TRUE_VALUES = ("1", "true", "yes", "on")


@dataclass
class CalDAVAccount:
    """Configuration for a CalDAV account."""
    name: str
    url: str
    username: str
    password_key: str = ""
    color: str = "#4285f4"
    calendar: Optional[str] = None  # substring filter on calendar name or URL

    _password: Optional[str] = field(default=None, repr=False)

    def get_password(self, password_program: str) -> str:
        """Return the inline password, or retrieve it with the password program."""
        if self._password is None:
            if not self.password_key:
                raise RuntimeError(f"No password configured for CalDAV account '{self.name}'")
            try:
                result = subprocess.run(
                    [password_program, self.password_key],
                    capture_output=True,
                    text=True,
                    timeout=30
                )
            except subprocess.TimeoutExpired:
                raise RuntimeError(f"Password program timed out for key '{self.password_key}'")
            except FileNotFoundError:
                raise RuntimeError(f"Password program not found: {password_program}")
            if result.returncode != 0:
                raise RuntimeError(
                    f"Password program failed for key '{self.password_key}': {result.stderr.strip()}"
                )
            # pass(1) puts the secret on the first line
            self._password = result.stdout.strip().splitlines()[0] if result.stdout.strip() else ""
        return self._password


@dataclass
class ICSFeed:
    """Configuration for a read-only ICS subscription."""
    name: str
    url: str
    color: str = "#34a853"


@dataclass
class FeatureFlags:
    write_enabled: bool = False
    dry_run: bool = False
    sync_enabled: bool = True
    caldav_sync_enabled: bool = True


@dataclass
class SyncConfig:
    """Scheduling and fetch parameters of the sync loop."""
    interval_seconds: int = 900
    fetch_timeout: int = 30
    validate_timeout: int = 10
    window_days_before: int = 2
    window_days_after: int = 2
    expansion_days: int = 365
    merge_cache_ttl: float = 30.0


@dataclass
class QuotaConfig:
    """Write quota and retry parameters."""
    capacity: int = 30
    refill_rate: float = 0.5
    max_idle: int = 86400
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0


@dataclass
class Config:
    """Main configuration container."""

    database: Path
    password_program: str = "/usr/bin/pass"
    timezone: str = "Europe/Amsterdam"
    features: FeatureFlags = field(default_factory=FeatureFlags)
    sync: SyncConfig = field(default_factory=SyncConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    caldav_accounts: list[CalDAVAccount] = field(default_factory=list)
    ics_feeds: list[ICSFeed] = field(default_factory=list)

    @classmethod
    def get_default_config_path(cls) -> Path:
        xdg_config = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
        return Path(xdg_config) / 'homecal' / 'homecal.toml'

    @classmethod
    def get_default_database_path(cls) -> Path:
        xdg_data = os.environ.get('XDG_DATA_HOME', os.path.expanduser('~/.local/share'))
        return Path(xdg_data) / 'homecal' / 'homecal.db'

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """Load configuration from a TOML file."""
        if config_path is None:
            config_path = cls.get_default_config_path()

        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_path, 'rb') as f:
            data = tomllib.load(f)

        logger.debug("Loaded configuration sections: %s", list(data.keys()))
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict, environ: Optional[dict] = None) -> 'Config':
        """Build a Config from parsed TOML data, then apply environment overrides."""
        if environ is None:
            environ = os.environ

        general = data.get('General', {})
        database = Path(os.path.expanduser(
            general.get('database', str(cls.get_default_database_path()))
        ))

        features_data = data.get('Features', {})
        features = FeatureFlags(
            write_enabled=bool(features_data.get('write_enabled', FeatureFlags.write_enabled)),
            dry_run=bool(features_data.get('dry_run', FeatureFlags.dry_run)),
            sync_enabled=bool(features_data.get('sync_enabled', FeatureFlags.sync_enabled)),
            caldav_sync_enabled=bool(
                features_data.get('caldav_sync_enabled', FeatureFlags.caldav_sync_enabled)
            ),
        )

        sync_data = data.get('Sync', {})
        sync = SyncConfig(
            interval_seconds=int(sync_data.get('interval_seconds', SyncConfig.interval_seconds)),
            fetch_timeout=int(sync_data.get('fetch_timeout', SyncConfig.fetch_timeout)),
            validate_timeout=int(sync_data.get('validate_timeout', SyncConfig.validate_timeout)),
            window_days_before=int(sync_data.get('window_days_before', SyncConfig.window_days_before)),
            window_days_after=int(sync_data.get('window_days_after', SyncConfig.window_days_after)),
            expansion_days=int(sync_data.get('expansion_days', SyncConfig.expansion_days)),
            merge_cache_ttl=float(sync_data.get('merge_cache_ttl', SyncConfig.merge_cache_ttl)),
        )

        quota_data = data.get('Quota', {})
        quota = QuotaConfig(
            capacity=int(quota_data.get('capacity', QuotaConfig.capacity)),
            refill_rate=float(quota_data.get('refill_rate', QuotaConfig.refill_rate)),
            max_idle=int(quota_data.get('max_idle', QuotaConfig.max_idle)),
            max_attempts=int(quota_data.get('max_attempts', QuotaConfig.max_attempts)),
            base_delay=float(quota_data.get('base_delay', QuotaConfig.base_delay)),
            max_delay=float(quota_data.get('max_delay', QuotaConfig.max_delay)),
        )

        caldav_accounts = []
        for name, value in _named_sections(data, 'CalDAV'):
            account = CalDAVAccount(
                name=value.get('name', name),
                url=value.get('url', ''),
                username=value.get('username', ''),
                password_key=value.get('password_key', ''),
                color=value.get('color', '#4285f4'),
                calendar=value.get('calendar') or None,
            )
            if value.get('password'):
                account._password = value['password']
            caldav_accounts.append(account)

        ics_feeds = []
        for name, value in _named_sections(data, 'Subscription'):
            ics_feeds.append(ICSFeed(
                name=value.get('name', name),
                url=value.get('url', ''),
                color=value.get('color', '#34a853'),
            ))

        logger.debug("Found %d CalDAV accounts and %d ICS feeds",
                     len(caldav_accounts), len(ics_feeds))

        config = cls(
            database=database,
            password_program=general.get('password_program', '/usr/bin/pass'),
            timezone=general.get('timezone', 'Europe/Amsterdam'),
            features=features,
            sync=sync,
            quota=quota,
            caldav_accounts=caldav_accounts,
            ics_feeds=ics_feeds,
        )
        config.apply_environment(environ)
        config.validate()
        return config

    def apply_environment(self, environ) -> None:
        """HOMECAL_* variables override the feature flags."""
        for flag in ('write_enabled', 'dry_run', 'sync_enabled'):
            raw = environ.get(f'HOMECAL_{flag.upper()}')
            if raw is not None:
                setattr(self.features, flag, raw.strip().lower() in _TRUE_VALUES)
        raw_interval = environ.get('HOMECAL_SYNC_INTERVAL')
        if raw_interval:
            try:
                self.sync.interval_seconds = int(raw_interval)
            except ValueError:
                raise ValidationError(f"HOMECAL_SYNC_INTERVAL is not an integer: {raw_interval!r}")

    def validate(self) -> None:
        if self.sync.interval_seconds <= 0:
            raise ValidationError("Sync interval must be positive")
        if self.quota.capacity <= 0 or self.quota.refill_rate <= 0:
            raise ValidationError("Quota capacity and refill rate must be positive")
        for entry in [*self.caldav_accounts, *self.ics_feeds]:
            if not is_valid_color(entry.color):
                raise ValidationError(f"Invalid color {entry.color!r} for '{entry.name}'")


def _named_sections(data: dict, prefix: str) -> list[tuple[str, dict]]:
    """
    Collect named sub-tables of a section.

    Supports both ``[Prefix.Name]`` keys and a ``[Prefix]`` table with nested
    sub-tables.
    """
    sections = []
    for key, value in data.items():
        if key.startswith(prefix + '.') and isinstance(value, dict):
            sections.append((key.split('.', 1)[1], value))
        elif key == prefix and isinstance(value, dict):
            for sub_key, sub_value in value.items():
                if isinstance(sub_value, dict):
                    sections.append((sub_key, sub_value))
    return sections


def is_valid_color(color: str) -> bool:
    return bool(color) and COLOR_RE.match(color) is not None
