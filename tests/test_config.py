"""
Tests for TOML configuration loading and environment overrides.
"""

import pytest

from homecal.config import CalDAVAccount, Config
from homecal.errors import ValidationError

CONFIG_TOML = """
[General]
password_program = "/usr/bin/pass"
timezone = "Europe/Berlin"
database = "{db}"

[Features]
write_enabled = true

[Sync]
interval_seconds = 300

[Quota]
capacity = 10

[CalDAV.Work]
url = "https://dav.example.com/"
username = "bob"
password_key = "dav/bob"
calendar = "Team"

[Subscription.Feed]
url = "https://example.com/feed.ics"
"""


class TestLoad:
    def test_load_file(self, tmp_path, monkeypatch):
        for name in ("HOMECAL_WRITE_ENABLED", "HOMECAL_DRY_RUN", "HOMECAL_SYNC_ENABLED",
                     "HOMECAL_SYNC_INTERVAL"):
            monkeypatch.delenv(name, raising=False)
        path = tmp_path / "homecal.toml"
        path.write_text(CONFIG_TOML.format(db=tmp_path / "cal.db"))

        config = Config.load(path)

        assert config.timezone == "Europe/Berlin"
        assert config.database == tmp_path / "cal.db"
        assert config.features.write_enabled is True
        assert config.features.dry_run is False
        assert config.sync.interval_seconds == 300
        assert config.sync.fetch_timeout == 30
        assert config.quota.capacity == 10
        assert [a.name for a in config.caldav_accounts] == ["Work"]
        assert config.caldav_accounts[0].calendar == "Team"
        assert [f.name for f in config.ics_feeds] == ["Feed"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.load(tmp_path / "absent.toml")

    def test_defaults(self):
        config = Config.from_dict({}, environ={})
        assert config.features.write_enabled is False
        assert config.features.sync_enabled is True
        assert config.sync.interval_seconds == 900
        assert config.quota.capacity == 30
        assert config.quota.refill_rate == 0.5


class TestEnvironment:
    def test_flags_override_file(self):
        config = Config.from_dict(
            {"Features": {"write_enabled": True}},
            environ={"HOMECAL_WRITE_ENABLED": "false", "HOMECAL_DRY_RUN": "1"},
        )
        assert config.features.write_enabled is False
        assert config.features.dry_run is True

    def test_sync_interval(self):
        config = Config.from_dict({}, environ={"HOMECAL_SYNC_INTERVAL": "60"})
        assert config.sync.interval_seconds == 60

    def test_bad_sync_interval(self):
        with pytest.raises(ValidationError):
            Config.from_dict({}, environ={"HOMECAL_SYNC_INTERVAL": "soon"})


class TestValidation:
    def test_bad_color(self):
        with pytest.raises(ValidationError):
            Config.from_dict({"Subscription": {"X": {"url": "https://x", "color": "red"}}},
                             environ={})

    def test_non_positive_interval(self):
        with pytest.raises(ValidationError):
            Config.from_dict({"Sync": {"interval_seconds": 0}}, environ={})


class TestPasswords:
    def test_inline_password(self):
        config = Config.from_dict(
            {"CalDAV": {"Home": {"url": "https://dav", "username": "a", "password": "pw"}}},
            environ={},
        )
        assert config.caldav_accounts[0].get_password("/bin/false") == "pw"

    def test_password_program_first_line(self, tmp_path):
        program = tmp_path / "fake-pass"
        program.write_text("#!/bin/sh\nprintf 'secret\\nurl: dav\\n'\n")
        program.chmod(0o755)
        account = CalDAVAccount(name="Home", url="https://dav", username="a", password_key="dav/a")
        assert account.get_password(str(program)) == "secret"

    def test_password_program_failure(self, tmp_path):
        account = CalDAVAccount(name="Home", url="https://dav", username="a", password_key="dav/a")
        with pytest.raises(RuntimeError, match="not found"):
            account.get_password(str(tmp_path / "missing"))
