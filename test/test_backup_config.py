"""
Tests for backup_config.py

Tests cover:
- .env loading
- Profile discovery from the environment
- Port parsing
- Account validation
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))

import backup_config
import imap_common
from conftest import temp_env

PROFILES_ENV = {
    "IMAP_BACKUP_2": "Home",
    "IMAP_BACKUP_2_IMAP_HOST": "imap.home.example",
    "IMAP_BACKUP_2_IMAP_USER": "me@home.example",
    "IMAP_BACKUP_2_IMAP_PASSWORD": "pw2",
    "IMAP_BACKUP_10": "Archive",
    "IMAP_BACKUP_10_IMAP_HOST": "imap.archive.example",
    "IMAP_BACKUP_1": "Work",
    "IMAP_BACKUP_1_IMAP_HOST": " imap.work.example ",
    "IMAP_BACKUP_1_IMAP_PORT": "1993",
    "IMAP_BACKUP_1_IMAP_USER": "me@work.example",
    "IMAP_BACKUP_1_IMAP_PASSWORD": "pw1",
    "UNRELATED": "x",
}


class TestLoadEnv:
    def test_missing_file(self, tmp_path):
        assert backup_config.load_env_if_exists(str(tmp_path)) is False

    def test_loads_file(self, tmp_path):
        (tmp_path / ".env").write_text("IMAP_BACKUP_1=Work\nIMAP_BACKUP_1_IMAP_USER=me@example.com\n")
        with temp_env({}):
            assert backup_config.load_env_if_exists(str(tmp_path)) is True
            assert os.environ["IMAP_BACKUP_1"] == "Work"
            assert os.environ["IMAP_BACKUP_1_IMAP_USER"] == "me@example.com"

    def test_does_not_override_environment(self, tmp_path):
        (tmp_path / ".env").write_text("IMAP_BACKUP_1=FromFile\n")
        with temp_env({"IMAP_BACKUP_1": "FromEnv"}):
            backup_config.load_env_if_exists(str(tmp_path))
            assert os.environ["IMAP_BACKUP_1"] == "FromEnv"

    def test_unreadable_location(self, tmp_path, monkeypatch):
        def failing_stat(path):
            raise PermissionError("denied")

        monkeypatch.setattr(backup_config.os, "stat", failing_stat)
        with pytest.raises(imap_common.ConfigError):
            backup_config.load_env_if_exists(str(tmp_path))


class TestProfiles:
    def test_get_all_settings(self):
        profiles = backup_config.get_all_settings(PROFILES_ENV)

        assert set(profiles) == {"IMAP_BACKUP_1", "IMAP_BACKUP_2", "IMAP_BACKUP_10"}
        assert profiles["IMAP_BACKUP_1"][backup_config.NAME_KEY] == "Work"
        assert profiles["IMAP_BACKUP_1"]["IMAP_PORT"] == "1993"
        assert profiles["IMAP_BACKUP_2"]["IMAP_USER"] == "me@home.example"

    def test_profile_prefix_does_not_leak(self):
        # IMAP_BACKUP_10_* must not be attributed to IMAP_BACKUP_1
        profiles = backup_config.get_all_settings(PROFILES_ENV)
        assert profiles["IMAP_BACKUP_1"]["IMAP_HOST"] == " imap.work.example "
        assert "0_IMAP_HOST" not in profiles["IMAP_BACKUP_1"]

    def test_profile_names_ordered_by_number(self):
        profiles = backup_config.get_all_settings(PROFILES_ENV)
        assert backup_config.profile_names(profiles) == ["Work", "Home", "Archive"]

    def test_find_profile(self):
        profiles = backup_config.get_all_settings(PROFILES_ENV)
        assert backup_config.find_profile(profiles, "Home")["IMAP_PASSWORD"] == "pw2"
        assert backup_config.find_profile(profiles, "Nope") is None

    def test_no_profiles(self):
        assert backup_config.get_all_settings({"IMAP_HOST": "x"}) == {}

    def test_account_from_settings_trims(self):
        profiles = backup_config.get_all_settings(PROFILES_ENV)
        account = backup_config.account_from_settings(profiles["IMAP_BACKUP_1"])
        assert account == {
            "host": "imap.work.example",
            "port": 1993,
            "user": "me@work.example",
            "password": "pw1",
            "client_id": None,
            "client_secret": None,
        }

    def test_incomplete_profile(self):
        profiles = backup_config.get_all_settings(PROFILES_ENV)
        with pytest.raises(imap_common.ConfigError) as exc:
            backup_config.account_from_settings(profiles["IMAP_BACKUP_10"])
        assert "IMAP_USER" in str(exc.value)
        assert "IMAP_PASSWORD" in str(exc.value)


class TestParsePort:
    @pytest.mark.parametrize("value", [None, "", "  "])
    def test_empty_is_default(self, value):
        assert backup_config.parse_port(value) is None

    def test_valid(self):
        assert backup_config.parse_port(" 143 ") == 143
        assert backup_config.parse_port(993) == 993

    @pytest.mark.parametrize("value", ["abc", "0", "70000", "-1"])
    def test_invalid(self, value):
        with pytest.raises(imap_common.ConfigError):
            backup_config.parse_port(value)


class TestAccountFromValues:
    def test_oauth2_without_password(self):
        account = backup_config.account_from_values("imap.gmail.com", None, "me@gmail.com", None, "cid", "secret")
        assert account["password"] == ""
        assert account["client_id"] == "cid"
        assert account["client_secret"] == "secret"

    def test_missing_host(self):
        with pytest.raises(imap_common.ConfigError, match="IMAP_HOST"):
            backup_config.account_from_values("  ", None, "me@example.com", "pw")
