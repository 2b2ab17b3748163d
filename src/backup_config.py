"""
Backup Configuration

Loads an optional ``.env`` file from the working directory and reads named
account profiles from the environment:

    IMAP_BACKUP_1="Work"
    IMAP_BACKUP_1_IMAP_HOST=imap.example.com
    IMAP_BACKUP_1_IMAP_PORT=993
    IMAP_BACKUP_1_IMAP_USER=me@example.com
    IMAP_BACKUP_1_IMAP_PASSWORD=secret

    # Optional, for XOAUTH2 instead of a password
    IMAP_BACKUP_1_OAUTH2_CLIENT_ID=...
    IMAP_BACKUP_1_OAUTH2_CLIENT_SECRET=...

Every ``IMAP_BACKUP_<n>`` variable declares a profile; its value is the name
shown in the profile menu.
"""

from __future__ import annotations

import os
import re

from dotenv import load_dotenv

import imap_common

PROFILE_VAR_PATTERN = re.compile(r"^IMAP_BACKUP_(\d+)$")

# Key under which a profile's display name is stored
NAME_KEY = ""


def load_env_if_exists(cwd) -> bool:
    """
    Loads ``<cwd>/.env`` into the environment if the file exists.
    Variables already set in the environment are not overridden.
    Returns True if a file was loaded.
    """
    env_file = os.path.join(cwd, ".env")
    try:
        os.stat(env_file)
    except FileNotFoundError:
        return False
    except OSError as e:
        raise imap_common.ConfigError(f"Could not read {env_file}: {e}") from e

    load_dotenv(env_file, override=False)
    return True


def get_all_settings(environ=None) -> dict[str, dict[str, str]]:
    """
    Collects all profiles from the environment.

    Returns:
        { "IMAP_BACKUP_1": {"": "Work", "IMAP_HOST": "...", ...}, ... }
    """
    environ = os.environ if environ is None else environ
    profiles: dict[str, dict[str, str]] = {}

    for key, value in environ.items():
        key = key.strip()
        if PROFILE_VAR_PATTERN.match(key):
            profiles[key] = {NAME_KEY: value}

    for profile_key, settings in profiles.items():
        prefix = f"{profile_key}_"
        for key, value in environ.items():
            key = key.strip()
            if key.startswith(prefix):
                settings[key[len(prefix) :].strip()] = value

    return profiles


def _profile_number(profile_key):
    return int(PROFILE_VAR_PATTERN.match(profile_key).group(1))


def profile_names(profiles) -> list[str]:
    """Display names of all profiles, ordered by profile number."""
    return [profiles[key][NAME_KEY] for key in sorted(profiles, key=_profile_number)]


def find_profile(profiles, name):
    """Returns the settings of the first profile (by number) with the given name, or None."""
    for key in sorted(profiles, key=_profile_number):
        if profiles[key][NAME_KEY] == name:
            return profiles[key]
    return None


def parse_port(value) -> int | None:
    """Parses a port setting. Empty means the protocol default (None)."""
    text = str(value or "").strip()
    if not text:
        return None
    if not text.isdigit() or not 0 < int(text) < 65536:
        raise imap_common.ConfigError(f"Invalid IMAP port: {text}")
    return int(text)


def account_from_values(host, port, user, password, client_id=None, client_secret=None) -> dict:
    """
    Trims and validates account values.

    Returns:
        Dict with keys: host, port, user, password, client_id, client_secret
    """
    account = {
        "host": (host or "").strip(),
        "port": parse_port(port),
        "user": (user or "").strip(),
        "password": (password or "").strip(),
        "client_id": (client_id or "").strip() or None,
        "client_secret": (client_secret or "").strip() or None,
    }

    missing = []
    if not account["host"]:
        missing.append("IMAP_HOST")
    if not account["user"]:
        missing.append("IMAP_USER")
    if not account["password"] and not account["client_id"]:
        missing.append("IMAP_PASSWORD")
    if missing:
        raise imap_common.ConfigError(f"Missing credentials: {', '.join(missing)}")

    return account


def account_from_settings(settings) -> dict:
    """Builds an account dict from one profile's settings."""
    return account_from_values(
        settings.get("IMAP_HOST"),
        settings.get("IMAP_PORT"),
        settings.get("IMAP_USER"),
        settings.get("IMAP_PASSWORD"),
        settings.get("OAUTH2_CLIENT_ID"),
        settings.get("OAUTH2_CLIENT_SECRET"),
    )
