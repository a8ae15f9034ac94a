"""HTTP Basic credentials loaded from a JSON file.

The file accepts a single flat pair, a list of users, or both::

    {"username": "admin", "password": "secret",
     "users": [{"username": "alice", "password": "pw1"}]}

Duplicate usernames keep the last password; entries with an empty username
or password are skipped.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import json
import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class AuthFileError(Exception):
    """Raised when the credentials file is unreadable or defines no users."""


@dataclass(frozen=True)
class AuthUser:
    username: str
    password: str


class AuthSettings:
    def __init__(self, users: dict[str, str] | None = None) -> None:
        self._users = dict(users or {})

    @classmethod
    def from_users(cls, users: list[AuthUser]) -> "AuthSettings":
        mapped: dict[str, str] = {}
        for user in users:
            username = user.username.strip()
            password = user.password.strip()
            if not username or not password:
                continue
            mapped[username] = password
        return cls(mapped)

    def is_enabled(self) -> bool:
        return bool(self._users)

    def user_count(self) -> int:
        return len(self._users)

    def usernames(self) -> list[str]:
        return sorted(self._users)

    def to_users(self) -> list[AuthUser]:
        return [AuthUser(username=name, password=self._users[name]) for name in sorted(self._users)]

    def is_authorized(self, username: str, password: str) -> bool:
        known = self._users.get(username)
        if known is None:
            return False
        return hmac.compare_digest(password.encode("utf-8"), known.encode("utf-8"))


def _warn_if_world_readable(path: Path) -> None:
    if os.name != "posix":
        return
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & stat.S_IROTH:
        logger.warning("auth file %s is world-readable; consider chmod 600", path)


def load_users_from_file(path: Path) -> list[AuthUser]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise AuthFileError(f"failed to read auth file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise AuthFileError(f"invalid auth config in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise AuthFileError(f"invalid auth config in {path}: expected a JSON object")

    users: list[AuthUser] = []
    username = raw.get("username")
    password = raw.get("password")
    if isinstance(username, str) and isinstance(password, str):
        users.append(AuthUser(username=username, password=password))

    for entry in raw.get("users") or []:
        if not isinstance(entry, dict):
            continue
        entry_username = entry.get("username")
        entry_password = entry.get("password")
        if isinstance(entry_username, str) and isinstance(entry_password, str):
            users.append(AuthUser(username=entry_username, password=entry_password))

    settings = AuthSettings.from_users(users)
    if not settings.is_enabled():
        raise AuthFileError(f"auth file {path} does not define valid credentials")

    return settings.to_users()


def load_auth(path: Path | None) -> AuthSettings:
    if path is None:
        return AuthSettings()
    _warn_if_world_readable(path)
    return AuthSettings.from_users(load_users_from_file(path))


def extract_basic_auth(header_value: str | None) -> tuple[str, str] | None:
    """Decode ``Basic <b64>`` credentials; a bare base64 value is accepted too."""

    if not header_value:
        return None

    parts = header_value.split()
    if len(parts) == 2 and parts[0].lower() == "basic":
        encoded = parts[1]
    elif len(parts) == 1:
        encoded = parts[0]
    else:
        return None

    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None

    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password
