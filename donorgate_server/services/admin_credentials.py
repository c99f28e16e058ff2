# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Admin credentials file (username + password hash) in the data directory."""

import json
import logging
import os
import secrets
from pathlib import Path

from donorgate_server.auth import hash_password, verify_password

logger = logging.getLogger(__name__)

MIN_ADMIN_PASSWORD_LENGTH = 12


def load_credentials(path: Path) -> dict | None:
    """Return {"username", "password_hash"} or None when missing or unreadable."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Admin credentials file %s is unreadable: %s", path, e)
        return None
    if not isinstance(data, dict) or not data.get("username") or not data.get("password_hash"):
        return None
    return data


def save_credentials(path: Path, username: str, password: str) -> dict:
    """Write the credentials file (mode 0600). Raises ValueError for short passwords."""
    username = (username or "").strip()
    if not username:
        raise ValueError("Username is required")
    if len(password or "") < MIN_ADMIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_ADMIN_PASSWORD_LENGTH} characters")
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"username": username, "password_hash": hash_password(password)}
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.chmod(tmp, 0o600)
    tmp.replace(path)
    return data


def ensure_credentials(path: Path, default_username: str) -> dict:
    """First run: generate a random admin password and log it exactly once."""
    existing = load_credentials(path)
    if existing:
        return existing
    password = secrets.token_urlsafe(18)
    data = save_credentials(path, default_username, password)
    logger.warning(
        "Generated admin credentials (shown once): username=%s password=%s  "
        "Change it with: python -m donorgate_server.scripts.reset_admin",
        default_username,
        password,
    )
    return data


def check_credentials(path: Path, username: str, password: str) -> bool:
    data = load_credentials(path)
    if not data:
        return False
    if not secrets.compare_digest(data["username"].encode(), (username or "").strip().encode()):
        return False
    return verify_password(password or "", data["password_hash"])
