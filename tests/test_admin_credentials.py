# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Admin credentials file and the reset_admin script."""

import json
import stat

import pytest

from donorgate_server.scripts import reset_admin
from donorgate_server.services.admin_credentials import (
    check_credentials,
    ensure_credentials,
    load_credentials,
    save_credentials,
)


def test_save_then_check(tmp_path):
    path = tmp_path / "admin-credentials.json"
    save_credentials(path, " owner ", "a-long-admin-password")
    assert check_credentials(path, "owner", "a-long-admin-password")
    assert not check_credentials(path, "owner", "wrong")
    assert not check_credentials(path, "someone", "a-long-admin-password")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_short_password_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        save_credentials(tmp_path / "c.json", "owner", "short")


def test_ensure_generates_once(tmp_path, caplog):
    path = tmp_path / "data" / "admin-credentials.json"
    with caplog.at_level("WARNING"):
        first = ensure_credentials(path, "admin")
    assert "Generated admin credentials" in caplog.text
    second = ensure_credentials(path, "admin")
    assert first == second


def test_unreadable_file_is_treated_as_missing(tmp_path):
    path = tmp_path / "admin-credentials.json"
    path.write_text("{broken", encoding="utf-8")
    assert load_credentials(path) is None
    assert not check_credentials(path, "admin", "anything")


def test_reset_script_writes_file(settings, capsys):
    code = reset_admin.main(["--username", "owner", "--password", "a-long-admin-password"], settings=settings)
    assert code == 0
    assert "owner" in capsys.readouterr().out
    data = json.loads(settings.admin_credentials_path.read_text(encoding="utf-8"))
    assert data["username"] == "owner"
    assert check_credentials(settings.admin_credentials_path, "owner", "a-long-admin-password")


def test_reset_script_rejects_short_password(settings, capsys):
    code = reset_admin.main(["--password", "short"], settings=settings)
    assert code == 1
    assert "at least" in capsys.readouterr().err
    assert not settings.admin_credentials_path.exists()
