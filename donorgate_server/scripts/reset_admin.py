#!/usr/bin/env python3
# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Reset the admin login. Run: python -m donorgate_server.scripts.reset_admin --username U --password P"""

import argparse
import getpass
import sys

from donorgate_server.config import Settings
from donorgate_server.services.admin_credentials import save_credentials


def main(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    parser = argparse.ArgumentParser(description="Reset the DonorGate admin username and password.")
    parser.add_argument("--username", default=None, help="Admin username (default: ADMIN_USERNAME)")
    parser.add_argument("--password", default=None, help="New password; prompted for when omitted")
    args = parser.parse_args(argv)

    settings = settings or Settings()
    username = (args.username or settings.admin_username).strip()
    password = args.password if args.password is not None else getpass.getpass("New admin password: ")
    if not username:
        print("Username required", file=sys.stderr)
        return 1
    try:
        save_credentials(settings.admin_credentials_path, username, password)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    print(f"Admin credentials updated for {username!r} in {settings.admin_credentials_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
