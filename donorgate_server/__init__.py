# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""DonorGate Server - donation-backed media access gateway."""

__version__ = "0.1.0"
