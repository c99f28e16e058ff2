# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""API request and response schemas."""
