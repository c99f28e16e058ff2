# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Store: the operation surface over persisted records.

Every function takes the caller's AsyncSession so multi-statement mutations
run inside one transaction (see database.session_scope).
"""
