# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database models."""

from donorgate_server.models.base import Base
from donorgate_server.models.donor import Donor
from donorgate_server.models.prospect import Prospect
from donorgate_server.models.invite import Invite
from donorgate_server.models.share_link import ShareLink
from donorgate_server.models.payment import Payment
from donorgate_server.models.event import Event
from donorgate_server.models.setting import Setting
from donorgate_server.models.verification_token import VerificationToken
from donorgate_server.models.password_reset import PasswordResetToken
from donorgate_server.models.support import SupportMessage, SupportRequest
from donorgate_server.models.pending_intent import PendingIntent

__all__ = [
    "Base",
    "Donor",
    "Prospect",
    "Invite",
    "ShareLink",
    "Payment",
    "Event",
    "Setting",
    "VerificationToken",
    "PasswordResetToken",
    "SupportRequest",
    "SupportMessage",
    "PendingIntent",
]
