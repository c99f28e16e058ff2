# Copyright (C) 2024 DonorGate Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Payment processor webhook endpoint."""

import logging

from fastapi import APIRouter, Depends, Request

from donorgate_server.container import Container, get_container
from donorgate_server.errors import Internal, StoreUnavailable

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


@router.post("/webhook")
async def payment_webhook(request: Request, container: Container = Depends(get_container)) -> dict:
    """200 once the event is durably recorded; 401 on a bad signature; 500 so the processor replays."""
    raw_body = await request.body()
    try:
        result = await container.processor.handle(dict(request.headers), raw_body)
    except StoreUnavailable as e:
        logger.error("Webhook not recorded, store unavailable: %s", e.message)
        raise Internal("Store unavailable; retry later") from e
    return {"status": result.status, "eventId": result.event_id}
