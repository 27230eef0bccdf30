import asyncio
import logging

import telnyx

from config import settings

_LOGGER = logging.getLogger(__name__)

if settings.TELNYX_API_KEY:
    telnyx.api_key = settings.TELNYX_API_KEY


async def send_sms(to: str, body: str) -> None:
    from_num = settings.TELNYX_FROM_NUMBER
    if not settings.TELNYX_API_KEY or not from_num:
        _LOGGER.info("[SMS] DEV mode: would send to %s: %s", to, body)
        return
    await asyncio.to_thread(telnyx.Message.create, from_=from_num, to=to, text=body)
