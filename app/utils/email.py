import asyncio
import logging

import resend

from config import settings

_LOGGER = logging.getLogger(__name__)

if settings.RESEND_API_KEY:
    resend.api_key = settings.RESEND_API_KEY


async def send_email(to: str, subject: str, html: str) -> dict:
    """Send one HTML email through Resend and return the provider response."""
    if not settings.RESEND_API_KEY:
        _LOGGER.info("[EMAIL] DEV mode: would send '%s' to %s", subject, to)
        return {"id": None, "dev": True}
    params = {
        "from": settings.EMAIL_FROM_ADDRESS,
        "to": [to],
        "subject": subject,
        "html": html,
    }
    response = await asyncio.to_thread(resend.Emails.send, params)
    _LOGGER.debug("Resend accepted email to %s: %s", to, response)
    return response
