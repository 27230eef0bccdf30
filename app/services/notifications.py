"""Notification dispatch facade.

One entry point, ``NotificationDispatcher.dispatch``, for the four channels.
Every call is bounded by a timeout and its outcome comes back as a
``DispatchResult``; nothing a provider raises escapes to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from app.errors import ChannelDeliveryError, DataIntegrityError, StoreError
from app.services.templates import Rendered, render
from app.types.booking_contract import Channel, DispatchResult, PushTokenResult, Severity
from app.utils.email import send_email
from app.utils.push import send_push
from app.utils.sms import send_sms
from db.documents import DocumentStore

_LOGGER = logging.getLogger(__name__)

EmailSender = Callable[[str, str, str], Awaitable[Any]]
PushSender = Callable[[List[str], str, str, Dict[str, str]], Awaitable[List[PushTokenResult]]]
SmsSender = Callable[[str, str], Awaitable[Any]]


def _jsonable(data: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for key, value in data.items():
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif not isinstance(value, (str, int, float, bool, type(None))):
            value = str(value)
        out[key] = value
    return out


class NotificationDispatcher:
    def __init__(
        self,
        documents: DocumentStore,
        *,
        email_sender: EmailSender = send_email,
        push_sender: PushSender = send_push,
        sms_sender: SmsSender = send_sms,
        timeout: float = 10.0,
    ):
        self._documents = documents
        self._email = email_sender
        self._push = push_sender
        self._sms = sms_sender
        self._timeout = timeout
        self._handlers = {
            "email": self._send_email,
            "push": self._send_push,
            "sms": self._send_sms,
            "in_app": self._send_in_app,
        }

    async def dispatch(
        self,
        channel: Channel,
        target: str,
        template: str,
        data: Dict[str, Any],
        severity: Severity = "info",
    ) -> DispatchResult:
        """Deliver ``template`` to ``target`` over ``channel``.

        ``target`` is an address for email, a phone number for SMS and a user
        (merchant) id for push and in-app.
        """
        handler = self._handlers.get(channel)
        if handler is None:
            raise ValueError(f"unknown channel '{channel}'")
        rendered = render(template, data)
        try:
            details = await asyncio.wait_for(
                handler(target, rendered, data, severity), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            _LOGGER.warning("%s '%s' to %s timed out after %ss", channel, template, target, self._timeout)
            return DispatchResult(channel=channel, success=False,
                                  error=f"timed out after {self._timeout}s")
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("%s '%s' to %s failed: %s", channel, template, target, exc)
            return DispatchResult(channel=channel, success=False, error=str(exc) or repr(exc))
        return DispatchResult(channel=channel, success=True, details=details or {})

    # ------------------------------------------------------------------
    # Channels
    # ------------------------------------------------------------------

    async def _send_email(self, to, rendered: Rendered, data, severity) -> dict:
        if not to:
            raise ChannelDeliveryError("email", "no recipient address")
        response = await self._email(to, rendered.subject, rendered.html)
        return {"provider_id": response.get("id")} if isinstance(response, dict) else {}

    async def _send_sms(self, to, rendered: Rendered, data, severity) -> dict:
        if not to:
            raise ChannelDeliveryError("sms", "no phone number")
        await self._sms(to, rendered.sms)
        return {}

    async def _send_in_app(self, user_id, rendered: Rendered, data, severity) -> dict:
        notification_id = await self.create_in_app_notification(
            user_id, rendered.title, rendered.body, severity, data
        )
        return {"notification_id": notification_id}

    async def create_in_app_notification(
        self,
        user_id: str,
        title: str,
        message: str,
        severity: Severity = "info",
        data: Optional[Dict[str, Any]] = None,
    ) -> str:
        return await self._documents.create("notifications", None, {
            "user_id": user_id,
            "title": title,
            "message": message,
            "severity": severity,
            "data": _jsonable(data or {}),
            "read": False,
        })

    async def _send_push(self, merchant_id, rendered: Rendered, data, severity) -> dict:
        merchant = await self._documents.get("merchants", merchant_id)
        if merchant is None:
            raise ChannelDeliveryError("push", f"merchant {merchant_id} not found")
        tokens = list(merchant.get("fcm_tokens") or [])
        if not tokens:
            raise ChannelDeliveryError("push", f"merchant {merchant_id} has no device tokens")

        payload = {k: str(v) for k, v in _jsonable(data).items() if v is not None}
        results = await self._push(tokens, rendered.title, rendered.body, payload)

        invalid = {r.token for r in results if r.invalid}
        if invalid:
            await self._prune_tokens(merchant_id, tokens, invalid)

        delivered = sum(1 for r in results if r.success)
        if delivered == 0:
            errors = "; ".join(sorted({r.error or "unknown error" for r in results}))
            raise ChannelDeliveryError("push", f"all {len(tokens)} device(s) failed: {errors}")
        return {"delivered": delivered, "failed": len(results) - delivered, "pruned": len(invalid)}

    async def _prune_tokens(self, merchant_id: str, tokens: List[str], invalid: set) -> None:
        remaining = [t for t in tokens if t not in invalid]
        try:
            await self._documents.update("merchants", merchant_id, {"fcm_tokens": remaining})
        except (StoreError, DataIntegrityError) as exc:
            # Next push will see the same tokens rejected and try again.
            _LOGGER.warning("Could not prune %d token(s) of merchant %s: %s",
                            len(invalid), merchant_id, exc)
            return
        _LOGGER.info("Pruned %d invalid device token(s) of merchant %s", len(invalid), merchant_id)
