"""Firebase Cloud Messaging adapter.

``send_push`` never raises for a single bad token: each token gets a
``PushTokenResult`` and ``invalid`` marks the ones FCM will never accept
again, so the caller can prune them.
"""

import asyncio
import logging
from typing import Dict, List, Optional

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from app.types.booking_contract import PushTokenResult
from config import settings

_LOGGER = logging.getLogger(__name__)

FCM_MULTICAST_LIMIT = 500

_PERMANENT_ERRORS = (
    messaging.UnregisteredError,
    messaging.SenderIdMismatchError,
    exceptions.InvalidArgumentError,
)


def _ensure_app() -> bool:
    """Initialise the default Firebase app once. False means dev mode."""
    try:
        firebase_admin.get_app()
        return True
    except ValueError:
        pass
    if not settings.FIREBASE_CREDENTIALS_PATH:
        return False
    cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
    firebase_admin.initialize_app(cred)
    _LOGGER.info("Firebase Admin initialised from %s", settings.FIREBASE_CREDENTIALS_PATH)
    return True


def _send_batch(tokens: List[str], title: str, body: str,
                data: Dict[str, str]) -> List[PushTokenResult]:
    message = messaging.MulticastMessage(
        tokens=tokens,
        notification=messaging.Notification(title=title, body=body),
        data=data,
    )
    batch = messaging.send_each_for_multicast(message)
    results = []
    for token, resp in zip(tokens, batch.responses):
        if resp.success:
            results.append(PushTokenResult(token=token, success=True))
        else:
            results.append(PushTokenResult(
                token=token,
                success=False,
                error=str(resp.exception),
                invalid=isinstance(resp.exception, _PERMANENT_ERRORS),
            ))
    return results


async def send_push(tokens: List[str], title: str, body: str,
                    data: Optional[Dict[str, str]] = None) -> List[PushTokenResult]:
    # FCM only accepts string values in the data map
    data = {k: str(v) for k, v in (data or {}).items()}
    if not _ensure_app():
        _LOGGER.info("[PUSH] DEV mode: would send '%s' to %d device(s)", title, len(tokens))
        return [PushTokenResult(token=t, success=True) for t in tokens]

    results: List[PushTokenResult] = []
    for start in range(0, len(tokens), FCM_MULTICAST_LIMIT):
        chunk = tokens[start:start + FCM_MULTICAST_LIMIT]
        results.extend(await asyncio.to_thread(_send_batch, chunk, title, body, data))
    return results
