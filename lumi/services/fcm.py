"""Firebase Cloud Messaging: push delivery to parent devices."""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging

from lumi.config import settings

logger = logging.getLogger(__name__)

_firebase_app = None


def _get_firebase_app():
    global _firebase_app
    if _firebase_app is not None:
        return _firebase_app

    if not settings.firebase_credentials_path:
        logger.warning("FIREBASE_CREDENTIALS_PATH not set. FCM will be disabled.")
        return None

    try:
        cred = credentials.Certificate(settings.firebase_credentials_path)
        _firebase_app = firebase_admin.initialize_app(cred)
        return _firebase_app
    except Exception as e:
        logger.error(f"Failed to initialize Firebase app: {e}")
        return None


class NotificationDispatcher(ABC):
    @abstractmethod
    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> None:
        """Deliver one push notification; raises if delivery fails."""


class FcmDispatcher(NotificationDispatcher):
    """Sends through firebase-admin; a missing Firebase setup skips delivery."""

    def __init__(self, app: Optional[firebase_admin.App] = None):
        self._app = app

    def _resolve_app(self):
        if self._app is None:
            self._app = _get_firebase_app()
        return self._app

    async def send(self, token: str, title: str, body: str, data: dict[str, str]) -> None:
        app = self._resolve_app()
        if not app:
            return
        message = messaging.Message(
            token=token,
            notification=messaging.Notification(title=title, body=body),
            data={key: str(value) for key, value in data.items()},
            apns=messaging.APNSConfig(payload=messaging.APNSPayload(aps=messaging.Aps(sound="default"))),
            android=messaging.AndroidConfig(
                priority="high",
                notification=messaging.AndroidNotification(
                    sound="default",
                    click_action="FLUTTER_NOTIFICATION_CLICK",
                ),
            ),
        )
        # messaging.send blocks on HTTP; keep it off the event loop.
        await asyncio.to_thread(messaging.send, message, False, app)


async def notify_parents(
    store,
    dispatcher: NotificationDispatcher,
    parent_ids: list[str],
    title: str,
    body: str,
    data: dict[str, str],
) -> int:
    """Send to every token of every linked parent; returns deliveries made.

    A failure for one parent is logged and does not stop the others.
    """
    delivered = 0
    for parent_id in parent_ids:
        try:
            parent = await store.get_user(parent_id)
            if not parent or not parent.fcm_tokens:
                continue
            for token in parent.fcm_tokens:
                await dispatcher.send(token, title, body, data)
                delivered += 1
            logger.info("Push notification sent: parent_id=%s type=%s", parent_id, data.get("type"))
        except Exception as e:
            logger.error(
                "Push notification failed: parent_id=%s student_id=%s type=%s error=%s",
                parent_id,
                data.get("student_id"),
                data.get("type"),
                e,
            )
    return delivered
