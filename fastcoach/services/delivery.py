"""
Delivery channels — the only outbound side effect of the engine.

A channel takes a fully decided notification (fire instant, text, stable
identifier) and hands it to whatever actually shows it.  Channel methods are
blocking; the scheduler calls them from a worker thread.

  InMemoryDeliveryChannel   keeps pending notifications in a dict (dev/tests)
  FCMDeliveryChannel        pushes data messages to the device, which schedules
                            the local notification
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import firebase_admin
from firebase_admin import credentials, messaging

from fastcoach.core.config import settings
from fastcoach.models.notification_rule import ActivityType
from fastcoach.services.identifiers import type_prefix

logger = logging.getLogger(__name__)

# Device-side scheduling requests are useless once stale
MESSAGE_TTL_SECONDS = 3600


class DeliveryError(RuntimeError):
    """Raised by a channel that could not accept a notification."""

    def __init__(self, message: str, code: str = "delivery_failed"):
        super().__init__(message)
        self.code = code


def _ensure_firebase_app() -> None:
    try:
        firebase_admin.get_app()
    except ValueError:
        cred = credentials.Certificate(settings.FIREBASE_SERVICE_ACCOUNT_PATH)
        firebase_admin.initialize_app(cred)
        logger.info("Firebase Admin SDK initialised.")


@dataclass
class PendingNotification:
    identifier: str
    fire_at: datetime
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


class InMemoryDeliveryChannel:
    def __init__(self):
        self._lock = threading.Lock()
        self.pending: dict[str, PendingNotification] = {}
        self.cancelled: list[str] = []
        # Flip to make submit() raise, for exercising failure paths
        self.fail_submissions = False

    def submit(
        self,
        fire_at: datetime,
        title: str,
        body: str,
        identifier: str,
        data: Optional[dict[str, str]] = None,
    ) -> str:
        if self.fail_submissions:
            raise DeliveryError(f"submission rejected: {identifier}")
        with self._lock:
            # Same identifier replaces the earlier submission
            self.pending[identifier] = PendingNotification(
                identifier=identifier, fire_at=fire_at, title=title, body=body, data=dict(data or {}),
            )
        logger.debug("Queued %s for %s", identifier, fire_at.isoformat())
        return identifier

    def cancel(self, identifier: str) -> None:
        with self._lock:
            if self.pending.pop(identifier, None) is not None:
                self.cancelled.append(identifier)

    def cancel_all(self, activity_type: ActivityType) -> int:
        prefix = type_prefix(activity_type)
        with self._lock:
            doomed = [i for i in self.pending if i.startswith(prefix)]
            for identifier in doomed:
                del self.pending[identifier]
                self.cancelled.append(identifier)
        if doomed:
            logger.info("Cancelled %d pending notifications under %s", len(doomed), prefix)
        return len(doomed)

    def for_type(self, activity_type: ActivityType) -> list[PendingNotification]:
        prefix = type_prefix(activity_type)
        with self._lock:
            return [p for p in self.pending.values() if p.identifier.startswith(prefix)]


class FCMDeliveryChannel:
    """
    Data-only FCM messages to one device token.  The ``action`` key tells
    the app what to do: schedule / cancel / cancel_all.  The device schedules
    the local notification itself, so a message older than
    MESSAGE_TTL_SECONDS is dropped by FCM rather than delivered late.
    """

    def __init__(self, fcm_token: str, android_priority: str = "high"):
        self._token = fcm_token
        self._priority = android_priority

    def submit(
        self,
        fire_at: datetime,
        title: str,
        body: str,
        identifier: str,
        data: Optional[dict[str, str]] = None,
    ) -> str:
        return self._send({
            **(data or {}),
            "action":     "schedule",
            "identifier": identifier,
            "fire_at":    fire_at.isoformat(),
            "title":      title,
            "body":       body,
        })

    def cancel(self, identifier: str) -> None:
        try:
            self._send({"action": "cancel", "identifier": identifier})
        except DeliveryError as exc:
            logger.warning("Cancel of %s not delivered: %s", identifier, exc)

    def cancel_all(self, activity_type: ActivityType) -> int:
        self._send({"action": "cancel_all", "prefix": type_prefix(activity_type)})
        # The device owns the pending set; the count is unknown here
        return 0

    def _send(self, data: dict[str, str]) -> str:
        _ensure_firebase_app()
        message = messaging.Message(
            data={k: str(v) for k, v in data.items()},
            token=self._token,
            android=messaging.AndroidConfig(priority=self._priority, ttl=MESSAGE_TTL_SECONDS),
        )
        try:
            message_id = messaging.send(message)
        except messaging.UnregisteredError as exc:
            raise DeliveryError(str(exc), code="token_unregistered") from exc
        except messaging.SenderIdMismatchError as exc:
            raise DeliveryError(str(exc), code="sender_id_mismatch") from exc
        except Exception as exc:
            # A malformed token comes back as a generic invalid-argument error
            if "registration token" in str(exc).lower():
                raise DeliveryError(str(exc), code="token_unregistered") from exc
            raise DeliveryError(str(exc)) from exc

        logger.info("FCM %s %s → %s", data.get("action"), data.get("identifier", ""), message_id)
        return message_id


def create_delivery_channel():
    """Channel selected by DELIVERY_BACKEND."""
    backend = settings.DELIVERY_BACKEND.lower()
    if backend == "fcm":
        if not settings.FCM_DEVICE_TOKEN:
            logger.warning("DELIVERY_BACKEND=fcm but FCM_DEVICE_TOKEN is empty; using in-memory channel")
            return InMemoryDeliveryChannel()
        logger.info("Using FCM delivery channel")
        return FCMDeliveryChannel(settings.FCM_DEVICE_TOKEN)
    if backend != "memory":
        logger.warning("Unknown DELIVERY_BACKEND %r, using in-memory channel", backend)
    return InMemoryDeliveryChannel()
