from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from push_bridge.models import NotificationJob
from push_bridge.schemas import ForumUser
from push_bridge.services.dispatcher import dispatch_push_notification
from push_bridge.services.subscriptions import disable_all_for_user

logger = logging.getLogger("push_bridge.lifecycle")

EVENT_USER_AUTHENTICATED = "user_authenticated"
EVENT_USER_LOGGED_OUT = "user_logged_out"
EVENT_PUSH_NOTIFICATION = "push_notification"


class HostEventSubscriber:
    """Receiver for the host application's lifecycle events.

    The host calls these methods; implementations decide what each event means
    for them. Every hook is a no-op by default.
    """

    def on_authenticated(self, user: ForumUser) -> Any:
        return None

    def on_logged_out(self, user: ForumUser) -> Any:
        return None

    def on_push_notification(self, user: ForumUser, payload: dict[str, Any]) -> Any:
        return None


class PushLifecycleAdapter(HostEventSubscriber):
    def __init__(self, db: Session):
        self._db = db

    def on_authenticated(self, user: ForumUser) -> None:
        # Registration is client-initiated; the client bridge retries on its own.
        logger.info("host_user_authenticated", extra={"user_id": user.id, "username": user.username})

    def on_logged_out(self, user: ForumUser) -> int:
        return disable_all_for_user(self._db, user_id=user.id, username=user.username)

    def on_push_notification(self, user: ForumUser, payload: dict[str, Any]) -> NotificationJob | None:
        return dispatch_push_notification(self._db, user=user, payload=payload)


def emit_host_event(
    subscriber: HostEventSubscriber,
    event_name: str,
    user: ForumUser,
    payload: dict[str, Any] | None = None,
) -> Any:
    if event_name == EVENT_USER_AUTHENTICATED:
        return subscriber.on_authenticated(user)
    if event_name == EVENT_USER_LOGGED_OUT:
        return subscriber.on_logged_out(user)
    if event_name == EVENT_PUSH_NOTIFICATION:
        return subscriber.on_push_notification(user, payload or {})
    raise ValueError(f"Unknown host event: {event_name}")
