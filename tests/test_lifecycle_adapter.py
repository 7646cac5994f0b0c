from __future__ import annotations

import unittest

from sqlalchemy import select

from push_bridge.models import NotificationJob, SubscriptionStatus
from push_bridge.schemas import ForumUser
from push_bridge.services.lifecycle import (
    EVENT_PUSH_NOTIFICATION,
    EVENT_USER_AUTHENTICATED,
    EVENT_USER_LOGGED_OUT,
    HostEventSubscriber,
    PushLifecycleAdapter,
    emit_host_event,
)
from push_bridge.services.subscriptions import list_user_subscriptions, register_subscription
from tests.support import FakeGateway, make_session_factory


class _RecordingSubscriber(HostEventSubscriber):
    def __init__(self) -> None:
        self.events: list[tuple[str, int]] = []

    def on_logged_out(self, user: ForumUser) -> str:
        self.events.append(("logged_out", user.id))
        return "done"


class LifecycleAdapterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.gateway = FakeGateway()
        self.user = ForumUser(id=3, username="dave")
        self.adapter = PushLifecycleAdapter(self.db)
        for token in ("tok-1", "tok-2"):
            register_subscription(
                self.db,
                user=self.user,
                device_token=token,
                platform="ios",
                application_name=None,
                gateway=self.gateway,
            )

    def tearDown(self) -> None:
        self.db.close()

    def test_logout_disables_every_enabled_subscription(self) -> None:
        count = emit_host_event(self.adapter, EVENT_USER_LOGGED_OUT, self.user)

        self.assertEqual(count, 2)
        rows = list_user_subscriptions(self.db, user_id=3)
        self.assertTrue(all(row.status == SubscriptionStatus.DISABLED for row in rows))

    def test_authenticated_event_does_not_touch_registry(self) -> None:
        calls_before = list(self.gateway.calls)

        result = emit_host_event(self.adapter, EVENT_USER_AUTHENTICATED, self.user)

        self.assertIsNone(result)
        self.assertEqual(self.gateway.calls, calls_before)
        rows = list_user_subscriptions(self.db, user_id=3, enabled_only=True)
        self.assertEqual(len(rows), 2)

    def test_push_notification_event_enqueues_job(self) -> None:
        job = emit_host_event(self.adapter, EVENT_PUSH_NOTIFICATION, self.user, {"excerpt": "ping"})

        self.assertIsNotNone(job)
        stored = list(self.db.scalars(select(NotificationJob)).all())
        self.assertEqual([item.id for item in stored], [job.id])

    def test_base_subscriber_ignores_events(self) -> None:
        subscriber = HostEventSubscriber()

        self.assertIsNone(emit_host_event(subscriber, EVENT_USER_LOGGED_OUT, self.user))
        self.assertIsNone(emit_host_event(subscriber, EVENT_PUSH_NOTIFICATION, self.user))

    def test_custom_subscriber_receives_routed_event(self) -> None:
        subscriber = _RecordingSubscriber()

        result = emit_host_event(subscriber, EVENT_USER_LOGGED_OUT, self.user)

        self.assertEqual(result, "done")
        self.assertEqual(subscriber.events, [("logged_out", 3)])

    def test_unknown_event_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            emit_host_event(self.adapter, "user_deleted", self.user)


if __name__ == "__main__":
    unittest.main()
