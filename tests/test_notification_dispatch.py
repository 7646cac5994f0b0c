from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import select

from push_bridge.errors import EndpointDisabledError, GatewayError
from push_bridge.models import (
    NotificationJob,
    NotificationJobStatus,
    PushSubscription,
    SubscriptionStatus,
)
from push_bridge.modifiers import SEND_NOTIFICATION_MODIFIER, clear_modifiers, register_modifier
from push_bridge.schemas import ForumUser
from push_bridge.services.dispatcher import (
    dispatch_push_notification,
    get_job_backlog,
    send_pending_notifications,
)
from push_bridge.services.subscriptions import disable_subscription, register_subscription
from tests.support import FakeGateway, make_session_factory

NOW = datetime(2026, 10, 16, 12, 0, tzinfo=timezone.utc)


class NotificationDispatchTests(unittest.TestCase):
    def setUp(self) -> None:
        self.db = make_session_factory()()
        self.gateway = FakeGateway()
        self.user = ForumUser(id=7, username="carol", unread_notifications=3, unread_high_priority_notifications=2)

    def tearDown(self) -> None:
        clear_modifiers()
        self.db.close()

    def _subscribe(self, token: str, platform: str = "ios") -> PushSubscription:
        return register_subscription(
            self.db,
            user=self.user,
            device_token=token,
            platform=platform,
            application_name=None,
            gateway=self.gateway,
        )

    def test_dispatch_without_subscriptions_is_noop(self) -> None:
        job = dispatch_push_notification(self.db, user=self.user, payload={"excerpt": "hi"}, now_utc=NOW)

        self.assertIsNone(job)
        self.assertEqual(self.gateway.calls, [])
        self.assertEqual(list(self.db.scalars(select(NotificationJob)).all()), [])

    def test_dispatch_enqueues_one_job_with_unread_total(self) -> None:
        self._subscribe("tok-1")
        self._subscribe("tok-2", platform="android")
        calls_before = len(self.gateway.calls)

        job = dispatch_push_notification(self.db, user=self.user, payload={"excerpt": "hi"}, now_utc=NOW)

        self.assertIsNotNone(job)
        self.assertEqual(job.user_id, 7)
        self.assertEqual(job.unread, 5)
        self.assertEqual(job.payload, {"excerpt": "hi"})
        self.assertEqual(job.status, NotificationJobStatus.PENDING.value)
        self.assertEqual(len(self.gateway.calls), calls_before)
        self.assertEqual(len(list(self.db.scalars(select(NotificationJob)).all())), 1)

    def test_dispatch_to_user_with_only_disabled_subscriptions_still_enqueues(self) -> None:
        self._subscribe("tok-1")
        disable_subscription(self.db, user=self.user, device_token="tok-1")

        job = dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW)
        send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        self.assertIsNotNone(job)
        self.assertEqual(self.gateway.count("publish"), 0)

    def test_send_modifier_can_veto_dispatch(self) -> None:
        self._subscribe("tok-1")
        seen = []

        def _veto(value, user, payload):  # type: ignore[no-untyped-def]
            seen.append((value, user.id, payload.get("excerpt")))
            return False

        register_modifier(SEND_NOTIFICATION_MODIFIER, _veto)

        job = dispatch_push_notification(self.db, user=self.user, payload={"excerpt": "quiet"}, now_utc=NOW)

        self.assertIsNone(job)
        self.assertEqual(seen, [(True, 7, "quiet")])
        self.assertEqual(list(self.db.scalars(select(NotificationJob)).all()), [])

    def test_pending_job_is_delivered_to_enabled_devices_only(self) -> None:
        first = self._subscribe("tok-1")
        second = self._subscribe("tok-2", platform="android")
        self._subscribe("tok-3")
        disable_subscription(self.db, user=self.user, device_token="tok-3")
        dispatch_push_notification(self.db, user=self.user, payload={"excerpt": "hello"}, now_utc=NOW)

        processed = send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        self.assertEqual(len(processed), 1)
        job = processed[0]
        self.assertEqual(job.status, NotificationJobStatus.SENT.value)
        self.assertEqual(job.payload["excerpt"], "hello")
        self.assertEqual(job.payload["delivery"]["total_targets"], 2)
        self.assertEqual(job.payload["delivery"]["sent"], 2)
        published = sorted(item["endpoint_arn"] for item in self.gateway.published)
        self.assertEqual(published, sorted([first.endpoint_arn, second.endpoint_arn]))
        self.assertTrue(all(item["unread"] == 5 for item in self.gateway.published))

    def test_one_failing_device_does_not_block_the_others(self) -> None:
        broken = self._subscribe("tok-1")
        healthy = self._subscribe("tok-2")
        self.gateway.publish_errors[broken.endpoint_arn] = GatewayError("throttled", code="PUBLISH_FAILED")
        dispatch_push_notification(self.db, user=self.user, payload={"excerpt": "hello"}, now_utc=NOW)

        with self.assertLogs("push_bridge.dispatcher", level="WARNING"):
            processed = send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        delivery = processed[0].payload["delivery"]
        self.assertEqual(processed[0].status, NotificationJobStatus.SENT.value)
        self.assertEqual(delivery["sent"], 1)
        self.assertEqual(delivery["failed"], 1)
        self.assertEqual(delivery["failures"][0]["subscription_id"], broken.id)
        self.assertEqual([item["endpoint_arn"] for item in self.gateway.published], [healthy.endpoint_arn])

    def test_unexpected_device_error_is_isolated(self) -> None:
        broken = self._subscribe("tok-1")
        self._subscribe("tok-2")
        dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW)
        original_publish = self.gateway.publish

        def _publish(endpoint_arn, **kwargs):  # type: ignore[no-untyped-def]
            if endpoint_arn == broken.endpoint_arn:
                raise RuntimeError("socket closed")
            return original_publish(endpoint_arn, **kwargs)

        with patch.object(self.gateway, "publish", side_effect=_publish):
            with self.assertLogs("push_bridge.dispatcher", level="ERROR"):
                processed = send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        delivery = processed[0].payload["delivery"]
        self.assertEqual(delivery["sent"], 1)
        self.assertEqual(delivery["failures"][0]["code"], "UNEXPECTED")

    def test_endpoint_disabled_answer_disables_but_keeps_subscription(self) -> None:
        broken = self._subscribe("tok-1")
        self.gateway.publish_errors[broken.endpoint_arn] = EndpointDisabledError()
        dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW)

        with self.assertLogs("push_bridge.dispatcher", level="WARNING"):
            processed = send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        self.assertEqual(processed[0].payload["delivery"]["disabled"], 1)
        row = self.db.get(PushSubscription, broken.id)
        self.assertIsNotNone(row)
        self.assertEqual(row.status, SubscriptionStatus.DISABLED)

    def test_future_jobs_are_not_claimed(self) -> None:
        self._subscribe("tok-1")
        dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW + timedelta(minutes=5))

        processed = send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        self.assertEqual(processed, [])
        self.assertEqual(self.gateway.count("publish"), 0)

    def test_failed_job_is_retried_with_backoff(self) -> None:
        self._subscribe("tok-1")
        job = dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW)

        with patch(
            "push_bridge.services.dispatcher.deliver_notification_job",
            side_effect=RuntimeError("database went away"),
        ):
            with self.assertLogs("push_bridge.dispatcher", level="ERROR"):
                processed = send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        self.assertEqual(len(processed), 1)
        retried = self.db.get(NotificationJob, job.id)
        self.assertEqual(retried.status, NotificationJobStatus.PENDING.value)
        self.assertEqual(retried.attempts, 1)
        self.assertEqual(retried.last_error, "database went away")
        self.assertEqual(
            retried.scheduled_at_utc.replace(tzinfo=None),
            (NOW + timedelta(minutes=2)).replace(tzinfo=None),
        )

    def test_job_fails_permanently_after_max_attempts(self) -> None:
        self._subscribe("tok-1")
        job = dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW)
        job.attempts = 4
        self.db.commit()

        with patch(
            "push_bridge.services.dispatcher.deliver_notification_job",
            side_effect=RuntimeError("still broken"),
        ):
            with self.assertLogs("push_bridge.dispatcher", level="ERROR"):
                send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        failed = self.db.get(NotificationJob, job.id)
        self.assertEqual(failed.status, NotificationJobStatus.FAILED.value)
        self.assertEqual(failed.attempts, 5)

    def test_job_backlog_counts_by_status(self) -> None:
        self._subscribe("tok-1")
        dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW)
        dispatch_push_notification(self.db, user=self.user, payload={}, now_utc=NOW + timedelta(hours=1))
        send_pending_notifications(now_utc=NOW, db=self.db, gateway=self.gateway)

        backlog = get_job_backlog(self.db)

        self.assertEqual(backlog["SENT"], 1)
        self.assertEqual(backlog["PENDING"], 1)
        self.assertEqual(backlog["FAILED"], 0)


if __name__ == "__main__":
    unittest.main()
