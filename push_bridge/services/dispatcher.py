from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from push_bridge.db import SessionLocal
from push_bridge.errors import EndpointDisabledError, GatewayError
from push_bridge.models import NotificationJob, NotificationJobStatus, SubscriptionStatus
from push_bridge.modifiers import SEND_NOTIFICATION_MODIFIER, apply_modifier
from push_bridge.schemas import ForumUser
from push_bridge.services.gateway import PushGateway, get_push_gateway
from push_bridge.services.subscriptions import list_user_subscriptions, user_has_subscriptions
from push_bridge.settings import get_settings

logger = logging.getLogger("push_bridge.dispatcher")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dispatch_push_notification(
    db: Session,
    *,
    user: ForumUser,
    payload: dict[str, Any],
    now_utc: datetime | None = None,
) -> NotificationJob | None:
    if not user_has_subscriptions(db, user_id=user.id):
        return None

    if not apply_modifier(SEND_NOTIFICATION_MODIFIER, True, user, payload):
        logger.info("push_dispatch_vetoed", extra={"user_id": user.id, "username": user.username})
        return None

    job = NotificationJob(
        user_id=user.id,
        payload=dict(payload),
        unread=user.unread_total,
        status=NotificationJobStatus.PENDING.value,
        attempts=0,
        last_error=None,
        scheduled_at_utc=now_utc or _utcnow(),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(
        "push_dispatch_enqueued",
        extra={"job_id": job.id, "user_id": user.id, "unread": job.unread},
    )
    return job


def deliver_notification_job(
    db: Session,
    *,
    job: NotificationJob,
    gateway: PushGateway,
) -> dict[str, Any]:
    subscriptions = list_user_subscriptions(db, user_id=job.user_id, enabled_only=True)
    payload = {key: value for key, value in (job.payload or {}).items() if key != "delivery"}
    sent = 0
    disabled = 0
    failures: list[dict[str, Any]] = []

    for row in subscriptions:
        try:
            gateway.publish(
                row.endpoint_arn,
                platform=row.platform,
                payload=payload,
                unread=job.unread,
            )
        except EndpointDisabledError as exc:
            row.status = SubscriptionStatus.DISABLED
            row.status_changed_at = _utcnow()
            disabled += 1
            failures.append({"subscription_id": row.id, "code": exc.code, "error": exc.message})
            logger.warning(
                "push_delivery_endpoint_disabled",
                extra={"job_id": job.id, "subscription_id": row.id, "user_id": job.user_id},
            )
        except GatewayError as exc:
            failures.append({"subscription_id": row.id, "code": exc.code, "error": exc.message})
            logger.warning(
                "push_delivery_failed",
                extra={
                    "job_id": job.id,
                    "subscription_id": row.id,
                    "user_id": job.user_id,
                    "error": exc.message,
                },
            )
        except Exception as exc:
            failures.append({"subscription_id": row.id, "code": "UNEXPECTED", "error": str(exc)[:500]})
            logger.exception(
                "push_delivery_unexpected_error",
                extra={"job_id": job.id, "subscription_id": row.id, "user_id": job.user_id},
            )
        else:
            sent += 1

    if disabled:
        db.commit()

    return {
        "total_targets": len(subscriptions),
        "sent": sent,
        "failed": len(failures),
        "disabled": disabled,
        "failures": failures,
    }


def _claim_due_pending_jobs(
    session: Session,
    *,
    now_utc: datetime,
    limit: int,
) -> list[NotificationJob]:
    stmt = (
        select(NotificationJob)
        .where(
            NotificationJob.status == NotificationJobStatus.PENDING.value,
            NotificationJob.scheduled_at_utc <= now_utc,
        )
        .order_by(NotificationJob.scheduled_at_utc.asc(), NotificationJob.id.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    jobs = list(session.scalars(stmt).all())
    for job in jobs:
        job.status = NotificationJobStatus.SENDING.value
    session.commit()
    return jobs


def _mark_job_sent(
    session: Session,
    *,
    job_id: int,
    delivery: dict[str, Any],
) -> NotificationJob | None:
    job = session.get(NotificationJob, job_id)
    if job is None:
        return None
    job.payload = {**(job.payload or {}), "delivery": delivery}
    job.status = NotificationJobStatus.SENT.value
    job.last_error = None
    session.commit()
    session.refresh(job)
    return job


def _mark_job_failure(
    session: Session,
    *,
    job_id: int,
    error: Exception,
    now_utc: datetime,
) -> NotificationJob | None:
    session.rollback()
    job = session.get(NotificationJob, job_id)
    if job is None:
        return None

    next_attempts = (job.attempts or 0) + 1
    job.attempts = next_attempts
    job.last_error = str(error)[:4000]
    if next_attempts < max(1, get_settings().notification_max_attempts):
        job.status = NotificationJobStatus.PENDING.value
        job.scheduled_at_utc = now_utc + timedelta(minutes=2**next_attempts)
    else:
        job.status = NotificationJobStatus.FAILED.value

    session.commit()
    session.refresh(job)
    return job


def send_pending_notifications(
    limit: int = 100,
    *,
    now_utc: datetime | None = None,
    db: Session | None = None,
    gateway: PushGateway | None = None,
) -> list[NotificationJob]:
    if db is None:
        with SessionLocal() as managed_db:
            return send_pending_notifications(
                limit=limit,
                now_utc=now_utc,
                db=managed_db,
                gateway=gateway,
            )

    session = db
    reference_utc = now_utc or _utcnow()
    push_gateway = gateway or get_push_gateway()

    claimed_jobs = _claim_due_pending_jobs(session, now_utc=reference_utc, limit=max(1, limit))
    processed: list[NotificationJob] = []
    for claimed in claimed_jobs:
        job_id = claimed.id
        try:
            delivery = deliver_notification_job(session, job=claimed, gateway=push_gateway)
            sent_job = _mark_job_sent(session, job_id=job_id, delivery=delivery)
        except Exception as exc:
            logger.exception("push_job_failed", extra={"job_id": job_id})
            failed_job = _mark_job_failure(session, job_id=job_id, error=exc, now_utc=reference_utc)
            if failed_job is not None:
                processed.append(failed_job)
            continue

        if sent_job is not None:
            processed.append(sent_job)
            logger.info(
                "push_job_sent",
                extra={
                    "job_id": job_id,
                    "user_id": sent_job.user_id,
                    "total_targets": delivery["total_targets"],
                    "sent": delivery["sent"],
                    "failed": delivery["failed"],
                    "disabled": delivery["disabled"],
                },
            )

    return processed


def get_job_backlog(db: Session | None = None) -> dict[str, int]:
    if db is None:
        with SessionLocal() as managed_db:
            return get_job_backlog(managed_db)

    rows = db.execute(
        select(NotificationJob.status, func.count(NotificationJob.id)).group_by(NotificationJob.status)
    ).all()
    counts = {status.value: 0 for status in NotificationJobStatus}
    for status, count in rows:
        counts[str(status)] = int(count)
    return counts
