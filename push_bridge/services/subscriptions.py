from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from push_bridge.errors import (
    GatewayError,
    SubscriptionConflictError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
)
from push_bridge.models import PushSubscription, SubscriptionPlatform, SubscriptionStatus
from push_bridge.schemas import ForumUser
from push_bridge.services.gateway import PushGateway, is_endpoint_enabled
from push_bridge.settings import get_settings

logger = logging.getLogger("push_bridge.subscriptions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_platform(raw: str) -> SubscriptionPlatform:
    normalized = (raw or "").strip().lower()
    try:
        return SubscriptionPlatform(normalized)
    except ValueError:
        raise SubscriptionValidationError(
            code="INVALID_PLATFORM",
            message="Platform parameter should be ios or android.",
        ) from None


def _parse_device_token(raw: str) -> str:
    token = (raw or "").strip()
    if not token:
        raise SubscriptionValidationError(
            code="INVALID_DEVICE_TOKEN",
            message="Device token is required.",
        )
    return token


def get_subscription_by_token(db: Session, device_token: str) -> PushSubscription | None:
    return db.scalar(select(PushSubscription).where(PushSubscription.device_token == device_token))


def list_user_subscriptions(
    db: Session,
    *,
    user_id: int,
    enabled_only: bool = False,
) -> list[PushSubscription]:
    stmt = (
        select(PushSubscription)
        .where(PushSubscription.user_id == user_id)
        .order_by(PushSubscription.id.asc())
    )
    if enabled_only:
        stmt = stmt.where(PushSubscription.status == SubscriptionStatus.ENABLED)
    return list(db.scalars(stmt).all())


def user_has_subscriptions(db: Session, *, user_id: int) -> bool:
    found = db.scalar(
        select(PushSubscription.id).where(PushSubscription.user_id == user_id).limit(1)
    )
    return found is not None


def _reuse_live_subscription(db: Session, row: PushSubscription, *, user: ForumUser) -> PushSubscription:
    if row.user_id != user.id:
        if not get_settings().allow_subscription_reassignment:
            raise SubscriptionConflictError(
                code="SUBSCRIPTION_OWNED_BY_OTHER_USER",
                message="Device token is registered to another account.",
            )
        logger.warning(
            "push_subscription_reassigned",
            extra={
                "subscription_id": row.id,
                "previous_user_id": row.user_id,
                "user_id": user.id,
                "username": user.username,
            },
        )
        row.user_id = user.id

    if row.status == SubscriptionStatus.DISABLED:
        row.status = SubscriptionStatus.ENABLED
        row.status_changed_at = _utcnow()
        logger.info(
            "push_subscription_reenabled",
            extra={"subscription_id": row.id, "user_id": user.id, "username": user.username},
        )

    db.commit()
    db.refresh(row)
    return row


def register_subscription(
    db: Session,
    *,
    user: ForumUser,
    device_token: str,
    platform: str,
    application_name: str | None,
    gateway: PushGateway,
) -> PushSubscription:
    resolved_platform = _parse_platform(platform)
    token = _parse_device_token(device_token)
    resolved_application_name = (application_name or "").strip() or get_settings().default_application_name

    existing = get_subscription_by_token(db, token)
    if existing is not None:
        attributes = gateway.get_endpoint_attributes(existing.endpoint_arn)
        if is_endpoint_enabled(attributes):
            return _reuse_live_subscription(db, existing, user=user)

        # Endpoint disabled or unreadable at the gateway: drop both sides and start over.
        gateway.delete_endpoint(existing.endpoint_arn)
        stale_id = existing.id
        db.delete(existing)
        db.commit()
        logger.info(
            "push_subscription_invalid_endpoint_removed",
            extra={"subscription_id": stale_id, "user_id": user.id, "username": user.username},
        )

    endpoint_arn = gateway.create_endpoint(token=token, platform=resolved_platform)
    if not endpoint_arn:
        logger.error(
            "push_subscription_endpoint_create_failed",
            extra={"user_id": user.id, "username": user.username, "platform": resolved_platform.value},
        )
        raise GatewayError("Failed to create SNS endpoint.", code="ENDPOINT_CREATE_FAILED")

    row = PushSubscription(
        user_id=user.id,
        device_token=token,
        application_name=resolved_application_name,
        platform=resolved_platform,
        endpoint_arn=endpoint_arn,
        status=SubscriptionStatus.ENABLED,
        status_changed_at=_utcnow(),
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        gateway.delete_endpoint(endpoint_arn)
        logger.warning(
            "push_subscription_register_conflict",
            extra={"user_id": user.id, "username": user.username},
        )
        raise SubscriptionConflictError(
            code="SUBSCRIPTION_CONFLICT",
            message="Device token was registered concurrently. Please retry.",
        ) from None

    db.refresh(row)
    logger.info(
        "push_subscription_created",
        extra={
            "subscription_id": row.id,
            "user_id": user.id,
            "username": user.username,
            "platform": resolved_platform.value,
        },
    )
    return row


def disable_subscription(db: Session, *, user: ForumUser, device_token: str) -> PushSubscription:
    token = _parse_device_token(device_token)
    # Scoped to the caller so one account cannot silence another account's device.
    row = db.scalar(
        select(PushSubscription).where(
            PushSubscription.device_token == token,
            PushSubscription.user_id == user.id,
        )
    )
    if row is None:
        logger.warning(
            "push_subscription_disable_missing",
            extra={"user_id": user.id, "username": user.username},
        )
        raise SubscriptionNotFoundError()

    row.status = SubscriptionStatus.DISABLED
    row.status_changed_at = _utcnow()
    db.commit()
    db.refresh(row)
    logger.info(
        "push_subscription_disabled",
        extra={"subscription_id": row.id, "user_id": user.id, "username": user.username},
    )
    return row


def disable_all_for_user(db: Session, *, user_id: int, username: str | None = None) -> int:
    result = db.execute(
        update(PushSubscription)
        .where(
            PushSubscription.user_id == user_id,
            PushSubscription.status == SubscriptionStatus.ENABLED,
        )
        .values(status=SubscriptionStatus.DISABLED, status_changed_at=_utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    count = int(result.rowcount or 0)
    if count:
        logger.info(
            "push_subscriptions_disabled_on_logout",
            extra={"user_id": user_id, "username": username, "count": count},
        )
    return count
