from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from push_bridge.errors import EndpointDisabledError, GatewayError
from push_bridge.models import SubscriptionPlatform
from push_bridge.settings import Settings, get_platform_application_arn, get_settings

logger = logging.getLogger("push_bridge.gateway")

_EXCERPT_MAX_CHARS = 240


class PushGateway:
    """Outbound calls to the push gateway.

    ``create_endpoint`` and ``get_endpoint_attributes`` return ``None`` when the
    gateway cannot answer, ``delete_endpoint`` is best-effort, ``publish``
    raises ``GatewayError``.
    """

    def create_endpoint(self, *, token: str, platform: SubscriptionPlatform) -> str | None:
        raise NotImplementedError

    def get_endpoint_attributes(self, endpoint_arn: str) -> dict[str, str] | None:
        raise NotImplementedError

    def delete_endpoint(self, endpoint_arn: str) -> bool:
        raise NotImplementedError

    def publish(
        self,
        endpoint_arn: str,
        *,
        platform: SubscriptionPlatform,
        payload: dict[str, Any],
        unread: int,
    ) -> str | None:
        raise NotImplementedError


def is_endpoint_enabled(attributes: dict[str, str] | None) -> bool:
    if not attributes:
        return False
    return str(attributes.get("Enabled", "")).strip().lower() == "true"


def _client_error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code") or "")


def _notification_text(payload: dict[str, Any]) -> tuple[str, str]:
    title = str(payload.get("translated_title") or payload.get("topic_title") or "")
    body = str(payload.get("excerpt") or "")
    if len(body) > _EXCERPT_MAX_CHARS:
        body = body[: _EXCERPT_MAX_CHARS - 1].rstrip() + "…"
    return title, body


def build_platform_message(
    *,
    platform: SubscriptionPlatform,
    payload: dict[str, Any],
    unread: int,
    use_sandbox: bool = False,
) -> dict[str, str]:
    title, body = _notification_text(payload)
    url = payload.get("post_url")

    if platform == SubscriptionPlatform.IOS:
        apns_message: dict[str, Any] = {
            "aps": {
                "alert": {"title": title, "body": body},
                "badge": max(0, unread),
                "sound": "default",
            },
        }
        if url:
            apns_message["url"] = url
        key = "APNS_SANDBOX" if use_sandbox else "APNS"
        return {"default": body or title, key: json.dumps(apns_message)}

    data = {
        key: value if isinstance(value, str) else json.dumps(value)
        for key, value in payload.items()
        if value is not None
    }
    data["unread"] = str(max(0, unread))
    gcm_message = {
        "notification": {"title": title, "body": body},
        "data": data,
    }
    return {"default": body or title, "GCM": json.dumps(gcm_message)}


class SnsPushGateway(PushGateway):
    def __init__(self, settings: Settings, **kwargs: Any):
        self._settings = settings
        self.sns = boto3.client(
            "sns",
            region_name=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id or None,
            aws_secret_access_key=settings.aws_secret_access_key or None,
            **kwargs,
        )

    def create_endpoint(self, *, token: str, platform: SubscriptionPlatform) -> str | None:
        application_arn = get_platform_application_arn(platform.value)
        if not application_arn:
            logger.error("sns_platform_application_missing", extra={"platform": platform.value})
            return None
        try:
            response = self.sns.create_platform_endpoint(
                PlatformApplicationArn=application_arn,
                Token=token,
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error(
                "sns_create_endpoint_failed",
                extra={"platform": platform.value, "error": str(exc)},
            )
            return None
        endpoint_arn = response.get("EndpointArn")
        return str(endpoint_arn) if endpoint_arn else None

    def get_endpoint_attributes(self, endpoint_arn: str) -> dict[str, str] | None:
        try:
            response = self.sns.get_endpoint_attributes(EndpointArn=endpoint_arn)
        except ClientError as exc:
            log = logger.info if _client_error_code(exc) == "NotFound" else logger.warning
            log(
                "sns_get_endpoint_attributes_failed",
                extra={"endpoint_arn": endpoint_arn, "error": str(exc)},
            )
            return None
        except BotoCoreError as exc:
            logger.warning(
                "sns_get_endpoint_attributes_failed",
                extra={"endpoint_arn": endpoint_arn, "error": str(exc)},
            )
            return None
        return dict(response.get("Attributes") or {})

    def delete_endpoint(self, endpoint_arn: str) -> bool:
        try:
            self.sns.delete_endpoint(EndpointArn=endpoint_arn)
        except (ClientError, BotoCoreError) as exc:
            logger.warning(
                "sns_delete_endpoint_failed",
                extra={"endpoint_arn": endpoint_arn, "error": str(exc)},
            )
            return False
        return True

    def publish(
        self,
        endpoint_arn: str,
        *,
        platform: SubscriptionPlatform,
        payload: dict[str, Any],
        unread: int,
    ) -> str | None:
        message = build_platform_message(
            platform=platform,
            payload=payload,
            unread=unread,
            use_sandbox=self._settings.sns_ios_use_sandbox,
        )
        try:
            response = self.sns.publish(
                TargetArn=endpoint_arn,
                Message=json.dumps(message),
                MessageStructure="json",
            )
        except ClientError as exc:
            if _client_error_code(exc) == "EndpointDisabled":
                raise EndpointDisabledError(str(exc)) from exc
            raise GatewayError(str(exc), code="PUBLISH_FAILED") from exc
        except BotoCoreError as exc:
            raise GatewayError(str(exc), code="PUBLISH_FAILED") from exc
        return response.get("MessageId")


@lru_cache
def get_push_gateway() -> PushGateway:
    return SnsPushGateway(get_settings())
