from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from push_bridge.models import SubscriptionPlatform, SubscriptionStatus


class ForumUser(BaseModel):
    id: int
    username: str = ""
    unread_notifications: int = 0
    unread_high_priority_notifications: int = 0

    @property
    def unread_total(self) -> int:
        return max(0, self.unread_notifications) + max(0, self.unread_high_priority_notifications)


class PushSubscribeRequest(BaseModel):
    token: str = Field(min_length=1, max_length=1024)
    platform: str = Field(min_length=1, max_length=32)
    application_name: str | None = Field(default=None, max_length=255)


class PushDisableRequest(BaseModel):
    token: str = Field(min_length=1, max_length=1024)


class PushSubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    device_token: str
    application_name: str
    platform: SubscriptionPlatform
    endpoint_arn: str
    status: SubscriptionStatus
    status_changed_at: datetime
    created_at: datetime
    updated_at: datetime


class HostUserEvent(BaseModel):
    user: ForumUser


class HostPushNotificationEvent(BaseModel):
    user: ForumUser
    payload: dict[str, Any] = Field(default_factory=dict)


class HostEventResponse(BaseModel):
    ok: bool
    event: str
    disabled_count: int | None = None
    job_id: int | None = None
