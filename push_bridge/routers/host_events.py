from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from push_bridge.db import get_db
from push_bridge.schemas import HostEventResponse, HostPushNotificationEvent, HostUserEvent
from push_bridge.security import verify_host_event_signature
from push_bridge.services.lifecycle import (
    EVENT_PUSH_NOTIFICATION,
    EVENT_USER_AUTHENTICATED,
    EVENT_USER_LOGGED_OUT,
    HostEventSubscriber,
    PushLifecycleAdapter,
    emit_host_event,
)

router = APIRouter(
    prefix="/internal/host-events",
    tags=["host-events"],
    dependencies=[Depends(verify_host_event_signature)],
)


def get_host_event_subscriber(db: Session = Depends(get_db)) -> HostEventSubscriber:
    return PushLifecycleAdapter(db)


@router.post("/user-authenticated", response_model=HostEventResponse)
def user_authenticated(
    event: HostUserEvent,
    subscriber: HostEventSubscriber = Depends(get_host_event_subscriber),
) -> HostEventResponse:
    emit_host_event(subscriber, EVENT_USER_AUTHENTICATED, event.user)
    return HostEventResponse(ok=True, event=EVENT_USER_AUTHENTICATED)


@router.post("/user-logged-out", response_model=HostEventResponse)
def user_logged_out(
    event: HostUserEvent,
    subscriber: HostEventSubscriber = Depends(get_host_event_subscriber),
) -> HostEventResponse:
    disabled_count = emit_host_event(subscriber, EVENT_USER_LOGGED_OUT, event.user)
    return HostEventResponse(
        ok=True,
        event=EVENT_USER_LOGGED_OUT,
        disabled_count=disabled_count if isinstance(disabled_count, int) else None,
    )


@router.post("/push-notification", response_model=HostEventResponse)
def push_notification(
    event: HostPushNotificationEvent,
    subscriber: HostEventSubscriber = Depends(get_host_event_subscriber),
) -> HostEventResponse:
    job = emit_host_event(subscriber, EVENT_PUSH_NOTIFICATION, event.user, event.payload)
    return HostEventResponse(
        ok=True,
        event=EVENT_PUSH_NOTIFICATION,
        job_id=getattr(job, "id", None),
    )
