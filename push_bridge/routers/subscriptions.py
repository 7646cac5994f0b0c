from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from push_bridge.db import get_db
from push_bridge.errors import ApiError
from push_bridge.schemas import (
    ForumUser,
    PushDisableRequest,
    PushSubscribeRequest,
    PushSubscriptionRead,
)
from push_bridge.security import get_current_user
from push_bridge.services.gateway import PushGateway, get_push_gateway
from push_bridge.services.subscriptions import (
    disable_subscription,
    list_user_subscriptions,
    register_subscription,
)
from push_bridge.settings import get_settings


def require_push_enabled() -> None:
    if not get_settings().push_enabled:
        raise ApiError(status_code=404, code="PUSH_DISABLED", message="Push notifications are disabled.")


router = APIRouter(
    prefix="/amazon-sns",
    tags=["push-subscriptions"],
    dependencies=[Depends(require_push_enabled)],
)


@router.post("/subscribe", response_model=PushSubscriptionRead)
def subscribe_device(
    payload: PushSubscribeRequest,
    request: Request,
    user: ForumUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: PushGateway = Depends(get_push_gateway),
) -> PushSubscriptionRead:
    row = register_subscription(
        db,
        user=user,
        device_token=payload.token,
        platform=payload.platform,
        application_name=payload.application_name,
        gateway=gateway,
    )
    request.state.subscription_id = row.id
    return PushSubscriptionRead.model_validate(row)


@router.post("/disable", response_model=PushSubscriptionRead)
def disable_device(
    payload: PushDisableRequest,
    request: Request,
    user: ForumUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> PushSubscriptionRead:
    row = disable_subscription(db, user=user, device_token=payload.token)
    request.state.subscription_id = row.id
    return PushSubscriptionRead.model_validate(row)


@router.get("/subscriptions", response_model=list[PushSubscriptionRead])
def list_my_subscriptions(
    user: ForumUser = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[PushSubscriptionRead]:
    rows = list_user_subscriptions(db, user_id=user.id)
    return [PushSubscriptionRead.model_validate(row) for row in rows]
