from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from push_bridge.db import Base
from push_bridge.errors import GatewayError
from push_bridge.models import SubscriptionPlatform
from push_bridge.services.gateway import PushGateway


def make_session_factory() -> sessionmaker[Session]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False)


def override_get_db(session: Session):
    def _override() -> Generator[Session, None, None]:
        yield session

    return _override


class FakeGateway(PushGateway):
    """In-memory gateway that records every call it receives."""

    def __init__(self, *, fail_create: bool = False):
        self.fail_create = fail_create
        self.calls: list[tuple[str, Any]] = []
        self.endpoints: dict[str, bool] = {}
        self.unreadable: set[str] = set()
        self.publish_errors: dict[str, GatewayError] = {}
        self.published: list[dict[str, Any]] = []
        self._counter = 0

    def count(self, name: str) -> int:
        return sum(1 for call_name, _ in self.calls if call_name == name)

    def set_enabled(self, endpoint_arn: str, enabled: bool) -> None:
        self.endpoints[endpoint_arn] = enabled

    def create_endpoint(self, *, token: str, platform: SubscriptionPlatform) -> str | None:
        self.calls.append(("create_endpoint", (token, platform)))
        if self.fail_create:
            return None
        self._counter += 1
        endpoint_arn = f"arn:aws:sns:us-east-1:000000000000:endpoint/{platform.value}/app/{self._counter}"
        self.endpoints[endpoint_arn] = True
        return endpoint_arn

    def get_endpoint_attributes(self, endpoint_arn: str) -> dict[str, str] | None:
        self.calls.append(("get_endpoint_attributes", endpoint_arn))
        if endpoint_arn in self.unreadable or endpoint_arn not in self.endpoints:
            return None
        return {"Enabled": "true" if self.endpoints[endpoint_arn] else "false"}

    def delete_endpoint(self, endpoint_arn: str) -> bool:
        self.calls.append(("delete_endpoint", endpoint_arn))
        return self.endpoints.pop(endpoint_arn, None) is not None

    def publish(
        self,
        endpoint_arn: str,
        *,
        platform: SubscriptionPlatform,
        payload: dict[str, Any],
        unread: int,
    ) -> str | None:
        self.calls.append(("publish", endpoint_arn))
        error = self.publish_errors.get(endpoint_arn)
        if error is not None:
            raise error
        self.published.append(
            {"endpoint_arn": endpoint_arn, "platform": platform, "payload": payload, "unread": unread}
        )
        return f"message-{len(self.published)}"
