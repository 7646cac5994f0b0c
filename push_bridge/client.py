"""Client-side registration bridge for mobile apps.

A ``BridgeSession`` holds the registration state of one app session: the
configured device, whether it is registered, whether a registration request
is in flight, and the single pending retry timer. Native code calls
``configure()`` with its device token; the session registers as soon as the
user is authenticated and otherwise arms one delayed retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Literal

import httpx

logger = logging.getLogger("push_bridge.client")

REGISTRATION_RETRY_DELAY_SECONDS = 3.0

BridgeErrorType = Literal["registration", "unregistration"]


@dataclass(frozen=True)
class BridgeError:
    type: BridgeErrorType
    message: str
    status_code: int | None = None


@dataclass(frozen=True)
class DeviceConfig:
    token: str
    platform: str
    application_name: str | None = None
    device_name: str | None = None
    device_model: str | None = None
    app_version: str | None = None
    on_registered: Callable[[dict[str, Any]], Any] | None = None
    on_unregistered: Callable[[], Any] | None = None
    on_error: Callable[[BridgeError], Any] | None = None


class PushBridgeApiError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PushBridgeApi:
    """Thin async transport for the subscription endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        access_token: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token)

    def set_access_token(self, access_token: str | None) -> None:
        self.access_token = access_token

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.access_token}"} if self.access_token else {}
        try:
            response = await self._client.post(path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PushBridgeApiError(str(exc) or exc.__class__.__name__) from exc

        if response.is_error:
            raise PushBridgeApiError(_error_message(response), status_code=response.status_code)
        try:
            data = response.json()
        except ValueError as exc:
            raise PushBridgeApiError("Invalid response body.", status_code=response.status_code) from exc
        if not isinstance(data, dict):
            raise PushBridgeApiError("Invalid response body.", status_code=response.status_code)
        return data

    async def subscribe(self, config: DeviceConfig) -> dict[str, Any]:
        body: dict[str, Any] = {
            "token": config.token,
            "platform": config.platform,
            "application_name": config.application_name,
        }
        device_fields = {
            "device_name": config.device_name,
            "device_model": config.device_model,
            "app_version": config.app_version,
        }
        body.update({key: value for key, value in device_fields.items() if value is not None})
        return await self._post("/amazon-sns/subscribe", body)

    async def disable(self, token: str) -> dict[str, Any]:
        return await self._post("/amazon-sns/disable", {"token": token})


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return f"HTTP {response.status_code}"


class BridgeSession:
    def __init__(
        self,
        api: PushBridgeApi,
        *,
        retry_delay: float = REGISTRATION_RETRY_DELAY_SECONDS,
    ):
        self._api = api
        self._retry_delay = retry_delay
        self._config: DeviceConfig | None = None
        self._registered = False
        self._in_progress = False
        self._retry_handle: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def is_registered(self) -> bool:
        return self._registered

    @property
    def retry_pending(self) -> bool:
        return self._retry_handle is not None

    def get_config(self) -> DeviceConfig | None:
        return replace(self._config) if self._config is not None else None

    def configure(self, config: DeviceConfig) -> None:
        """Store the device configuration and register now or arm one retry.

        Must be called from a running event loop.
        """
        self._clear_retry()
        self._config = config
        logger.info(
            "bridge_configured",
            extra={"platform": config.platform, "authenticated": self._api.is_authenticated},
        )

        if self._api.is_authenticated:
            self._spawn(self.register())
            return

        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self._retry_delay, self._on_retry_timer)

    def on_authenticated(self) -> None:
        self._spawn(self.register())

    def on_logged_out(self) -> None:
        self._spawn(self.unregister())

    async def register(self) -> dict[str, Any] | None:
        self._clear_retry()
        config = self._config
        if not self._api.is_authenticated or config is None or self._registered or self._in_progress:
            return None

        self._in_progress = True
        try:
            result = await self._api.subscribe(config)
        except PushBridgeApiError as exc:
            logger.warning(
                "bridge_registration_failed",
                extra={"status_code": exc.status_code, "error": exc.message},
            )
            self._notify_error(config, "registration", exc)
            return None
        finally:
            self._in_progress = False

        self._registered = True
        logger.info("bridge_registered", extra={"subscription_id": result.get("id")})
        if config.on_registered is not None:
            config.on_registered(result)
        return result

    async def unregister(self) -> dict[str, Any] | None:
        config = self._config
        if config is None or not self._registered:
            return None

        try:
            result = await self._api.disable(config.token)
        except PushBridgeApiError as exc:
            logger.warning(
                "bridge_unregistration_failed",
                extra={"status_code": exc.status_code, "error": exc.message},
            )
            self._notify_error(config, "unregistration", exc)
            return None

        self._registered = False
        logger.info("bridge_unregistered", extra={"subscription_id": result.get("id")})
        if config.on_unregistered is not None:
            config.on_unregistered()
        return result

    async def close(self) -> None:
        self._clear_retry()
        pending = list(self._pending)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _on_retry_timer(self) -> None:
        self._retry_handle = None
        if self._api.is_authenticated and not self._registered and self._config is not None:
            logger.info("bridge_retry_registering")
            self._spawn(self.register())
        elif not self._api.is_authenticated:
            logger.info("bridge_retry_still_unauthenticated", extra={"delay_seconds": self._retry_delay})

    def _clear_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    def _notify_error(config: DeviceConfig, error_type: BridgeErrorType, exc: PushBridgeApiError) -> None:
        if config.on_error is None:
            return
        config.on_error(BridgeError(type=error_type, message=exc.message, status_code=exc.status_code))
