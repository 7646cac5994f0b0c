from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class SubscriptionValidationError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(status_code=422, code=code, message=message)


class SubscriptionNotFoundError(ApiError):
    def __init__(self, message: str = "Subscription not found."):
        super().__init__(status_code=404, code="SUBSCRIPTION_NOT_FOUND", message=message)


class SubscriptionConflictError(ApiError):
    def __init__(self, code: str, message: str):
        super().__init__(status_code=409, code=code, message=message)


class GatewayError(ApiError):
    """Push gateway call failed or returned nothing usable."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR", status_code: int = 422):
        super().__init__(status_code=status_code, code=code, message=message)


class EndpointDisabledError(GatewayError):
    def __init__(self, message: str = "Gateway endpoint is disabled."):
        super().__init__(message, code="ENDPOINT_DISABLED")


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
