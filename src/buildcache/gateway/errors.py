"""Cache protocol errors, each mapped to a bare HTTP status."""

from __future__ import annotations

from typing import Mapping, Optional

from fastapi import Request, Response, status


class GatewayError(Exception):
    """Base class for errors answered with a status code and no body."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "", headers: Optional[Mapping[str, str]] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.headers = dict(headers or {})


class BadRequest(GatewayError):
    status_code = status.HTTP_400_BAD_REQUEST


class Unauthenticated(GatewayError):
    status_code = status.HTTP_401_UNAUTHORIZED

    def __init__(self, realm: str, message: str = "") -> None:
        super().__init__(message, headers={"WWW-Authenticate": f'Basic realm="{realm}"'})


class Forbidden(GatewayError):
    status_code = status.HTTP_403_FORBIDDEN


class RequestTimeout(GatewayError):
    status_code = status.HTTP_408_REQUEST_TIMEOUT


class EntryTooLarge(GatewayError):
    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE

    def __init__(self, limit: int, size: Optional[int] = None) -> None:
        super().__init__(f"entry exceeds {limit} bytes")
        self.limit = limit
        self.size = size


async def gateway_error_handler(_request: Request, exc: GatewayError) -> Response:
    return Response(status_code=exc.status_code, headers=exc.headers)
