"""HTTP Basic authentication and role checks for cache endpoints."""

from __future__ import annotations

import hmac
from typing import Callable, Mapping

import structlog
from fastapi import Header, Request

from ..common.http_security import parse_basic_authorization
from ..common.schemas import Identity, Role, UserCredential
from ..common.settings import GatewaySettings
from .errors import Forbidden, Unauthenticated


LOGGER = structlog.get_logger("buildcache.gateway.auth")

ANONYMOUS = Identity(username="anonymous", role=Role.WRITER)

# compared against when the username is unknown so both paths do the same work
_UNKNOWN_USER_SECRET = b"buildcache-unknown-user-placeholder-secret"


class AccessControlGate:
    """Resolves the caller of a cache request from an immutable credential table."""

    def __init__(
        self,
        credentials: Mapping[str, UserCredential],
        *,
        realm: str = "Build Cache",
        enabled: bool = True,
    ) -> None:
        self._secrets = {
            username: (user.password.get_secret_value().encode("utf-8"), user.role)
            for username, user in credentials.items()
        }
        self.realm = realm
        self.enabled = enabled

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "AccessControlGate":
        return cls(settings.credential_table(), realm=settings.auth_realm, enabled=settings.auth_enabled)

    def authenticate(self, authorization: str | None, required: Role) -> Identity:
        if not self.enabled:
            return ANONYMOUS

        parsed = parse_basic_authorization(authorization)
        if parsed is None:
            LOGGER.info("auth_rejected", reason="missing_or_malformed_credentials")
            raise Unauthenticated(self.realm)
        username, password = parsed

        entry = self._secrets.get(username)
        expected = entry[0] if entry is not None else _UNKNOWN_USER_SECRET
        password_ok = hmac.compare_digest(password.encode("utf-8"), expected)
        if entry is None or not password_ok:
            LOGGER.warning("auth_rejected", reason="invalid_credentials", user=username)
            raise Unauthenticated(self.realm)

        role = entry[1]
        if not role.permits(required):
            LOGGER.warning("auth_forbidden", user=username, role=role.value, required=required.value)
            raise Forbidden(f"{required.value} role required")
        return Identity(username=username, role=role)


def require_role(required: Role) -> Callable[..., Identity]:
    """FastAPI dependency resolving the caller and enforcing ``required``."""

    def dependency(
        request: Request,
        authorization: str | None = Header(default=None, alias="Authorization"),
    ) -> Identity:
        gate: AccessControlGate = request.app.state.gateway.gate  # type: ignore[attr-defined]
        return gate.authenticate(authorization, required)

    return dependency
