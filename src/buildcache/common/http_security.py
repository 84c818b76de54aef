"""HTTP authentication helpers shared by gateway endpoints."""

from __future__ import annotations

import base64
import binascii
import hmac
from ipaddress import ip_address
from typing import Optional

from fastapi import HTTPException, Request, status


def parse_basic_authorization(header: Optional[str]) -> Optional[tuple[str, str]]:
    """Return ``(username, password)`` from a Basic ``Authorization`` header.

    Returns ``None`` when the header is missing, uses another scheme, is not
    valid base64, or lacks the ``:`` separator.
    """

    if not header:
        return None
    scheme, _, encoded = header.strip().partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password


def require_metrics_access(request: Request, token: Optional[str]) -> None:
    """Allow metrics scraping with the configured bearer token, or from loopback when none is set."""
    if token:
        expected = f"Bearer {token}"
        auth_header = request.headers.get("authorization")
        if not auth_header or not hmac.compare_digest(auth_header.encode("utf-8"), expected.encode("utf-8")):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid metrics token")
        return

    client = request.client
    client_host = client.host if client else None
    if not client_host:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Metrics access denied")

    try:
        loopback = ip_address(client_host).is_loopback
    except ValueError:
        loopback = client_host == "localhost"
    if not loopback:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Metrics access restricted to localhost",
        )
