from __future__ import annotations

import hmac

from fastapi import Depends, Header

from api.deps import get_config
from api.errors import ApiError
from autopilot.core.config import Config

_CHALLENGE = {"WWW-Authenticate": 'Bearer realm="cppi-autopilot"'}


def _unauthorized(code: str, message: str) -> ApiError:
    return ApiError(code=code, message=message, status=401, headers=_CHALLENGE)


def parse_bearer(authorization: str | None) -> str:
    """Token from an ``Authorization: Bearer <token>`` header."""

    if not authorization:
        raise _unauthorized("auth.missing_token", "Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("auth.invalid_header", "Invalid authorization header")
    return token.strip()


def require_bearer_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
    config: Config = Depends(get_config),
) -> None:
    # An empty token only gets this far when CPPI_INSECURE_OK was set at startup.
    expected = str(config.api.auth_token or "")
    if not expected:
        return

    token = parse_bearer(authorization)
    if not hmac.compare_digest(token.encode(), expected.encode()):
        raise _unauthorized("auth.invalid_token", "Invalid bearer token")


AuthDep = Depends(require_bearer_token)
