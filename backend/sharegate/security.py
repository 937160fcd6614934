"""Bearer credential verification.

Tokens are issued by the external identity service; this module only checks
the signature and expiry and reads the ``sub`` and ``role`` claims.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from sharegate.config import Settings

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    sub: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def parse_token(token: str, settings: Settings) -> dict[str, Any]:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options={"verify_aud": False},
    )


def identity_from_token(token: str, settings: Settings) -> Identity:
    try:
        payload = parse_token(token, settings)
    except JWTError as e:
        logger.info("JWT rejected: %s", e)
        raise HTTPException(status_code=401, detail="invalid_token") from e
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="invalid_token")
    return Identity(sub=str(sub), role=str(payload.get("role") or "user"))


def get_identity(
    request: Request,
    creds: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer)],
) -> Identity | None:
    """Optional identity: anonymous requests get ``None``, bad tokens get 401."""
    if creds is None:
        return None
    return identity_from_token(creds.credentials, request.app.state.settings)


def require_identity(identity: Annotated[Identity | None, Depends(get_identity)]) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="not_authenticated")
    return identity


def require_admin(identity: Annotated[Identity, Depends(require_identity)]) -> Identity:
    if not identity.is_admin:
        raise HTTPException(status_code=403, detail="admin_only")
    return identity
