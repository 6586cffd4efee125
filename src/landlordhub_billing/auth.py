import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from landlordhub_billing.config import Settings
from landlordhub_billing.dependencies import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthenticatedUser:
    id: str
    email: Optional[str] = None


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_access_token(token: str, settings: Settings) -> AuthenticatedUser:
    """
    Validate a bearer token issued by the auth service.

    :raises JWTError: if the signature is bad, the token expired or it has no subject.
    """
    if not settings.jwt_secret:
        raise JWTError("JWT_SECRET not configured")
    payload = jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[settings.jwt_algorithm],
        options={"verify_aud": False},
    )
    user_id = payload.get("sub")
    if not user_id:
        raise JWTError("Token has no subject")
    return AuthenticatedUser(id=str(user_id), email=payload.get("email"))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> AuthenticatedUser:
    """Get the calling user from the Authorization header."""
    if credentials is None or not credentials.credentials:
        raise _unauthorized()
    try:
        return decode_access_token(credentials.credentials, settings)
    except JWTError as e:
        logging.info(f"Rejected bearer token: {e}")
        raise _unauthorized()
