from datetime import datetime, timezone

from fastapi import Header
from jose import jwt
from jose.exceptions import JWTError

from .config import settings
from .errors import AuthenticationError


def verify_actor_token(token: str, secret: str) -> str:
    """Return the acting user id (``sub``) of a signed bearer token."""
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        raise AuthenticationError("Invalid or expired token")

    exp = payload.get("exp")
    if exp is not None and datetime.now(timezone.utc).timestamp() > float(exp):
        raise AuthenticationError("Invalid or expired token")

    sub = payload.get("sub")
    if not sub:
        raise AuthenticationError("Token has no subject")
    return sub


async def current_actor(authorization: str | None = Header(default=None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")
    return verify_actor_token(authorization[len("Bearer "):], settings.auth_token_secret)
