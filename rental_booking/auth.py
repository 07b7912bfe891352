from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader
from jose import jwt, JWTError

from .config import settings
from .schemas import Actor

api_key_header = APIKeyHeader(name="Authorization")


async def get_key_by_user_id_or_ip(request: Request) -> str:
    """
    Tries to get the user ID from the JWT token.
    If it fails (no token, invalid token), it falls back to the client's IP.
    """
    try:
        token = request.headers.get("Authorization")
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            return request.client.host

        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        user_id = payload.get("sub")

        if user_id:
            return str(user_id)
    except (JWTError, ValueError, AttributeError, TypeError):
        # If token is invalid, missing, or malformed, limit by IP
        pass
    return request.client.host


async def get_current_actor(
        token: Annotated[str, Depends(api_key_header)]
) -> Actor:
    """
    Decodes the JWT from the 'Authorization: Bearer ...' header into the acting user.
    The optional 'role' claim marks automated callers ("system").
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        scheme, jwt_token = token.split()
        if scheme.lower() != "bearer":
            raise credentials_exception
        payload = jwt.decode(jwt_token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        sub = payload.get("sub")
        if sub is None:
            raise credentials_exception
        return Actor(id=int(sub), role=payload.get("role") or "user")
    except (JWTError, ValueError, AttributeError, TypeError):
        raise credentials_exception
