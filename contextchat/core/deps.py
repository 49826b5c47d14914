"""FastAPI dependencies: caller identity and service handles."""
import logging
from typing import Optional

import jwt
from fastapi import Depends, Header, Request

from contextchat.core.container import Services
from contextchat.errors import AuthenticationError, ConfigurationError

logger = logging.getLogger(__name__)

JWT_ALGORITHMS = ["HS256"]


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    authorization: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> str:
    """
    Resolve the caller's user id from a bearer token.

    The token must be signed with the shared secret; its ``sub`` claim is
    the user id.

    Raises:
        AuthenticationError: missing, malformed, expired or unsigned token
        ConfigurationError: no shared secret configured
    """
    secret = services.settings.AUTH_JWT_SECRET
    if not secret:
        raise ConfigurationError(["AUTH_JWT_SECRET"])

    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Missing bearer token")

    token = authorization.split(" ", 1)[1].strip()
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=JWT_ALGORITHMS,
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise AuthenticationError("Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise AuthenticationError("Invalid token")
    return str(user_id)
