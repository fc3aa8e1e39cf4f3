"""Bearer-token identity.

Tokens are issued by the upstream platform; this service only verifies
them. The JWT `sub` claim is the user id, `email` is an optional
fallback for the Stripe checkout email.
"""

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from flask_login import UserMixin
from jose import JWTError, jwt

logger = logging.getLogger(__name__)


class ApiUser(UserMixin):
    """Authenticated caller. Not persisted — identity lives upstream."""

    def __init__(self, user_id, email=None):
        self.id = user_id
        self.email = email

    def __repr__(self):
        return f"<ApiUser {self.id}>"


def decode_token(token):
    """Verify a bearer token and return its claims, or None if invalid."""
    try:
        claims = jwt.decode(
            token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config["JWT_ALGORITHM"]],
        )
    except JWTError as e:
        logger.info(f"Rejected bearer token: {e}")
        return None
    if not claims.get("sub"):
        logger.info("Rejected bearer token without sub claim")
        return None
    return claims


def user_from_authorization_header(header):
    """Build an ApiUser from an `Authorization: Bearer <jwt>` header."""
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None

    claims = decode_token(token.strip())
    if claims is None:
        return None
    return ApiUser(str(claims["sub"]), email=claims.get("email"))


def issue_token(user_id, email=None, expires_in=timedelta(hours=1)):
    """Sign a token for local development and tests."""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    if email:
        claims["email"] = email
    return jwt.encode(
        claims,
        current_app.config["JWT_SECRET_KEY"],
        algorithm=current_app.config["JWT_ALGORITHM"],
    )
