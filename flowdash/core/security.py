"""Password hashing and API access tokens.

Passwords are bcrypt-hashed. API access tokens are HS256 JWTs whose
subject is the user id; every flow, connector and execution lookup is
scoped by that id.
"""

from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt
from pydantic import BaseModel, ValidationError

from flowdash.config import settings


class InvalidTokenError(Exception):
    """Access token is malformed, badly signed or expired."""

    pass


class TokenClaims(BaseModel):
    sub: str
    exp: datetime


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))


def access_token_lifetime() -> timedelta:
    return timedelta(minutes=settings.jwt_access_token_expire_minutes)


def create_access_token(user_id: str, now: datetime | None = None) -> str:
    """Issue an access token for a user."""
    issued_at = now or datetime.now(timezone.utc)
    claims = TokenClaims(sub=user_id, exp=issued_at + access_token_lifetime())
    return jwt.encode(
        claims.model_dump(),
        settings.jwt_secret_key.get_secret_value(),
        algorithm=settings.jwt_algorithm,
    )


def decode_access_token(token: str) -> TokenClaims:
    """Validate an access token and return its claims.

    python-jose rejects expired tokens while decoding.

    Raises:
        InvalidTokenError: If the token cannot be trusted
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key.get_secret_value(),
            algorithms=[settings.jwt_algorithm],
        )
        return TokenClaims.model_validate(payload)
    except JWTError as e:
        raise InvalidTokenError(str(e)) from e
    except ValidationError as e:
        raise InvalidTokenError("Token claims are incomplete") from e
