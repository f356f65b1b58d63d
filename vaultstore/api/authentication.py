from datetime import datetime, timezone
from typing import Optional
from uuid import UUID
import logging

from fastapi import Depends
from fastapi.security.utils import get_authorization_scheme_param
from jose import ExpiredSignatureError, JWTError, jwt
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.requests import Request

from vaultstore.catalog import Owner
from vaultstore.settings import Settings
from .persist import VaultApiDatabase as Db, database

logger = logging.getLogger("vaultstore")


class AuthenticationError(Exception):
    """Error caused by the caller not being authenticated.

    That is, they didn't present a valid JWT, or it names an owner that doesn't exist.
    This should result in a 401 Unauthorized response.
    """

    pass


class JwtClaims(BaseModel):
    sub: UUID
    """ The owner id. """
    exp: datetime
    """ When the token expires. """


def generate_jwt(owner_id: UUID, settings: Optional[Settings] = None) -> str:
    """Issue a JWT for the owner. Used by the CLI and tests; the vault has no login flow of its own."""
    cfg = settings or Settings.current()
    exp = datetime.now(timezone.utc) + cfg.jwt_expires
    claims = {"sub": str(owner_id), "exp": int(exp.timestamp())}
    return jwt.encode(
        claims, key=cfg.jwt_secret.get_secret_value(), algorithm=cfg.jwt_algorithm
    )


def from_jwt(encoded_jwt: str, settings: Optional[Settings] = None) -> JwtClaims:
    """Decode and validate an encoded JWT."""
    cfg = settings or Settings.current()
    try:
        decoded = jwt.decode(
            encoded_jwt,
            key=cfg.jwt_secret.get_secret_value(),
            algorithms=[cfg.jwt_algorithm],
        )
        return JwtClaims.model_validate(decoded)
    except ExpiredSignatureError as e:
        raise AuthenticationError("expired JWT, please log in again") from e
    except (JWTError, PydanticValidationError) as e:
        raise AuthenticationError("invalid JWT") from e


def from_request(request: Request, settings: Optional[Settings] = None) -> JwtClaims:
    """Get the claims from the request's bearer token.

    Note that this doesn't check that the owner exists.
    """
    auth_header = request.headers.get("Authorization")
    if auth_header is None:
        raise AuthenticationError("no authentication token provided")
    scheme, param = get_authorization_scheme_param(auth_header)
    if scheme.lower() != "bearer" or not param:
        raise AuthenticationError("invalid authentication scheme")
    return from_jwt(param, settings)


def get_owner(request: Request, db: Db = Depends(database)) -> Owner:
    """FastAPI dependency for getting the authenticated owner."""
    claims = from_request(request, db.settings)
    with db.catalog.transaction() as conn:
        owner = db.catalog.owners.get(conn, claims.sub)
    if owner is None:
        raise AuthenticationError(f"no such owner {claims.sub}")
    return owner
