# security.py
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict

import jwt
from fastapi import Header, Request
from jwt.exceptions import PyJWTError

from config import Settings
from errors import Unauthorized
from logs import trace
from models import Principal, RequestContext


# --- helpers ---------------------------------------------------------

def extract_bearer(authorization: str | None) -> str | None:
    """Return the token of ``Authorization: Bearer <token>``, else None."""
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer" and parts[1].strip():
        return parts[1].strip()
    return None


@dataclass(frozen=True)
class Caller:
    principal: Principal
    credential: str = field(repr=False)


# --- identity verification -------------------------------------------

class IdentityVerifier(ABC):

    @abstractmethod
    async def verify(self, token: str) -> Principal:
        """Resolve ``token`` to a principal or raise Unauthorized."""


class JwtIdentityVerifier(IdentityVerifier):
    """
    Bearer JWTs, either HS256 with a shared secret or asymmetric keys
    published at a JWKS URL (e.g. Firebase securetoken keys).
    """

    def __init__(self, settings: Settings):
        self.secret = settings.auth_jwt_secret
        self.algorithm = settings.auth_jwt_algorithm
        self.audience = settings.auth_audience or None
        self.issuer = settings.auth_issuer or None
        self._jwks = jwt.PyJWKClient(settings.auth_jwks_url) if settings.auth_jwks_url else None

    async def _key(self, token: str) -> tuple[Any, list[str]]:
        if self._jwks is not None:
            # PyJWKClient fetches over blocking urllib
            signing_key = await asyncio.to_thread(self._jwks.get_signing_key_from_jwt, token)
            return signing_key.key, ["RS256", "ES256"]
        return self.secret, [self.algorithm]

    async def verify(self, token: str) -> Principal:
        try:
            key, algorithms = await self._key(token)
            claims: Dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=algorithms,
                audience=self.audience,
                issuer=self.issuer,
                options={"require": ["sub"], "verify_aud": self.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            raise Unauthorized("Token expired") from None
        except jwt.InvalidSignatureError:
            raise Unauthorized("Authentication failed") from None
        except jwt.DecodeError:
            raise Unauthorized("Invalid token format") from None
        except PyJWTError:
            raise Unauthorized("Authentication failed") from None

        uid = claims.get("sub")
        if not isinstance(uid, str) or not uid:
            raise Unauthorized("Authentication failed")
        return Principal(uid=uid, email=claims.get("email"))


# --- dependency used by API endpoints --------------------------------

async def authenticate(
    request: Request,
    authorization: str | None = Header(default=None),
) -> Caller:
    """
    Resolve the caller from ``Authorization: Bearer <token>``.
    Raises Unauthorized when the header is missing or the token does not verify.
    """
    token = extract_bearer(authorization)
    if not token:
        raise Unauthorized("Missing or invalid authorization header")

    verifier: IdentityVerifier = request.app.state.services.verifier
    principal = await verifier.verify(token)
    trace(f"[AUTH] uid={principal.uid} path={request.url.path}")
    return Caller(principal=principal, credential=token)


# --- credit gate -----------------------------------------------------

def credit_gate(caller: Caller | None, cost: int) -> RequestContext:
    """
    Bind the precomputed cost and the caller's credential for the reporter.

    No balance lookup happens here; the ledger decides at consumption time.
    """
    if caller is None or not caller.principal or not caller.principal.uid:
        raise Unauthorized("Unauthorized")
    if not caller.credential:
        raise Unauthorized("Missing bearer credential")
    return RequestContext(principal_id=caller.principal.uid, credential=caller.credential, cost=cost)
