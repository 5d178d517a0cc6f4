"""Bearer token gate.

Tokens are HS256 JWTs carrying the caller's email. Nothing is kept server
side: a token is valid while its signature and expiry check out. The
verifier is a dependency so the secret or algorithm can be swapped without
touching any route.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import jwt
from fastapi import Depends, Header

import config
from errors import AuthenticationError, InvalidTokenError


class TokenVerifier(Protocol):
    def issue(self, claims: Dict[str, Any]) -> str: ...

    def verify(self, token: str) -> Dict[str, Any]: ...


class JWTVerifier:
    def __init__(self, secret: str, algorithm: str = "HS256", lifetime: timedelta = timedelta(days=7)):
        self.secret = secret
        self.algorithm = algorithm
        self.lifetime = lifetime

    def issue(self, claims: Dict[str, Any]) -> str:
        payload = {**claims, "exp": datetime.now(timezone.utc) + self.lifetime}
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError:
            raise InvalidTokenError("Token expired")
        except jwt.InvalidTokenError:
            raise InvalidTokenError()


_verifier = JWTVerifier(config.JWT_SECRET, config.JWT_ALGORITHM, timedelta(days=config.JWT_EXP_DAYS))


def get_verifier() -> TokenVerifier:
    return _verifier


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) < 2 or parts[0].lower() != "bearer":
        return None
    return parts[1] or None


def require_claims(
    authorization: Optional[str] = Header(None),
    verifier: TokenVerifier = Depends(get_verifier),
) -> Dict[str, Any]:
    token = bearer_token(authorization)
    if not token:
        raise AuthenticationError()
    return verifier.verify(token)
