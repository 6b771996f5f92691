# grimoire/core/tokens.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import jwt
from jwt import InvalidTokenError

from grimoire.core.config import Settings
from grimoire.core.errors import Unauthorized

log = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class Principal:
    id: str
    email: str
    role: str


@dataclass(frozen=True)
class RefreshClaims:
    subject_id: str
    token_id: str


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    token_id: str
    expires_at: datetime


def _now() -> datetime:
    # segundos enteros: el 'exp' del JWT y el expires_at del registro coinciden
    return datetime.now(timezone.utc).replace(microsecond=0)


def new_token_id() -> str:
    return uuid.uuid4().hex


class TokenIssuer:
    """
    Firma y verifica los dos tipos de credencial.

    - access: sub, email, role, type=access; firmado con JWT_SECRET.
    - refresh: sub, jti, type=refresh; firmado con JWT_REFRESH_SECRET.

    No tiene efectos secundarios: el estado de revocación de los refresh
    tokens vive en RefreshTokenStore, no aquí.
    """

    def __init__(self, settings: Settings):
        self._alg = settings.jwt_alg
        self._access_secret = settings.jwt_secret
        self._refresh_secret = settings.jwt_refresh_secret
        self.access_ttl = settings.access_token_ttl
        self.refresh_ttl = settings.refresh_token_ttl

    def issue_access(self, user) -> str:
        now = _now()
        payload = {
            "sub": str(user.id),
            "email": user.email,
            "role": user.role,
            "type": ACCESS,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self._access_secret, algorithm=self._alg)

    def issue_refresh(self, user_id: str) -> IssuedRefreshToken:
        now = _now()
        token_id = new_token_id()
        expires_at = now + self.refresh_ttl
        payload = {
            "sub": str(user_id),
            "jti": token_id,
            "type": REFRESH,
            "iat": now,
            "exp": expires_at,
        }
        token = jwt.encode(payload, self._refresh_secret, algorithm=self._alg)
        return IssuedRefreshToken(token=token, token_id=token_id, expires_at=expires_at)

    def verify_access(self, token: str) -> Principal:
        data = self._decode(token, self._access_secret, ACCESS, ("sub", "email", "role"))
        return Principal(id=data["sub"], email=data["email"], role=data["role"])

    def verify_refresh(self, token: str) -> RefreshClaims:
        data = self._decode(token, self._refresh_secret, REFRESH, ("sub", "jti"))
        return RefreshClaims(subject_id=data["sub"], token_id=data["jti"])

    def _decode(self, token: str, secret: str, expected_type: str, claims: tuple[str, ...]) -> dict:
        # Firma, caducidad y tipo fallan igual hacia fuera: el motivo solo va al log
        try:
            data = jwt.decode(
                token,
                secret,
                algorithms=[self._alg],
                options={"require": ["exp", "type", *claims]},
            )
        except InvalidTokenError as e:
            log.debug("%s token rejected: %s", expected_type, e)
            raise Unauthorized() from None

        if data.get("type") != expected_type:
            log.debug("%s token rejected: type=%r", expected_type, data.get("type"))
            raise Unauthorized()
        if not all(isinstance(data[c], str) and data[c] for c in claims):
            log.debug("%s token rejected: malformed claims", expected_type)
            raise Unauthorized()
        return data
