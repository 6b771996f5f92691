# grimoire/services/sessions.py
"""
Protocolo de sesión: register / login / refresh / logout / logout-all.

Estados de un token_id: ISSUED -> ROTATED | REVOKED | EXPIRED (todos finales).
La cadena continúa por replaced_by_token_id, pero cada eslabón es un registro
distinto.

Todos los rechazos de refresh/logout salen como el mismo Unauthorized
("Invalid token"): no se distingue firma mala, caducado, tipo erróneo o token
ya rotado/revocado. Los errores del store (StoreUnavailable) se propagan tal
cual y acaban en 500.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from grimoire.core.errors import RotationConflict, Unauthorized
from grimoire.core.tokens import Principal, TokenIssuer
from grimoire.db.models import User
from grimoire.services.revocation import RefreshTokenStore, SessionInfo
from grimoire.services.users import UserDirectory

log = logging.getLogger(__name__)

INVALID_TOKEN = "Invalid token"
INVALID_CREDENTIALS = "Invalid credentials"


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass(frozen=True)
class AuthResult:
    user: User
    access_token: str
    refresh_token: str


class SessionService:
    def __init__(self, issuer: TokenIssuer, store: RefreshTokenStore, users: UserDirectory):
        self.issuer = issuer
        self.store = store
        self.users = users

    async def issue_for(self, user: User) -> TokenPair:
        refresh = self.issuer.issue_refresh(user.id)
        await self.store.persist(refresh.token_id, user.id, refresh.expires_at)
        return TokenPair(self.issuer.issue_access(user), refresh.token)

    async def register(self, email: str, password: str) -> AuthResult:
        user = await self.users.create(email, password)
        pair = await self.issue_for(user)
        return AuthResult(user, pair.access_token, pair.refresh_token)

    async def login(self, email: str, password: str) -> AuthResult:
        user = await self.users.authenticate(email, password)
        if user is None:
            log.info("login failed")
            raise Unauthorized(INVALID_CREDENTIALS)
        pair = await self.issue_for(user)
        log.info("login", extra={"user_id": user.id})
        return AuthResult(user, pair.access_token, pair.refresh_token)

    async def refresh(self, presented: str) -> TokenPair:
        try:
            claims = self.issuer.verify_refresh(presented)
        except Unauthorized:
            raise Unauthorized(INVALID_TOKEN) from None

        user = await self.users.get_by_id(claims.subject_id)
        if user is None:
            # usuario borrado después de emitir el token
            log.info("refresh rejected: unknown subject", extra={"token_id": claims.token_id})
            raise Unauthorized(INVALID_TOKEN)

        new = self.issuer.issue_refresh(user.id)
        try:
            await self.store.rotate(claims.token_id, new.token_id, user.id, new.expires_at)
        except RotationConflict:
            log.info("refresh rejected: token not active", extra={"token_id": claims.token_id})
            raise Unauthorized(INVALID_TOKEN) from None

        log.info("refresh rotated", extra={"user_id": user.id, "token_id": new.token_id})
        return TokenPair(self.issuer.issue_access(user), new.token)

    async def logout(self, presented: str) -> None:
        try:
            claims = self.issuer.verify_refresh(presented)
        except Unauthorized:
            raise Unauthorized(INVALID_TOKEN) from None

        if not await self.store.revoke_active(claims.token_id):
            log.info("logout rejected: token not active", extra={"token_id": claims.token_id})
            raise Unauthorized(INVALID_TOKEN)
        log.info("logout", extra={"user_id": claims.subject_id, "token_id": claims.token_id})

    async def logout_all(self, principal: Principal) -> int:
        # solo impide conseguir nuevos access tokens; los ya emitidos siguen
        # valiendo hasta su exp
        count = await self.store.revoke_all(principal.id)
        log.info("logout-all revoked %d refresh tokens", count, extra={"user_id": principal.id})
        return count

    async def list_sessions(self, principal: Principal) -> list[SessionInfo]:
        return await self.store.list_by_user(principal.id)
