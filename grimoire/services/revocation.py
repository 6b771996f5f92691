# grimoire/services/revocation.py
"""
Revocation store: un registro por refresh token emitido.

Cada método es una única transacción. La rotación se apoya en un UPDATE
condicional (``WHERE revoked_at IS NULL AND expires_at > now``) cuyo rowcount
decide si la operación gana; nunca se hace lectura + escritura desde Python.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from grimoire.core.errors import Internal, RotationConflict, StoreUnavailable
from grimoire.db.models import RefreshToken, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionInfo:
    token_id: str
    expires_at: datetime
    revoked_at: datetime | None


@dataclass(frozen=True)
class TokenCounts:
    total: int
    active: int
    revoked: int


def _active(now: datetime):
    return RefreshToken.revoked_at.is_(None), RefreshToken.expires_at > now


class RefreshTokenStore:
    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    async def persist(self, token_id: str, user_id: str, expires_at: datetime) -> None:
        try:
            async with self._sessionmaker() as s:
                s.add(RefreshToken(token_id=token_id, user_id=user_id, expires_at=expires_at))
                await s.commit()
        except IntegrityError as e:
            # token_id es uuid4 recién generado: un duplicado es un fallo interno
            raise Internal("Duplicate refresh token id") from e
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def is_active(self, token_id: str, *, now: datetime | None = None) -> bool:
        now = now or utcnow()
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(
                    select(RefreshToken.token_id).where(RefreshToken.token_id == token_id, *_active(now))
                )
                return res.first() is not None
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def revoke(self, token_id: str, *, now: datetime | None = None) -> bool:
        """Idempotente. Devuelve True solo si esta llamada hizo la revocación."""
        now = now or utcnow()
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.token_id == token_id, RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(stmt)
                await s.commit()
                return res.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def revoke_active(self, token_id: str, *, now: datetime | None = None) -> bool:
        """Revoca solo si el registro sigue activo, en una única sentencia.

        Compite con ``rotate`` sobre la misma fila: de los dos, solo uno ve
        rowcount == 1.
        """
        now = now or utcnow()
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.token_id == token_id, *_active(now))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(stmt)
                await s.commit()
                return res.rowcount == 1
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def revoke_all(self, user_id: str, *, now: datetime | None = None) -> int:
        now = now or utcnow()
        stmt = (
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, *_active(now))
            .values(revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(stmt)
                await s.commit()
                return res.rowcount
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def rotate(
        self,
        old_token_id: str,
        new_token_id: str,
        user_id: str,
        new_expires_at: datetime,
        *,
        now: datetime | None = None,
    ) -> None:
        """
        Retira ``old_token_id`` y crea ``new_token_id`` en la misma transacción.

        Si el registro viejo ya no está activo (rotado, revocado, caducado o
        inexistente) el UPDATE no afecta a ninguna fila, se hace rollback y se
        lanza RotationConflict sin haber modificado nada.
        """
        now = now or utcnow()
        retire = (
            update(RefreshToken)
            .where(RefreshToken.token_id == old_token_id, *_active(now))
            .values(revoked_at=now, replaced_by_token_id=new_token_id)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(retire)
                if res.rowcount != 1:
                    await s.rollback()
                    log.debug("rotation precondition failed", extra={"token_id": old_token_id})
                    raise RotationConflict()
                s.add(RefreshToken(token_id=new_token_id, user_id=user_id, expires_at=new_expires_at))
                await s.commit()
        except IntegrityError as e:
            raise Internal("Duplicate refresh token id") from e
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def list_by_user(self, user_id: str) -> list[SessionInfo]:
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(
                    select(RefreshToken)
                    .where(RefreshToken.user_id == user_id)
                    .order_by(RefreshToken.created_at.desc())
                )
                rows = res.scalars().all()
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e
        return [SessionInfo(r.token_id, r.expires_at, r.revoked_at) for r in rows]

    async def prune(self, *, now: datetime | None = None) -> int:
        """Borra todo registro con expires_at < now, esté revocado o no."""
        now = now or utcnow()
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(
                    delete(RefreshToken)
                    .where(RefreshToken.expires_at < now)
                    .execution_options(synchronize_session=False)
                )
                await s.commit()
                return res.rowcount
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e

    async def counts(self, *, now: datetime | None = None) -> TokenCounts:
        now = now or utcnow()
        try:
            async with self._sessionmaker() as s:
                total = await s.scalar(select(func.count()).select_from(RefreshToken))
                active = await s.scalar(select(func.count()).select_from(RefreshToken).where(*_active(now)))
                revoked = await s.scalar(
                    select(func.count()).select_from(RefreshToken).where(RefreshToken.revoked_at.is_not(None))
                )
        except SQLAlchemyError as e:
            raise StoreUnavailable() from e
        return TokenCounts(total=total or 0, active=active or 0, revoked=revoked or 0)
