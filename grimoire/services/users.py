"""Directorio de usuarios: alta, búsqueda por id/email y verificación bcrypt."""
import asyncio
import logging

import bcrypt
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from grimoire.core.errors import Conflict, StoreUnavailable
from grimoire.db.models import ROLES, User

log = logging.getLogger(__name__)

# límite de entrada de bcrypt
MAX_PASSWORD_BYTES = 72


def normalize_email(email: str) -> str:
    return email.strip().lower()


def hash_password(password: str, rounds: int) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def check_password(password: str, password_hash: str) -> bool:
    secret = password.encode()
    if len(secret) > MAX_PASSWORD_BYTES:
        # bcrypt >= 5 lo rechaza; nunca pudo registrarse
        return False
    try:
        return bcrypt.checkpw(secret, password_hash.encode())
    except ValueError:
        # hash corrupto en BD
        log.warning("malformed password hash")
        return False


class UserDirectory:
    def __init__(self, sessionmaker: async_sessionmaker, bcrypt_rounds: int = 12):
        self._sessionmaker = sessionmaker
        self._rounds = bcrypt_rounds
        # hash de relleno: un email desconocido cuesta lo mismo que una contraseña mala
        self._dummy_hash = hash_password("grimoire-dummy-password", bcrypt_rounds)

    async def get_by_id(self, user_id: str) -> User | None:
        try:
            async with self._sessionmaker() as s:
                return await s.get(User, user_id)
        except SQLAlchemyError as e:
            raise StoreUnavailable("User lookup failed") from e

    async def get_by_email(self, email: str) -> User | None:
        try:
            async with self._sessionmaker() as s:
                res = await s.execute(select(User).where(User.email == normalize_email(email)))
                return res.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise StoreUnavailable("User lookup failed") from e

    async def create(self, email: str, password: str, role: str = "user") -> User:
        if role not in ROLES:
            raise ValueError(f"unknown role {role!r}")
        email = normalize_email(email)
        if await self.get_by_email(email) is not None:
            raise Conflict("User already exists")

        pw_hash = await asyncio.to_thread(hash_password, password, self._rounds)
        user = User(email=email, password_hash=pw_hash, role=role)
        try:
            async with self._sessionmaker() as s:
                s.add(user)
                await s.commit()
        except IntegrityError:
            # dos altas simultáneas con el mismo email
            raise Conflict("User already exists") from None
        except SQLAlchemyError as e:
            raise StoreUnavailable("User creation failed") from e

        log.info("user registered", extra={"user_id": user.id})
        return user

    async def authenticate(self, email: str, password: str) -> User | None:
        user = await self.get_by_email(email)
        if user is None:
            await asyncio.to_thread(check_password, password, self._dummy_hash)
            return None
        if not await asyncio.to_thread(check_password, password, user.password_hash):
            return None
        return user
