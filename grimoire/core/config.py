import re
from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")
_DURATION_UNITS = {"s": "seconds", "m": "minutes", "h": "hours", "d": "days"}

MIN_SECRET_LENGTH = 24


def parse_duration(value):
    """Acepta "15m"/"7d" además de lo que pydantic ya entiende
    (segundos enteros, duraciones ISO 8601, timedelta)."""
    if isinstance(value, str):
        m = _DURATION_RE.match(value)
        if m:
            return timedelta(**{_DURATION_UNITS[m.group(2)]: int(m.group(1))})
    return value


class Settings(BaseSettings):
    # Base de datos
    db_url: str = Field("sqlite+aiosqlite:///./grimoire.sqlite3", alias="DB_URL")

    # JWT: dos secretos distintos, un access token nunca valida como refresh
    jwt_secret: str = Field(..., alias="JWT_SECRET", min_length=MIN_SECRET_LENGTH)
    jwt_refresh_secret: str = Field(..., alias="JWT_REFRESH_SECRET", min_length=MIN_SECRET_LENGTH)
    jwt_alg: Literal["HS256", "HS384", "HS512"] = Field("HS256", alias="JWT_ALG")

    access_token_ttl: timedelta = Field(timedelta(minutes=15), alias="ACCESS_TOKEN_TTL")
    refresh_token_ttl: timedelta = Field(timedelta(days=7), alias="REFRESH_TOKEN_TTL")

    # Limpieza de refresh tokens caducados
    prune_interval: timedelta = Field(timedelta(hours=1), alias="PRUNE_INTERVAL")
    prune_on_startup: bool = Field(True, alias="PRUNE_ON_STARTUP")

    # Contraseñas (coste bcrypt)
    bcrypt_rounds: int = Field(12, alias="BCRYPT_ROUNDS", ge=10, le=31)

    log_level: str = Field("INFO", alias="LOG_LEVEL")
    app_env: Literal["development", "test", "production"] = Field("development", alias="APP_ENV")

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        populate_by_name=True,  # permite Settings(jwt_secret=...) en tests
        frozen=True,
    )

    @field_validator("access_token_ttl", "refresh_token_ttl", "prune_interval", mode="before")
    @classmethod
    def _shorthand_duration(cls, v):
        return parse_duration(v)

    @field_validator("access_token_ttl", "refresh_token_ttl", "prune_interval")
    @classmethod
    def _positive(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("duration must be positive")
        return v

    @model_validator(mode="after")
    def _distinct_secrets(self):
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


@lru_cache()
def get_settings() -> Settings:
    return Settings()
