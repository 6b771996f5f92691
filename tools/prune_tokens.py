"""Ejecuta una pasada de limpieza de refresh tokens caducados.

Uso: python tools/prune_tokens.py   (lee DB_URL / JWT_* del entorno o .env)
"""
import asyncio
import sys

from grimoire.core.config import get_settings
from grimoire.core.logging_config import configure_logging
from grimoire.db.session import create_tables, make_engine, make_sessionmaker
from grimoire.services.revocation import RefreshTokenStore


async def main() -> int:
    settings = get_settings()
    configure_logging(settings.log_level)
    engine = make_engine(settings.db_url)
    try:
        await create_tables(engine)
        count = await RefreshTokenStore(make_sessionmaker(engine)).prune()
    finally:
        await engine.dispose()
    print(count)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
