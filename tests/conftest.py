# tests/conftest.py
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

# --- Asegurar que podemos importar 'grimoire' desde la raíz del repo ---
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from grimoire.core.tokens import TokenIssuer
from grimoire.db.session import create_tables, make_engine, make_sessionmaker
from grimoire.main import create_app
from grimoire.services.revocation import RefreshTokenStore
from grimoire.services.sessions import SessionService
from grimoire.services.users import UserDirectory

from _helpers import make_settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    # Con 'with' forzamos lifespan: crea tablas en startup y cierra engine en shutdown
    with TestClient(app) as c:
        yield c


@pytest_asyncio.fixture
async def services(settings):
    """Componentes cableados a mano, sin HTTP, para los tests async."""
    engine = make_engine(settings.db_url)
    await create_tables(engine)
    sessionmaker = make_sessionmaker(engine)
    issuer = TokenIssuer(settings)
    store = RefreshTokenStore(sessionmaker)
    users = UserDirectory(sessionmaker, bcrypt_rounds=settings.bcrypt_rounds)
    yield SimpleNamespace(
        engine=engine,
        sessionmaker=sessionmaker,
        issuer=issuer,
        store=store,
        users=users,
        sessions=SessionService(issuer, store, users),
    )
    await engine.dispose()
