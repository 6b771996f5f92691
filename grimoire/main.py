# grimoire/main.py
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from grimoire.api.auth import router as auth_router
from grimoire.api.metrics import router as metrics_router
from grimoire.core.config import Settings, get_settings
from grimoire.core.errors import GrimoireError, Unauthorized, ValidationFailed
from grimoire.core.logging_config import configure_logging
from grimoire.core.tokens import TokenIssuer
from grimoire.db.session import create_tables, make_engine, make_sessionmaker
from grimoire.services.pruner import Pruner
from grimoire.services.revocation import RefreshTokenStore
from grimoire.services.sessions import SessionService
from grimoire.services.users import UserDirectory

log = logging.getLogger(__name__)


def _error_body(exc: GrimoireError) -> dict:
    body = {"error": exc.message}
    if exc.details is not None:
        body["details"] = exc.details
    return body


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(GrimoireError)
    async def grimoire_error(request: Request, exc: GrimoireError):
        headers = None
        if isinstance(exc, Unauthorized):
            headers = {"WWW-Authenticate": "Bearer"}
        if exc.status_code >= 500:
            log.error("internal error on %s: %s", request.url.path, exc, exc_info=exc)
            return JSONResponse(status_code=exc.status_code, content={"error": "Internal server error"})
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
            for e in exc.errors()
        ]
        err = ValidationFailed(details=details)
        return JSONResponse(status_code=err.status_code, content=_error_body(err))


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    engine = make_engine(settings.db_url)
    sessionmaker = make_sessionmaker(engine)
    issuer = TokenIssuer(settings)
    store = RefreshTokenStore(sessionmaker)
    users = UserDirectory(sessionmaker, bcrypt_rounds=settings.bcrypt_rounds)
    pruner = Pruner(store, settings.prune_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # === STARTUP ===
        if settings.app_env != "test":
            configure_logging(settings.log_level)
        await create_tables(engine)
        pruner.start(run_immediately=settings.prune_on_startup)
        log.info("grimoire auth service started (env=%s)", settings.app_env)
        yield
        # === SHUTDOWN ===
        await pruner.stop()
        await engine.dispose()
        log.info("grimoire auth service stopped")

    app = FastAPI(title="GRIMOIRE auth", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.issuer = issuer
    app.state.store = store
    app.state.users = users
    app.state.pruner = pruner
    app.state.sessions = SessionService(issuer, store, users)
    app.state.started_at = time.monotonic()

    register_error_handlers(app)
    app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
    app.include_router(metrics_router, prefix="/api/metrics", tags=["metrics"])

    @app.get("/")
    def root():
        return {"ok": True}

    return app


def run() -> None:
    import uvicorn

    uvicorn.run("grimoire.main:create_app", factory=True, host="127.0.0.1", port=8000)


if __name__ == "__main__":
    run()
