import asyncio
import logging
from datetime import timedelta

from grimoire.services.revocation import RefreshTokenStore

log = logging.getLogger(__name__)


class Pruner:
    """Borra refresh tokens caducados cada ``interval``, opcionalmente también al arrancar.

    Un fallo en una pasada se registra y se reintenta en la siguiente; nunca
    tumba el proceso. Solo borra registros ya caducados, que una rotación no
    puede estar usando (rotate exige expires_at > now).
    """

    def __init__(self, store: RefreshTokenStore, interval: timedelta):
        self.store = store
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int | None:
        try:
            count = await self.store.prune()
        except Exception:
            log.exception("refresh token prune failed")
            return None
        log.info("pruned %d expired refresh tokens", count)
        return count

    async def _loop(self, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(self.interval.total_seconds())
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval.total_seconds())

    def start(self, run_immediately: bool = True) -> None:
        if not self.running:
            self._task = asyncio.create_task(self._loop(run_immediately))
            log.info("token pruner started (interval: %ss)", int(self.interval.total_seconds()))

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        log.info("token pruner stopped")
