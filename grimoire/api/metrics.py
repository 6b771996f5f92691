import os
import resource
import sys
import time

from fastapi import APIRouter, Depends, Request

from grimoire.api.deps import authenticate

router = APIRouter()


def _memory() -> dict:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss viene en bytes en macOS y en KiB en Linux
    max_rss = usage.ru_maxrss if sys.platform == "darwin" else usage.ru_maxrss * 1024
    return {"maxRssBytes": max_rss}


def _load_avg() -> list[float] | None:
    try:
        return list(os.getloadavg())
    except OSError:
        return None


@router.get("", dependencies=[Depends(authenticate)])
async def metrics(request: Request):
    counts = await request.app.state.store.counts()
    return {
        "uptimeMs": int((time.monotonic() - request.app.state.started_at) * 1000),
        "memory": _memory(),
        "loadAvg": _load_avg(),
        "tokens": {"total": counts.total, "active": counts.active, "revoked": counts.revoked},
    }
