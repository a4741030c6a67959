import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from typing import Optional
from .library import LibraryManager
from .catalog import CatalogService
from .clients.discogs_client import DiscogsClient, DiscogsError, NotConnectedError
from .config import settings
from .models import ListType

app = FastAPI(title="FlipSide Library Sync")
library: Optional[LibraryManager] = None
client: Optional[DiscogsClient] = None
catalog: Optional[CatalogService] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

@app.get("/healthz")
def healthz():
    if not library:
        return {"status": "starting"}

    failing = [lt.value for lt in ListType if library.state(lt).error_message]
    if failing:
        # Previously synced data is still served; only the refresh is failing
        return {"status": "degraded", "failing": failing}
    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
def status():
    if not library:
        return {"status": "not_ready"}

    return {
        "connected": bool(client and client.credentials.is_connected),
        "lists": {
            lt.value: {
                "entries": library.store.count(lt),
                **library.state(lt).model_dump(),
            }
            for lt in ListType
        },
        "config": {
            "stale_interval": library.stale_interval,
            "requests_per_minute": settings.RATE_LIMIT_REQUESTS_PER_MINUTE,
            "burst_capacity": settings.RATE_LIMIT_BURST_CAPACITY,
        }
    }

@app.post("/refresh", dependencies=[Depends(get_token)])
async def refresh():
    if not library:
        raise HTTPException(status_code=503, detail="Library not ready")
    result = await library.refresh_all()
    return {
        "ok": result.ok,
        "message": result.success_message or result.failure_message,
        "summaries": {k: v.model_dump() for k, v in result.summaries.items()},
    }

@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    # Simple prometheus-style text format
    if not library:
        return ""

    now = time.time()
    lines = []
    for lt in ListType:
        state = library.state(lt)
        lines.append(f'flipside_library_entries{{list="{lt.value}"}} {library.store.count(lt)}')
        lines.append(f'flipside_library_last_refresh_timestamp{{list="{lt.value}"}} {state.last_refreshed_at or 0}')
        lines.append(f'flipside_library_refresh_failing{{list="{lt.value}"}} {int(bool(state.error_message))}')
        if state.last_refreshed_at:
            lines.append(f'flipside_library_refresh_age_seconds{{list="{lt.value}"}} {now - state.last_refreshed_at:.0f}')
    if client:
        for name, count in sorted(client.request_counts.items()):
            lines.append(f'flipside_requests_total{{counter="{name}"}} {count}')
    return "\n".join(lines)

@app.get("/releases/{release_id}/status", dependencies=[Depends(get_token)])
async def release_status(release_id: int, refresh: bool = False):
    if not catalog:
        raise HTTPException(status_code=503, detail="Catalog not ready")
    try:
        status = await catalog.collection_status(release_id, force_refresh=refresh)
    except NotConnectedError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except DiscogsError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return status.model_dump()
