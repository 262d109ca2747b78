from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel

from services.common.errors import StoreError
from services.synchronizer.app import Synchronizer, build_synchronizer
from services.synchronizer.config import get_settings as get_sync_settings
from services.synchronizer.contracts import APP_STATS_KEY

from .config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, default_response_class=ORJSONResponse)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[x.strip() for x in settings.cors_origins.split(',') if x.strip()],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*']
)
app.mount('/metrics', make_asgi_app())

_sync: Synchronizer | None = None


class TriggerResponse(BaseModel):
    status: str = 'accepted'
    trigger: str
    state: str


@app.on_event('startup')
async def startup() -> None:
    global _sync
    if _sync is None:
        _sync = await build_synchronizer(get_sync_settings())
    if settings.scheduler_enabled:
        _sync.scheduler.start()
    logger.info('started scheduler api network=%s', _sync.network)


@app.on_event('shutdown')
async def shutdown() -> None:
    global _sync
    if _sync is not None:
        await _sync.close()
        _sync = None


@app.get('/health')
async def health() -> dict[str, str]:
    return {'status': 'ok'}


@app.get('/health/ready')
async def ready() -> dict[str, str]:
    assert _sync is not None
    try:
        await _sync.chain.block_number()
        await _sync.tables.app_stats.get(APP_STATS_KEY)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=exc.detail) from exc
    except Exception as exc:  # noqa: BLE001
        raise HTTPException(status_code=503, detail=f'chain unavailable: {exc}') from exc
    return {'status': 'ready'}


@app.post('/scheduler', response_model=TriggerResponse)
async def scheduler() -> TriggerResponse:
    assert _sync is not None
    result = _sync.scheduler.trigger()
    return TriggerResponse(trigger=result, state=_sync.scheduler.state)


@app.get('/stats')
async def stats() -> dict:
    assert _sync is not None
    try:
        row = await _sync.tables.app_stats.get(APP_STATS_KEY)
    except StoreError as exc:
        raise HTTPException(status_code=503, detail=exc.detail) from exc
    if row is None:
        raise HTTPException(status_code=404, detail='no completed pass yet')
    return row


@app.get('/')
async def root() -> dict:
    return {'service': settings.app_name, 'status': 'ok'}
