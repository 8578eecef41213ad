# voxnote/app/main.py
from __future__ import annotations

import logging
import sys

from fastapi import FastAPI

from voxnote.app import deps
from voxnote.app.config import get_settings
from voxnote.app.domain.errors import ConfigurationError
from voxnote.app.routers.whatsapp import router as whatsapp_router

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Voxnote API", version="0.1.0")
app.include_router(whatsapp_router)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    errors = settings.validate_for_api()
    if errors:
        raise ConfigurationError(errors)

    services = deps.build_services(settings)
    deps.set_services(services)
    await services.queue.start()
    await services.sessions.restore_sessions()
    logger.info("Voxnote API started: env=%s, remote_cache=%s", settings.APP_ENV, services.cache.has_remote)


@app.on_event("shutdown")
async def shutdown() -> None:
    services = deps.current_services()
    if services is None:
        return
    await services.sessions.shutdown()
    await services.queue.stop()
    await services.cache.close()
    deps.set_services(None)


@app.get("/health")
def health():
    return {"ok": True}
