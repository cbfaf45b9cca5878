from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from scralytics.api.routes import router as api_router
from scralytics.config import get_settings
from scralytics.core import runtime
from scralytics.core.scheduler import JobScheduler
from scralytics.db.init import init_database

logger = logging.getLogger(__name__)


def create_app(scheduler: JobScheduler | None = None) -> FastAPI:
    """Build the API; ``scheduler`` overrides the one built from settings."""
    settings = get_settings()
    if scheduler is not None:
        runtime.set_scheduler(scheduler)

    app = FastAPI(title=settings.app_name)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup() -> None:
        init_database()
        if scheduler is not None or settings.scraper_backend:
            runtime.get_scheduler().start()
        else:
            logger.warning("No scraper backend configured; jobs are stored but not processed")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        if scheduler is not None or settings.scraper_backend:
            await runtime.get_scheduler().stop()

    @app.get("/health")
    def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    app.include_router(api_router)
    return app
