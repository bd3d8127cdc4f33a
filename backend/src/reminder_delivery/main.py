from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from . import api
from .config import get_settings, runtime_config_issues
from .worker import DeliveryWorker

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    config_issues = runtime_config_issues(settings)
    if config_issues:
        if settings.runtime_config_guard_mode == "enforce":
            raise RuntimeError(
                "runtime config guard blocked startup: "
                + "; ".join(config_issues)
                + ". Remediation: set DATABASE_URL for postgres backends, configure the HTTP transport "
                + "or switch TRANSPORT_SENDER_TYPE=stub, and keep retry settings positive."
            )
        if settings.runtime_config_guard_mode == "warn":
            for issue in config_issues:
                logger.warning("runtime config guard warning: %s", issue)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        worker: DeliveryWorker | None = None
        if settings.worker_enabled:
            worker = DeliveryWorker(
                service=api.runtime.service,
                engine=api.runtime.engine,
                poll_interval=settings.poll_interval_seconds,
                escalation_interval=settings.escalation_scan_interval_seconds,
            )
            worker.start()
        try:
            yield
        finally:
            if worker is not None:
                worker.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.include_router(api.router)
    return app


app = create_app()
