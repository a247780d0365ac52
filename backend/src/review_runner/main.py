from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router, tracking_router
from .config import Settings, get_settings, runtime_secret_issues
from .runtime import Runtime, build_runtime

logger = logging.getLogger(__name__)


def _check_runtime_secrets(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: set DELIVERY_ADAPTER=stub for local runs "
            + "or set the required provider secrets."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()
    _check_runtime_secrets(settings)
    owns_runtime = runtime is None
    resolved = runtime or build_runtime(settings)

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        try:
            yield
        finally:
            if owns_runtime:
                resolved.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    app.state.runtime = resolved

    origin = settings.app_base_url.rstrip("/")
    if "://" in origin:
        origin = "/".join(origin.split("/")[:3])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router, prefix=settings.api_prefix)
    app.include_router(tracking_router)
    return app


app = create_app()
