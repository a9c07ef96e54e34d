"""ASGI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .api import copilot as copilot_router
from .backends import BackendClient, create_backend
from .config import Settings
from .errors import BackendInitError
from .filters import FilterFactory
from .log import component_logger
from .middleware.headers import HeaderStampMiddleware
from .middleware.log import RequestLogMiddleware
from .prompt import PromptBuilder
from .relay import CompletionRelay, RelaySettings


def build_relay(settings: Settings, backend: BackendClient, logger: Optional[logging.Logger] = None) -> CompletionRelay:
    completion = settings.completion
    prompt_builder = PromptBuilder(
        completion.prompt_template,
        system_template=completion.system_template,
        before_lines=completion.context_lines_before,
        after_lines=completion.context_lines_after,
    )
    return CompletionRelay(
        backend,
        prompt_builder,
        RelaySettings.from_settings(settings),
        filters=FilterFactory.from_config(completion),
        logger=logger,
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    backend: Optional[BackendClient] = None,
    logger: Optional[logging.Logger] = None,
) -> FastAPI:
    settings = settings or Settings()
    log = component_logger("app", logger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await _check_backend(app)
        yield
        if app.state.backend is not None:
            await app.state.backend.aclose()

    async def _check_backend(app: FastAPI) -> None:
        backend = app.state.backend
        if backend is None or not settings.backend.check_on_startup:
            return
        # both listeners run the lifespan of the same app
        if getattr(app.state, "backend_checked", False):
            return
        app.state.backend_checked = True
        try:
            await backend.check()
        except BackendInitError as exc:
            log.critical("Backend check failed: %s", exc)
            app.state.backend_error = exc
        else:
            log.info("Backend %s ready with model %s", settings.backend.type, settings.backend.model)

    app = FastAPI(
        title="mini-copilotgw",
        version="0.1.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    # Middleware added last runs first
    app.add_middleware(HeaderStampMiddleware, headers=settings.headers)
    app.add_middleware(RequestLogMiddleware)
    app.include_router(copilot_router.router)

    app.state.engines = frozenset(settings.completion.engines)
    app.state.backend_error = None
    app.state.relay = None

    if backend is None:
        try:
            backend = create_backend(settings.backend)
        except BackendInitError as exc:
            log.critical("Error initializing the backend client: %s", exc)
            app.state.backend_error = exc
    if backend is not None:
        app.state.relay = build_relay(settings, backend)
    app.state.backend = backend

    return app


__all__ = ["build_relay", "create_app"]
