"""Process entry point: HTTP operator surface plus background billing workers."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .app.errors import SubcycleError
from .app.routes.operations import router as operations_router
from .app_context import BillingContext, build_context
from .config import load_engine_config

logger = logging.getLogger("subcycle")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    resolved = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)


def create_app(context: Optional[BillingContext] = None) -> FastAPI:
    """Build the API; without ``context`` one is assembled from the environment at startup."""

    app = FastAPI(title="Subcycle Billing Engine")
    app.state.context = context
    app.state.scheduler_task = None
    app.include_router(operations_router)

    @app.exception_handler(SubcycleError)
    async def handle_subcycle_error(_request, exc: SubcycleError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.payload)

    @app.on_event("startup")
    async def start_billing() -> None:
        if app.state.context is None:
            app.state.context = build_context(load_engine_config())
        ctx: BillingContext = app.state.context
        logger.info("Engine configuration: %s", ctx.config.describe())
        await ctx.events.start()
        # The first cycle runs eagerly inside start(); keep it off the event loop.
        app.state.scheduler_task = asyncio.create_task(asyncio.to_thread(ctx.scheduler.start))

    @app.on_event("shutdown")
    async def stop_billing() -> None:
        ctx: Optional[BillingContext] = app.state.context
        if ctx is None:
            return
        task = app.state.scheduler_task
        if task is not None:
            try:
                await task
            except Exception:
                logger.exception("Payment scheduler failed during startup")
            app.state.scheduler_task = None
        await asyncio.to_thread(ctx.scheduler.stop)
        await ctx.events.close()
        ctx.close()

    return app


def main() -> None:
    load_dotenv()
    configure_logging()

    config = load_engine_config()
    app = create_app(build_context(config))
    uvicorn.run(
        app,
        host=os.getenv("SUBCYCLE_HOST", "127.0.0.1"),
        port=int(os.getenv("SUBCYCLE_PORT", "8000")),
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
