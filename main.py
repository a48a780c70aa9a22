import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

import config
from routers import run_router, session_router
from services.client_context import ClientContext
from utils.logging_setup import configure_logging

logger = logging.getLogger(__name__)

def create_app(context: Optional[ClientContext] = None) -> FastAPI:
    app = FastAPI(
        title="Cocode Backend",
        description="Session sync and code execution proxy for a collaborative code editor.",
        version="0.1.0",
    )
    app.state.context = context or ClientContext()

    @app.on_event("startup")
    def on_startup():
        configure_logging(config.LOG_LEVEL, config.LOG_FILE)
        logger.info(f"Starting with database backend '{app.state.context.backend}'")

    # Server going away counts as every connected participant departing
    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.context.run_departure_hooks()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(run_router.router)
    app.include_router(session_router.router)

    @app.get("/")
    async def root():
        return {"message": "Cocode API is running"}

    return app

app = create_app()
