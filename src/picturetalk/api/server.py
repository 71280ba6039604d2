"""FastAPI server hosting the analysis queue and stores."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from picturetalk import config
from picturetalk.api.routes import _get_state, router, shutdown_state

# Configure logging on import, before anything else logs
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    _get_state()
    try:
        yield
    finally:
        # Exit signal: flush debounced scene saves
        logger.info("Shutting down, flushing pending saves")
        shutdown_state()


app = FastAPI(
    title="PictureTalk",
    description="Photo-to-vocabulary analysis service",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)
