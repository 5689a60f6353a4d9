import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from codeduel.api import admin, health, members, problems, sessions
from codeduel.core.config import settings, validate_config
from codeduel.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from codeduel.core.logging import configure_logging
from codeduel.core.middleware.request_id import RequestIdMiddleware

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("codeduel")
    logger.info("Starting Code Duel evaluation API...")
    app.state.startup_time = time.time()
    try:
        yield
    finally:
        logging.getLogger("codeduel").info("Stopping Code Duel evaluation API...")


app = FastAPI(title="Code Duel - Evaluation Core", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(health.router)
app.include_router(admin.router)
app.include_router(members.router)
app.include_router(problems.router)
app.include_router(sessions.router)
