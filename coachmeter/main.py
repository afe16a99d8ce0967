import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# Load env from coachmeter/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from coachmeter.core.config import settings, validate_config
from coachmeter.core.database import create_all_tables
from coachmeter.core.logging import configure_logging
from coachmeter.core.middleware.request_id import RequestIdMiddleware
from coachmeter.core.validation import validate_env
from coachmeter.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from coachmeter.api import coaching, health

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("coachmeter")
    logger.info("Starting coachmeter backend...")
    app.state.startup_time = time.time()
    if settings.AUTO_CREATE_TABLES:
        create_all_tables()
    try:
        yield
    finally:
        logging.getLogger("coachmeter").info("Stopping coachmeter backend...")


app = FastAPI(title="CoachMeter - Coaching subscriptions", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(StarletteHTTPException, http_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOWED_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(coaching.router, tags=["coaching"])
app.include_router(health.router, tags=["health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("coachmeter.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
