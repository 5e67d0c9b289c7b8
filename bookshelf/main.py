import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from bookshelf/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from bookshelf.core.config import settings, validate_config  # noqa: E402
from bookshelf.core.database import check_connection, create_all_tables, get_database_url  # noqa: E402
from bookshelf.core.logging import configure_logging  # noqa: E402
from bookshelf.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from bookshelf.core.middleware.metrics import MetricsMiddleware  # noqa: E402
from bookshelf.core.validation import validate_env  # noqa: E402
from bookshelf.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from bookshelf.api import admin_billing, billing, health  # noqa: E402
from bookshelf.features.billing.service import build_billing_service  # noqa: E402

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("bookshelf")
    logger.info("Starting Bookshelf billing backend...")
    app.state.startup_time = time.time()

    if get_database_url():
        if settings.ENV.lower() in ("development", "test"):
            create_all_tables()
        check_connection()

    # Provider client is built once per process; tests may inject their own
    if getattr(app.state, "billing", None) is None:
        app.state.billing = build_billing_service()
    try:
        yield
    finally:
        logger.info("Stopping Bookshelf billing backend...")


app = FastAPI(title="Babel Bookshelf - Billing", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.APP_URL, "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing.router, prefix="/v1")
app.include_router(admin_billing.router, prefix="/v1")
app.include_router(health.root_router)
