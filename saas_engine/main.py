import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Load env from saas_engine/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from saas_engine.core.config import settings, validate_config  # noqa: E402
from saas_engine.core.database import create_all_tables, dispose_engine, get_database_url  # noqa: E402
from saas_engine.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from saas_engine.core.logging import configure_logging  # noqa: E402
from saas_engine.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from saas_engine.api import admin, billing, health, modules  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("saas_engine")
    logger.info("Starting saas-engine...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        dispose_engine()
        logging.getLogger("saas_engine").info("Stopping saas-engine...")


app = FastAPI(title="saas-engine", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ALLOW_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.root_router, tags=["health"])
app.include_router(billing.router, prefix="/api", tags=["billing"])
app.include_router(modules.router, prefix="/api", tags=["modules"])
app.include_router(admin.router, prefix="/api", tags=["admin"])
