import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from dotenv import load_dotenv

# Load env from trialmeter/.env before settings-dependent modules read os.environ
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

from trialmeter.core.config import settings, validate_config  # noqa: E402
from trialmeter.core.database import create_all_tables, get_database_url  # noqa: E402
from trialmeter.core.logging import configure_logging  # noqa: E402
from trialmeter.core.middleware.request_id import RequestIdMiddleware  # noqa: E402
from trialmeter.core.errors import (  # noqa: E402
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from trialmeter.api import billing, health, metrics, trial, usage  # noqa: E402
from trialmeter.features.variants.service import install_variant_table, load_variant_table  # noqa: E402

configure_logging(settings.ENV)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("trialmeter")
    logger.info("Starting trialmeter...")
    app.state.startup_time = time.time()

    # A malformed variant table is fatal: ConfigurationError aborts startup
    table = load_variant_table(settings)
    install_variant_table(table)
    app.state.variant_table_version = table.version

    if get_database_url():
        create_all_tables()
    else:
        logger.warning("DATABASE_URL not set; skipping table creation")

    try:
        yield
    finally:
        logger.info("Stopping trialmeter...")


app = FastAPI(title="trialmeter - trial metering core", lifespan=lifespan)

app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.include_router(usage.router)
app.include_router(trial.router)
app.include_router(billing.router, prefix="/api")
app.include_router(health.router)
app.include_router(health.root_router)
app.include_router(metrics.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("trialmeter.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
