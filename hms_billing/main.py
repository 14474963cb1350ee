from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from hms_billing import __version__
from hms_billing.core.config import settings
from hms_billing.core.exceptions import BillingError, create_error_response
from hms_billing.core.logging import setup_logging
from hms_billing.infrastructure.database import close_db, init_db

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.PROJECT_NAME}")
    await init_db()
    yield
    logger.info(f"Shutting down {settings.PROJECT_NAME}")
    await close_db()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


@app.exception_handler(BillingError)
async def billing_exception_handler(request: Request, exc: BillingError):
    logger.warning(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=create_error_response(exc, request.headers.get("X-Request-ID")),
    )


@app.get("/health")
def health_check():
    return {"status": "ok", "version": __version__}
