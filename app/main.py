from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.shared.core.config import get_settings
from app.shared.core.exceptions import PlatformException
from app.shared.core.logging import setup_logging
from app.modules.billing.api.v1.billing import router as billing_router

# Configure logging
setup_logging()

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("app_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    yield
    logger.info("app_shutting_down", app=settings.APP_NAME)


settings = get_settings()

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan)

Instrumentator().instrument(app).expose(app)


@app.exception_handler(PlatformException)
async def platform_exception_handler(request: Request, exc: PlatformException):
    logger.warning(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message},
    )


app.include_router(billing_router)


@app.get("/health")
async def health_check():
    return {
        "status": "active",
        "app": settings.APP_NAME,
        "version": settings.VERSION,
    }
