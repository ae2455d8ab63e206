"""FastAPI application entrypoint for the EduCore credit and voucher service."""
import sys

if sys.stdout and hasattr(sys.stdout, "reconfigure"):
    sys.stdout.reconfigure(encoding='utf-8')

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
import time
import uuid

from educore import __version__
from educore.api.dependencies import Services, get_services
from educore.api.routes import router
from educore.core.config import settings
from educore.core.errors import EduCoreError
from educore.core.logging import get_logger, setup_logging

setup_logging(level=settings.log_level, json_format=settings.environment == "production")
logger = get_logger(__name__)

APP_NAME = "EduCore Credits & Vouchers"

app = FastAPI(
    title=APP_NAME,
    description="Credit ledger, voucher issuance and redemption, class enrollment",
    version=__version__,
    docs_url=None if settings.environment == "production" else "/docs",
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Tag each request with an id and log its outcome and latency."""
    request_id = uuid.uuid4().hex
    request.state.request_id = request_id
    fields = {"request_id": request_id, "method": request.method, "path": request.url.path}
    label = f"{request.method} {request.url.path}"
    started = time.perf_counter()

    logger.info(f"-> {label}", extra=fields)
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(
            f"!! {label} raised {type(exc).__name__}",
            extra={**fields, "duration_ms": _elapsed_ms(started), "error_type": type(exc).__name__},
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": "InternalError", "detail": "Internal server error", "request_id": request_id},
            headers={"X-Request-ID": request_id},
        )

    logger.info(
        f"<- {label} {response.status_code}",
        extra={**fields, "status_code": response.status_code, "duration_ms": _elapsed_ms(started)},
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(EduCoreError)
async def educore_error_handler(request: Request, exc: EduCoreError):
    """Render service-layer errors as ``{"error", "detail", "request_id"}``."""
    request_id = getattr(request.state, "request_id", None)
    level = logger.error if exc.status_code >= 500 else logger.warning
    level(
        f"{type(exc).__name__}: {exc.detail}",
        extra={
            "request_id": request_id,
            "path": request.url.path,
            "status_code": exc.status_code,
            "error_type": type(exc).__name__,
        }
    )
    content = {"error": type(exc).__name__, "detail": exc.detail, "request_id": request_id}
    content.update(exc.context)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.on_event("startup")
async def on_startup():
    logger.info(
        "Service starting",
        extra={"operation": "startup", "store_backend": settings.store_backend, "version": __version__},
    )


@app.on_event("shutdown")
async def on_shutdown():
    """Release the document store connection pool."""
    logger.info("Service stopping", extra={"operation": "shutdown"})
    await get_services().store.close()


app.include_router(router, prefix=settings.api_prefix)


@app.get("/")
def service_info():
    return {
        "service": APP_NAME,
        "version": __version__,
        "environment": settings.environment,
        "api_prefix": settings.api_prefix,
    }


@app.get("/health")
def liveness():
    """Answers 200 whenever the process is serving."""
    return {"status": "healthy", "version": __version__, "store_backend": settings.store_backend}


@app.get("/ready")
async def readiness(services: Services = Depends(get_services)):
    """The document store must answer a ping, otherwise 503."""
    try:
        reachable = await services.store.ping()
    except EduCoreError:
        reachable = False
    checks = {"store_backend": settings.store_backend, "store": "ok" if reachable else "unreachable"}
    return JSONResponse(
        status_code=200 if reachable else 503,
        content={"status": "ready" if reachable else "degraded", "checks": checks},
    )
