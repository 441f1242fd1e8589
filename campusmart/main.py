from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
import structlog

from campusmart.version import VERSION
from campusmart.api import routes
from campusmart.core.errors import MarketError
from campusmart.core.logging import configure_logging

logger = structlog.get_logger(__name__)

instrumentator = Instrumentator()

app = FastAPI(title="Campus Marketplace Settlement", version=VERSION)

# Instrument the app BEFORE adding routes or middleware
instrumentator.instrument(app).expose(
    app,
    include_in_schema=False,
    endpoint="/metrics",
    should_gzip=True,
)

@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=type(exc).__name__, detail=exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )

@app.get("/health")
def health():
    return {"status": "ok"}

@app.get("/v1/_info")
def info():
    return {"service": "settlement", "version": VERSION}

@app.on_event("startup")
async def startup_event():
    configure_logging()
    logger.info("service_started", version=VERSION)

app.include_router(routes.router, tags=["settlement"])
