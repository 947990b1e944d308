"""V Power Load Board - load, bid, and tracking lifecycle API"""
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from contextlib import asynccontextmanager

from loadboard.core.config import get_settings
from loadboard.core.errors import InternalError, LifecycleError
from loadboard.core.logging import configure_logging, logger
from loadboard.routers import accounts, bids, loads, tracking

API_PREFIX = "/api/v1"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)
    logger.info(
        "Load board API starting",
        version="1.0.0",
        db_path=settings.lifecycle_db_path,
        email_enabled=settings.email_enabled,
        geocoding_enabled=settings.geocoding_enabled,
    )
    yield
    # Shutdown
    logger.info("Load board API shutting down")


app = FastAPI(
    title="V Power Load Board API",
    description="Freight load board: load posting, carrier bids, markup approval, and shipment tracking",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    logger.info(
        "Lifecycle request rejected",
        path=request.url.path,
        error_type=type(exc).__name__,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg', 'Invalid request')}" if field else first.get("msg", "Invalid request")
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=exc)
    wrapped = InternalError("Internal server error")
    return JSONResponse(status_code=wrapped.status_code, content={"success": False, "message": wrapped.message})


# Include routers
app.include_router(accounts.router, prefix=API_PREFIX)
app.include_router(loads.router, prefix=API_PREFIX)
app.include_router(bids.router, prefix=API_PREFIX)
app.include_router(tracking.router, prefix=API_PREFIX)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "V Power Load Board API",
        "version": "1.0.0",
        "description": "Load, bid, and tracking lifecycle",
        "endpoints": {
            "accounts": f"{API_PREFIX}/accounts",
            "loads": f"{API_PREFIX}/load",
            "bids": f"{API_PREFIX}/bid",
            "tracking": f"{API_PREFIX}/tracking",
        }
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
