from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
import structlog
import time
from contextlib import asynccontextmanager
from datetime import datetime

from .config import settings
from .container import build_container
from .database import StoreManager
from .routes import router

logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

VERSION = "1.0.0"


# Application lifespan manager
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    startup_start_time = time.time()
    logger.info("Starting Solana Sentinel", env=settings.ENV)

    store_manager = StoreManager(settings)
    try:
        await store_manager.connect()
        container = build_container(settings, store_manager.cache, store_manager.timeseries)
    except Exception as e:
        logger.error("Failed to start Solana Sentinel", error=str(e))
        await store_manager.disconnect()
        raise

    app.state.store_manager = store_manager
    app.state.container = container

    await container.monitoring_loop.start()

    logger.info("✅ Solana Sentinel ready",
                monitored_wallets=len(settings.monitored_wallets),
                protocols=container.registry.names(),
                startup_time_seconds=round(time.time() - startup_start_time, 2))

    yield

    logger.info("Shutting down Solana Sentinel")
    try:
        await container.monitoring_loop.stop(settings.SHUTDOWN_GRACE_SECONDS)
        await container.close()
        await store_manager.disconnect()
        logger.info("Solana Sentinel shutdown complete")
    except Exception as e:
        logger.error("Error during shutdown", error=str(e))


app = FastAPI(
    title="Solana Sentinel",
    description="Risk monitoring and alerting for Solana DeFi positions",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("Request failed",
                     method=request.method,
                     url=str(request.url),
                     error=str(e),
                     process_time=round(time.time() - start_time, 3))
        raise

    process_time = time.time() - start_time
    logger.info("Request completed",
                method=request.method,
                url=str(request.url),
                status_code=response.status_code,
                process_time=round(process_time, 3))
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    logger.error("Unhandled exception",
                 method=request.method,
                 url=str(request.url),
                 error=str(exc),
                 error_type=type(exc).__name__)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "timestamp": datetime.utcnow().isoformat()
        }
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handler for HTTP exceptions"""
    logger.warning("HTTP exception",
                   method=request.method,
                   url=str(request.url),
                   status_code=exc.status_code,
                   detail=exc.detail)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.detail,
            "status_code": exc.status_code,
            "timestamp": datetime.utcnow().isoformat()
        }
    )


app.include_router(router)


@app.get("/")
async def root():
    """Root endpoint with service information"""
    return {
        "service": "Solana Sentinel",
        "version": VERSION,
        "status": "operational",
        "timestamp": datetime.utcnow().isoformat(),
        "endpoints": {
            "health": "/health",
            "position_risks": "/api/risk/positions/{address}",
            "protocol_health": "/api/protocols/health",
            "protocols": "/api/protocols",
            "trigger_alerts": "/api/alerts/{address}",
            "docs": "/docs"
        }
    }
