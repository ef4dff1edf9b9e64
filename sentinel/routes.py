import re
from datetime import datetime
from typing import List
from fastapi import APIRouter, HTTPException, Query, Request
import structlog

from .container import Container
from .error_handling import AlertStoreError, TimeSeriesStoreError
from .models import (
    MetricHistoryResponse, PositionRisk, ProtocolHealthMetrics, ProtocolInfo,
    TriggerAlertsRequest, TriggerAlertsResponse
)

logger = structlog.get_logger()

router = APIRouter()

# Base58 alphabet excludes 0, O, I and l
SOLANA_ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def verify_solana_address(address: str) -> bool:
    """Check that a string looks like a base58 Solana public key"""
    return bool(address) and bool(SOLANA_ADDRESS_PATTERN.match(address))


def get_container(request: Request) -> Container:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return container


def validate_address(address: str) -> str:
    if not verify_solana_address(address):
        raise HTTPException(status_code=400, detail="Invalid Solana address format")
    return address


@router.get("/api/risk/positions/{address}", response_model=List[PositionRisk])
async def get_position_risks(address: str, request: Request):
    """Score and alert on every position held by an address"""
    container = get_container(request)
    validate_address(address)

    try:
        return await container.risk_service.monitor_position(address)
    except AlertStoreError as e:
        logger.error("Alert store unavailable", address=address, error=str(e))
        raise HTTPException(status_code=503, detail="Alert store unavailable")


@router.get("/api/protocols/health", response_model=List[ProtocolHealthMetrics])
async def get_protocol_health(request: Request):
    container = get_container(request)
    return await container.protocol_service.get_protocol_health()


@router.get("/api/protocols", response_model=List[ProtocolInfo])
async def get_protocols(request: Request):
    container = get_container(request)
    return await container.protocol_service.get_protocols()


@router.post("/api/alerts/{address}", response_model=TriggerAlertsResponse)
async def trigger_alerts(address: str, body: TriggerAlertsRequest, request: Request):
    """Dispatch caller-supplied warnings through the rate limiter"""
    container = get_container(request)
    validate_address(address)

    try:
        sent = await container.risk_service.trigger_alerts(body.warnings, address)
    except AlertStoreError as e:
        logger.error("Alert store unavailable", address=address, error=str(e))
        raise HTTPException(status_code=503, detail="Alert store unavailable")

    return TriggerAlertsResponse(address=address, received=len(body.warnings), sent=sent)


@router.get("/api/risk/history/{address}", response_model=MetricHistoryResponse)
async def get_risk_history(address: str, request: Request,
                           hours: int = Query(24, ge=1, le=720),
                           limit: int = Query(100, ge=1, le=1000)):
    """Recorded position risk scores for an address, newest first"""
    container = get_container(request)
    validate_address(address)

    try:
        return await container.protocol_service.get_position_history(address, hours, limit)
    except TimeSeriesStoreError:
        raise HTTPException(status_code=503, detail="Metric history unavailable")


@router.get("/api/protocols/{name}/history", response_model=MetricHistoryResponse)
async def get_protocol_history(name: str, request: Request,
                               hours: int = Query(24, ge=1, le=720),
                               limit: int = Query(100, ge=1, le=1000)):
    container = get_container(request)
    if container.registry.get(name) is None:
        raise HTTPException(status_code=404, detail=f"Unknown protocol {name}")

    try:
        return await container.protocol_service.get_protocol_history(name, hours, limit)
    except TimeSeriesStoreError:
        raise HTTPException(status_code=503, detail="Metric history unavailable")


@router.get("/health")
async def health_check(request: Request):
    """Service health: stores, monitoring loop and recent errors"""
    container = get_container(request)
    store_manager = getattr(request.app.state, "store_manager", None)

    stores = await store_manager.health_check() if store_manager else {}
    cache_ok = stores.get("cache", {}).get("status") == "connected" if stores else True

    return {
        "status": "healthy" if cache_ok else "degraded",
        "timestamp": datetime.utcnow().isoformat(),
        "stores": stores,
        "monitoring": container.monitoring_loop.status(),
        "protocols": container.registry.names(),
        "channels": [c.name for c in container.notifications.channels],
        "errors": container.error_collector.get_error_summary(hours=1)
    }
