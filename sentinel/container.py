"""
Explicit wiring of the sentinel components.

Everything the app and the monitoring loop use is built here from a Settings
instance and the connected stores, so tests can build the same graph with
in-memory stores and fake channels.
"""
from dataclasses import dataclass
from typing import List, Optional
from pydantic import ValidationError
import structlog

from .alerts import AlertDispatcher, AlertRateLimiter
from .background_tasks import MonitoringLoop
from .cache import CacheStore
from .config import Settings
from .error_handling import ConfigurationError, ErrorCollector
from .models import RiskThresholds
from .notifications import NotificationChannel, NotificationManager
from .protocol_health import ProtocolHealthEvaluator
from .protocol_service import ProtocolService
from .protocols import ProtocolRegistry, build_registry
from .risk_engine import RiskScorer, RiskThresholdPolicy
from .risk_service import RiskMonitoringService
from .timeseries import TimeSeriesStore

logger = structlog.get_logger()


def build_thresholds(settings: Settings) -> RiskThresholds:
    """Validate configured thresholds, failing startup when they are inconsistent"""
    try:
        return RiskThresholds(
            liquidation_warning=settings.LIQUIDATION_WARNING,
            liquidation_critical=settings.LIQUIDATION_CRITICAL,
            il_warning=settings.IL_WARNING,
            il_critical=settings.IL_CRITICAL,
            protocol_warning=settings.PROTOCOL_WARNING,
            protocol_critical=settings.PROTOCOL_CRITICAL,
            tvl_change_warning=settings.TVL_CHANGE_WARNING
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid risk thresholds: {e}") from e


@dataclass
class Container:
    settings: Settings
    cache: CacheStore
    timeseries: TimeSeriesStore
    thresholds: RiskThresholds
    error_collector: ErrorCollector
    notifications: NotificationManager
    rate_limiter: AlertRateLimiter
    dispatcher: AlertDispatcher
    registry: ProtocolRegistry
    evaluator: ProtocolHealthEvaluator
    protocol_service: ProtocolService
    risk_service: RiskMonitoringService
    monitoring_loop: MonitoringLoop

    async def close(self):
        """Release HTTP clients. Stores are owned by StoreManager."""
        await self.notifications.close()
        await self.registry.close()


def build_container(settings: Settings, cache: CacheStore, timeseries: TimeSeriesStore,
                    channels: Optional[List[NotificationChannel]] = None,
                    registry: Optional[ProtocolRegistry] = None) -> Container:
    thresholds = build_thresholds(settings)
    error_collector = ErrorCollector()

    if channels is None:
        notifications = NotificationManager.from_settings(settings)
    else:
        notifications = NotificationManager(channels)

    rate_limiter = AlertRateLimiter(
        cache,
        max_alerts_per_hour=settings.MAX_ALERTS_PER_HOUR,
        window_seconds=settings.ALERT_TTL_SECONDS
    )
    dispatcher = AlertDispatcher(rate_limiter, notifications, timeseries)

    if registry is None:
        registry = build_registry(settings, timeseries)

    evaluator = ProtocolHealthEvaluator(
        dispatcher,
        alert_threshold=settings.PROTOCOL_ALERT_THRESHOLD,
        critical_threshold=settings.PROTOCOL_CRITICAL_THRESHOLD
    )
    protocol_service = ProtocolService(
        registry, cache, timeseries, evaluator,
        error_collector=error_collector,
        positions_ttl=settings.POSITIONS_CACHE_TTL,
        health_ttl=settings.HEALTH_CACHE_TTL,
        baseline_ttl=settings.TVL_BASELINE_TTL
    )
    risk_service = RiskMonitoringService(
        protocol_service, RiskScorer(), RiskThresholdPolicy(), thresholds,
        dispatcher, timeseries
    )
    monitoring_loop = MonitoringLoop(
        risk_service, protocol_service, timeseries, error_collector,
        wallets=settings.monitored_wallets,
        interval_seconds=settings.MONITOR_INTERVAL_SECONDS,
        backoff_seconds=settings.MONITOR_BACKOFF_SECONDS,
        batch_size=settings.MONITOR_BATCH_SIZE
    )

    logger.info("Container built", protocols=registry.names(),
                channels=[c.name for c in notifications.channels],
                wallets=len(settings.monitored_wallets))

    return Container(
        settings=settings,
        cache=cache,
        timeseries=timeseries,
        thresholds=thresholds,
        error_collector=error_collector,
        notifications=notifications,
        rate_limiter=rate_limiter,
        dispatcher=dispatcher,
        registry=registry,
        evaluator=evaluator,
        protocol_service=protocol_service,
        risk_service=risk_service,
        monitoring_loop=monitoring_loop
    )
