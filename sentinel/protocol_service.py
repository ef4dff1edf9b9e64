import asyncio
import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional
import structlog

from .cache import CacheStore
from .config import CacheKeys, Measurements
from .error_handling import ErrorCollector, TimeSeriesStoreError
from .models import (
    MetricHistoryResponse, MetricRecord, ProtocolHealthMetrics, ProtocolInfo,
    ProtocolPosition, RawProtocolMetrics
)
from .protocol_health import ProtocolHealthEvaluator
from .protocols import ProtocolRegistry
from .timeseries import TimeSeriesStore, record_metric

logger = structlog.get_logger()


class ProtocolService:
    """
    Position and protocol-health source backed by the registered adapters.

    Response caching fails open: a cache error is logged and treated as a miss.
    """

    def __init__(self, registry: ProtocolRegistry, cache: CacheStore,
                 timeseries: TimeSeriesStore, evaluator: ProtocolHealthEvaluator,
                 error_collector: Optional[ErrorCollector] = None,
                 positions_ttl: int = 300, health_ttl: int = 300,
                 baseline_ttl: int = 86400):
        self.registry = registry
        self.cache = cache
        self.timeseries = timeseries
        self.evaluator = evaluator
        self.error_collector = error_collector or ErrorCollector()
        self.positions_ttl = positions_ttl
        self.health_ttl = health_ttl
        self.baseline_ttl = baseline_ttl

        # Latest 24h TVL change per protocol, read by the position monitor
        self.tvl_changes: Dict[str, float] = {}

    async def _cache_get(self, key: str) -> Optional[str]:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning("Cache read failed, treating as miss", key=key, error=str(e))
            return None

    async def _cache_set(self, key: str, value: str, ttl: int):
        try:
            await self.cache.set(key, value, ttl)
        except Exception as e:
            logger.warning("Cache write failed", key=key, error=str(e))

    async def _record_protocol_error(self, protocol: str, operation: str, error: Exception):
        logger.error(f"Error fetching {operation} for {protocol}",
                     protocol=protocol, error=str(error), error_type=type(error).__name__)
        self.error_collector.record_error(error, {"protocol": protocol, "operation": operation})
        await record_metric(
            self.timeseries,
            Measurements.PROTOCOL_ERRORS,
            {"protocol": protocol, "operation": operation, "error_type": type(error).__name__},
            {"count": 1}
        )

    async def get_all_positions(self, address: str) -> List[ProtocolPosition]:
        """Positions across every protocol. Failed protocols are excluded."""
        cache_key = CacheKeys.POSITIONS.format(address=address)
        cached = await self._cache_get(cache_key)
        if cached:
            try:
                return [ProtocolPosition(**item) for item in json.loads(cached)]
            except (ValueError, TypeError) as e:
                logger.warning("Discarding unreadable cached positions",
                               address=address, error=str(e))

        adapters = self.registry.adapters()
        results = await asyncio.gather(
            *(adapter.get_positions(address) for adapter in adapters),
            return_exceptions=True
        )

        positions: List[ProtocolPosition] = []
        failed = False
        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                failed = True
                await self._record_protocol_error(adapter.get_name(), "positions", result)
                continue

            positions.extend(result)
            for position in result:
                await record_metric(
                    self.timeseries,
                    Measurements.PROTOCOL_POSITIONS,
                    {"protocol": position.protocol, "address": position.address},
                    {"balance": position.balance, "value": position.value, "apy": position.apy}
                )

        # Partial results are not cached so the next poll retries the failed protocol
        if not failed:
            payload = json.dumps([p.model_dump(mode="json") for p in positions])
            await self._cache_set(cache_key, payload, self.positions_ttl)

        return positions

    async def _with_baseline(self, raw: RawProtocolMetrics) -> RawProtocolMetrics:
        key = CacheKeys.TVL_BASELINE.format(name=raw.name)
        baseline = await self._cache_get(key)
        if baseline is None:
            try:
                await self.cache.set_if_absent(key, str(raw.tvl), self.baseline_ttl)
            except Exception as e:
                logger.warning("Could not store TVL baseline", protocol=raw.name, error=str(e))
            return raw

        try:
            return raw.model_copy(update={"previous_tvl": float(baseline)})
        except ValueError:
            logger.warning("Ignoring unreadable TVL baseline", protocol=raw.name, value=baseline)
            return raw

    async def get_protocol_health(self) -> List[ProtocolHealthMetrics]:
        """Health metrics for every protocol that publishes them, cached"""
        cached = await self._cache_get(CacheKeys.PROTOCOL_HEALTH)
        if cached:
            try:
                health = [ProtocolHealthMetrics(**item) for item in json.loads(cached)]
                self.tvl_changes.update({h.name: h.tvl_change_24h for h in health})
                return health
            except (ValueError, TypeError) as e:
                logger.warning("Discarding unreadable cached protocol health", error=str(e))

        adapters = self.registry.adapters()
        results = await asyncio.gather(
            *(adapter.get_raw_metrics() for adapter in adapters),
            return_exceptions=True
        )

        health_metrics: List[ProtocolHealthMetrics] = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                await self._record_protocol_error(adapter.get_name(), "health", result)
                continue
            if result is None:
                continue

            health = self.evaluator.evaluate(await self._with_baseline(result))
            risk_score = await self.evaluator.assess(health)
            health_metrics.append(health)
            self.tvl_changes[health.name] = health.tvl_change_24h

            await record_metric(
                self.timeseries,
                Measurements.PROTOCOL_HEALTH,
                {"protocol": health.name},
                {
                    "tvl": health.tvl,
                    "tvl_change_24h": health.tvl_change_24h,
                    "volume_change_24h": health.volume_change_24h,
                    "user_count": health.user_count_24h,
                    "risk_score": risk_score
                }
            )

        payload = json.dumps([h.model_dump(mode="json") for h in health_metrics])
        await self._cache_set(CacheKeys.PROTOCOL_HEALTH, payload, self.health_ttl)

        return health_metrics

    async def get_protocols(self) -> List[ProtocolInfo]:
        """Registered protocols with their current APY (0 when unavailable)"""
        adapters = self.registry.adapters()
        results = await asyncio.gather(
            *(adapter.get_apy() for adapter in adapters),
            return_exceptions=True
        )

        protocols = []
        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                await self._record_protocol_error(adapter.get_name(), "apy", result)
                result = 0.0
            protocols.append(ProtocolInfo(name=adapter.get_name(), apy=result))
        return protocols

    async def _history(self, subject: str, measurement: str, tags: Dict[str, str],
                       hours: int, limit: int) -> MetricHistoryResponse:
        stop = datetime.utcnow()
        start = stop - timedelta(hours=hours)
        try:
            points = await self.timeseries.query(measurement, tags, start=start, stop=stop, limit=limit)
        except Exception as e:
            logger.error("History query failed", measurement=measurement, tags=tags, error=str(e))
            self.error_collector.record_error(e, {"operation": "history", "measurement": measurement})
            raise TimeSeriesStoreError(f"Could not read {measurement} history: {e}") from e

        return MetricHistoryResponse(
            subject=subject,
            measurement=measurement,
            start=start,
            stop=stop,
            points=[
                MetricRecord(measurement=p.measurement, timestamp=p.timestamp,
                             tags=p.tags, fields=p.fields)
                for p in points
            ]
        )

    async def get_position_history(self, address: str, hours: int = 24,
                                   limit: int = 100) -> MetricHistoryResponse:
        """Recorded position risk scores for an address, newest first"""
        return await self._history(address, Measurements.POSITION_RISKS,
                                   {"address": address}, hours, limit)

    async def get_protocol_history(self, name: str, hours: int = 24,
                                   limit: int = 100) -> MetricHistoryResponse:
        """Recorded health metrics for a protocol, newest first"""
        return await self._history(name, Measurements.PROTOCOL_HEALTH,
                                   {"protocol": name}, hours, limit)
