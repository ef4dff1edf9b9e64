import time
from typing import Optional
import structlog

from .config import Settings
from .cache import CacheStore, RedisCache, MemoryCache
from .timeseries import TimeSeriesStore, InfluxTimeSeries, MemoryTimeSeries

logger = structlog.get_logger()


class StoreManager:
    """Owns the cache and time-series connections for the process lifetime"""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.cache: Optional[CacheStore] = None
        self.timeseries: Optional[TimeSeriesStore] = None

    async def connect(self):
        """Initialize store connections"""
        try:
            if self.settings.ENABLE_REDIS:
                self.cache = RedisCache.from_url(self.settings.REDIS_URL)
                await self.cache.ping()
                logger.info("Connected to Redis", url=self.settings.REDIS_URL)
            else:
                self.cache = MemoryCache()
                logger.warning("Redis is disabled - alert rate limits are per-process")

            if self.settings.ENABLE_INFLUX:
                self.timeseries = InfluxTimeSeries(
                    url=self.settings.INFLUX_URL,
                    token=self.settings.INFLUX_TOKEN,
                    org=self.settings.INFLUX_ORG,
                    bucket=self.settings.INFLUX_BUCKET
                )
                if not await self.timeseries.ping():
                    logger.warning("InfluxDB ping failed - metrics may be dropped",
                                   url=self.settings.INFLUX_URL)
                else:
                    logger.info("Connected to InfluxDB", url=self.settings.INFLUX_URL,
                                bucket=self.settings.INFLUX_BUCKET)
            else:
                self.timeseries = MemoryTimeSeries()
                logger.warning("InfluxDB is disabled - metrics are kept in memory")

        except Exception as e:
            logger.error("Failed to connect to stores", error=str(e))
            await self.disconnect()
            raise

    async def disconnect(self):
        """Close store connections"""
        if self.cache:
            try:
                await self.cache.close()
            except Exception as e:
                logger.error("Error closing cache store", error=str(e))
            self.cache = None

        if self.timeseries:
            try:
                await self.timeseries.close()
            except Exception as e:
                logger.error("Error closing time-series store", error=str(e))
            self.timeseries = None

    async def health_check(self) -> dict:
        """Check store health status"""
        health = {
            "cache": {"status": "disconnected", "latency_ms": None},
            "timeseries": {"status": "disconnected", "latency_ms": None}
        }

        try:
            if self.cache:
                start_time = time.time()
                await self.cache.ping()
                latency = (time.time() - start_time) * 1000
                health["cache"] = {"status": "connected", "latency_ms": round(latency, 2)}
        except Exception as e:
            health["cache"]["error"] = str(e)

        try:
            if self.timeseries:
                start_time = time.time()
                ok = await self.timeseries.ping()
                latency = (time.time() - start_time) * 1000
                health["timeseries"] = {
                    "status": "connected" if ok else "unreachable",
                    "latency_ms": round(latency, 2)
                }
        except Exception as e:
            health["timeseries"]["error"] = str(e)

        return health
