import os
from datetime import datetime
from types import SimpleNamespace
from typing import Dict, List, Optional

import pytest

# Set test environment before the sentinel package reads settings
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["ENABLE_REDIS"] = "false"
os.environ["ENABLE_INFLUX"] = "false"
os.environ["MONITORED_WALLETS"] = ""
os.environ["DISCORD_WEBHOOK_URL"] = ""
os.environ["TELEGRAM_BOT_TOKEN"] = ""

from sentinel.alerts import AlertDispatcher, AlertRateLimiter
from sentinel.cache import CacheStore, MemoryCache
from sentinel.config import Settings
from sentinel.container import build_container
from sentinel.error_handling import CacheStoreError
from sentinel.models import ProtocolPosition, RawProtocolMetrics, RiskThresholds
from sentinel.notifications import NotificationChannel, NotificationManager
from sentinel.protocols import ProtocolAdapter, ProtocolRegistry
from sentinel.timeseries import MemoryTimeSeries

WALLET_1 = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
WALLET_2 = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingChannel(NotificationChannel):
    """Channel that records messages, optionally failing every send"""

    def __init__(self, name: str, fail: bool = False):
        self.name = name
        self.fail = fail
        self.messages: List[str] = []

    @property
    def is_configured(self) -> bool:
        return True

    async def send(self, message: str) -> None:
        if self.fail:
            raise ConnectionError(f"{self.name} is down")
        self.messages.append(message)


class FailingCache(CacheStore):
    """Cache store whose every operation fails"""

    async def get(self, key):
        raise CacheStoreError("store unavailable")

    async def set(self, key, value, ttl_seconds):
        raise CacheStoreError("store unavailable")

    async def delete(self, key):
        raise CacheStoreError("store unavailable")

    async def set_if_absent(self, key, value, ttl_seconds):
        raise CacheStoreError("store unavailable")

    async def increment(self, key, ttl_seconds):
        raise CacheStoreError("store unavailable")

    async def ping(self):
        raise CacheStoreError("store unavailable")


class BrokenCounterCache(MemoryCache):
    """Memory cache whose counter increments fail"""

    async def increment(self, key, ttl_seconds):
        raise CacheStoreError("INCR failed")


class UnreadableTimeSeries(MemoryTimeSeries):
    """Memory time series whose reads fail"""

    async def query(self, measurement, tags=None, start=None, stop=None, limit=None):
        raise ConnectionError("influx down")


class FakeAdapter(ProtocolAdapter):
    """In-memory protocol adapter"""

    def __init__(self, name: str, positions: Optional[Dict[str, List[ProtocolPosition]]] = None,
                 raw_metrics: Optional[RawProtocolMetrics] = None, apy: float = 5.0,
                 error: Optional[Exception] = None):
        self.name = name
        self.positions = positions or {}
        self.raw_metrics = raw_metrics
        self.apy = apy
        self.error = error
        self.position_calls = 0
        self.metrics_calls = 0

    def get_name(self) -> str:
        return self.name

    async def get_positions(self, address: str) -> List[ProtocolPosition]:
        self.position_calls += 1
        if self.error:
            raise self.error
        return list(self.positions.get(address, []))

    async def get_apy(self) -> float:
        if self.error:
            raise self.error
        return self.apy

    async def get_raw_metrics(self) -> Optional[RawProtocolMetrics]:
        self.metrics_calls += 1
        if self.error:
            raise self.error
        return self.raw_metrics


@pytest.fixture
def wallet():
    """Primary test wallet"""
    return WALLET_1


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def memory_cache(fake_clock):
    """Memory cache driven by the fake clock"""
    return MemoryCache(clock=fake_clock)


@pytest.fixture
def timeseries():
    return MemoryTimeSeries()


@pytest.fixture
def thresholds():
    """Default risk thresholds"""
    return RiskThresholds()


@pytest.fixture
def channels():
    """Three recording channels, the second of which always fails"""
    return [
        RecordingChannel("discord"),
        RecordingChannel("telegram", fail=True),
        RecordingChannel("pager"),
    ]


@pytest.fixture
def notifications(channels):
    return NotificationManager(channels)


@pytest.fixture
def rate_limiter(memory_cache):
    return AlertRateLimiter(memory_cache, max_alerts_per_hour=10, window_seconds=3600)


@pytest.fixture
def dispatcher(rate_limiter, notifications, timeseries):
    return AlertDispatcher(rate_limiter, notifications, timeseries)


@pytest.fixture
def make_position():
    """Factory for position snapshots"""
    def _make(protocol: str = "Kamino", address: str = WALLET_1, **kwargs) -> ProtocolPosition:
        values = {"balance": 10.0, "value": 1500.0, "apy": 8.0}
        values.update(kwargs)
        return ProtocolPosition(protocol=protocol, address=address, **values)
    return _make


@pytest.fixture
def risky_position(make_position):
    """Leveraged position at 95% of its liquidation level"""
    return make_position(health_factor=100 / 95)


@pytest.fixture
def fake_adapter(risky_position):
    return FakeAdapter("Kamino", positions={WALLET_1: [risky_position]}, apy=12.5)


@pytest.fixture
def test_settings():
    """Settings with one monitored wallet and no external services"""
    return Settings(
        ENV="test",
        MONITORED_WALLETS=WALLET_1,
        ENABLED_PROTOCOLS="Kamino",
        MONITOR_INTERVAL_SECONDS=60,
        MONITOR_BACKOFF_SECONDS=30,
    )


@pytest.fixture
def container(test_settings, memory_cache, timeseries, channels, fake_adapter):
    """Fully wired container over in-memory stores and fake collaborators"""
    return build_container(
        test_settings, memory_cache, timeseries,
        channels=channels,
        registry=ProtocolRegistry([fake_adapter])
    )


@pytest.fixture
def fixed_time():
    return datetime(2024, 1, 2, 3, 4, 5)


@pytest.fixture
def fakes():
    """Test doubles, for tests that build their own collaborators"""
    return SimpleNamespace(
        Adapter=FakeAdapter,
        Channel=RecordingChannel,
        Clock=FakeClock,
        FailingCache=FailingCache,
        BrokenCounterCache=BrokenCounterCache,
        UnreadableTimeSeries=UnreadableTimeSeries,
        WALLET_1=WALLET_1,
        WALLET_2=WALLET_2,
    )
