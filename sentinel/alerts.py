from datetime import datetime, timezone
from typing import Sequence
import structlog

from .cache import CacheStore
from .config import CacheKeys, Measurements
from .error_handling import AlertStoreError
from .models import RiskWarning, WARNING_ORDER
from .notifications import NotificationManager, format_alert
from .timeseries import TimeSeriesStore, record_metric

logger = structlog.get_logger()


def epoch_millis(timestamp: datetime) -> float:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.timestamp() * 1000


class AlertRateLimiter:
    """
    Per-address alert budget and per-warning de-duplication.

    Store failures fail closed: an unreachable store reports the address as
    rate-limited and refuses admission, so an outage cannot turn into a
    notification flood. ``record_sent`` raises AlertStoreError instead.
    """

    def __init__(self, cache: CacheStore, max_alerts_per_hour: int = 10,
                 window_seconds: int = 3600):
        self.cache = cache
        self.max_alerts_per_hour = max_alerts_per_hour
        self.window_seconds = window_seconds

    @staticmethod
    def counter_key(address: str) -> str:
        return CacheKeys.ALERT_COUNTER.format(address=address)

    @staticmethod
    def marker_key(address: str, warning: RiskWarning) -> str:
        return CacheKeys.ALERT_MARKER.format(
            address=address, type=warning.type.value, severity=warning.severity.value
        )

    async def is_rate_limited(self, address: str) -> bool:
        try:
            counter = await self.cache.get(self.counter_key(address))
        except Exception as e:
            logger.error("Rate limiter store unavailable, suppressing alerts",
                         address=address, error=str(e))
            return True

        if counter is None:
            return False
        try:
            return int(counter) >= self.max_alerts_per_hour
        except ValueError:
            logger.error("Corrupt alert counter, suppressing alerts",
                         address=address, value=counter)
            return True

    async def admit(self, address: str, warning: RiskWarning) -> bool:
        try:
            return await self.cache.set_if_absent(
                self.marker_key(address, warning), "sent", self.window_seconds
            )
        except Exception as e:
            logger.error("Dedup check failed, suppressing alert",
                         address=address, type=warning.type.value,
                         severity=warning.severity.value, error=str(e))
            return False

    async def record_sent(self, address: str) -> int:
        try:
            return await self.cache.increment(self.counter_key(address), self.window_seconds)
        except Exception as e:
            raise AlertStoreError(f"Could not update alert counter for {address}: {e}") from e

    async def sent_count(self, address: str) -> int:
        value = await self.cache.get(self.counter_key(address))
        return int(value) if value else 0


class AlertDispatcher:
    """Sends admitted warnings to every channel and records them"""

    def __init__(self, rate_limiter: AlertRateLimiter, notifications: NotificationManager,
                 timeseries: TimeSeriesStore):
        self.rate_limiter = rate_limiter
        self.notifications = notifications
        self.timeseries = timeseries

    async def dispatch(self, warnings: Sequence[RiskWarning], address: str) -> int:
        """
        Dispatch warnings for an address. Returns the number of warnings sent.

        The hourly budget counts dispatches that sent at least one warning, so
        ``record_sent`` runs at most once per call and not at all when every
        warning was de-duplicated.
        """
        if not warnings:
            return 0

        if await self.rate_limiter.is_rate_limited(address):
            logger.info(f"Alert rate limit reached for {address}")
            return 0

        ordered = sorted(warnings, key=lambda w: WARNING_ORDER.index(w.type))
        sent = 0

        for warning in ordered:
            if not await self.rate_limiter.admit(address, warning):
                logger.debug("Duplicate alert suppressed", address=address,
                             type=warning.type.value, severity=warning.severity.value)
                continue

            message = format_alert(warning, address)
            delivered = await self.notifications.broadcast(message)

            await record_metric(
                self.timeseries,
                Measurements.RISK_ALERTS,
                {
                    "address": address,
                    "type": warning.type.value,
                    "severity": warning.severity.value
                },
                {
                    "message_length": len(warning.message),
                    "timestamp": epoch_millis(warning.timestamp)
                }
            )

            logger.info("Alert dispatched", address=address, type=warning.type.value,
                        severity=warning.severity.value, channels_delivered=delivered)
            sent += 1

        if sent:
            await self.rate_limiter.record_sent(address)

        return sent
