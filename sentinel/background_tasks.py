import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import List, Optional
import structlog

from .config import Measurements
from .error_handling import ErrorCollector
from .protocol_service import ProtocolService
from .risk_service import RiskMonitoringService
from .timeseries import TimeSeriesStore, record_metric

logger = structlog.get_logger()


class LoopState(str, Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    BACKOFF = "BACKOFF"


class MonitoringLoop:
    """
    Periodic risk monitoring for the configured wallets.

    A single task runs one cycle at a time, so cycles never overlap. A cycle
    that raises, or in which any wallet fails, puts the loop in BACKOFF and
    the next cycle starts after the backoff delay instead of the interval.
    """

    def __init__(self, risk_service: RiskMonitoringService,
                 protocol_service: ProtocolService, timeseries: TimeSeriesStore,
                 error_collector: ErrorCollector, wallets: List[str],
                 interval_seconds: float = 60, backoff_seconds: float = 30,
                 batch_size: int = 10):
        self.risk_service = risk_service
        self.protocol_service = protocol_service
        self.timeseries = timeseries
        self.error_collector = error_collector
        self.wallets = list(wallets)
        self.interval_seconds = interval_seconds
        self.backoff_seconds = backoff_seconds
        self.batch_size = max(1, batch_size)

        self.state = LoopState.STOPPED
        self.cycles_completed = 0
        self.consecutive_failures = 0
        self.last_cycle_at: Optional[datetime] = None

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the loop task"""
        if self.is_running:
            logger.warning("Monitoring loop already running")
            return

        self._stop_event = asyncio.Event()
        self.state = LoopState.RUNNING
        self._task = asyncio.create_task(self._run())
        logger.info("Monitoring loop started", wallets=len(self.wallets),
                    interval_seconds=self.interval_seconds)

    async def stop(self, grace_seconds: float = 30.0):
        """Stop scheduling, let the in-flight cycle finish, cancel after the grace period"""
        if self._task is None:
            return

        logger.info("Stopping monitoring loop")
        self._stop_event.set()

        try:
            await asyncio.wait_for(asyncio.shield(self._task), grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("Monitoring cycle still running after grace period, cancelling",
                           grace_seconds=grace_seconds)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

        self._task = None
        self.state = LoopState.STOPPED
        logger.info("Monitoring loop stopped", cycles_completed=self.cycles_completed)

    async def _run(self):
        while not self._stop_event.is_set():
            delay = await self.tick()
            if self._stop_event.is_set():
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), delay)
            except asyncio.TimeoutError:
                pass
        self.state = LoopState.STOPPED

    async def tick(self) -> float:
        """Run one cycle. Returns the delay before the next one."""
        start_time = time.monotonic()
        try:
            failures = await self._run_cycle()
        except Exception as e:
            await self._record_failure(e, stage="cycle")
            failures = None

        duration_ms = (time.monotonic() - start_time) * 1000
        self.last_cycle_at = datetime.utcnow()

        if failures == 0:
            self.state = LoopState.RUNNING
            self.consecutive_failures = 0
            self.cycles_completed += 1
            logger.info(f"Monitoring cycle completed in {duration_ms:.0f}ms",
                        wallets=len(self.wallets))
            delay = self.interval_seconds
        else:
            self.state = LoopState.BACKOFF
            self.consecutive_failures += 1
            logger.warning("Monitoring cycle failed, backing off",
                           backoff_seconds=self.backoff_seconds,
                           consecutive_failures=self.consecutive_failures)
            delay = self.backoff_seconds

        await record_metric(
            self.timeseries,
            Measurements.MONITORING_CYCLES,
            {"state": self.state.value},
            {
                "wallets": len(self.wallets),
                "failed_wallets": failures or 0,
                "cycle_error": 1 if failures is None else 0,
                "duration_ms": duration_ms
            }
        )
        return delay

    async def _run_cycle(self) -> int:
        """Monitor all wallets in batches, then refresh protocol health"""
        failures = 0

        for i in range(0, len(self.wallets), self.batch_size):
            batch = self.wallets[i:i + self.batch_size]
            results = await asyncio.gather(
                *(self.risk_service.monitor_position(wallet) for wallet in batch),
                return_exceptions=True
            )
            for wallet, result in zip(batch, results):
                if isinstance(result, Exception):
                    failures += 1
                    await self._record_failure(result, stage="wallet", wallet=wallet)

        await self.protocol_service.get_protocol_health()
        return failures

    async def _record_failure(self, error: Exception, **context):
        logger.error("Error in monitoring loop", error=str(error),
                     error_type=type(error).__name__, **context)
        self.error_collector.record_error(error, context)
        await record_metric(
            self.timeseries,
            Measurements.PROTOCOL_ERRORS,
            {"source": "monitoring_loop", "error_type": type(error).__name__},
            {"count": 1}
        )

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "wallets": len(self.wallets),
            "cycles_completed": self.cycles_completed,
            "consecutive_failures": self.consecutive_failures,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None
        }
