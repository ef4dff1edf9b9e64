import math
from datetime import datetime
from typing import Optional
import structlog

from .alerts import AlertDispatcher
from .config import SYSTEM_ADDRESS
from .models import (
    ProtocolHealthMetrics, RawProtocolMetrics, RiskWarning, WarningType, Severity
)

logger = structlog.get_logger()


def _finite_or_zero(value: float) -> float:
    return value if math.isfinite(value) else 0.0


class ProtocolHealthEvaluator:
    """Scores protocol-wide metrics and raises protocol alerts"""

    TVL_WEIGHT = 0.6
    VOLUME_WEIGHT = 0.4

    def __init__(self, dispatcher: Optional[AlertDispatcher],
                 alert_threshold: float = 70.0, critical_threshold: float = 90.0):
        self.dispatcher = dispatcher
        self.alert_threshold = alert_threshold
        self.critical_threshold = critical_threshold

    def evaluate(self, raw: RawProtocolMetrics,
                 now: Optional[datetime] = None) -> ProtocolHealthMetrics:
        """Derive health metrics. TVL change is 0 until a 24h baseline exists."""
        tvl_change = 0.0
        if raw.previous_tvl:
            tvl_change = _finite_or_zero((raw.tvl - raw.previous_tvl) / raw.previous_tvl * 100)

        return ProtocolHealthMetrics(
            name=raw.name,
            tvl=raw.tvl,
            tvl_change_24h=tvl_change,
            volume_change_24h=raw.volume_change_24h,
            user_count_24h=raw.user_count_24h,
            last_updated=now or datetime.utcnow()
        )

    def risk(self, health: ProtocolHealthMetrics) -> float:
        """Composite risk in [0, 100]"""
        tvl_risk = _finite_or_zero(abs(health.tvl_change_24h)) * self.TVL_WEIGHT

        volume_ratio = 0.0
        if health.tvl and math.isfinite(health.tvl):
            volume_ratio = _finite_or_zero(abs(health.volume_change_24h / health.tvl))
        volume_risk = volume_ratio * self.VOLUME_WEIGHT

        return min(100.0, tvl_risk + volume_risk)

    async def assess(self, health: ProtocolHealthMetrics) -> float:
        """Score a protocol and alert when the score crosses the alert threshold"""
        score = self.risk(health)
        if score <= self.alert_threshold or self.dispatcher is None:
            return score

        severity = Severity.CRITICAL if score > self.critical_threshold else Severity.HIGH
        warning = RiskWarning(
            type=WarningType.PROTOCOL,
            severity=severity,
            message=f"High-risk alert for {health.name}. Risk Score: {score:.1f}",
            protocol=health.name
        )

        try:
            await self.dispatcher.dispatch([warning], SYSTEM_ADDRESS)
        except Exception as e:
            logger.error("Error triggering protocol health alert",
                         protocol=health.name, risk_score=score, error=str(e))

        return score
