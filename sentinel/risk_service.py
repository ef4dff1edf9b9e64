from datetime import datetime
from typing import List, Sequence
import structlog

from .alerts import AlertDispatcher
from .config import Measurements
from .models import PositionRisk, RiskThresholds, RiskWarning, WARNING_ORDER
from .protocol_service import ProtocolService
from .risk_engine import RiskScorer, RiskThresholdPolicy
from .timeseries import TimeSeriesStore, record_metric

logger = structlog.get_logger()


class RiskMonitoringService:
    """Scores an address's positions and alerts on threshold breaches"""

    def __init__(self, protocol_service: ProtocolService, scorer: RiskScorer,
                 policy: RiskThresholdPolicy, thresholds: RiskThresholds,
                 dispatcher: AlertDispatcher, timeseries: TimeSeriesStore):
        self.protocol_service = protocol_service
        self.scorer = scorer
        self.policy = policy
        self.thresholds = thresholds
        self.dispatcher = dispatcher
        self.timeseries = timeseries

    async def monitor_position(self, address: str) -> List[PositionRisk]:
        """
        Score every position held by an address.

        Warnings from all positions are sent in a single dispatch so the
        address is charged at most once per call against its hourly budget.
        Raises AlertStoreError if the rate-limiter state cannot be updated.
        """
        positions = await self.protocol_service.get_all_positions(address)
        now = datetime.utcnow()

        risks: List[PositionRisk] = []
        warnings: List[RiskWarning] = []

        for position in positions:
            risk_score = self.scorer.score(position, now)
            position_warnings = self.policy.evaluate(
                risk_score,
                self.thresholds,
                tvl_change=self.protocol_service.tvl_changes.get(position.protocol),
                protocol=position.protocol
            )

            risk = PositionRisk(
                protocol=position.protocol,
                position_id=position.address,
                risk_score=risk_score,
                warnings=position_warnings,
                liquidation_price=position.liquidation_price,
                current_price=position.current_price,
                il_exposure=(
                    self.scorer.impermanent_loss_percent(position.price_ratio)
                    if position.price_ratio is not None else None
                )
            )
            risks.append(risk)
            warnings.extend(position_warnings)

            await record_metric(
                self.timeseries,
                Measurements.POSITION_RISKS,
                {"protocol": risk.protocol, "position": risk.position_id, "address": address},
                {
                    "overall_risk": risk_score.overall,
                    "liquidation_risk": risk_score.liquidation,
                    "il_risk": risk_score.impermanent_loss,
                    "protocol_risk": risk_score.protocol,
                    "warning_count": len(position_warnings)
                }
            )

        if warnings:
            ordered = sorted(warnings, key=lambda w: WARNING_ORDER.index(w.type))
            await self.dispatcher.dispatch(ordered, address)

        logger.debug("Positions monitored", address=address, positions=len(risks),
                     warnings=len(warnings))
        return risks

    async def trigger_alerts(self, warnings: Sequence[RiskWarning], address: str) -> int:
        """Dispatch caller-supplied warnings. Returns the number sent."""
        return await self.dispatcher.dispatch(warnings, address)
