import math
from typing import Dict, List, Optional
from datetime import datetime

from .config import PROTOCOL_BASE_RISK, DEFAULT_PROTOCOL_RISK
from .models import (
    ProtocolPosition, RiskScore, RiskThresholds, RiskWarning,
    WarningType, Severity
)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _finite(value: Optional[float]) -> bool:
    return value is not None and math.isfinite(value)


class RiskScorer:
    """
    Turns a position snapshot into a RiskScore.

    Sub-scores are integers in [0, 100]:

    - liquidation: proximity to liquidation in percent. A health factor of
      1.0 means the position is at its liquidation level, so the score is
      ``100 / health_factor``. When the adapter supplies prices the score is
      also ``100 * liquidation_price / current_price``; the worse of the two
      estimates wins. No leverage data scores 0.
    - impermanent_loss: IL percent for the LP price ratio ``r``,
      ``|2 * sqrt(r) / (1 + r) - 1| * 100``. No ratio scores 0.
    - protocol: base risk of the protocol (mid-scale for unknown protocols)
      plus a premium for APYs above 20%.

    overall = 0.6 * worst sub-score + 0.4 * (0.5 L + 0.3 I + 0.2 P), which
    never decreases when any sub-score increases.
    """

    WORST_WEIGHT = 0.6
    BLEND_WEIGHT = 0.4
    LIQUIDATION_WEIGHT = 0.5
    IL_WEIGHT = 0.3
    PROTOCOL_WEIGHT = 0.2

    APY_PREMIUM_FLOOR = 20.0
    APY_PREMIUM_RATE = 0.5
    APY_PREMIUM_CAP = 30.0

    def __init__(self, protocol_base_risk: Optional[Dict[str, int]] = None,
                 default_protocol_risk: int = DEFAULT_PROTOCOL_RISK):
        self.protocol_base_risk = dict(protocol_base_risk or PROTOCOL_BASE_RISK)
        self.default_protocol_risk = default_protocol_risk

    def score(self, position: ProtocolPosition, now: Optional[datetime] = None) -> RiskScore:
        """Score a single position"""
        liquidation = self.liquidation_score(position)
        impermanent_loss = self.impermanent_loss_score(position)
        protocol = self.protocol_score(position)

        return RiskScore(
            overall=self.combine(liquidation, impermanent_loss, protocol),
            liquidation=liquidation,
            impermanent_loss=impermanent_loss,
            protocol=protocol,
            timestamp=now or datetime.utcnow()
        )

    def combine(self, liquidation: int, impermanent_loss: int, protocol: int) -> int:
        """Combine sub-scores into the overall score"""
        worst = max(liquidation, impermanent_loss, protocol)
        blended = (
            self.LIQUIDATION_WEIGHT * liquidation +
            self.IL_WEIGHT * impermanent_loss +
            self.PROTOCOL_WEIGHT * protocol
        )
        overall = self.WORST_WEIGHT * worst + self.BLEND_WEIGHT * blended
        return int(round(_clamp(overall)))

    def liquidation_score(self, position: ProtocolPosition) -> int:
        estimates = []

        health_factor = position.health_factor
        if health_factor is not None and not math.isnan(health_factor):
            if health_factor <= 0:
                estimates.append(100.0)
            elif math.isfinite(health_factor):
                estimates.append(100.0 / health_factor)

        if _finite(position.liquidation_price) and _finite(position.current_price) \
                and position.current_price > 0 and position.liquidation_price >= 0:
            estimates.append(100.0 * position.liquidation_price / position.current_price)

        if not estimates:
            return 0
        return int(round(_clamp(max(estimates))))

    def impermanent_loss_score(self, position: ProtocolPosition) -> int:
        return int(round(_clamp(self.impermanent_loss_percent(position.price_ratio))))

    @staticmethod
    def impermanent_loss_percent(price_ratio: Optional[float]) -> float:
        """IL in percent for a constant-product pool given current/entry price ratio"""
        if not _finite(price_ratio) or price_ratio <= 0:
            return 0.0
        return abs(2 * math.sqrt(price_ratio) / (1 + price_ratio) - 1) * 100

    def protocol_score(self, position: ProtocolPosition) -> int:
        base = self.protocol_base_risk.get(position.protocol, self.default_protocol_risk)

        premium = 0.0
        if _finite(position.apy):
            premium = min(
                self.APY_PREMIUM_CAP,
                max(0.0, position.apy - self.APY_PREMIUM_FLOOR) * self.APY_PREMIUM_RATE
            )

        return int(round(_clamp(base + premium)))


class RiskThresholdPolicy:
    """Maps a RiskScore onto warnings using the configured thresholds"""

    def evaluate(self, risk: RiskScore, thresholds: RiskThresholds,
                 tvl_change: Optional[float] = None,
                 protocol: Optional[str] = None) -> List[RiskWarning]:
        """
        Emit warnings in LIQUIDATION, IMPERMANENT_LOSS, PROTOCOL, TVL_CHANGE order.

        HIGH at/above the critical threshold, MEDIUM at/above the warning
        threshold. TVL change only has a warning threshold, so a drop of at
        least ``tvl_change_warning`` percent yields MEDIUM.
        """
        warnings: List[RiskWarning] = []
        where = f" on {protocol}" if protocol else ""

        severity = self._grade(risk.liquidation, thresholds.liquidation_warning,
                               thresholds.liquidation_critical)
        if severity:
            warnings.append(RiskWarning(
                type=WarningType.LIQUIDATION,
                severity=severity,
                message=(
                    f"Position{where} is at {risk.liquidation}% of its liquidation level "
                    f"(warning {thresholds.liquidation_warning:g}%, "
                    f"critical {thresholds.liquidation_critical:g}%)"
                ),
                timestamp=risk.timestamp,
                protocol=protocol
            ))

        severity = self._grade(risk.impermanent_loss, thresholds.il_warning,
                               thresholds.il_critical)
        if severity:
            warnings.append(RiskWarning(
                type=WarningType.IMPERMANENT_LOSS,
                severity=severity,
                message=(
                    f"Impermanent loss{where} is {risk.impermanent_loss}% "
                    f"(warning {thresholds.il_warning:g}%, critical {thresholds.il_critical:g}%)"
                ),
                timestamp=risk.timestamp,
                protocol=protocol
            ))

        severity = self._grade(risk.protocol, thresholds.protocol_warning,
                               thresholds.protocol_critical)
        if severity:
            warnings.append(RiskWarning(
                type=WarningType.PROTOCOL,
                severity=severity,
                message=(
                    f"Protocol risk{where} scored {risk.protocol}/100 "
                    f"(warning {thresholds.protocol_warning:g}, "
                    f"critical {thresholds.protocol_critical:g})"
                ),
                timestamp=risk.timestamp,
                protocol=protocol
            ))

        if _finite(tvl_change) and tvl_change < 0 and -tvl_change >= thresholds.tvl_change_warning:
            warnings.append(RiskWarning(
                type=WarningType.TVL_CHANGE,
                severity=Severity.MEDIUM,
                message=(
                    f"TVL{where} dropped {abs(tvl_change):.1f}% in 24h "
                    f"(warning {thresholds.tvl_change_warning:g}%)"
                ),
                timestamp=risk.timestamp,
                protocol=protocol
            ))

        return warnings

    @staticmethod
    def _grade(value: float, warning: float, critical: float) -> Optional[Severity]:
        if value >= critical:
            return Severity.HIGH
        if value >= warning:
            return Severity.MEDIUM
        return None
