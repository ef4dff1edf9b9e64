from pydantic import BaseModel, Field, validator, model_validator
from typing import Dict, Optional, List
from datetime import datetime
from enum import Enum


class WarningType(str, Enum):
    LIQUIDATION = "LIQUIDATION"
    IMPERMANENT_LOSS = "IMPERMANENT_LOSS"
    PROTOCOL = "PROTOCOL"
    TVL_CHANGE = "TVL_CHANGE"


class Severity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Emission order used by the threshold policy and the dispatcher
WARNING_ORDER = [
    WarningType.LIQUIDATION,
    WarningType.IMPERMANENT_LOSS,
    WarningType.PROTOCOL,
    WarningType.TVL_CHANGE,
]


# Position Models
class ProtocolPosition(BaseModel):
    protocol: str
    address: str
    balance: float = 0.0
    value: float = 0.0
    apy: float = 0.0
    health_factor: Optional[float] = None
    rewards: Optional[float] = None

    # Optional pricing data, supplied by adapters that know it
    current_price: Optional[float] = None
    liquidation_price: Optional[float] = None
    price_ratio: Optional[float] = None  # current / entry price of an LP pair

    class Config:
        frozen = True


# Risk Models
class RiskScore(BaseModel):
    overall: int = Field(ge=0, le=100)
    liquidation: int = Field(ge=0, le=100)
    impermanent_loss: int = Field(ge=0, le=100)
    protocol: int = Field(ge=0, le=100)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True


class RiskWarning(BaseModel):
    type: WarningType
    severity: Severity
    message: str
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    protocol: Optional[str] = None

    class Config:
        frozen = True


class PositionRisk(BaseModel):
    protocol: str
    position_id: str
    risk_score: RiskScore
    warnings: List[RiskWarning] = []

    liquidation_price: Optional[float] = None
    current_price: Optional[float] = None
    il_exposure: Optional[float] = None  # percent

    class Config:
        frozen = True


# Configuration Models
class RiskThresholds(BaseModel):
    liquidation_warning: float = 80   # % of liquidation price
    liquidation_critical: float = 90
    il_warning: float = 5             # % impermanent loss
    il_critical: float = 10
    protocol_warning: float = 60      # protocol sub-score
    protocol_critical: float = 80
    tvl_change_warning: float = 20    # % TVL drop

    class Config:
        frozen = True

    @validator("tvl_change_warning")
    def validate_tvl_change_warning(cls, v):
        if v <= 0:
            raise ValueError("tvl_change_warning must be positive")
        return v

    @model_validator(mode="after")
    def validate_ordering(self):
        pairs = [
            ("liquidation", self.liquidation_warning, self.liquidation_critical),
            ("il", self.il_warning, self.il_critical),
            ("protocol", self.protocol_warning, self.protocol_critical),
        ]
        for name, warning, critical in pairs:
            if warning >= critical:
                raise ValueError(
                    f"{name}_warning ({warning}) must be below {name}_critical ({critical})"
                )
        return self


# Protocol health Models
class RawProtocolMetrics(BaseModel):
    name: str
    tvl: float = 0.0
    previous_tvl: Optional[float] = None  # 24h baseline
    volume_change_24h: float = 0.0
    user_count_24h: int = 0


class ProtocolHealthMetrics(BaseModel):
    name: str
    tvl: float
    tvl_change_24h: float
    volume_change_24h: float
    user_count_24h: int
    last_updated: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        frozen = True


# Upstream Models
class KaminoStrategyMetrics(BaseModel):
    strategy_pubkey: str
    tvl: float = 0.0
    pnl: float = 0.0
    apy: float = 0.0
    token_a_mint: Optional[str] = None
    token_b_mint: Optional[str] = None
    token_a_balance: float = 0.0
    token_b_balance: float = 0.0
    status: str = "unknown"


# API Request/Response Models
class TriggerAlertsRequest(BaseModel):
    warnings: List[RiskWarning]


class TriggerAlertsResponse(BaseModel):
    address: str
    received: int
    sent: int


class ProtocolInfo(BaseModel):
    name: str
    apy: float


class TokenPrice(BaseModel):
    mint: str
    symbol: Optional[str] = None
    price: float


class MetricRecord(BaseModel):
    """A stored time-series point as served by the history routes"""
    measurement: str
    timestamp: datetime
    tags: Dict[str, str] = {}
    fields: Dict[str, float] = {}


class MetricHistoryResponse(BaseModel):
    subject: str
    measurement: str
    start: datetime
    stop: datetime
    points: List[MetricRecord]
