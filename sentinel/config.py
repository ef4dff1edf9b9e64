from pydantic_settings import BaseSettings
from typing import Dict, List


class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # Redis Configuration
    ENABLE_REDIS: bool = False
    REDIS_URL: str = "redis://localhost:6379/0"

    # InfluxDB Configuration
    ENABLE_INFLUX: bool = False
    INFLUX_URL: str = "http://localhost:8086"
    INFLUX_TOKEN: str = ""
    INFLUX_ORG: str = "sentinel"
    INFLUX_BUCKET: str = "solana_sentinel"

    # Notification channels (empty = disabled)
    DISCORD_WEBHOOK_URL: str = ""
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_ID: str = ""
    TELEGRAM_API_BASE: str = "https://api.telegram.org"

    # Protocol data sources
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    KAMINO_BASE_URL: str = "https://api.kamino.finance"
    KAMINO_ENV: str = "mainnet-beta"
    MARINADE_API_URL: str = "https://api.marinade.finance"
    ENABLED_PROTOCOLS: str = "Marinade,Kamino"

    # Service
    SENTINEL_PORT: int = 3000

    # Monitoring loop
    MONITORED_WALLETS: str = ""
    MONITOR_INTERVAL_SECONDS: float = 60
    MONITOR_BACKOFF_SECONDS: float = 30
    MONITOR_BATCH_SIZE: int = 10
    SHUTDOWN_GRACE_SECONDS: float = 30

    # Alerting
    MAX_ALERTS_PER_HOUR: int = 10
    ALERT_TTL_SECONDS: int = 3600
    PROTOCOL_ALERT_THRESHOLD: float = 70.0
    PROTOCOL_CRITICAL_THRESHOLD: float = 90.0

    # Cache TTLs (seconds)
    POSITIONS_CACHE_TTL: int = 300
    HEALTH_CACHE_TTL: int = 300
    TVL_BASELINE_TTL: int = 86400

    # Risk thresholds
    LIQUIDATION_WARNING: float = 80
    LIQUIDATION_CRITICAL: float = 90
    IL_WARNING: float = 5
    IL_CRITICAL: float = 10
    PROTOCOL_WARNING: float = 60
    PROTOCOL_CRITICAL: float = 80
    TVL_CHANGE_WARNING: float = 20

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def monitored_wallets(self) -> List[str]:
        return [w.strip() for w in self.MONITORED_WALLETS.split(",") if w.strip()]

    @property
    def enabled_protocols(self) -> List[str]:
        return [p.strip() for p in self.ENABLED_PROTOCOLS.split(",") if p.strip()]


# Global settings instance
settings = Settings()


# Time-series measurement names
class Measurements:
    POSITION_RISKS = "position_risks"
    PROTOCOL_POSITIONS = "protocol_positions"
    PROTOCOL_HEALTH = "protocol_health"
    RISK_ALERTS = "risk_alerts"
    PROTOCOL_ERRORS = "protocol_errors"
    MONITORING_CYCLES = "monitoring_cycles"
    KAMINO_STRATEGY_METRICS = "kamino_strategy_metrics"


# Cache key layout
class CacheKeys:
    ALERT_MARKER = "alert:{address}:{type}:{severity}"
    ALERT_COUNTER = "alerts:counter:{address}"
    POSITIONS = "positions:{address}"
    PROTOCOL_HEALTH = "protocol:health:metrics"
    TVL_BASELINE = "protocol:tvl_baseline:{name}"


# Address used for protocol-wide alerts
SYSTEM_ADDRESS = "system"

# Base protocol risk (0-100) for known protocols; unknown protocols score mid-scale
PROTOCOL_BASE_RISK: Dict[str, int] = {
    "Marinade": 20,
    "Kamino": 35,
}
DEFAULT_PROTOCOL_RISK = 50

# Mainnet addresses
MSOL_MINT = "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So"
WSOL_MINT = "So11111111111111111111111111111111111111112"
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
