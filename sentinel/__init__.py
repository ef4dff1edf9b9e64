"""
Solana Sentinel - DeFi position risk monitoring and alerting

Polls Solana DeFi protocols for the positions of monitored wallets, scores
their liquidation, impermanent-loss and protocol risk, and sends rate-limited
alerts to Discord and Telegram when configured thresholds are crossed.

Key Features:
- Marinade (mSOL) and Kamino position adapters
- Deterministic 0-100 risk scoring with configurable thresholds
- Per-address hourly alert budget and duplicate suppression in Redis
- Protocol-wide health scoring from TVL and volume changes
- Risk history in InfluxDB
- Background monitoring loop with backoff and graceful shutdown
"""

__version__ = "1.0.0"

from .main import app
from .config import settings

__all__ = ["app", "settings"]
