"""
Protocol adapters.

Each adapter exposes the same capability set (name, positions, APY and,
where the protocol publishes them, protocol-wide metrics). Adapters raise
on upstream failure; ProtocolService decides how a failed protocol is
reported.
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Optional
import structlog

from .config import Measurements, Settings, MSOL_MINT, WSOL_MINT
from .external_apis import KaminoClient, MarinadeClient, SolanaRPCClient, parse_float
from .error_handling import ConfigurationError
from .models import KaminoStrategyMetrics, ProtocolPosition, RawProtocolMetrics
from .timeseries import TimeSeriesStore, record_metric

logger = structlog.get_logger()


class ProtocolAdapter(ABC):
    """Capability interface for a DeFi protocol"""

    @abstractmethod
    def get_name(self) -> str:
        ...

    @abstractmethod
    async def get_positions(self, address: str) -> List[ProtocolPosition]:
        ...

    @abstractmethod
    async def get_apy(self) -> float:
        ...

    async def get_raw_metrics(self) -> Optional[RawProtocolMetrics]:
        """Protocol-wide metrics, or None when the protocol has no such feed"""
        return None

    async def close(self) -> None:
        pass


class MarinadeAdapter(ProtocolAdapter):
    """
    mSOL liquid staking. Staking positions carry no liquidation risk.

    Balance is in mSOL; value and rewards are in USD, converted through the
    mSOL/SOL rate and the SOL/USD oracle price.
    """

    def __init__(self, rpc: SolanaRPCClient, api: MarinadeClient, prices: KaminoClient):
        self.rpc = rpc
        self.api = api
        self.prices = prices

    def get_name(self) -> str:
        return "Marinade"

    async def get_positions(self, address: str) -> List[ProtocolPosition]:
        balance = await self.rpc.get_token_balance(address, MSOL_MINT)
        if balance <= 0:
            return []

        msol_price = await self.api.get_msol_price()
        sol_usd = await self.prices.get_token_price(WSOL_MINT)
        apy = await self.get_apy()
        value = balance * msol_price * sol_usd

        logger.debug("Marinade position found", address=address, balance=balance,
                     value=value, apy=apy)

        return [ProtocolPosition(
            protocol=self.get_name(),
            address=address,
            balance=balance,
            value=value,
            apy=apy,
            health_factor=None,
            rewards=value * apy / 100
        )]

    async def get_apy(self) -> float:
        return await self.api.get_apy()

    async def close(self) -> None:
        await self.rpc.close()
        await self.api.close()
        await self.prices.close()


class KaminoAdapter(ProtocolAdapter):
    """Kamino automated liquidity strategies"""

    def __init__(self, api: KaminoClient, timeseries: Optional[TimeSeriesStore] = None):
        self.api = api
        self.timeseries = timeseries

    def get_name(self) -> str:
        return "Kamino"

    async def get_positions(self, address: str) -> List[ProtocolPosition]:
        raw_positions = await self.api.get_user_positions(address)
        if not raw_positions:
            return []

        strategies = {m.strategy_pubkey: m for m in await self.api.get_strategy_metrics()}

        positions = []
        for item in raw_positions:
            strategy = item.get("strategy") or item.get("strategyPubkey")
            if not strategy:
                continue
            metrics = strategies.get(strategy)

            positions.append(ProtocolPosition(
                protocol=self.get_name(),
                address=strategy,
                balance=parse_float(item.get("sharesAmount", item.get("shares"))),
                value=parse_float(item.get("usdValue", item.get("value"))),
                apy=metrics.apy if metrics else 0.0,
                health_factor=None,
                rewards=parse_float(item.get("rewardsUsd"), None),
                price_ratio=parse_float(item.get("priceRatio"), None)
            ))
        return positions

    async def get_apy(self) -> float:
        """Mean APY across strategies"""
        metrics = await self.api.get_strategy_metrics()
        if not metrics:
            return 0.0
        return sum(m.apy for m in metrics) / len(metrics)

    async def store_strategy_history(self, metrics: List[KaminoStrategyMetrics]):
        if self.timeseries is None:
            return
        for metric in metrics:
            await record_metric(
                self.timeseries,
                Measurements.KAMINO_STRATEGY_METRICS,
                {"strategy": metric.strategy_pubkey, "status": metric.status},
                {
                    "tvl": metric.tvl,
                    "pnl": metric.pnl,
                    "apy": metric.apy,
                    "token_a_balance": metric.token_a_balance,
                    "token_b_balance": metric.token_b_balance
                }
            )

    async def get_raw_metrics(self) -> Optional[RawProtocolMetrics]:
        metrics = await self.api.get_strategy_metrics()
        await self.store_strategy_history(metrics)
        return RawProtocolMetrics(
            name=self.get_name(),
            tvl=sum(m.tvl for m in metrics),
            # No volume feed upstream; aggregate strategy PnL stands in for it
            volume_change_24h=sum(m.pnl for m in metrics),
            user_count_24h=len(metrics)
        )

    async def close(self) -> None:
        await self.api.close()


class ProtocolRegistry:
    """Adapters keyed by protocol name"""

    def __init__(self, adapters: Optional[List[ProtocolAdapter]] = None):
        self._adapters: Dict[str, ProtocolAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProtocolAdapter):
        name = adapter.get_name()
        if name in self._adapters:
            raise ConfigurationError(f"Protocol {name} registered twice")
        self._adapters[name] = adapter

    def get(self, name: str) -> Optional[ProtocolAdapter]:
        return self._adapters.get(name)

    def names(self) -> List[str]:
        return list(self._adapters)

    def adapters(self) -> List[ProtocolAdapter]:
        return list(self._adapters.values())

    def __len__(self):
        return len(self._adapters)

    async def close(self):
        for adapter in self._adapters.values():
            try:
                await adapter.close()
            except Exception as e:
                logger.warning(f"Error closing {adapter.get_name()} adapter", error=str(e))


def build_registry(settings: Settings,
                   timeseries: Optional[TimeSeriesStore] = None) -> ProtocolRegistry:
    """Create adapters for every protocol enabled in settings"""
    factories = {
        "Marinade": lambda: MarinadeAdapter(
            SolanaRPCClient(settings.SOLANA_RPC_URL),
            MarinadeClient(settings.MARINADE_API_URL),
            KaminoClient(settings.KAMINO_BASE_URL, settings.KAMINO_ENV)
        ),
        "Kamino": lambda: KaminoAdapter(
            KaminoClient(settings.KAMINO_BASE_URL, settings.KAMINO_ENV),
            timeseries
        ),
    }

    registry = ProtocolRegistry()
    for name in settings.enabled_protocols:
        factory = factories.get(name)
        if factory is None:
            raise ConfigurationError(
                f"Unknown protocol {name!r}; available: {', '.join(factories)}"
            )
        registry.register(factory())

    logger.info("Protocol adapters registered", protocols=registry.names())
    return registry
