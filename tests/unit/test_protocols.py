import json
import httpx
import pytest

from sentinel.config import Measurements, Settings, MSOL_MINT, WSOL_MINT
from sentinel.error_handling import ConfigurationError, ExternalAPIError
from sentinel.external_apis import KaminoClient, MarinadeClient, SolanaRPCClient
from sentinel.protocols import (
    KaminoAdapter, MarinadeAdapter, ProtocolRegistry, build_registry
)
from sentinel.timeseries import MemoryTimeSeries

STRATEGY_A = "ByXB4xCxVhmUEmQj3Ut7byZ1Hbva1zhKjaVcv3jBMN7E"
STRATEGY_B = "2H4xebnp2M9JYgPmfUw58qUQahWTBakYLBUvGiBTbZxH"

SCOPE_PRICES = [
    {"mint": WSOL_MINT, "symbol": "SOL", "price": "150.0", "source": "scope"},
    {"mint": MSOL_MINT, "symbol": "MSOL", "price": "180.0", "source": "scope"},
]


def kamino_transport(calls, positions=None, status_code=200, prices=None):
    strategies = [
        {
            "strategy": STRATEGY_A,
            "totalValueLocked": "1000000",
            "profitAndLoss": "-2500",
            "apy": {"totalApy": "0.12"},
            "tokenAMint": "So11111111111111111111111111111111111111112",
            "vaultBalances": {"tokenA": {"total": "10"}, "tokenB": {"total": "20"}},
            "status": "LIVE"
        },
        {
            "strategy": STRATEGY_B,
            "totalValueLocked": "500000",
            "profitAndLoss": "1000",
            "apy": {"totalApy": "0.04"}
        },
        {"status": "broken entry without strategy"},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if status_code != 200:
            return httpx.Response(status_code)
        if request.url.path == "/strategies/metrics":
            return httpx.Response(200, json=strategies)
        if request.url.path.endswith("/positions"):
            return httpx.Response(200, json=positions or [])
        if request.url.path == "/prices":
            return httpx.Response(200, json=prices if prices is not None else SCOPE_PRICES)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


def rpc_transport(calls, accounts=None, error=None):
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append(body)
        if error:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": error})
        return httpx.Response(200, json={
            "jsonrpc": "2.0",
            "id": body["id"],
            "result": {"context": {"slot": 1}, "value": accounts or []}
        })
    return httpx.MockTransport(handler)


def token_account(mint, ui_amount):
    return {
        "pubkey": "account",
        "account": {"data": {"parsed": {"info": {
            "mint": mint,
            "tokenAmount": {"uiAmount": ui_amount}
        }}}}
    }


def marinade_transport(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/msol/price_sol":
            return httpx.Response(200, json=1.2)
        if request.url.path == "/msol/apy/30d":
            return httpx.Response(200, json={"value": 0.07})
        return httpx.Response(404)
    return httpx.MockTransport(handler)


class TestKaminoAdapter:
    """Kamino strategies over the REST API"""

    @pytest.mark.asyncio
    async def test_strategy_metrics_parsing(self):
        client = KaminoClient("https://kamino.test", transport=kamino_transport([]))

        metrics = await client.get_strategy_metrics()

        assert [m.strategy_pubkey for m in metrics] == [STRATEGY_A, STRATEGY_B]
        assert metrics[0].tvl == 1000000
        assert metrics[0].pnl == -2500
        assert metrics[0].apy == pytest.approx(12.0)
        assert metrics[0].token_b_balance == 20
        assert metrics[1].status == "unknown"

    @pytest.mark.asyncio
    async def test_env_is_sent(self):
        calls = []
        client = KaminoClient("https://kamino.test", env="devnet", transport=kamino_transport(calls))

        await client.get_strategy_metrics()

        assert calls[0].url.params["env"] == "devnet"

    @pytest.mark.asyncio
    async def test_raw_metrics(self):
        adapter = KaminoAdapter(KaminoClient("https://kamino.test", transport=kamino_transport([])))

        raw = await adapter.get_raw_metrics()

        assert raw.name == "Kamino"
        assert raw.tvl == 1500000
        assert raw.volume_change_24h == -1500
        assert raw.user_count_24h == 2
        assert raw.previous_tvl is None

    @pytest.mark.asyncio
    async def test_raw_metrics_record_strategy_history(self):
        timeseries = MemoryTimeSeries()
        adapter = KaminoAdapter(KaminoClient("https://kamino.test", transport=kamino_transport([])),
                                timeseries)

        await adapter.get_raw_metrics()

        points = timeseries.find(Measurements.KAMINO_STRATEGY_METRICS)
        assert [p.tags["strategy"] for p in points] == [STRATEGY_A, STRATEGY_B]
        assert points[0].tags["status"] == "LIVE"
        assert points[0].fields["tvl"] == 1000000
        assert points[0].fields["apy"] == pytest.approx(12.0)
        assert points[0].fields["token_b_balance"] == 20
        assert points[1].tags["status"] == "unknown"

    @pytest.mark.asyncio
    async def test_scope_prices(self):
        calls = []
        client = KaminoClient("https://kamino.test", transport=kamino_transport(calls))

        prices = await client.get_prices([WSOL_MINT])

        assert [(p.symbol, p.price) for p in prices] == [("SOL", 150.0), ("MSOL", 180.0)]
        assert calls[0].url.params["source"] == "scope"
        assert calls[0].url.params["token"] == WSOL_MINT
        assert await client.get_token_price(MSOL_MINT) == 180.0

    @pytest.mark.asyncio
    async def test_mean_apy(self):
        adapter = KaminoAdapter(KaminoClient("https://kamino.test", transport=kamino_transport([])))
        assert await adapter.get_apy() == pytest.approx(8.0)

    @pytest.mark.asyncio
    async def test_user_positions_joined_with_strategy_apy(self, wallet):
        positions = [
            {"strategy": STRATEGY_A, "sharesAmount": "15.5", "usdValue": "320.25", "priceRatio": 1.5},
            {"strategyPubkey": STRATEGY_B, "shares": 3, "value": 60},
            {"note": "no strategy"},
        ]
        adapter = KaminoAdapter(KaminoClient(
            "https://kamino.test", transport=kamino_transport([], positions=positions)
        ))

        result = await adapter.get_positions(wallet)

        assert len(result) == 2
        assert result[0].protocol == "Kamino"
        assert result[0].address == STRATEGY_A
        assert result[0].balance == 15.5
        assert result[0].value == 320.25
        assert result[0].apy == pytest.approx(12.0)
        assert result[0].price_ratio == 1.5
        assert result[0].health_factor is None
        assert result[1].apy == pytest.approx(4.0)
        assert result[1].price_ratio is None

    @pytest.mark.asyncio
    async def test_no_positions_skips_strategy_fetch(self, wallet):
        calls = []
        adapter = KaminoAdapter(KaminoClient("https://kamino.test", transport=kamino_transport(calls)))

        assert await adapter.get_positions(wallet) == []
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        calls = []
        client = KaminoClient("https://kamino.test", transport=kamino_transport(calls, status_code=404))

        with pytest.raises(ExternalAPIError):
            await client.get_strategy_metrics()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json=[])

        client = KaminoClient("https://kamino.test", transport=httpx.MockTransport(handler))

        assert await client.get_strategy_metrics() == []
        assert len(attempts) == 3


class TestMarinadeAdapter:
    """mSOL staking positions over Solana RPC"""

    @pytest.fixture
    def marinade_calls(self):
        return []

    def make_adapter(self, rpc_calls, marinade_calls, prices=None, price_calls=None, **rpc_kwargs):
        return MarinadeAdapter(
            SolanaRPCClient("https://rpc.test", transport=rpc_transport(rpc_calls, **rpc_kwargs)),
            MarinadeClient("https://marinade.test", transport=marinade_transport(marinade_calls)),
            KaminoClient("https://kamino.test",
                         transport=kamino_transport(price_calls if price_calls is not None else [],
                                                    prices=prices))
        )

    @pytest.mark.asyncio
    async def test_sums_msol_accounts(self, wallet, marinade_calls):
        rpc_calls = []
        price_calls = []
        adapter = self.make_adapter(rpc_calls, marinade_calls, price_calls=price_calls, accounts=[
            token_account(MSOL_MINT, 1.5),
            token_account(MSOL_MINT, 1.0),
            token_account("EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v", 99.0),
        ])

        positions = await adapter.get_positions(wallet)

        assert len(positions) == 1
        position = positions[0]
        assert position.protocol == "Marinade"
        assert position.address == wallet
        assert position.balance == pytest.approx(2.5)
        # 2.5 mSOL at 1.2 SOL each, 150 USD per SOL
        assert position.value == pytest.approx(450.0)
        assert position.apy == pytest.approx(7.0)
        assert position.rewards == pytest.approx(31.5)
        assert position.health_factor is None

        assert rpc_calls[0]["method"] == "getTokenAccountsByOwner"
        assert rpc_calls[0]["params"][0] == wallet
        assert rpc_calls[0]["params"][1]["mint"] == MSOL_MINT
        assert price_calls[0].url.params["token"] == WSOL_MINT

    @pytest.mark.asyncio
    async def test_empty_wallet(self, wallet, marinade_calls):
        adapter = self.make_adapter([], marinade_calls)

        assert await adapter.get_positions(wallet) == []
        assert marinade_calls == []

    @pytest.mark.asyncio
    async def test_missing_sol_price_raises(self, wallet, marinade_calls):
        adapter = self.make_adapter([], marinade_calls, prices=[], accounts=[token_account(MSOL_MINT, 1.0)])

        with pytest.raises(ExternalAPIError):
            await adapter.get_positions(wallet)

    @pytest.mark.asyncio
    async def test_rpc_error_raises(self, wallet, marinade_calls):
        adapter = self.make_adapter([], marinade_calls,
                                    error={"code": -32602, "message": "Invalid param"})

        with pytest.raises(ExternalAPIError):
            await adapter.get_positions(wallet)

    @pytest.mark.asyncio
    async def test_apy_in_percent(self, marinade_calls):
        adapter = self.make_adapter([], marinade_calls)
        assert await adapter.get_apy() == pytest.approx(7.0)


class TestProtocolRegistry:

    def test_register_and_lookup(self, fakes):
        kamino = fakes.Adapter("Kamino")
        registry = ProtocolRegistry([kamino, fakes.Adapter("Marinade")])

        assert registry.names() == ["Kamino", "Marinade"]
        assert registry.get("Kamino") is kamino
        assert registry.get("Orca") is None
        assert len(registry) == 2

    def test_duplicate_name_rejected(self, fakes):
        with pytest.raises(ConfigurationError):
            ProtocolRegistry([fakes.Adapter("Kamino"), fakes.Adapter("Kamino")])

    def test_build_from_settings(self, timeseries):
        registry = build_registry(Settings(ENABLED_PROTOCOLS="Marinade, Kamino"), timeseries)

        assert registry.names() == ["Marinade", "Kamino"]
        assert isinstance(registry.get("Marinade"), MarinadeAdapter)
        assert isinstance(registry.get("Kamino"), KaminoAdapter)
        assert registry.get("Kamino").timeseries is timeseries

    def test_unknown_protocol_rejected(self):
        with pytest.raises(ConfigurationError):
            build_registry(Settings(ENABLED_PROTOCOLS="Marinade,Orca"))
