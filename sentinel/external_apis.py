import httpx
from typing import Any, Dict, List, Optional
import structlog

from .config import TOKEN_PROGRAM_ID
from .error_handling import ExternalAPIError, retry_with_backoff
from .models import KaminoStrategyMetrics, TokenPrice

logger = structlog.get_logger()


def parse_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class BaseAPIClient:
    def __init__(self, base_url: str, headers: Optional[Dict] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.transport = transport
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.default_headers,
                timeout=self.timeout,
                transport=self.transport,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100)
            )
        return self._client

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @retry_with_backoff(
        max_attempts=3,
        base_delay=0.5,
        max_delay=5.0,
        exceptions=(httpx.RequestError, httpx.HTTPStatusError)
    )
    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, endpoint, **kwargs)
        # Only server errors are worth retrying
        if response.status_code >= 500:
            response.raise_for_status()
        return response

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make HTTP request with retry logic"""
        try:
            response = await self._send(method, endpoint, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {endpoint}",
                         error=str(e), status_code=e.response.status_code)
            raise ExternalAPIError(f"API request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error for {method} {endpoint}", error=str(e))
            raise ExternalAPIError(f"Network error: {str(e)}") from e
        except ValueError as e:
            logger.error(f"Invalid JSON from {method} {endpoint}", error=str(e))
            raise ExternalAPIError(f"Invalid response body: {str(e)}") from e


class KaminoClient(BaseAPIClient):
    """Kamino public REST API"""

    def __init__(self, base_url: str, env: str = "mainnet-beta",
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(base_url, {"Accept": "application/json"}, transport)
        self.env = env

    async def get_strategy_metrics(self) -> List[KaminoStrategyMetrics]:
        """Get metrics for every strategy. APYs are returned in percent."""
        data = await self._make_request("GET", "/strategies/metrics", params={"env": self.env})
        if not isinstance(data, list):
            raise ExternalAPIError("Unexpected strategy metrics payload")

        metrics = []
        for item in data:
            if not isinstance(item, dict) or not item.get("strategy"):
                continue
            apy = item.get("apy") or {}
            balances = item.get("vaultBalances") or {}
            metrics.append(KaminoStrategyMetrics(
                strategy_pubkey=item["strategy"],
                tvl=parse_float(item.get("totalValueLocked")),
                pnl=parse_float(item.get("profitAndLoss")),
                apy=parse_float(apy.get("totalApy") if isinstance(apy, dict) else apy) * 100,
                token_a_mint=item.get("tokenAMint"),
                token_b_mint=item.get("tokenBMint"),
                token_a_balance=parse_float((balances.get("tokenA") or {}).get("total")),
                token_b_balance=parse_float((balances.get("tokenB") or {}).get("total")),
                status=item.get("status") or "unknown"
            ))
        return metrics

    async def get_user_positions(self, wallet: str) -> List[Dict]:
        data = await self._make_request(
            "GET", f"/user/{wallet}/positions", params={"env": self.env}
        )
        if isinstance(data, dict):
            data = data.get("positions", [])
        if not isinstance(data, list):
            raise ExternalAPIError("Unexpected user positions payload")
        return [item for item in data if isinstance(item, dict)]

    async def get_prices(self, tokens: Optional[List[str]] = None) -> List[TokenPrice]:
        """Scope oracle prices in USD, optionally restricted to the given mints"""
        params = {"env": self.env, "source": "scope"}
        if tokens:
            params["token"] = ",".join(tokens)

        data = await self._make_request("GET", "/prices", params=params)
        if not isinstance(data, list):
            raise ExternalAPIError("Unexpected prices payload")

        return [
            TokenPrice(mint=item["mint"], symbol=item.get("symbol"), price=parse_float(item.get("price")))
            for item in data
            if isinstance(item, dict) and item.get("mint")
        ]

    async def get_token_price(self, mint: str) -> float:
        prices = await self.get_prices([mint])
        for price in prices:
            if price.mint == mint and price.price > 0:
                return price.price
        raise ExternalAPIError(f"No price available for {mint}")


class SolanaRPCClient(BaseAPIClient):
    """Minimal Solana JSON-RPC client"""

    def __init__(self, rpc_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(rpc_url, {"Content-Type": "application/json"}, transport)
        self._request_id = 0

    async def call(self, method: str, params: Optional[List] = None) -> Any:
        self._request_id += 1
        payload = {
            "jsonrpc": "2.0",
            "id": self._request_id,
            "method": method,
            "params": params or []
        }
        data = await self._make_request("POST", "", json=payload)

        if data.get("error"):
            error = data["error"]
            logger.error(f"RPC error for {method}", error=error)
            raise ExternalAPIError(f"RPC {method} failed: {error.get('message', error)}")
        return data.get("result")

    async def get_token_balance(self, owner: str, mint: str) -> float:
        """Sum the UI balance of every token account the owner holds for a mint"""
        result = await self.call("getTokenAccountsByOwner", [
            owner,
            {"mint": mint, "programId": TOKEN_PROGRAM_ID},
            {"encoding": "jsonParsed", "commitment": "confirmed"}
        ])

        total = 0.0
        for account in (result or {}).get("value", []):
            info = account.get("account", {}).get("data", {}).get("parsed", {}).get("info", {})
            if info.get("mint") != mint:
                continue
            total += parse_float(info.get("tokenAmount", {}).get("uiAmount"))
        return total


class MarinadeClient(BaseAPIClient):
    """Marinade public API"""

    def __init__(self, base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(base_url, {"Accept": "application/json"}, transport)

    async def get_msol_price(self) -> float:
        """mSOL price in SOL"""
        data = await self._make_request("GET", "/msol/price_sol")
        price = parse_float(data.get("value") if isinstance(data, dict) else data)
        if price <= 0:
            raise ExternalAPIError(f"Invalid mSOL price: {data}")
        return price

    async def get_apy(self) -> float:
        """30-day staking APY in percent"""
        data = await self._make_request("GET", "/msol/apy/30d")
        return parse_float(data.get("value") if isinstance(data, dict) else data) * 100
