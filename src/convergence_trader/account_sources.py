"""
Readers for account truth that does not come from the CLOB.

- PositionsClient: the Polymarket data API positions endpoint
- OnChainBalanceReader: USDC balanceOf on Polygon through web3
"""

import logging
from typing import Optional

import aiohttp
import orjson
from web3 import AsyncWeb3

from .errors import DataSourceError
from .types import OutcomeSide, PositionRef, PositionSource
from .util import safe_float

logger = logging.getLogger(__name__)

USDC_DECIMALS = 1_000_000

MINIMAL_ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
]


class _HttpReader:
    """Lazily-created aiohttp session with a total timeout."""

    def __init__(self, timeout_s: float = 10.0):
        self._timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self._timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class PositionsClient(_HttpReader):
    """Reads current positions for a wallet from the Polymarket data API."""

    DEFAULT_BASE_URL = "https://data-api.polymarket.com"

    def __init__(self, base_url: str = DEFAULT_BASE_URL, timeout_s: float = 10.0):
        super().__init__(timeout_s)
        self._base_url = base_url.rstrip("/")

    async def fetch_positions(self, address: str) -> list[PositionRef]:
        """
        Fetch open positions for a proxy wallet.

        Args:
            address: Proxy wallet address (0x...)

        Returns:
            Positions with nonzero size

        Raises:
            DataSourceError: request failed or returned a non-list body
        """
        session = await self._ensure_session()
        url = f"{self._base_url}/positions"
        params = {"user": address, "sizeThreshold": "0"}

        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise DataSourceError(f"Positions request failed: {resp.status} - {text[:200]}")
                data = orjson.loads(await resp.read())
        except aiohttp.ClientError as e:
            raise DataSourceError(f"Positions request failed: {e}") from e
        except orjson.JSONDecodeError as e:
            raise DataSourceError(f"Positions response not JSON: {e}") from e

        if not isinstance(data, list):
            raise DataSourceError(f"Unexpected positions payload: {type(data).__name__}")

        positions = []
        for raw in data:
            position = parse_position(raw)
            if position is not None:
                positions.append(position)
        return positions


def parse_position(raw: dict) -> Optional[PositionRef]:
    """Normalize one data-API position; None for dust or unsupported outcomes."""
    size = safe_float(raw.get("size"))
    if size <= 0:
        return None

    outcome = str(raw.get("outcome") or "YES").upper()
    if outcome not in ("YES", "NO"):
        logger.debug(f"Skipping non-binary position outcome {outcome!r}")
        return None

    current_price = safe_float(raw.get("curPrice"))
    current_value = safe_float(raw.get("currentValue")) or size * current_price
    return PositionRef(
        market_id=raw.get("conditionId", ""),
        token_id=raw.get("asset", ""),
        side=OutcomeSide(outcome),
        size=size,
        avg_entry_price=safe_float(raw.get("avgPrice")),
        current_price=current_price,
        current_value=current_value,
        unrealized_pnl=safe_float(raw.get("cashPnl")),
        question=raw.get("title") or None,
        source=PositionSource.POSITIONS_API,
    )


class OnChainBalanceReader:
    """Reads the USDC balance held directly by an address on Polygon."""

    def __init__(
        self,
        rpc_url: str = "https://polygon-rpc.com",
        token_contract: str = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
        timeout_s: float = 10.0,
    ):
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=timeout_s)},
        ))
        self._contract = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_contract),
            abi=MINIMAL_ERC20_ABI,
        )

    async def fetch_balance(self, address: str) -> float:
        """
        USDC held directly by the address, in dollars.

        Raises:
            DataSourceError: invalid address or RPC failure
        """
        try:
            owner = AsyncWeb3.to_checksum_address(address)
            raw_balance = await self._contract.functions.balanceOf(owner).call()
        except Exception as e:
            raise DataSourceError(f"USDC balanceOf failed: {e}") from e
        return raw_balance / USDC_DECIMALS

    async def close(self) -> None:
        """Close the RPC provider's HTTP session."""
        await self._w3.provider.disconnect()
