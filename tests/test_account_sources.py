"""Tests for the on-chain USDC balance reader."""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from convergence_trader.account_sources import OnChainBalanceReader
from convergence_trader.errors import DataSourceError

from conftest import ADDRESS


def make_contract(call: AsyncMock) -> Mock:
    contract = Mock()
    contract.functions.balanceOf.return_value.call = call
    return contract


class TestOnChainBalanceReader:
    """Tests for fetch_balance() with the web3 contract mocked."""

    @pytest.mark.asyncio
    async def test_balance_in_dollars(self):
        reader = OnChainBalanceReader()
        contract = make_contract(AsyncMock(return_value=37_500_000))

        with patch.object(reader, "_contract", contract):
            balance = await reader.fetch_balance(ADDRESS)

        assert balance == pytest.approx(37.50)
        contract.functions.balanceOf.assert_called_once_with(ADDRESS)

    @pytest.mark.asyncio
    async def test_rpc_failure_raises_data_source_error(self):
        reader = OnChainBalanceReader()
        contract = make_contract(AsyncMock(side_effect=ConnectionError("rpc down")))

        with patch.object(reader, "_contract", contract):
            with pytest.raises(DataSourceError, match="rpc down"):
                await reader.fetch_balance(ADDRESS)

    @pytest.mark.asyncio
    async def test_invalid_address_raises_data_source_error(self):
        reader = OnChainBalanceReader()
        contract = make_contract(AsyncMock(return_value=0))

        with patch.object(reader, "_contract", contract):
            with pytest.raises(DataSourceError):
                await reader.fetch_balance("not-an-address")

        contract.functions.balanceOf.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_disconnects_provider(self):
        reader = OnChainBalanceReader()

        with patch.object(reader._w3.provider, "disconnect", AsyncMock()) as disconnect:
            await reader.close()

        disconnect.assert_awaited_once()
