from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from services.vault_reader import VaultReader

VAULT_ADDRESS = "0x" + "ab" * 20
USER_ADDRESS = "0x" + "12" * 20


def make_reader():
    web3 = MagicMock()
    contract = web3.eth.contract.return_value
    reader = VaultReader("http://rpc.invalid", VAULT_ADDRESS, web3=web3)
    return reader, contract


@pytest.mark.asyncio
async def test_vault_stats_are_scaled_by_decimals():
    reader, contract = make_reader()
    contract.functions.getVaultStats.return_value.call.return_value = (
        2_500_000_000,  # 2,500 USDC
        2_400 * 10**18,
        2_400_000_000,
        100_000_000,
        int(1.0416 * 10**18),
    )

    stats = await reader.get_vault_stats()

    assert stats.total_assets == Decimal("2500")
    assert stats.total_shares == Decimal("2400")
    assert stats.total_yield_earned == Decimal("100")
    assert stats.share_price > Decimal("1.04")


@pytest.mark.asyncio
async def test_user_position_reports_return():
    reader, contract = make_reader()
    functions = contract.functions
    functions.balanceOf.return_value.call.return_value = 10**18
    functions.getUserDeposits.return_value.call.return_value = 1_000_000_000
    functions.getUserBalance.return_value.call.return_value = 1_050_000_000
    functions.getUserYield.return_value.call.return_value = 50_000_000

    position = await reader.get_user_position(USER_ADDRESS)

    assert position.deposited == Decimal("1000")
    assert position.current_balance == Decimal("1050")
    assert position.estimated_return_pct == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_user_position_rejects_invalid_address():
    reader, _ = make_reader()

    with pytest.raises(ValueError):
        await reader.get_user_position("not-an-address")
