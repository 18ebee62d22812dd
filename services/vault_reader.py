"""Read-only access to the YieldShift USDC vault on Base."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal

from web3 import Web3

from constants import SHARE_DECIMALS, USDC_DECIMALS, VAULT_ABI


@dataclass(slots=True)
class VaultStats:
    vault_address: str
    total_assets: Decimal
    total_shares: Decimal
    total_deposited: Decimal
    total_yield_earned: Decimal
    share_price: Decimal


@dataclass(slots=True)
class VaultUserPosition:
    address: str
    shares: Decimal
    deposited: Decimal
    current_balance: Decimal
    yield_earned: Decimal
    # Simple return on deposits, not time-weighted.
    estimated_return_pct: float


def _from_units(value: int, decimals: int) -> Decimal:
    return Decimal(value) / (Decimal(10) ** decimals)


class VaultReader:
    def __init__(self, rpc_url: str, vault_address: str, web3: Web3 | None = None) -> None:
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url))
        self.vault_address = Web3.to_checksum_address(vault_address)
        self.contract = self.web3.eth.contract(address=self.vault_address, abi=VAULT_ABI)

    async def get_vault_stats(self) -> VaultStats:
        return await asyncio.to_thread(self._get_vault_stats_sync)

    def _get_vault_stats_sync(self) -> VaultStats:
        total_assets, total_shares, total_deposited, total_yield, share_price = (
            self.contract.functions.getVaultStats().call()
        )
        return VaultStats(
            vault_address=self.vault_address,
            total_assets=_from_units(total_assets, USDC_DECIMALS),
            total_shares=_from_units(total_shares, SHARE_DECIMALS),
            total_deposited=_from_units(total_deposited, USDC_DECIMALS),
            total_yield_earned=_from_units(total_yield, USDC_DECIMALS),
            share_price=_from_units(share_price, SHARE_DECIMALS),
        )

    async def get_user_position(self, address: str) -> VaultUserPosition:
        if not Web3.is_address(address):
            raise ValueError(f"Invalid address: {address}")
        return await asyncio.to_thread(self._get_user_position_sync, Web3.to_checksum_address(address))

    def _get_user_position_sync(self, address: str) -> VaultUserPosition:
        functions = self.contract.functions
        shares = functions.balanceOf(address).call()
        deposited = functions.getUserDeposits(address).call()
        balance = functions.getUserBalance(address).call()
        yield_earned = functions.getUserYield(address).call()

        estimated_return = 0.0
        if deposited > 0 and yield_earned > 0:
            estimated_return = yield_earned / deposited * 100

        return VaultUserPosition(
            address=address,
            shares=_from_units(shares, SHARE_DECIMALS),
            deposited=_from_units(deposited, USDC_DECIMALS),
            current_balance=_from_units(balance, USDC_DECIMALS),
            yield_earned=_from_units(yield_earned, USDC_DECIMALS),
            estimated_return_pct=estimated_return,
        )
