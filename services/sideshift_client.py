#!/usr/bin/env python3
import asyncio
from dataclasses import dataclass
from typing import Optional, Dict

import aiohttp
from constants import (SIDESHIFT_API_BASE_URL, SIDESHIFT_COIN_MAP, C_RED, C_RESET)

def log_error(message: str) -> None:
    """Centralized error logging."""
    print(f"{C_RED}{message}{C_RESET}")


def map_asset_to_sideshift_coin(asset_symbol: str) -> str:
    """Best-effort lookup in SIDESHIFT_COIN_MAP; unmapped symbols are lower-cased."""
    return SIDESHIFT_COIN_MAP.get(asset_symbol.upper(), asset_symbol.lower())


@dataclass
class Quote:
    id: str
    deposit_coin: str
    settle_coin: str
    deposit_amount: str
    settle_amount: str
    rate: str
    expires_at: Optional[str]


@dataclass
class SwapOrder:
    id: str
    deposit_address: Optional[str]
    deposit_coin: Optional[str]
    settle_coin: Optional[str]
    deposit_amount: Optional[str]
    settle_amount: Optional[str]
    settle_address: Optional[str]
    status: str


def _address(value) -> Optional[str]:
    # Some shift payloads nest the address together with a memo.
    if isinstance(value, dict):
        return value.get('address')
    return value


def _as_str(value) -> Optional[str]:
    return None if value is None else str(value)


class SideShiftClient:
    """Thin client for the SideShift quote -> fixed shift -> status flow.

    Every call returns None on failure; callers translate that into a typed
    failure result.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: Optional[str] = None,
        affiliate_id: Optional[str] = None,
        base_url: str = SIDESHIFT_API_BASE_URL,
        timeout: int = 20,
    ):
        self.session = session
        self.api_key = api_key
        self.affiliate_id = affiliate_id
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

    def _headers(self, with_body: bool = True) -> Dict[str, str]:
        headers = {'Content-Type': 'application/json'} if with_body else {}
        if self.api_key:
            headers['x-sideshift-secret'] = self.api_key
        return headers

    async def _request(self, method: str, path: str, json_data: Optional[Dict] = None) -> Optional[Dict]:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method,
                url,
                json=json_data,
                headers=self._headers(with_body=json_data is not None),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as response:
                if response.status >= 400:
                    body = await response.text()
                    log_error(f"SideShift {method} {path} failed ({response.status}): {body[:300]}")
                    return None
                payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            log_error(f"SideShift {method} {path} failed: {e}")
            return None

        if not isinstance(payload, dict) or not payload.get('id'):
            log_error(f"SideShift {method} {path} returned an unexpected payload.")
            return None
        return payload

    async def get_quote(self, from_asset: str, to_asset: str, amount: str) -> Optional[Quote]:
        deposit_coin = map_asset_to_sideshift_coin(from_asset)
        settle_coin = map_asset_to_sideshift_coin(to_asset)
        body = {
            'depositCoin': deposit_coin,
            'settleCoin': settle_coin,
            'depositAmount': str(amount),
            'affiliateId': self.affiliate_id,
        }
        data = await self._request('POST', '/quotes', body)
        if data is None:
            return None
        return Quote(
            id=str(data['id']),
            deposit_coin=data.get('depositCoin', deposit_coin),
            settle_coin=data.get('settleCoin', settle_coin),
            deposit_amount=str(data.get('depositAmount', amount)),
            settle_amount=str(data.get('settleAmount', '')),
            rate=str(data.get('rate', '')),
            expires_at=data.get('expiresAt'),
        )

    async def create_order(self, quote_id: str, settle_address: str) -> Optional[SwapOrder]:
        body = {
            'quoteId': quote_id,
            'settleAddress': settle_address,
            'affiliateId': self.affiliate_id,
        }
        data = await self._request('POST', '/shifts/fixed', body)
        return self._order_from_payload(data) if data is not None else None

    async def get_order_status(self, order_id: str) -> Optional[SwapOrder]:
        data = await self._request('GET', f"/shifts/{order_id}")
        return self._order_from_payload(data) if data is not None else None

    @staticmethod
    def _order_from_payload(data: Dict) -> SwapOrder:
        return SwapOrder(
            id=str(data['id']),
            deposit_address=_address(data.get('depositAddress')),
            deposit_coin=data.get('depositCoin'),
            settle_coin=data.get('settleCoin'),
            deposit_amount=_as_str(data.get('depositAmount')),
            settle_amount=_as_str(data.get('settleAmount')),
            settle_address=_address(data.get('settleAddress')),
            status=str(data.get('status') or 'unknown'),
        )
