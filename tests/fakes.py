from __future__ import annotations

import asyncio
import os
import tempfile
import unittest
from typing import Any

import config
from database.db import PositionStore
from monitor.dexscreener import TokenPrice
from monitor.notifier import TradeNotifier
from trading.chains import NATIVE, get_chain
from trading.swap_provider import TX_PENDING, Quote, SwapProvider, SwapReceipt

TOKEN_A = "0x1111111111111111111111111111111111111111"
TOKEN_B = "0x2222222222222222222222222222222222222222"
BSC = get_chain(56)
WEI = 10**18


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


def make_store(test: unittest.TestCase) -> PositionStore:
    tmp_dir = tempfile.TemporaryDirectory()
    store = PositionStore(f"sqlite:///{os.path.join(tmp_dir.name, 'positions.db')}")
    store.init()
    test.addCleanup(tmp_dir.cleanup)
    test.addCleanup(store.close)
    return store


def open_position(
    store: PositionStore,
    token: str = TOKEN_A,
    *,
    chain_id: int = 56,
    invested: float = 10.0,
    amount_token: str = "1",
    buy_price: float = 10.0,
    tx_ref: str | None = None,
) -> int:
    return store.create(
        {
            "token_address": token,
            "chain_id": chain_id,
            "symbol": "TST",
            "buy_price_usd": buy_price,
            "amount_token": amount_token,
            "token_decimals": 18,
            "amount_usd_invested": invested,
            "buy_tx_ref": tx_ref or f"0xbuy{token[-4:]}{chain_id}",
        }
    )


class FakeGateway:
    """Token price per address; a list value is consumed one price per call."""

    def __init__(self, prices: dict[str, Any] | None = None) -> None:
        self.prices: dict[str, Any] = dict(prices or {})
        self.failing: set[str] = set()
        self.calls: list[tuple[str, int]] = []
        self.delay_seconds = 0.0

    async def get_token_price(self, token_address: str, chain_id: int) -> TokenPrice | None:
        self.calls.append((token_address, chain_id))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if token_address in self.failing:
            raise RuntimeError("price source down")
        value = self.prices.get(token_address)
        if isinstance(value, list):
            value = value.pop(0) if value else None
        if value is None:
            return None
        return TokenPrice(price_usd=float(value), symbol="TST", liquidity_usd=50_000.0, pair_address="0xpair")


class FakeRates:
    def __init__(self, rate: float = 300.0) -> None:
        self.rate = rate

    async def native_usd(self, chain_id: int) -> float:
        return self.rate

    async def usd_to_native_raw(self, chain_id: int, amount_usd: float) -> int:
        return int(amount_usd / self.rate * WEI)


class FakeProvider(SwapProvider):
    family = "evm"

    def __init__(self, chain=BSC, intermediates=()) -> None:
        super().__init__(chain, intermediates)
        self.outputs: dict[tuple[str, str], int] = {}
        self.blocked_paths: set[tuple[str, ...]] = set()
        self.balances: dict[str, int] = {NATIVE: 100 * WEI}
        self.token_decimals: dict[str, int] = {}
        self.swaps: list[tuple[Quote, int]] = []
        self.authorized: list[tuple[str, int]] = []
        self.swap_error: Exception | None = None
        self.swap_delay_seconds = 0.0
        self.active_swaps = 0
        self.peak_swaps = 0
        self.confirmations: dict[str, str] = {}
        self.confirm_calls: list[str] = []
        self.closed = False
        self._tx_seq = 0

    async def _quote_path(self, path: tuple[str, ...], amount_in: int) -> tuple[int, Any]:
        if path in self.blocked_paths:
            return 0, None
        return self.outputs.get((path[0], path[-1]), 0), None

    async def swap(self, quote: Quote, min_amount_out: int, recipient: str | None, deadline: int) -> SwapReceipt:
        self.swaps.append((quote, min_amount_out))
        self.active_swaps += 1
        self.peak_swaps = max(self.peak_swaps, self.active_swaps)
        try:
            if self.swap_delay_seconds:
                await asyncio.sleep(self.swap_delay_seconds)
        finally:
            self.active_swaps -= 1
        if self.swap_error is not None:
            raise self.swap_error
        self._tx_seq += 1
        self.balances[quote.in_asset] = self.balances.get(quote.in_asset, 0) - quote.amount_in
        self.balances[quote.out_asset] = self.balances.get(quote.out_asset, 0) + quote.amount_out
        token_amount = quote.amount_out if quote.in_asset == NATIVE else quote.amount_in
        return SwapReceipt(
            tx_ref=f"0xtx{self._tx_seq}",
            path=quote.path,
            amount_in=quote.amount_in,
            amount_out=quote.amount_out,
            token_amount=token_amount,
        )

    async def confirm(self, tx_ref: str) -> str:
        self.confirm_calls.append(tx_ref)
        return self.confirmations.get(tx_ref, TX_PENDING)

    async def authorize(self, asset: str, amount: int) -> str | None:
        self.authorized.append((asset, amount))
        return None

    async def balance_of(self, asset: str) -> int:
        return self.balances.get(asset, 0)

    async def decimals(self, asset: str) -> int:
        return self.token_decimals.get(asset, 18)

    async def close(self) -> None:
        self.closed = True


class RecordingNotifier(TradeNotifier):
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.opened: list[dict[str, Any]] = []
        self.closed: list[dict[str, Any]] = []

    async def position_opened(self, event: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("telegram down")
        self.opened.append(event)

    async def position_closed(self, event: dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("telegram down")
        self.closed.append(event)
