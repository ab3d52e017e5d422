"""Swap provider contract shared by every chain family."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from trading.chains import NATIVE, ChainSpec
from trading.errors import NoRoute, UnsupportedChain
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = 10_000
DEFAULT_SLIPPAGE_BPS = 500

# Outcomes of a follow-up lookup on a submitted tx.
TX_CONFIRMED = "confirmed"
TX_FAILED = "failed"
TX_PENDING = "pending"
TX_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Quote:
    chain_id: int
    in_asset: str
    out_asset: str
    amount_in: int
    amount_out: int
    path: tuple[str, ...]
    # Provider-specific payload needed to execute exactly this route.
    route: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class SwapReceipt:
    tx_ref: str
    path: tuple[str, ...]
    amount_in: int
    amount_out: int
    # Raw units of the position token moved by the swap (bought on BUY, sold on SELL).
    token_amount: int


def min_amount_out(expected_amount_out: int, slippage_bps: int = DEFAULT_SLIPPAGE_BPS) -> int:
    bps = int(slippage_bps)
    if bps < 0 or bps >= BPS_DENOMINATOR:
        raise ValueError(f"slippage_bps must be in [0, {BPS_DENOMINATOR}), got {slippage_bps}")
    out = (int(expected_amount_out) * (BPS_DENOMINATOR - bps)) // BPS_DENOMINATOR
    return max(1, out)


class SwapProvider:
    """Quote and execute swaps on one chain.

    Amounts are raw integers scaled by the asset's decimals. The chain's native
    coin is named by ``NATIVE``.
    """

    family = ""

    def __init__(self, chain: ChainSpec, intermediates: Iterable[str] = ()) -> None:
        self.chain = chain
        extras: list[str] = []
        for address in list(chain.extra_intermediates) + list(intermediates):
            if address and normalize_address(address) not in {normalize_address(x) for x in extras}:
                extras.append(address)
        self.intermediates = tuple(extras)

    @property
    def chain_id(self) -> int:
        return self.chain.chain_id

    def _same_asset(self, left: str, right: str) -> bool:
        return normalize_address(self._resolve(left)) == normalize_address(self._resolve(right))

    def _resolve(self, asset: str) -> str:
        return self.chain.base_asset if asset == NATIVE else asset

    def candidate_paths(self, in_asset: str, out_asset: str) -> list[tuple[str, ...]]:
        """Direct path first, then one hop through the base asset, then extra intermediates."""
        paths: list[tuple[str, ...]] = [(in_asset, out_asset)]
        for mid in (self.chain.base_asset, *self.intermediates):
            if self._same_asset(mid, in_asset) or self._same_asset(mid, out_asset):
                continue
            candidate = (in_asset, mid, out_asset)
            if candidate not in paths:
                paths.append(candidate)
        return paths

    async def quote(self, in_asset: str, out_asset: str, amount_in: int) -> Quote:
        amount = int(amount_in)
        if amount <= 0:
            raise ValueError("amount_in must be positive")
        for path in self.candidate_paths(in_asset, out_asset):
            amount_out, route = await self._quote_path(path, amount)
            if amount_out and amount_out > 0:
                logger.info(
                    "SWAP quote chain=%s path=%s amount_in=%s amount_out=%s",
                    self.chain_id,
                    "->".join(path),
                    amount,
                    amount_out,
                )
                return Quote(
                    chain_id=self.chain_id,
                    in_asset=in_asset,
                    out_asset=out_asset,
                    amount_in=amount,
                    amount_out=int(amount_out),
                    path=tuple(path),
                    route=route,
                )
        raise NoRoute(f"no route chain={self.chain_id} in={in_asset} out={out_asset} amount_in={amount}")

    @staticmethod
    def min_amount_out(expected_amount_out: int, slippage_bps: int = DEFAULT_SLIPPAGE_BPS) -> int:
        return min_amount_out(expected_amount_out, slippage_bps)

    async def _quote_path(self, path: tuple[str, ...], amount_in: int) -> tuple[int, Any]:
        """Return (amount_out, route); amount_out 0 marks the path unusable."""
        raise NotImplementedError

    async def swap(self, quote: Quote, min_amount_out: int, recipient: str | None, deadline: int) -> SwapReceipt:
        raise NotImplementedError

    async def confirm(self, tx_ref: str) -> str:
        """Look up a submitted tx: TX_CONFIRMED, TX_FAILED, TX_PENDING or TX_NOT_FOUND."""
        raise NotImplementedError

    async def authorize(self, asset: str, amount: int) -> str | None:
        raise NotImplementedError

    async def balance_of(self, asset: str) -> int:
        raise NotImplementedError

    async def native_balance(self) -> int:
        return await self.balance_of(NATIVE)

    async def decimals(self, asset: str) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class SwapProviderRegistry:
    """chain_id -> provider instance, built once at startup."""

    def __init__(self, providers: dict[int, SwapProvider] | None = None) -> None:
        self._providers: dict[int, SwapProvider] = dict(providers or {})

    def register(self, provider: SwapProvider) -> None:
        self._providers[int(provider.chain_id)] = provider

    def get(self, chain_id: int) -> SwapProvider:
        provider = self._providers.get(int(chain_id))
        if provider is None:
            raise UnsupportedChain(f"no swap provider for chain_id={chain_id}")
        return provider

    def chain_ids(self) -> list[int]:
        return sorted(self._providers)

    async def close(self) -> None:
        for chain_id, provider in list(self._providers.items()):
            try:
                await provider.close()
            except Exception:
                logger.warning("SWAP provider close failed chain=%s", chain_id, exc_info=True)
        self._providers = {}
