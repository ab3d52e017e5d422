"""DexScreener token price lookups."""

import logging
from dataclasses import dataclass
from typing import Any

from config import DEX_RETRIES, DEX_TIMEOUT, DEXSCREENER_API
from trading.chains import get_chain
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

DEX_PRICE_SOURCE = "dex_price"


@dataclass(frozen=True)
class TokenPrice:
    price_usd: float
    symbol: str
    liquidity_usd: float
    pair_address: str


class DexScreenerPriceGateway:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._headers = {
            "User-Agent": (
                "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
                "AppleWebKit/537.36 (KHTML, like Gecko) "
                "Chrome/122.0.0.0 Safari/537.36"
            ),
            "Accept": "application/json, text/plain, */*",
        }
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(DEX_TIMEOUT),
            headers=self._headers,
            source_limits={DEX_PRICE_SOURCE: 5},
        )

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats(reset=reset)

    async def _fetch_json(self, url: str, retries: int | None = None) -> Any | None:
        result = await self._http.get_json(
            url,
            source=DEX_PRICE_SOURCE,
            headers=self._headers,
            max_attempts=(retries if retries is not None else DEX_RETRIES),
        )
        if result.ok:
            return result.data
        if result.status == 429:
            logger.warning("RATE_LIMIT source=%s status=429 url=%s", DEX_PRICE_SOURCE, url)
        else:
            logger.warning("PRICE_FETCH failed url=%s status=%s err=%s", url, result.status, result.error)
        return None

    async def get_token_price(self, token_address: str, chain_id: int) -> TokenPrice | None:
        """USD price of the deepest pair for the token on the given chain, or None."""
        chain = get_chain(chain_id)
        data = await self._fetch_json(f"{DEXSCREENER_API}/tokens/{token_address}")
        if not isinstance(data, dict):
            return None
        best = self._best_pair(data.get("pairs") or [], token_address, chain.dexscreener_id, chain.chain_id)
        if best is None:
            logger.warning("PRICE_FETCH no_pair token=%s chain=%s", token_address, chain.name)
            return None
        return best

    @staticmethod
    def _best_pair(
        pairs: list[dict[str, Any]],
        token_address: str,
        dexscreener_id: str,
        chain_id: int,
    ) -> TokenPrice | None:
        token_key = normalize_address(token_address)
        chain_keys = {dexscreener_id, str(chain_id)}
        best: TokenPrice | None = None
        for pair in pairs:
            if not isinstance(pair, dict) or str(pair.get("chainId", "")) not in chain_keys:
                continue
            base = pair.get("baseToken") or {}
            if normalize_address(base.get("address")) != token_key:
                continue
            try:
                price = float(pair.get("priceUsd") or 0)
            except (TypeError, ValueError):
                continue
            if price <= 0:
                continue
            try:
                liquidity = float((pair.get("liquidity") or {}).get("usd") or 0)
            except (TypeError, ValueError):
                liquidity = 0.0
            if best is None or liquidity > best.liquidity_usd:
                best = TokenPrice(
                    price_usd=price,
                    symbol=str(base.get("symbol") or ""),
                    liquidity_usd=liquidity,
                    pair_address=str(pair.get("pairAddress") or ""),
                )
        return best
