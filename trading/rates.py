"""Native coin USD rates (CoinGecko with hardcoded fallbacks)."""

from __future__ import annotations

import logging
import time
from decimal import ROUND_DOWN, Decimal

import config
from trading.chains import get_chain
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

COINGECKO_SOURCE = "coingecko"


class NativeRateSource:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.RATE_SOURCE_TIMEOUT),
            source_limits={COINGECKO_SOURCE: 2},
        )
        self._cache: dict[str, tuple[float, float]] = {}

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    def fallback_rate(self, chain_id: int) -> float:
        chain = get_chain(chain_id)
        return float(config.NATIVE_PRICE_FALLBACK_USD.get(chain.native_symbol, 0.0) or 0.0)

    async def native_usd(self, chain_id: int) -> float:
        """Best-effort USD rate of the chain's native coin. Never raises."""
        chain = get_chain(chain_id)
        cached = self._cache.get(chain.coingecko_id)
        now = time.monotonic()
        if cached and now - cached[1] < float(config.RATE_CACHE_TTL_SECONDS):
            return cached[0]

        result = await self._http.get_json(
            f"{config.COINGECKO_API}/simple/price",
            source=COINGECKO_SOURCE,
            params={"ids": chain.coingecko_id, "vs_currencies": "usd"},
            max_attempts=2,
        )
        rate = 0.0
        if result.ok and isinstance(result.data, dict):
            try:
                rate = float((result.data.get(chain.coingecko_id) or {}).get("usd") or 0)
            except (TypeError, ValueError):
                rate = 0.0
        if rate > 0:
            self._cache[chain.coingecko_id] = (rate, now)
            return rate

        fallback = self.fallback_rate(chain_id)
        logger.warning(
            "RATE fallback chain=%s symbol=%s rate=%s status=%s err=%s",
            chain.name,
            chain.native_symbol,
            fallback,
            result.status,
            result.error,
        )
        return fallback

    async def usd_to_native_raw(self, chain_id: int, amount_usd: float) -> int:
        chain = get_chain(chain_id)
        rate = await self.native_usd(chain_id)
        if rate <= 0:
            return 0
        native = Decimal(str(amount_usd)) / Decimal(str(rate))
        raw = (native * (Decimal(10) ** chain.native_decimals)).to_integral_value(rounding=ROUND_DOWN)
        return int(raw)
