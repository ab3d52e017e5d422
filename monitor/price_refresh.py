"""Periodic price refresh of open positions with profit-floor auto-sell."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field

import config
from database.db import PositionStore
from database.models import Position
from monitor.dexscreener import DexScreenerPriceGateway
from trading.trader import (
    OUTCOME_ERROR,
    OUTCOME_SELL_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SOLD,
    OUTCOME_UPDATED,
    RefreshOutcome,
    Trader,
)

logger = logging.getLogger(__name__)


@dataclass
class RefreshReport:
    outcomes: list[RefreshOutcome] = field(default_factory=list)
    skipped_cycle: bool = False
    elapsed_seconds: float = 0.0

    def by_status(self, status: str) -> list[RefreshOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def sold(self) -> list[int]:
        return [o.position_id for o in self.by_status(OUTCOME_SOLD)]

    def outcome_for(self, position_id: int) -> RefreshOutcome | None:
        for outcome in self.outcomes:
            if outcome.position_id == position_id:
                return outcome
        return None


class PriceRefreshScheduler:
    def __init__(
        self,
        store: PositionStore,
        prices: DexScreenerPriceGateway,
        trader: Trader,
        *,
        interval_seconds: float | None = None,
        batch_size: int | None = None,
        batch_delay_seconds: float | None = None,
        sell_delay_seconds: float | None = None,
        chain_id: int | None = None,
    ) -> None:
        self.store = store
        self.prices = prices
        self.trader = trader
        self.interval_seconds = float(
            config.PRICE_REFRESH_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self.batch_size = max(1, int(config.PRICE_REFRESH_BATCH_SIZE if batch_size is None else batch_size))
        self.batch_delay_seconds = max(
            0.0,
            float(config.PRICE_REFRESH_BATCH_DELAY_SECONDS if batch_delay_seconds is None else batch_delay_seconds),
        )
        self.sell_delay_seconds = max(
            0.0,
            float(config.PRICE_REFRESH_SELL_DELAY_SECONDS if sell_delay_seconds is None else sell_delay_seconds),
        )
        self.chain_id = chain_id
        self._cycle_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def run(self, stop_event: asyncio.Event | None = None) -> None:
        stop = stop_event or self._stop
        logger.info(
            "PRICE_REFRESH started interval=%ss batch=%s batch_delay=%ss",
            self.interval_seconds,
            self.batch_size,
            self.batch_delay_seconds,
        )
        while not stop.is_set() and not self._stop.is_set():
            try:
                await self.refresh_all(self.chain_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("PRICE_REFRESH cycle_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("PRICE_REFRESH stopped")

    async def refresh_all(self, chain_id: int | None = None) -> RefreshReport:
        if self._cycle_lock.locked():
            logger.info("PRICE_REFRESH skip reason=previous_cycle_running")
            return RefreshReport(skipped_cycle=True)
        async with self._cycle_lock:
            return await self._run_cycle(chain_id)

    async def _run_cycle(self, chain_id: int | None) -> RefreshReport:
        started = time.monotonic()
        report = RefreshReport()
        positions = self.store.get_all_open(chain_id)
        if not positions:
            return report

        candidates: list[Position] = []
        for start in range(0, len(positions), self.batch_size):
            if start > 0 and self.batch_delay_seconds > 0:
                await asyncio.sleep(self.batch_delay_seconds)
            batch = positions[start : start + self.batch_size]
            results = await asyncio.gather(*[self._refresh_one(p) for p in batch])
            for position, (outcome, sell_now) in zip(batch, results):
                report.outcomes.append(outcome)
                if sell_now:
                    candidates.append(position)

        for index, position in enumerate(candidates):
            if index > 0 and self.sell_delay_seconds > 0:
                await asyncio.sleep(self.sell_delay_seconds)
            await self._sell_candidate(position, report.outcome_for(position.id))

        report.elapsed_seconds = time.monotonic() - started
        logger.info(
            "PRICE_REFRESH cycle positions=%s updated=%s skipped=%s sold=%s sell_failed=%s errors=%s elapsed=%.2fs",
            len(positions),
            len(report.by_status(OUTCOME_UPDATED)),
            len(report.by_status(OUTCOME_SKIPPED)),
            len(report.by_status(OUTCOME_SOLD)),
            len(report.by_status(OUTCOME_SELL_FAILED)),
            len(report.by_status(OUTCOME_ERROR)),
            report.elapsed_seconds,
        )
        return report

    async def _refresh_one(self, position: Position) -> tuple[RefreshOutcome, bool]:
        return await self.trader.refresh_position(position, self.prices)

    async def _sell_candidate(self, position: Position, outcome: RefreshOutcome | None) -> None:
        if outcome is None:
            return
        await self.trader.sell_on_floor(position, outcome)
