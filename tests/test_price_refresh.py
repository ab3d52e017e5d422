from __future__ import annotations

import asyncio
import unittest

from monitor.price_refresh import (
    OUTCOME_ERROR,
    OUTCOME_SELL_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_SOLD,
    OUTCOME_UPDATED,
    PriceRefreshScheduler,
)
from database.models import RECEIPT_UNCONFIRMED, STATUS_CLOSED, STATUS_OPEN
from trading.chains import NATIVE
from trading.errors import SwapTimeout
from trading.swap_provider import SwapProviderRegistry
from trading.trader import Trader
from fakes import (
    BSC,
    TOKEN_A,
    TOKEN_B,
    WEI,
    ConfigPatchMixin,
    FakeGateway,
    FakeProvider,
    FakeRates,
    RecordingNotifier,
    make_store,
    open_position,
)


TOKEN_C = "0x3333333333333333333333333333333333333333"


class PriceRefreshTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(PROFIT_FLOOR_MODE="relative", LIVE_SLIPPAGE_BPS=500)
        self.store = make_store(self)
        self.gateway = FakeGateway()
        self.provider = FakeProvider()
        self.notifier = RecordingNotifier()
        self.trader = Trader(
            self.store,
            SwapProviderRegistry({56: self.provider}),
            self.gateway,
            FakeRates(),
            self.notifier,
            store_write_retries=1,
            store_retry_delay_seconds=0,
        )

    def _scheduler(self, **kwargs) -> PriceRefreshScheduler:
        opts = {"interval_seconds": 60, "batch_size": 5, "batch_delay_seconds": 0, "sell_delay_seconds": 0}
        opts.update(kwargs)
        return PriceRefreshScheduler(self.store, self.gateway, self.trader, **opts)

    async def test_peak_then_drop_below_floor_sells_position(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [10, 12, 55, 18]
        self.provider.outputs[(TOKEN_A, BSC.quote_asset)] = 18 * WEI
        scheduler = self._scheduler()

        for _ in range(3):
            report = await scheduler.refresh_all()
            self.assertEqual(report.sold, [])

        position = self.store.get_by_id(position_id)
        self.assertEqual(position.highest_price_ever, 55.0)
        self.assertEqual(position.profit_floor, 20.0)
        self.assertEqual(position.current_value_usd, 55.0)

        report = await scheduler.refresh_all()
        self.assertEqual(report.sold, [position_id])
        outcome = report.outcome_for(position_id)
        self.assertEqual(outcome.status, OUTCOME_SOLD)
        self.assertAlmostEqual(outcome.pnl, 8.0)

        closed = self.store.get_by_id(position_id)
        self.assertEqual(closed.status, STATUS_CLOSED)
        self.assertAlmostEqual(closed.pnl, 8.0)
        self.assertAlmostEqual(closed.pnl_percentage, 80.0)
        self.assertEqual(closed.sell_tx_ref, outcome.tx_ref)
        self.assertEqual(closed.highest_price_ever, 55.0)
        self.assertEqual(self.notifier.closed[0]["reason"], "profit_floor")

    async def test_peak_below_activation_never_sells(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [30, 15, 1]
        scheduler = self._scheduler()

        for _ in range(3):
            report = await scheduler.refresh_all()
            self.assertEqual(report.outcome_for(position_id).status, OUTCOME_UPDATED)

        position = self.store.get_by_id(position_id)
        self.assertEqual(position.status, STATUS_OPEN)
        self.assertEqual(position.highest_price_ever, 30.0)
        self.assertIsNone(position.profit_floor)
        self.assertEqual(self.provider.swaps, [])

    async def test_value_scales_with_token_amount(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="2000", buy_price=0.005)
        self.gateway.prices[TOKEN_A] = 0.03
        report = await self._scheduler().refresh_all()

        outcome = report.outcome_for(position_id)
        self.assertAlmostEqual(outcome.value_usd, 60.0)
        self.assertEqual(outcome.profit_floor, 20.0)
        position = self.store.get_by_id(position_id)
        self.assertAlmostEqual(position.current_price_usd, 0.03)
        self.assertAlmostEqual(position.current_value_usd, 60.0)

    async def test_failed_price_does_not_block_other_positions(self) -> None:
        tokens = [f"0x{index:040x}" for index in range(1, 8)]
        ids = [open_position(self.store, token, invested=10.0, amount_token="1") for token in tokens]
        for token in tokens:
            self.gateway.prices[token] = 12
        self.gateway.failing.add(tokens[2])

        report = await self._scheduler(batch_size=5).refresh_all()

        self.assertEqual(len(report.outcomes), 7)
        self.assertEqual(report.outcome_for(ids[2]).status, OUTCOME_SKIPPED)
        for index, position_id in enumerate(ids):
            if index == 2:
                continue
            self.assertEqual(report.outcome_for(position_id).status, OUTCOME_UPDATED)
            self.assertEqual(self.store.get_by_id(position_id).current_value_usd, 12.0)
        self.assertEqual(self.store.get_by_id(ids[2]).current_value_usd, 10.0)

    async def test_missing_price_keeps_previous_values(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [25, None]
        scheduler = self._scheduler()
        await scheduler.refresh_all()
        report = await scheduler.refresh_all()

        outcome = report.outcome_for(position_id)
        self.assertEqual(outcome.status, OUTCOME_SKIPPED)
        self.assertEqual(outcome.detail, "no_price")
        self.assertEqual(self.store.get_by_id(position_id).current_value_usd, 25.0)

    async def test_repeated_cycle_with_same_price_is_idempotent(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = 70
        scheduler = self._scheduler()
        await scheduler.refresh_all()
        first = self.store.get_by_id(position_id)
        await scheduler.refresh_all()
        second = self.store.get_by_id(position_id)

        self.assertEqual(
            (first.current_value_usd, first.highest_price_ever, first.profit_floor, first.status),
            (second.current_value_usd, second.highest_price_ever, second.profit_floor, second.status),
        )
        self.assertEqual(second.status, STATUS_OPEN)

    async def test_overlapping_cycle_is_skipped(self) -> None:
        open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = 11
        self.gateway.delay_seconds = 0.05
        scheduler = self._scheduler()

        first, second = await asyncio.gather(scheduler.refresh_all(), scheduler.refresh_all())

        self.assertFalse(first.skipped_cycle)
        self.assertTrue(second.skipped_cycle)
        self.assertEqual(len(self.gateway.calls), 1)

    async def test_sell_failure_leaves_position_open(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [60, 19]
        scheduler = self._scheduler()
        await scheduler.refresh_all()

        report = await scheduler.refresh_all()

        outcome = report.outcome_for(position_id)
        self.assertEqual(outcome.status, OUTCOME_SELL_FAILED)
        self.assertIn("no route", outcome.detail)
        self.assertEqual(self.store.get_by_id(position_id).status, STATUS_OPEN)

    async def test_timed_out_auto_sell_is_not_resubmitted(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [60, 19, 19]
        self.provider.outputs[(TOKEN_A, BSC.quote_asset)] = 19 * WEI
        self.provider.swap_error = SwapTimeout("0xambiguous")
        scheduler = self._scheduler()
        await scheduler.refresh_all()

        first = await scheduler.refresh_all()
        second = await scheduler.refresh_all()

        self.assertEqual(first.outcome_for(position_id).status, OUTCOME_SELL_FAILED)
        outcome = second.outcome_for(position_id)
        self.assertEqual(outcome.status, OUTCOME_SELL_FAILED)
        self.assertIn("unconfirmed", outcome.detail)
        self.assertEqual(len(self.provider.swaps), 1)
        self.assertEqual(self.store.get_receipt_by_tx("0xambiguous").status, RECEIPT_UNCONFIRMED)
        self.assertEqual(self.store.get_by_id(position_id).status, STATUS_OPEN)

    async def test_auto_sells_and_manual_buy_swap_one_at_a_time(self) -> None:
        first_id = open_position(self.store, TOKEN_A, invested=10.0, amount_token="1")
        second_id = open_position(self.store, TOKEN_B, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [60, 19]
        self.gateway.prices[TOKEN_B] = [60, 19]
        self.gateway.prices[TOKEN_C] = 1.0
        self.provider.outputs[(TOKEN_A, BSC.quote_asset)] = 19 * WEI
        self.provider.outputs[(TOKEN_B, BSC.quote_asset)] = 19 * WEI
        self.provider.outputs[(NATIVE, TOKEN_C)] = 10 * WEI
        scheduler = self._scheduler()
        await scheduler.refresh_all()
        self.provider.swap_delay_seconds = 0.02

        report, bought = await asyncio.gather(scheduler.refresh_all(), self.trader.buy(TOKEN_C, 56, amount_usd=10.0))

        self.assertEqual(sorted(report.sold), sorted([first_id, second_id]))
        self.assertIsNotNone(self.store.get_by_id(bought.position_id))
        self.assertEqual(len(self.provider.swaps), 3)
        self.assertEqual(self.provider.peak_swaps, 1)

    async def test_notifier_failure_does_not_fail_the_sell(self) -> None:
        self.trader.notifier = RecordingNotifier(fail=True)
        position_id = open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = [60, 19]
        self.provider.outputs[(TOKEN_A, BSC.quote_asset)] = 19 * WEI
        scheduler = self._scheduler()
        await scheduler.refresh_all()

        report = await scheduler.refresh_all()

        self.assertEqual(report.sold, [position_id])
        self.assertEqual(self.store.get_by_id(position_id).status, STATUS_CLOSED)

    async def test_chain_filter_limits_cycle(self) -> None:
        bsc_id = open_position(self.store, TOKEN_A, chain_id=56)
        base_id = open_position(self.store, TOKEN_B, chain_id=8453)
        self.gateway.prices[TOKEN_A] = 11
        self.gateway.prices[TOKEN_B] = 11

        report = await self._scheduler().refresh_all(56)

        self.assertIsNotNone(report.outcome_for(bsc_id))
        self.assertIsNone(report.outcome_for(base_id))

    async def test_corrupt_token_amount_reports_error(self) -> None:
        position_id = open_position(self.store, invested=10.0, amount_token="not-a-number")
        self.gateway.prices[TOKEN_A] = 11

        report = await self._scheduler().refresh_all()

        self.assertEqual(report.outcome_for(position_id).status, OUTCOME_ERROR)

    async def test_run_loop_stops_on_event(self) -> None:
        open_position(self.store, invested=10.0, amount_token="1")
        self.gateway.prices[TOKEN_A] = 11
        scheduler = self._scheduler(interval_seconds=0.01)
        stop = asyncio.Event()

        task = asyncio.create_task(scheduler.run(stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        self.assertGreaterEqual(len(self.gateway.calls), 2)


if __name__ == "__main__":
    unittest.main()
