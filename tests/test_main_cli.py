from __future__ import annotations

import io
import unittest
from contextlib import asynccontextmanager, redirect_stdout
from types import SimpleNamespace
from unittest import mock

import main
from trading.errors import PositionNotFound
from trading.trader import OUTCOME_SOLD, RefreshOutcome


class MainCliTests(unittest.TestCase):
    def test_buy_arguments(self) -> None:
        args = main.build_parser().parse_args(
            ["buy", "0x1111111111111111111111111111111111111111", "--chain", "8453", "--amount-usd", "25"]
        )
        self.assertEqual(args.command, "buy")
        self.assertEqual(args.chain, 8453)
        self.assertEqual(args.amount_usd, 25.0)
        self.assertIsNone(args.symbol)

    def test_no_command_runs_service(self) -> None:
        self.assertIsNone(main.build_parser().parse_args([]).command)

    def test_sell_needs_a_target(self) -> None:
        with mock.patch("sys.argv", ["main.py", "sell"]), mock.patch.object(main, "configure_logging"):
            self.assertEqual(main.main(), 2)

    def test_check_and_balance_arguments(self) -> None:
        check = main.build_parser().parse_args(["check", "7", "--slippage-bps", "300"])
        self.assertEqual((check.command, check.position_id, check.slippage_bps), ("check", 7, 300))
        balance = main.build_parser().parse_args(["balance", "--chain", "8453"])
        self.assertEqual((balance.command, balance.chain), ("balance", 8453))


class RunCommandTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.trader = mock.Mock()
        engine = SimpleNamespace(trader=self.trader, store=mock.Mock(), prices=mock.Mock())

        @asynccontextmanager
        async def _engine():
            yield engine

        patcher = mock.patch.object(main, "open_engine", _engine)
        patcher.start()
        self.addCleanup(patcher.stop)

    async def _run(self, argv: list[str]) -> tuple[int, str]:
        out = io.StringIO()
        with redirect_stdout(out):
            code = await main.run_command(main.build_parser().parse_args(argv))
        return code, out.getvalue()

    async def test_check_prints_refresh_outcome(self) -> None:
        self.trader.check_and_sell = mock.AsyncMock(
            return_value=RefreshOutcome(3, OUTCOME_SOLD, value_usd=18.0, profit_floor=20.0, tx_ref="0xtx9")
        )

        code, output = await self._run(["check", "3"])

        self.assertEqual(code, 0)
        self.trader.check_and_sell.assert_awaited_once()
        self.assertEqual(self.trader.check_and_sell.await_args.args, (3,))
        self.assertEqual(output.strip(), "position=3 status=sold value=$18.00 floor=$20.00 0xtx9")

    async def test_check_of_unknown_position_fails(self) -> None:
        self.trader.check_and_sell = mock.AsyncMock(side_effect=PositionNotFound("position not found id=9"))

        code, _ = await self._run(["check", "9"])

        self.assertEqual(code, 1)

    async def test_balance_prints_native_and_reserve(self) -> None:
        self.trader.get_balances = mock.AsyncMock(
            return_value={"chain_id": 56, "native_symbol": "BNB", "native": "1.5", "reserve": "25"}
        )

        code, output = await self._run(["balance", "--chain", "56"])

        self.assertEqual(code, 0)
        self.trader.get_balances.assert_awaited_once_with(56)
        self.assertEqual(output.strip(), "chain=56 BNB=1.5 reserve=25")


if __name__ == "__main__":
    unittest.main()
