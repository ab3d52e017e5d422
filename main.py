"""Entry point for the position engine: price refresh loop plus one-shot trade commands."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from contextlib import asynccontextmanager
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import AsyncIterator

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import PositionStore
from monitor.dexscreener import DEX_PRICE_SOURCE, DexScreenerPriceGateway
from monitor.notifier import TradeNotifier, build_notifier
from monitor.price_refresh import PriceRefreshScheduler
from trading.errors import TradeError
from trading.jupiter_aggregator import JUPITER_SOURCE
from trading.rates import COINGECKO_SOURCE, NativeRateSource
from trading.registry import build_registry
from trading.swap_provider import SwapProviderRegistry
from trading.trader import Trader
from utils.http_client import ResilientHttpClient


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("web3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@dataclass
class Engine:
    store: PositionStore
    http: ResilientHttpClient
    prices: DexScreenerPriceGateway
    rates: NativeRateSource
    providers: SwapProviderRegistry
    notifier: TradeNotifier
    trader: Trader


@asynccontextmanager
async def open_engine() -> AsyncIterator[Engine]:
    store = PositionStore(config.DATABASE_URL)
    store.init()
    http = ResilientHttpClient(
        timeout_seconds=float(config.DEX_TIMEOUT),
        source_limits={DEX_PRICE_SOURCE: 5, COINGECKO_SOURCE: 2, JUPITER_SOURCE: 4},
    )
    providers: SwapProviderRegistry | None = None
    notifier: TradeNotifier | None = None
    try:
        prices = DexScreenerPriceGateway(http)
        rates = NativeRateSource(http)
        providers = build_registry(config.TRADE_ENABLED_CHAINS, http=http)
        notifier = build_notifier()
        trader = Trader(store, providers, prices, rates, notifier)
        yield Engine(store, http, prices, rates, providers, notifier, trader)
    finally:
        if providers is not None:
            await providers.close()
        if notifier is not None:
            await notifier.close()
        await http.close()
        store.close()


def _install_stop_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: Ctrl+C arrives as KeyboardInterrupt instead.
            pass


async def run_service() -> None:
    async with open_engine() as engine:
        if config.RECONCILE_ON_START:
            await engine.trader.reconcile()
        totals = engine.store.total_pnl()
        logger.info(
            "ENGINE ready chains=%s open_positions=%s closed=%s total_pnl=$%.2f (%.2f%%)",
            ",".join(str(c) for c in engine.providers.chain_ids()),
            len(engine.trader.get_open_positions()),
            totals["closed_positions"],
            totals["total_pnl"],
            totals["total_pnl_percentage"],
        )
        stop_event = asyncio.Event()
        _install_stop_handlers(stop_event)
        scheduler = PriceRefreshScheduler(engine.store, engine.prices, engine.trader)
        await scheduler.run(stop_event)
        logger.info("ENGINE http_stats %s", engine.http.snapshot_stats())


async def run_command(args: argparse.Namespace) -> int:
    async with open_engine() as engine:
        trader = engine.trader
        try:
            if args.command == "buy":
                result = await trader.buy(
                    args.token,
                    args.chain,
                    amount_usd=args.amount_usd,
                    slippage_bps=args.slippage_bps,
                    symbol=args.symbol,
                )
                print(f"position={result.position_id} tx={result.tx_ref}")
            elif args.command == "sell":
                if args.position_id is not None:
                    sold = await trader.sell(args.position_id, slippage_bps=args.slippage_bps)
                else:
                    sold = await trader.sell_by_token(args.token, args.chain, slippage_bps=args.slippage_bps)
                print(f"position={sold.position_id} tx={sold.tx_ref} pnl=${sold.pnl:.2f} ({sold.pnl_percentage:.2f}%)")
            elif args.command == "refresh":
                scheduler = PriceRefreshScheduler(engine.store, engine.prices, trader)
                report = await scheduler.refresh_all(args.chain)
                for outcome in report.outcomes:
                    print(f"position={outcome.position_id} status={outcome.status} {outcome.detail}".rstrip())
            elif args.command == "positions":
                for p in trader.get_open_positions(args.chain):
                    print(
                        f"{p.id} {p.symbol or '-'} {p.token_address} chain={p.chain_id} "
                        f"value=${float(p.current_value_usd or 0):.2f} peak=${float(p.highest_price_ever or 0):.2f} "
                        f"floor={p.profit_floor if p.profit_floor is not None else '-'}"
                    )
            elif args.command == "check":
                outcome = await trader.check_and_sell(args.position_id, slippage_bps=args.slippage_bps)
                floor = "-" if outcome.profit_floor is None else f"${outcome.profit_floor:.2f}"
                print(
                    f"position={outcome.position_id} status={outcome.status} "
                    f"value=${float(outcome.value_usd or 0):.2f} floor={floor} {outcome.tx_ref} {outcome.detail}".rstrip()
                )
            elif args.command == "balance":
                balances = await trader.get_balances(args.chain)
                print(
                    f"chain={balances['chain_id']} {balances['native_symbol']}={balances['native']} "
                    f"reserve={balances['reserve'] if balances['reserve'] is not None else '-'}"
                )
            elif args.command == "reconcile":
                for outcome in await trader.reconcile():
                    print(f"receipt={outcome.receipt_id} {outcome.side} {outcome.action} position={outcome.position_id}")
        except TradeError as exc:
            logger.error("COMMAND %s failed code=%s err=%s", args.command, exc.code, exc)
            return 1
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Position and profit-floor trading engine.")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the price refresh loop (default)")

    buy = sub.add_parser("buy", help="Open a position")
    buy.add_argument("token", help="Token address")
    buy.add_argument("--chain", type=int, default=config.TRADE_ENABLED_CHAINS[0], help="Chain id")
    buy.add_argument("--amount-usd", type=float, default=config.TRADE_AMOUNT_USD, help="USD to invest")
    buy.add_argument("--slippage-bps", type=int, default=config.LIVE_SLIPPAGE_BPS, help="Slippage tolerance in bps")
    buy.add_argument("--symbol", default=None, help="Display symbol")

    sell = sub.add_parser("sell", help="Close a position by id or token")
    sell.add_argument("--position-id", type=int, default=None)
    sell.add_argument("--token", default="")
    sell.add_argument("--chain", type=int, default=config.TRADE_ENABLED_CHAINS[0])
    sell.add_argument("--slippage-bps", type=int, default=config.LIVE_SLIPPAGE_BPS)

    refresh = sub.add_parser("refresh", help="Run one refresh cycle")
    refresh.add_argument("--chain", type=int, default=None)

    positions = sub.add_parser("positions", help="List open positions")
    positions.add_argument("--chain", type=int, default=None)

    check = sub.add_parser("check", help="Refresh one position now and sell it if its floor is hit")
    check.add_argument("position_id", type=int)
    check.add_argument("--slippage-bps", type=int, default=config.LIVE_SLIPPAGE_BPS)

    balance = sub.add_parser("balance", help="Show wallet native and reserve balances")
    balance.add_argument("--chain", type=int, default=config.TRADE_ENABLED_CHAINS[0])

    sub.add_parser("reconcile", help="Settle timed-out swaps and apply journaled swaps missing from the position table")
    return parser


def main() -> int:
    args = build_parser().parse_args()
    configure_logging()
    if args.command == "sell" and args.position_id is None and not args.token:
        logger.error("sell needs --position-id or --token")
        return 2
    try:
        if args.command in (None, "run"):
            asyncio.run(run_service())
            return 0
        return asyncio.run(run_command(args))
    except KeyboardInterrupt:
        logger.info("ENGINE interrupted")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
