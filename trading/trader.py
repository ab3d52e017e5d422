"""Trade orchestration: open and close positions through chain swap providers."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Callable, TypeVar

import config
from database.db import PositionStore
from database.models import RECEIPT_UNCONFIRMED, SIDE_BUY, SIDE_SELL, Position, SwapReceiptRecord, utcnow
from monitor.dexscreener import DexScreenerPriceGateway
from monitor.notifier import TradeNotifier
from trading.chains import NATIVE, ChainSpec, get_chain
from trading.errors import (
    AlreadyClosed,
    AlreadyOpen,
    InsufficientFunds,
    NoPrice,
    NoRoute,
    PositionNotFound,
    StoreWriteFailed,
    SwapReverted,
    SwapTimeout,
    SwapUnconfirmed,
    TradeError,
)
from trading.profit_floor import profit_floor, should_sell
from trading.rates import NativeRateSource
from trading.swap_provider import (
    TX_CONFIRMED,
    TX_FAILED,
    TX_NOT_FOUND,
    TX_PENDING,
    SwapProvider,
    SwapProviderRegistry,
    SwapReceipt,
    min_amount_out,
)
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

T = TypeVar("T")

OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED = "skipped"
OUTCOME_SOLD = "sold"
OUTCOME_SELL_FAILED = "sell_failed"
OUTCOME_ERROR = "error"


@dataclass(frozen=True)
class BuyResult:
    position_id: int
    tx_ref: str


@dataclass(frozen=True)
class SellResult:
    position_id: int
    tx_ref: str
    pnl: float
    pnl_percentage: float
    proceeds_usd: float


@dataclass(frozen=True)
class ReconcileOutcome:
    receipt_id: int
    tx_ref: str
    side: str
    action: str
    position_id: int | None = None
    detail: str = ""


@dataclass
class RefreshOutcome:
    position_id: int
    status: str
    price_usd: float | None = None
    value_usd: float | None = None
    highest_price_ever: float | None = None
    profit_floor: float | None = None
    tx_ref: str = ""
    pnl: float | None = None
    detail: str = ""


def raw_to_amount(raw: int, decimals: int) -> str:
    """Raw integer units -> plain decimal string in human units."""
    value = Decimal(int(raw)).scaleb(-int(decimals))
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def amount_to_raw(amount: Any, decimals: int) -> int:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return 0
    return int(value.scaleb(int(decimals)).to_integral_value(rounding=ROUND_DOWN))


class Trader:
    def __init__(
        self,
        store: PositionStore,
        providers: SwapProviderRegistry,
        prices: DexScreenerPriceGateway,
        rates: NativeRateSource,
        notifier: TradeNotifier | None = None,
        *,
        store_write_retries: int | None = None,
        store_retry_delay_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.providers = providers
        self.prices = prices
        self.rates = rates
        self.notifier = notifier
        self.store_write_retries = max(
            1, int(config.STORE_WRITE_RETRIES if store_write_retries is None else store_write_retries)
        )
        self.store_retry_delay_seconds = max(
            0.0,
            float(
                config.STORE_WRITE_RETRY_DELAY_SECONDS
                if store_retry_delay_seconds is None
                else store_retry_delay_seconds
            ),
        )
        self._chain_locks: dict[int, asyncio.Lock] = {}
        self._buy_inflight: set[tuple[str, int]] = set()
        self._sell_inflight: set[int] = set()
        # Timed-out swaps whose journal write failed, keyed by (token, chain).
        self._unjournaled: dict[tuple[str, int], dict[str, Any]] = {}

    def _chain_lock(self, chain_id: int) -> asyncio.Lock:
        lock = self._chain_locks.get(int(chain_id))
        if lock is None:
            lock = asyncio.Lock()
            self._chain_locks[int(chain_id)] = lock
        return lock

    @staticmethod
    def _slippage(slippage_bps: int | None) -> int:
        bps = int(config.LIVE_SLIPPAGE_BPS if slippage_bps is None else slippage_bps)
        min_amount_out(1, bps)
        return bps

    @staticmethod
    def _deadline() -> int:
        return int(time.time()) + int(config.LIVE_SWAP_DEADLINE_SECONDS)

    async def _write_with_retries(self, label: str, write: Callable[[], T]) -> T:
        """Retry a store write; the swap that produced it is never repeated."""
        last_exc = StoreWriteFailed(f"{label} not attempted")
        for attempt in range(1, self.store_write_retries + 1):
            try:
                return write()
            except StoreWriteFailed as exc:
                last_exc = exc
                logger.warning(
                    "STORE write_failed op=%s attempt=%s/%s err=%s",
                    label,
                    attempt,
                    self.store_write_retries,
                    exc,
                )
                if attempt < self.store_write_retries:
                    await asyncio.sleep(self.store_retry_delay_seconds)
        raise last_exc

    async def _notify(self, method: str, event: dict[str, Any]) -> None:
        if self.notifier is None:
            return
        try:
            await getattr(self.notifier, method)(event)
        except Exception as exc:
            logger.warning("NOTIFY failed event=%s position=%s err=%s", method, event.get("position_id"), exc)

    # Buy

    async def buy(
        self,
        token_address: str,
        chain_id: int,
        amount_usd: float | None = None,
        slippage_bps: int | None = None,
        symbol: str | None = None,
    ) -> BuyResult:
        amount_usd = float(config.TRADE_AMOUNT_USD if amount_usd is None else amount_usd)
        if amount_usd <= 0:
            raise ValueError("amount_usd must be positive")
        slippage = self._slippage(slippage_bps)
        chain = get_chain(chain_id)
        provider = self.providers.get(chain.chain_id)
        token = normalize_address(token_address)
        if not token:
            raise ValueError("token_address is empty")

        key = (token, chain.chain_id)
        if key in self._buy_inflight or self.store.get_open_by_token(token, chain.chain_id) is not None:
            raise AlreadyOpen(token, chain.chain_id)
        self._buy_inflight.add(key)
        try:
            await self._require_settled(token, chain)
            if self.store.get_open_by_token(token, chain.chain_id) is not None:
                raise AlreadyOpen(token, chain.chain_id)
            return await self._buy_reserved(token, chain, provider, amount_usd, slippage, symbol)
        finally:
            self._buy_inflight.discard(key)

    async def _buy_reserved(
        self,
        token: str,
        chain: ChainSpec,
        provider: SwapProvider,
        amount_usd: float,
        slippage: int,
        symbol: str | None,
    ) -> BuyResult:
        price = await self.prices.get_token_price(token, chain.chain_id)
        if price is None or price.price_usd <= 0:
            raise NoPrice(f"no price token={token} chain={chain.chain_id}")
        symbol = symbol or price.symbol or None

        amount_in = await self.rates.usd_to_native_raw(chain.chain_id, amount_usd)
        if amount_in <= 0:
            raise NoPrice(f"no native rate chain={chain.chain_id}")

        decimals = await provider.decimals(token)
        async with self._chain_lock(chain.chain_id):
            await self._ensure_native_balance(provider, chain, amount_in)
            quote = await provider.quote(NATIVE, token, amount_in)
            floor_out = provider.min_amount_out(quote.amount_out, slippage)
            try:
                receipt = await provider.swap(quote, floor_out, None, self._deadline())
            except SwapTimeout as exc:
                logger.error("AUTO_BUY swap_timeout token=%s chain=%s tx=%s", token, chain.chain_id, exc.tx_ref)
                await self._journal_unconfirmed(
                    tx_ref=exc.tx_ref,
                    chain_id=chain.chain_id,
                    token_address=token,
                    side=SIDE_BUY,
                    amount_in=quote.amount_in,
                    amount_out=floor_out,
                    token_amount=floor_out,
                    token_decimals=decimals,
                    price_usd=price.price_usd,
                    amount_usd=amount_usd,
                    symbol=symbol,
                )
                raise
            except SwapReverted as exc:
                logger.error("AUTO_BUY swap_reverted token=%s chain=%s tx=%s", token, chain.chain_id, exc.tx_ref)
                raise

        return await self._record_buy(token, chain, receipt, decimals, price.price_usd, amount_usd, symbol)

    async def _record_buy(
        self,
        token: str,
        chain: ChainSpec,
        receipt: SwapReceipt,
        decimals: int,
        price_usd: float,
        amount_usd: float,
        symbol: str | None,
    ) -> BuyResult:
        receipt_id = await self._write_with_retries(
            "record_buy_receipt",
            lambda: self.store.record_receipt(
                tx_ref=receipt.tx_ref,
                chain_id=chain.chain_id,
                token_address=token,
                side=SIDE_BUY,
                amount_in=receipt.amount_in,
                amount_out=receipt.amount_out,
                token_amount=receipt.token_amount,
                token_decimals=decimals,
                price_usd=price_usd,
                amount_usd=amount_usd,
                symbol=symbol,
            ),
        )
        if receipt.token_amount <= 0:
            self._mark_applied(receipt_id, None)
            logger.error("AUTO_BUY zero_token_amount token=%s chain=%s tx=%s", token, chain.chain_id, receipt.tx_ref)
            raise TradeError(f"swap returned no tokens tx={receipt.tx_ref}")

        amount_token = raw_to_amount(receipt.token_amount, decimals)
        params = {
            "token_address": token,
            "chain_id": chain.chain_id,
            "symbol": symbol,
            "buy_price_usd": price_usd,
            "current_price_usd": price_usd,
            "amount_token": amount_token,
            "token_decimals": decimals,
            "amount_usd_invested": amount_usd,
            "buy_tx_ref": receipt.tx_ref,
        }
        try:
            position_id = await self._write_with_retries("create_position", lambda: self.store.create(params))
        except StoreWriteFailed:
            logger.critical(
                "AUTO_BUY position_write_failed token=%s chain=%s tx=%s receipt=%s (left for reconcile)",
                token,
                chain.chain_id,
                receipt.tx_ref,
                receipt_id,
            )
            raise
        self._mark_applied(receipt_id, position_id)

        logger.info(
            "AUTO_BUY BUY token=%s symbol=%s chain=%s spend_raw=%s tokens=%s price=$%.10f usd=$%.2f position=%s tx=%s",
            token,
            symbol or "N/A",
            chain.chain_id,
            receipt.amount_in,
            amount_token,
            price_usd,
            amount_usd,
            position_id,
            receipt.tx_ref,
        )
        await self._notify(
            "position_opened",
            {
                "position_id": position_id,
                "token_address": token,
                "chain_id": chain.chain_id,
                "symbol": symbol,
                "tx_ref": receipt.tx_ref,
                "amount_usd_invested": amount_usd,
                "buy_price_usd": price_usd,
                "amount_token": amount_token,
                "reason": "buy",
            },
        )
        return BuyResult(position_id=position_id, tx_ref=receipt.tx_ref)

    def _mark_applied(self, receipt_id: int, position_id: int | None) -> None:
        try:
            self.store.mark_receipt_applied(receipt_id, position_id)
        except StoreWriteFailed as exc:
            logger.warning("STORE receipt_mark_failed receipt=%s position=%s err=%s", receipt_id, position_id, exc)

    # Unconfirmed swaps

    async def _journal_unconfirmed(self, **fields: Any) -> None:
        """Record a timed-out swap so it is looked up, never resubmitted."""
        key = (normalize_address(fields["token_address"]), int(fields["chain_id"]))
        try:
            await self._write_with_retries(
                "record_unconfirmed_receipt",
                lambda: self.store.record_receipt(status=RECEIPT_UNCONFIRMED, **fields),
            )
        except StoreWriteFailed as exc:
            logger.critical(
                "SWAP unconfirmed_journal_failed tx=%s token=%s chain=%s err=%s (held in memory)",
                fields["tx_ref"],
                key[0],
                key[1],
                exc,
            )
            self._unjournaled[key] = fields

    def _flush_unjournaled(self, key: tuple[str, int]) -> bool:
        fields = self._unjournaled.get(key)
        if fields is None:
            return True
        try:
            self.store.record_receipt(status=RECEIPT_UNCONFIRMED, **fields)
        except StoreWriteFailed as exc:
            logger.warning("STORE unconfirmed_journal_retry_failed tx=%s err=%s", fields["tx_ref"], exc)
            return False
        self._unjournaled.pop(key, None)
        return True

    async def _require_settled(self, token: str, chain: ChainSpec) -> None:
        """Raise SwapUnconfirmed while an earlier timed-out swap on this token is unresolved."""
        key = (token, chain.chain_id)
        if not self._flush_unjournaled(key):
            raise SwapUnconfirmed(self._unjournaled[key]["tx_ref"], token, chain.chain_id)
        for record in self.store.unconfirmed_receipts(token, chain.chain_id):
            outcome = await self._settle_unconfirmed(record)
            if outcome.action == "unconfirmed":
                raise SwapUnconfirmed(record.tx_ref, token, chain.chain_id)

    async def _settle_unconfirmed(self, record: SwapReceiptRecord) -> ReconcileOutcome:
        def outcome(action: str, position_id: int | None = None, detail: str = "") -> ReconcileOutcome:
            return ReconcileOutcome(int(record.id), record.tx_ref, record.side, action, position_id, detail)

        provider = self.providers.get(record.chain_id)
        try:
            state = await provider.confirm(record.tx_ref)
        except Exception as exc:
            logger.warning("RECONCILE confirm_failed receipt=%s tx=%s err=%s", record.id, record.tx_ref, exc)
            state = TX_PENDING

        age = self._receipt_age_seconds(record)
        if state == TX_NOT_FOUND and age >= float(config.SWAP_UNCONFIRMED_DROP_SECONDS):
            self.store.settle_receipt(record.id, False, detail="dropped")
            logger.warning(
                "RECONCILE dropped receipt=%s tx=%s side=%s age=%.0fs", record.id, record.tx_ref, record.side, age
            )
            return outcome("discarded", record.position_id, "dropped")
        if state == TX_FAILED:
            self.store.settle_receipt(record.id, False, detail="reverted")
            logger.warning("RECONCILE reverted receipt=%s tx=%s side=%s", record.id, record.tx_ref, record.side)
            return outcome("discarded", record.position_id, "reverted")
        if state != TX_CONFIRMED:
            logger.info("RECONCILE still_unconfirmed receipt=%s tx=%s state=%s", record.id, record.tx_ref, state)
            return outcome("unconfirmed", record.position_id, state)

        token_amount: int | None = None
        amount_usd: float | None = None
        if record.side == SIDE_BUY:
            token_amount = await self._landed_buy_amount(provider, record)
        elif record.amount_usd is None:
            chain = get_chain(record.chain_id)
            amount_usd = await self._floor_proceeds_usd(
                provider, chain, self._sell_target(chain), int(record.amount_out or 0)
            )
        settled = self.store.settle_receipt(record.id, True, token_amount=token_amount, amount_usd=amount_usd)
        logger.warning("RECONCILE landed receipt=%s tx=%s side=%s", record.id, record.tx_ref, record.side)
        if settled.side == SIDE_BUY:
            return await self._reconcile_buy(settled)
        return await self._reconcile_sell(settled)

    @staticmethod
    def _receipt_age_seconds(record: SwapReceiptRecord) -> float:
        if record.created_at is None:
            return 0.0
        return max(0.0, (utcnow() - record.created_at).total_seconds())

    async def _landed_buy_amount(self, provider: SwapProvider, record: SwapReceiptRecord) -> int:
        """Wallet balance of the bought token; the slippage floor when it cannot be read."""
        floor_out = int(record.token_amount or 0)
        try:
            balance = int(await provider.balance_of(record.token_address))
        except Exception as exc:
            logger.warning("RECONCILE balance_read_failed tx=%s err=%s using=min_out", record.tx_ref, exc)
            return floor_out
        return balance if balance > 0 else floor_out

    async def _ensure_native_balance(self, provider: SwapProvider, chain: ChainSpec, amount_in: int) -> None:
        buffer_native = Decimal(str(config.LIVE_GAS_BUFFER_NATIVE.get(chain.native_symbol, 0.0) or 0.0))
        required = int(amount_in) + amount_to_raw(buffer_native, chain.native_decimals)
        balance = await provider.native_balance()
        if balance >= required:
            return
        if not chain.reserve_asset:
            raise InsufficientFunds(
                f"native balance too low chain={chain.chain_id} have={balance} need={required}"
            )
        await self._top_up_native(provider, chain, required - balance)
        balance = await provider.native_balance()
        if balance < required:
            raise InsufficientFunds(
                f"native balance too low after top-up chain={chain.chain_id} have={balance} need={required}"
            )

    async def _top_up_native(self, provider: SwapProvider, chain: ChainSpec, shortfall_raw: int) -> None:
        """Swap the reserve stablecoin into native coin to cover a shortfall."""
        rate = await self.rates.native_usd(chain.chain_id)
        shortfall_usd = Decimal(int(shortfall_raw)).scaleb(-chain.native_decimals) * Decimal(str(rate))
        margin = Decimal(1) + Decimal(str(config.LIVE_TOPUP_MARGIN_PERCENT)) / Decimal(100)
        reserve_decimals = await provider.decimals(chain.reserve_asset)
        reserve_amount = amount_to_raw(shortfall_usd * margin, reserve_decimals)
        if reserve_amount <= 0:
            raise InsufficientFunds(f"top-up amount rounds to zero chain={chain.chain_id}")
        reserve_balance = await provider.balance_of(chain.reserve_asset)
        if reserve_balance < reserve_amount:
            raise InsufficientFunds(
                f"reserve balance too low chain={chain.chain_id} have={reserve_balance} need={reserve_amount}"
            )
        await provider.authorize(chain.reserve_asset, reserve_amount)
        try:
            quote = await provider.quote(chain.reserve_asset, NATIVE, reserve_amount)
        except NoRoute as exc:
            raise InsufficientFunds(f"no top-up route chain={chain.chain_id}") from exc
        floor_out = provider.min_amount_out(quote.amount_out, int(config.LIVE_SLIPPAGE_BPS))
        receipt = await provider.swap(quote, floor_out, None, self._deadline())
        logger.info(
            "AUTO_BUY TOPUP chain=%s reserve=%s spent_raw=%s native_raw=%s usd=$%.2f tx=%s",
            chain.chain_id,
            chain.reserve_asset,
            receipt.amount_in,
            receipt.amount_out,
            float(shortfall_usd * margin),
            receipt.tx_ref,
        )

    # Sell

    async def sell(self, position_id: int, slippage_bps: int | None = None, reason: str = "manual") -> SellResult:
        slippage = self._slippage(slippage_bps)
        position = self.store.get_by_id(position_id)
        if position is None:
            raise PositionNotFound(f"position not found id={position_id}")
        if not position.is_open() or position.id in self._sell_inflight:
            raise AlreadyClosed(f"position already closed id={position_id}")
        self._sell_inflight.add(position.id)
        try:
            await self._require_settled(position.token_address, get_chain(position.chain_id))
            position = self.store.get_by_id(position.id)
            if position is None or not position.is_open():
                raise AlreadyClosed(f"position already closed id={position_id}")
            return await self._sell_reserved(position, slippage, reason)
        finally:
            self._sell_inflight.discard(position.id)

    async def sell_by_token(
        self,
        token_address: str,
        chain_id: int,
        slippage_bps: int | None = None,
        reason: str = "manual",
    ) -> SellResult:
        position = self.store.get_open_by_token(token_address, chain_id)
        if position is None:
            raise PositionNotFound(f"no open position token={token_address} chain={chain_id}")
        return await self.sell(position.id, slippage_bps=slippage_bps, reason=reason)

    @staticmethod
    def _sell_target(chain: ChainSpec) -> str:
        # Wrapped native proceeds are received as the native coin.
        if normalize_address(chain.quote_asset) == normalize_address(chain.base_asset):
            return NATIVE
        return chain.quote_asset

    async def _sell_reserved(self, position: Position, slippage: int, reason: str) -> SellResult:
        chain = get_chain(position.chain_id)
        provider = self.providers.get(chain.chain_id)
        decimals = int(position.token_decimals or 18)
        amount_raw = amount_to_raw(position.amount_token, decimals)
        if amount_raw <= 0:
            raise TradeError(f"position has no token amount id={position.id}")
        target = self._sell_target(chain)

        async with self._chain_lock(chain.chain_id):
            await provider.authorize(position.token_address, amount_raw)
            quote = await provider.quote(position.token_address, target, amount_raw)
            floor_out = provider.min_amount_out(quote.amount_out, slippage)
            try:
                receipt = await provider.swap(quote, floor_out, None, self._deadline())
            except SwapTimeout as exc:
                logger.error("AUTO_SELL swap_timeout position=%s token=%s tx=%s", position.id, position.symbol, exc.tx_ref)
                await self._journal_unconfirmed(
                    tx_ref=exc.tx_ref,
                    chain_id=chain.chain_id,
                    token_address=position.token_address,
                    side=SIDE_SELL,
                    amount_in=amount_raw,
                    amount_out=floor_out,
                    token_amount=amount_raw,
                    token_decimals=decimals,
                    amount_usd=await self._floor_proceeds_usd(provider, chain, target, floor_out),
                    symbol=position.symbol,
                    position_id=position.id,
                    detail=reason,
                )
                raise
            except SwapReverted as exc:
                logger.error("AUTO_SELL swap_reverted position=%s token=%s tx=%s", position.id, position.symbol, exc.tx_ref)
                raise

        proceeds_usd = await self._proceeds_usd(provider, chain, target, receipt.amount_out)
        invested = float(position.amount_usd_invested or 0.0)
        pnl = proceeds_usd - invested
        pnl_percentage = (pnl / invested * 100.0) if invested > 0 else 0.0
        amount_tokens = float(Decimal(amount_raw).scaleb(-decimals))

        receipt_id = await self._write_with_retries(
            "record_sell_receipt",
            lambda: self.store.record_receipt(
                tx_ref=receipt.tx_ref,
                chain_id=chain.chain_id,
                token_address=position.token_address,
                side=SIDE_SELL,
                amount_in=receipt.amount_in,
                amount_out=receipt.amount_out,
                token_amount=receipt.token_amount,
                token_decimals=decimals,
                price_usd=(proceeds_usd / amount_tokens) if amount_tokens > 0 else None,
                amount_usd=proceeds_usd,
                symbol=position.symbol,
                position_id=position.id,
                detail=reason,
            ),
        )
        try:
            await self._write_with_retries(
                "close_position",
                lambda: self.store.transition_closed(position.id, receipt.tx_ref, pnl, pnl_percentage),
            )
        except StoreWriteFailed:
            logger.critical(
                "AUTO_SELL position_close_failed position=%s tx=%s receipt=%s (left for reconcile)",
                position.id,
                receipt.tx_ref,
                receipt_id,
            )
            raise
        self._mark_applied(receipt_id, position.id)

        logger.info(
            "AUTO_SELL SELL token=%s position=%s reason=%s proceeds=$%.2f pnl=%.2f%% ($%.2f) tx=%s",
            position.symbol or position.token_address,
            position.id,
            reason,
            proceeds_usd,
            pnl_percentage,
            pnl,
            receipt.tx_ref,
        )
        await self._notify(
            "position_closed",
            self._close_event(position, receipt.tx_ref, proceeds_usd, pnl, pnl_percentage, reason),
        )
        return SellResult(
            position_id=int(position.id),
            tx_ref=receipt.tx_ref,
            pnl=pnl,
            pnl_percentage=pnl_percentage,
            proceeds_usd=proceeds_usd,
        )

    async def _proceeds_usd(self, provider: SwapProvider, chain: ChainSpec, target: str, amount_out: int) -> float:
        decimals = await provider.decimals(target)
        received = float(Decimal(int(amount_out)).scaleb(-int(decimals)))
        if target != NATIVE and chain.quote_asset_usd_pegged:
            return received
        return received * await self.rates.native_usd(chain.chain_id)

    async def _floor_proceeds_usd(
        self, provider: SwapProvider, chain: ChainSpec, target: str, amount_out: int
    ) -> float | None:
        try:
            return await self._proceeds_usd(provider, chain, target, amount_out)
        except Exception as exc:
            logger.warning("AUTO_SELL proceeds_unpriced chain=%s err=%s", chain.chain_id, exc)
            return None

    @staticmethod
    def _close_event(
        position: Position,
        tx_ref: str,
        proceeds_usd: float,
        pnl: float,
        pnl_percentage: float,
        reason: str,
    ) -> dict[str, Any]:
        return {
            "position_id": position.id,
            "token_address": position.token_address,
            "chain_id": position.chain_id,
            "symbol": position.symbol,
            "tx_ref": tx_ref,
            "amount_usd_invested": position.amount_usd_invested,
            "proceeds_usd": proceeds_usd,
            "pnl": pnl,
            "pnl_percentage": pnl_percentage,
            "highest_price_ever": position.highest_price_ever,
            "profit_floor": position.profit_floor,
            "reason": reason,
        }

    # Reads

    def get_open_positions(self, chain_id: int | None = None) -> list[Position]:
        return self.store.get_all_open(chain_id)

    def get_position(self, position_id: int) -> Position | None:
        return self.store.get_by_id(position_id)

    async def get_balances(self, chain_id: int) -> dict[str, Any]:
        """Wallet native and reserve balances on one chain, in human units."""
        chain = get_chain(chain_id)
        provider = self.providers.get(chain.chain_id)
        native_raw = await provider.native_balance()
        balances: dict[str, Any] = {
            "chain_id": chain.chain_id,
            "native_symbol": chain.native_symbol,
            "native": raw_to_amount(native_raw, chain.native_decimals),
            "native_raw": native_raw,
            "reserve_asset": chain.reserve_asset or None,
            "reserve": None,
            "reserve_raw": None,
        }
        if chain.reserve_asset:
            reserve_raw = await provider.balance_of(chain.reserve_asset)
            reserve_decimals = await provider.decimals(chain.reserve_asset)
            balances["reserve"] = raw_to_amount(reserve_raw, reserve_decimals)
            balances["reserve_raw"] = reserve_raw
        return balances

    # Price checks

    async def refresh_position(
        self, position: Position, prices: DexScreenerPriceGateway | None = None
    ) -> tuple[RefreshOutcome, bool]:
        """Refresh price, value, peak and floor of one open position.

        Returns the outcome and whether the profit floor was hit.
        """
        gateway = prices or self.prices
        try:
            price = await gateway.get_token_price(position.token_address, position.chain_id)
        except Exception as exc:
            logger.warning("PRICE_REFRESH price_failed position=%s token=%s err=%s", position.id, position.symbol, exc)
            return RefreshOutcome(position.id, OUTCOME_SKIPPED, detail=f"price_error:{exc}"), False
        if price is None:
            return RefreshOutcome(position.id, OUTCOME_SKIPPED, detail="no_price"), False

        try:
            amount = Decimal(str(position.amount_token))
        except InvalidOperation:
            return RefreshOutcome(position.id, OUTCOME_ERROR, detail="bad_amount_token"), False
        value = float(Decimal(str(price.price_usd)) * amount)
        invested = float(position.amount_usd_invested or 0.0)
        highest = max(float(position.highest_price_ever or 0.0), value)
        floor = profit_floor(highest, invested)

        try:
            self.store.update(
                position.id,
                current_price_usd=price.price_usd,
                current_value_usd=value,
                highest_price_ever=highest,
                profit_floor=floor,
            )
        except (AlreadyClosed, PositionNotFound) as exc:
            return RefreshOutcome(position.id, OUTCOME_SKIPPED, price_usd=price.price_usd, detail=str(exc)), False
        except Exception as exc:
            logger.warning("PRICE_REFRESH update_failed position=%s err=%s", position.id, exc)
            return RefreshOutcome(position.id, OUTCOME_ERROR, price_usd=price.price_usd, detail=str(exc)), False

        outcome = RefreshOutcome(
            position.id,
            OUTCOME_UPDATED,
            price_usd=price.price_usd,
            value_usd=value,
            highest_price_ever=highest,
            profit_floor=floor,
        )
        sell_now = should_sell(value, highest, invested)
        if sell_now:
            logger.info(
                "PRICE_REFRESH floor_hit position=%s token=%s value=$%.2f highest=$%.2f floor=$%.2f",
                position.id,
                position.symbol or position.token_address,
                value,
                highest,
                floor or 0.0,
            )
        return outcome, sell_now

    async def sell_on_floor(
        self, position: Position, outcome: RefreshOutcome, slippage_bps: int | None = None
    ) -> RefreshOutcome:
        """Sell a position whose floor was hit; a failed sell is recorded on the outcome."""
        try:
            result = await self.sell(position.id, slippage_bps=slippage_bps, reason="profit_floor")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("AUTO_SELL failed position=%s token=%s err=%s", position.id, position.symbol, exc)
            outcome.status = OUTCOME_SELL_FAILED
            outcome.detail = str(exc)
            return outcome
        outcome.status = OUTCOME_SOLD
        outcome.tx_ref = result.tx_ref
        outcome.pnl = result.pnl
        return outcome

    async def check_and_sell(self, position_id: int, slippage_bps: int | None = None) -> RefreshOutcome:
        """Refresh one position now and sell it if its profit floor is hit."""
        position = self.store.get_by_id(position_id)
        if position is None:
            raise PositionNotFound(f"position not found id={position_id}")
        if not position.is_open():
            raise AlreadyClosed(f"position already closed id={position_id}")
        outcome, sell_now = await self.refresh_position(position)
        if sell_now:
            await self.sell_on_floor(position, outcome, slippage_bps)
        return outcome

    # Recovery

    async def reconcile(self) -> list[ReconcileOutcome]:
        """Settle timed-out swaps, then apply swap receipts whose position write never landed."""
        for key in list(self._unjournaled):
            self._flush_unjournaled(key)
        outcomes: list[ReconcileOutcome] = []
        seen: set[int] = set()
        for record in self.store.unconfirmed_receipts():
            seen.add(int(record.id))
            outcomes.append(await self._reconcile_record(record, self._settle_unconfirmed))
        for record in self.store.pending_receipts():
            if int(record.id) in seen:
                continue
            handler = self._reconcile_buy if record.side == SIDE_BUY else self._reconcile_sell
            outcomes.append(await self._reconcile_record(record, handler))
        if outcomes:
            logger.warning(
                "RECONCILE done receipts=%s actions=%s",
                len(outcomes),
                ",".join(f"{o.receipt_id}:{o.action}" for o in outcomes),
            )
        return outcomes

    @staticmethod
    async def _reconcile_record(
        record: SwapReceiptRecord, handler: Callable[[SwapReceiptRecord], Any]
    ) -> ReconcileOutcome:
        try:
            return await handler(record)
        except TradeError as exc:
            logger.error("RECONCILE failed receipt=%s tx=%s err=%s", record.id, record.tx_ref, exc)
            return ReconcileOutcome(
                receipt_id=int(record.id),
                tx_ref=record.tx_ref,
                side=record.side,
                action="failed",
                position_id=record.position_id,
                detail=str(exc),
            )

    async def _reconcile_buy(self, record: SwapReceiptRecord) -> ReconcileOutcome:
        def outcome(action: str, position_id: int | None = None, detail: str = "") -> ReconcileOutcome:
            return ReconcileOutcome(int(record.id), record.tx_ref, record.side, action, position_id, detail)

        existing = self.store.get_by_buy_tx(record.tx_ref)
        if existing is not None:
            self.store.mark_receipt_applied(record.id, existing.id)
            return outcome("linked", existing.id)

        if int(record.token_amount or 0) <= 0:
            self.store.mark_receipt_applied(record.id)
            return outcome("skipped", detail="zero_token_amount")

        conflicting = self.store.get_open_by_token(record.token_address, record.chain_id)
        if conflicting is not None:
            logger.error(
                "RECONCILE buy_conflict receipt=%s tx=%s open_position=%s",
                record.id,
                record.tx_ref,
                conflicting.id,
            )
            self.store.mark_receipt_applied(record.id)
            return outcome("skipped", conflicting.id, "open_position_exists")

        amount_usd = float(record.amount_usd or 0.0)
        price_usd = float(record.price_usd or 0.0)
        amount_token = raw_to_amount(int(record.token_amount), int(record.token_decimals or 18))
        position_id = self.store.create(
            {
                "token_address": record.token_address,
                "chain_id": record.chain_id,
                "symbol": record.symbol,
                "buy_price_usd": price_usd,
                "current_price_usd": price_usd,
                "amount_token": amount_token,
                "token_decimals": int(record.token_decimals or 18),
                "amount_usd_invested": amount_usd,
                "buy_tx_ref": record.tx_ref,
            }
        )
        self.store.mark_receipt_applied(record.id, position_id)
        logger.warning("RECONCILE opened position=%s tx=%s tokens=%s", position_id, record.tx_ref, amount_token)
        await self._notify(
            "position_opened",
            {
                "position_id": position_id,
                "token_address": record.token_address,
                "chain_id": record.chain_id,
                "symbol": record.symbol,
                "tx_ref": record.tx_ref,
                "amount_usd_invested": amount_usd,
                "buy_price_usd": price_usd,
                "amount_token": amount_token,
                "reason": "buy_reconciled",
            },
        )
        return outcome("opened", position_id)

    async def _reconcile_sell(self, record: SwapReceiptRecord) -> ReconcileOutcome:
        def outcome(action: str, position_id: int | None = None, detail: str = "") -> ReconcileOutcome:
            return ReconcileOutcome(int(record.id), record.tx_ref, record.side, action, position_id, detail)

        position = self.store.get_by_id(record.position_id) if record.position_id else None
        if position is None:
            self.store.mark_receipt_applied(record.id)
            return outcome("skipped", record.position_id, "position_missing")
        if not position.is_open():
            self.store.mark_receipt_applied(record.id, position.id)
            if position.sell_tx_ref == record.tx_ref:
                return outcome("linked", position.id)
            return outcome("skipped", position.id, "already_closed")

        proceeds_usd = float(record.amount_usd or 0.0)
        invested = float(position.amount_usd_invested or 0.0)
        pnl = proceeds_usd - invested
        pnl_percentage = (pnl / invested * 100.0) if invested > 0 else 0.0
        self.store.transition_closed(position.id, record.tx_ref, pnl, pnl_percentage)
        self.store.mark_receipt_applied(record.id, position.id)
        logger.warning("RECONCILE closed position=%s tx=%s pnl=$%.2f", position.id, record.tx_ref, pnl)
        await self._notify(
            "position_closed",
            self._close_event(position, record.tx_ref, proceeds_usd, pnl, pnl_percentage, "reconciled"),
        )
        return outcome("closed", position.id)
