"""Jupiter aggregator swaps on Solana."""

from __future__ import annotations

import asyncio
import base64
import logging
import time
from typing import Any, Iterable

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

import config
from trading.chains import NATIVE, ChainSpec
from trading.errors import NoRoute, SwapReverted, SwapTimeout, TradeError
from trading.swap_provider import (
    BPS_DENOMINATOR,
    TX_CONFIRMED,
    TX_FAILED,
    TX_NOT_FOUND,
    TX_PENDING,
    Quote,
    SwapProvider,
    SwapReceipt,
)
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

JUPITER_SOURCE = "jupiter"


class JupiterAggregatorProvider(SwapProvider):
    """Account-model aggregator.

    Jupiter picks the hops itself, so the two candidates are a single-pool route
    (``onlyDirectRoutes=true``) and then an unrestricted multi-hop route. The
    executed path is read back from the quote's ``routePlan``.
    """

    family = "solana"

    def __init__(
        self,
        chain: ChainSpec,
        http: ResilientHttpClient,
        rpc: AsyncClient,
        keypair: Keypair,
        api_base: str,
        intermediates: Iterable[str] = (),
        owns_http: bool = False,
    ) -> None:
        super().__init__(chain, intermediates)
        self._http = http
        self._owns_http = owns_http
        self.rpc = rpc
        self.keypair = keypair
        self.wallet = str(keypair.pubkey())
        self.api_base = api_base.rstrip("/")
        self._decimals_cache: dict[str, int] = {}

    @classmethod
    def from_config(cls, chain: ChainSpec, http: ResilientHttpClient | None = None, **_: Any) -> "JupiterAggregatorProvider":
        if not config.SOLANA_PRIVATE_KEY:
            raise ValueError("SOLANA_PRIVATE_KEY is empty")
        if not config.SOLANA_RPC_URL:
            raise ValueError("SOLANA_RPC_URL is empty")
        owns_http = http is None
        if http is None:
            http = ResilientHttpClient(timeout_seconds=float(config.DEX_TIMEOUT), source_limits={JUPITER_SOURCE: 4})
        rpc = AsyncClient(config.SOLANA_RPC_URL, commitment=Confirmed, timeout=float(config.RPC_TIMEOUT_SECONDS))
        keypair = Keypair.from_base58_string(config.SOLANA_PRIVATE_KEY)
        return cls(chain, http, rpc, keypair, config.JUPITER_API, owns_http=owns_http)

    def _mint(self, asset: str) -> str:
        return self._resolve(asset)

    # Reads

    async def quote(self, in_asset: str, out_asset: str, amount_in: int) -> Quote:
        amount = int(amount_in)
        if amount <= 0:
            raise ValueError("amount_in must be positive")
        for only_direct in (True, False):
            data = await self._fetch_quote(in_asset, out_asset, amount, only_direct=only_direct)
            if not data:
                continue
            try:
                amount_out = int(data.get("outAmount") or 0)
            except (TypeError, ValueError):
                amount_out = 0
            if amount_out <= 0:
                continue
            path = self._path_from_route(in_asset, out_asset, data)
            logger.info(
                "SWAP quote chain=%s path=%s direct=%s amount_in=%s amount_out=%s",
                self.chain_id,
                "->".join(path),
                only_direct,
                amount,
                amount_out,
            )
            return Quote(
                chain_id=self.chain_id,
                in_asset=in_asset,
                out_asset=out_asset,
                amount_in=amount,
                amount_out=amount_out,
                path=path,
                route=data,
            )
        raise NoRoute(f"no route chain={self.chain_id} in={in_asset} out={out_asset} amount_in={amount}")

    async def _fetch_quote(self, in_asset: str, out_asset: str, amount: int, *, only_direct: bool) -> dict | None:
        params = {
            "inputMint": self._mint(in_asset),
            "outputMint": self._mint(out_asset),
            "amount": str(amount),
            "slippageBps": str(int(config.LIVE_SLIPPAGE_BPS)),
            "onlyDirectRoutes": "true" if only_direct else "false",
        }
        result = await self._http.get_json(f"{self.api_base}/quote", source=JUPITER_SOURCE, params=params)
        if not result.ok or not isinstance(result.data, dict):
            logger.debug(
                "SWAP quote_failed chain=%s direct=%s status=%s err=%s",
                self.chain_id,
                only_direct,
                result.status,
                result.error,
            )
            return None
        return result.data

    def _path_from_route(self, in_asset: str, out_asset: str, data: dict) -> tuple[str, ...]:
        path = [in_asset]
        in_mint = self._mint(in_asset)
        out_mint = self._mint(out_asset)
        for step in data.get("routePlan") or []:
            hop = str((step.get("swapInfo") or {}).get("outputMint") or "")
            if hop and hop not in (in_mint, out_mint) and hop not in path:
                path.append(hop)
        path.append(out_asset)
        return tuple(path)

    async def balance_of(self, asset: str) -> int:
        owner = self.keypair.pubkey()
        if asset == NATIVE:
            resp = await self.rpc.get_balance(owner)
            return int(resp.value)
        resp = await self.rpc.get_token_accounts_by_owner_json_parsed(
            owner, TokenAccountOpts(mint=Pubkey.from_string(asset))
        )
        total = 0
        for item in resp.value or []:
            parsed = getattr(item.account.data, "parsed", None) or {}
            amount = ((parsed.get("info") or {}).get("tokenAmount") or {}).get("amount", "0")
            total += int(amount or 0)
        return total

    async def decimals(self, asset: str) -> int:
        if asset == NATIVE or asset == self.chain.base_asset:
            return int(self.chain.native_decimals)
        cached = self._decimals_cache.get(asset)
        if cached is not None:
            return cached
        try:
            resp = await self.rpc.get_token_supply(Pubkey.from_string(asset))
            dec = int(resp.value.decimals)
        except Exception:
            logger.warning("SWAP decimals_fallback chain=%s mint=%s", self.chain_id, asset)
            return 18
        self._decimals_cache[asset] = dec
        return dec

    # Writes

    async def authorize(self, asset: str, amount: int) -> str | None:
        # SPL swaps are signed by the owner in the same tx; nothing to approve.
        return None

    async def swap(self, quote: Quote, min_amount_out: int, recipient: str | None, deadline: int) -> SwapReceipt:
        if recipient and recipient != self.wallet:
            raise ValueError("Jupiter swaps settle to the signing wallet only")
        if not isinstance(quote.route, dict):
            raise ValueError("quote has no Jupiter route payload")
        if time.time() >= int(deadline):
            raise TradeError(f"swap deadline passed chain={self.chain_id}")

        route = dict(quote.route)
        expected = max(1, int(quote.amount_out))
        route["otherAmountThreshold"] = str(int(min_amount_out))
        route["slippageBps"] = max(0, ((expected - int(min_amount_out)) * BPS_DENOMINATOR + expected - 1) // expected)
        payload = {
            "quoteResponse": route,
            "userPublicKey": self.wallet,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        result = await self._http.post_json(
            f"{self.api_base}/swap",
            source=JUPITER_SOURCE,
            payload=payload,
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict) or not result.data.get("swapTransaction"):
            raise TradeError(f"jupiter swap build failed status={result.status} err={result.error}")

        out_before = await self.balance_of(quote.out_asset)
        raw_tx = VersionedTransaction.from_bytes(base64.b64decode(result.data["swapTransaction"]))
        signed = VersionedTransaction(raw_tx.message, [self.keypair])
        resp = await self.rpc.send_raw_transaction(bytes(signed), opts=TxOpts(skip_preflight=False, max_retries=3))
        signature = resp.value
        tx_ref = str(signature)

        wait_limit = min(float(config.LIVE_TX_TIMEOUT_SECONDS), max(1.0, float(deadline) - time.time()))
        await self._wait_confirmed(signature, tx_ref, wait_limit)

        try:
            out_after = await self.balance_of(quote.out_asset)
        except Exception as exc:
            # The swap landed; report the guaranteed minimum rather than lose the receipt.
            logger.warning("SWAP output_read_failed chain=%s tx=%s err=%s using=min_out", self.chain_id, tx_ref, exc)
            amount_out = int(min_amount_out)
        else:
            amount_out = max(0, out_after - out_before)
        token_amount = amount_out if quote.in_asset == NATIVE else int(quote.amount_in)
        logger.info(
            "SWAP executed chain=%s path=%s amount_in=%s amount_out=%s tx=%s",
            self.chain_id,
            "->".join(quote.path),
            quote.amount_in,
            amount_out,
            tx_ref,
        )
        return SwapReceipt(
            tx_ref=tx_ref,
            path=tuple(quote.path),
            amount_in=int(quote.amount_in),
            amount_out=amount_out,
            token_amount=token_amount,
        )

    async def _signature_state(self, signature: Signature, *, history: bool = False) -> tuple[str, Any]:
        resp = await self.rpc.get_signature_statuses([signature], search_transaction_history=history)
        status = (resp.value or [None])[0]
        if status is None:
            return TX_NOT_FOUND, None
        if status.err is not None:
            return TX_FAILED, status.err
        level = str(status.confirmation_status or "").lower()
        if level.endswith(("confirmed", "finalized")):
            return TX_CONFIRMED, None
        return TX_PENDING, None

    async def _wait_confirmed(self, signature: Signature, tx_ref: str, wait_limit: float) -> None:
        poll = float(config.SOLANA_CONFIRM_POLL_SECONDS)
        started = time.monotonic()
        while time.monotonic() - started < wait_limit:
            try:
                state, err = await self._signature_state(signature)
            except Exception as exc:
                logger.warning("SWAP status_poll_failed chain=%s tx=%s err=%s", self.chain_id, tx_ref, exc)
            else:
                if state == TX_FAILED:
                    raise SwapReverted(tx_ref, f"chain={self.chain_id} err={err}")
                if state == TX_CONFIRMED:
                    return
            await asyncio.sleep(poll)
        raise SwapTimeout(tx_ref, wait_limit)

    async def confirm(self, tx_ref: str) -> str:
        state, _ = await self._signature_state(Signature.from_string(tx_ref), history=True)
        return state

    async def close(self) -> None:
        await self.rpc.close()
        if self._owns_http:
            await self._http.close()
