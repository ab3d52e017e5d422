"""UniswapV2-compatible router swaps (PancakeSwap on BSC, Uniswap V2 on Base)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from eth_account import Account
from web3 import HTTPProvider, Web3
from web3.contract import Contract
from web3.exceptions import TimeExhausted, TransactionNotFound

import config
from trading.chains import NATIVE, ChainSpec
from trading.errors import InsufficientFunds, SwapReverted, SwapTimeout, TradeError
from trading.swap_provider import (
    TX_CONFIRMED,
    TX_FAILED,
    TX_NOT_FOUND,
    TX_PENDING,
    Quote,
    SwapProvider,
    SwapReceipt,
)

logger = logging.getLogger(__name__)

MAX_UINT256 = (2**256) - 1
GAS_LIMIT_MULTIPLIER = 1.15
BALANCE_PREFLIGHT_MULTIPLIER = 1.20

ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "spender", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

_SWAP_ARGS = [
    {"name": "amountOutMin", "type": "uint256"},
    {"name": "path", "type": "address[]"},
    {"name": "to", "type": "address"},
    {"name": "deadline", "type": "uint256"},
]

ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
    {
        "name": "swapExactETHForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "payable",
        "inputs": _SWAP_ARGS,
        "outputs": [],
    },
    {
        "name": "swapExactTokensForETHSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amountIn", "type": "uint256"}] + _SWAP_ARGS,
        "outputs": [],
    },
    {
        "name": "swapExactTokensForTokensSupportingFeeOnTransferTokens",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "amountIn", "type": "uint256"}] + _SWAP_ARGS,
        "outputs": [],
    },
]

ROUTER_ADDRESS_BY_CHAIN = {
    56: "LIVE_ROUTER_ADDRESS_BSC",
    8453: "LIVE_ROUTER_ADDRESS_BASE",
}

RPC_URL_BY_CHAIN = {
    56: "BSC_RPC_URL",
    8453: "BASE_RPC_URL",
}


class EvmRouterProvider(SwapProvider):
    family = "evm"

    def __init__(
        self,
        chain: ChainSpec,
        w3: Web3,
        account: Any,
        router_address: str,
        intermediates: Iterable[str] = (),
    ) -> None:
        super().__init__(chain, intermediates)
        self.w3 = w3
        self.account = account
        self.wallet = self.w3.to_checksum_address(account.address)
        self.router_address = self.w3.to_checksum_address(router_address)
        self.router: Contract = self.w3.eth.contract(address=self.router_address, abi=ROUTER_ABI)
        self._decimals_cache: dict[str, int] = {}

    @classmethod
    def from_config(cls, chain: ChainSpec, **_: Any) -> "EvmRouterProvider":
        if not config.LIVE_PRIVATE_KEY:
            raise ValueError("LIVE_PRIVATE_KEY is empty")
        rpc = str(getattr(config, RPC_URL_BY_CHAIN.get(chain.chain_id, ""), "") or "").strip()
        if not rpc:
            raise ValueError(f"RPC url is empty for chain {chain.name}")
        router = str(getattr(config, ROUTER_ADDRESS_BY_CHAIN.get(chain.chain_id, ""), "") or "").strip()
        if not router:
            raise ValueError(f"router address is empty for chain {chain.name}")

        w3 = Web3(HTTPProvider(rpc, request_kwargs={"timeout": config.RPC_TIMEOUT_SECONDS}))
        account = Account.from_key(config.LIVE_PRIVATE_KEY)
        if config.LIVE_WALLET_ADDRESS and account.address.lower() != config.LIVE_WALLET_ADDRESS.lower():
            raise ValueError("LIVE_WALLET_ADDRESS does not match LIVE_PRIVATE_KEY")
        return cls(chain, w3, account, router, intermediates=config.LIVE_ROUTE_INTERMEDIATE_ADDRESSES)

    def _router_asset(self, asset: str) -> str:
        return self.w3.to_checksum_address(self._resolve(asset))

    def _token(self, asset: str) -> Contract:
        return self.w3.eth.contract(address=self.w3.to_checksum_address(asset), abi=ERC20_ABI)

    # Reads

    async def _quote_path(self, path: tuple[str, ...], amount_in: int) -> tuple[int, Any]:
        return await asyncio.to_thread(self._quote_path_sync, path, amount_in)

    def _quote_path_sync(self, path: tuple[str, ...], amount_in: int) -> tuple[int, Any]:
        try:
            router_path = [self._router_asset(asset) for asset in path]
            amounts = self.router.functions.getAmountsOut(int(amount_in), router_path).call()
        except Exception as exc:
            logger.debug("SWAP quote_failed chain=%s path=%s err=%s", self.chain_id, "->".join(path), exc)
            return 0, None
        if not isinstance(amounts, (list, tuple)) or len(amounts) < 2:
            return 0, None
        return max(0, int(amounts[-1])), None

    async def balance_of(self, asset: str) -> int:
        return await asyncio.to_thread(self._balance_of_sync, asset)

    def _balance_of_sync(self, asset: str) -> int:
        if asset == NATIVE:
            return int(self.w3.eth.get_balance(self.wallet))
        return int(self._token(asset).functions.balanceOf(self.wallet).call())

    async def decimals(self, asset: str) -> int:
        return await asyncio.to_thread(self._decimals_sync, asset)

    def _decimals_sync(self, asset: str) -> int:
        """Best-effort ERC20 decimals() with a safe fallback."""
        if asset == NATIVE:
            return int(self.chain.native_decimals)
        key = asset.lower()
        cached = self._decimals_cache.get(key)
        if cached is not None:
            return cached
        try:
            dec = int(self._token(asset).functions.decimals().call())
        except Exception:
            logger.warning("SWAP decimals_fallback chain=%s token=%s", self.chain_id, asset)
            return 18
        if not 0 <= dec <= 255:
            return 18
        self._decimals_cache[key] = dec
        return dec

    async def confirm(self, tx_ref: str) -> str:
        return await asyncio.to_thread(self._confirm_sync, tx_ref)

    def _confirm_sync(self, tx_ref: str) -> str:
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_ref)
        except TransactionNotFound:
            receipt = None
        if receipt is not None:
            return TX_CONFIRMED if int(receipt.get("status", 0)) == 1 else TX_FAILED
        try:
            self.w3.eth.get_transaction(tx_ref)
        except TransactionNotFound:
            return TX_NOT_FOUND
        return TX_PENDING

    # Writes

    async def authorize(self, asset: str, amount: int) -> str | None:
        if asset == NATIVE:
            return None
        return await asyncio.to_thread(self._ensure_allowance, asset, int(amount))

    def _ensure_allowance(self, asset: str, required_amount: int) -> str | None:
        token_contract = self._token(asset)
        allowance = int(token_contract.functions.allowance(self.wallet, self.router_address).call())
        if allowance >= required_amount:
            return None
        approve_tx = token_contract.functions.approve(self.router_address, MAX_UINT256).build_transaction(
            self._tx_params()
        )
        tx_ref = self._send_and_wait(approve_tx)
        logger.info("SWAP approve chain=%s token=%s spender=%s tx=%s", self.chain_id, asset, self.router_address, tx_ref)
        return tx_ref

    async def swap(self, quote: Quote, min_amount_out: int, recipient: str | None, deadline: int) -> SwapReceipt:
        return await asyncio.to_thread(self._swap_sync, quote, int(min_amount_out), recipient, int(deadline))

    def _swap_sync(self, quote: Quote, amount_out_min: int, recipient: str | None, deadline: int) -> SwapReceipt:
        to = self.w3.to_checksum_address(recipient) if recipient else self.wallet
        router_path = [self._router_asset(asset) for asset in quote.path]
        fns = self.router.functions
        if quote.in_asset == NATIVE:
            call = fns.swapExactETHForTokensSupportingFeeOnTransferTokens(amount_out_min, router_path, to, deadline)
            value = int(quote.amount_in)
        elif quote.out_asset == NATIVE:
            call = fns.swapExactTokensForETHSupportingFeeOnTransferTokens(
                int(quote.amount_in), amount_out_min, router_path, to, deadline
            )
            value = 0
        else:
            call = fns.swapExactTokensForTokensSupportingFeeOnTransferTokens(
                int(quote.amount_in), amount_out_min, router_path, to, deadline
            )
            value = 0

        measure_out = to == self.wallet
        out_before = self._balance_of_sync(quote.out_asset) if measure_out else 0
        tx = call.build_transaction(self._tx_params(value_wei=value))
        tx_ref, receipt = self._send_and_wait_receipt(tx)

        amount_out = int(amount_out_min) if measure_out else int(quote.amount_out)
        if measure_out:
            try:
                out_after = self._balance_of_sync(quote.out_asset)
            except Exception as exc:
                # The swap is mined; report the guaranteed minimum rather than lose the receipt.
                logger.warning("SWAP output_read_failed chain=%s tx=%s err=%s using=min_out", self.chain_id, tx_ref, exc)
            else:
                received = out_after - out_before
                if quote.out_asset == NATIVE:
                    # Gas for this tx was paid from the measured balance.
                    received += int(receipt.get("gasUsed", 0) or 0) * int(receipt.get("effectiveGasPrice", 0) or 0)
                amount_out = max(0, int(received))

        if quote.in_asset == NATIVE:
            token_amount = amount_out
        else:
            token_amount = int(quote.amount_in)
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

    def _tx_params(self, value_wei: int = 0) -> dict[str, Any]:
        pending_nonce = self.w3.eth.get_transaction_count(self.wallet, "pending")
        latest = self.w3.eth.get_block("latest")
        base_fee = int(latest.get("baseFeePerGas") or 0)
        priority = int(self.w3.to_wei(max(0.0, float(config.LIVE_PRIORITY_FEE_GWEI)), "gwei"))
        cap = int(self.w3.to_wei(max(0.0, float(config.LIVE_MAX_GAS_GWEI)), "gwei"))
        if cap <= 0:
            # Never send a live tx with an unbounded fee cap.
            cap = int(self.w3.to_wei(1, "gwei"))

        observed_gas_price = int(self.w3.eth.gas_price or 0)
        if observed_gas_price > cap:
            obs_gwei = float(self.w3.from_wei(observed_gas_price, "gwei"))
            cap_gwei = float(self.w3.from_wei(cap, "gwei"))
            raise TradeError(f"gas_price_too_high observed_gwei={obs_gwei:.3f} cap_gwei={cap_gwei:.3f}")

        # Max fee stays <= cap and >= observed gas price so the tx isn't immediately underpriced.
        max_fee = min(cap, max(observed_gas_price, (base_fee * 2) + priority))
        if max_fee <= 0:
            max_fee = min(cap, int(self.w3.to_wei(1, "gwei")))

        return {
            "from": self.wallet,
            "chainId": int(self.chain.chain_id),
            "nonce": pending_nonce,
            "value": int(value_wei),
            "maxFeePerGas": max_fee,
            "maxPriorityFeePerGas": min(priority, max_fee),
            "type": 2,
        }

    def _send_and_wait(self, tx: dict[str, Any]) -> str:
        tx_ref, _ = self._send_and_wait_receipt(tx)
        return tx_ref

    def _send_and_wait_receipt(self, tx: dict[str, Any]) -> tuple[str, Any]:
        try:
            gas = self.w3.eth.estimate_gas(tx)
        except Exception as exc:
            raise TradeError(f"gas_estimate_failed chain={self.chain_id}: {exc}") from exc
        gas_cap = int(getattr(config, "LIVE_MAX_SWAP_GAS", 0) or 0)
        gas_limit = int(gas * GAS_LIMIT_MULTIPLIER)
        if gas_cap > 0 and gas_limit > gas_cap:
            raise TradeError(f"gas_estimate_too_high gas={gas_limit} cap={gas_cap}")
        tx["gas"] = gas_limit

        # Worst case maxFeePerGas * gas + value must be affordable, with headroom for L1 data fees.
        bal = int(self.w3.eth.get_balance(self.wallet))
        max_fee = int(tx.get("maxFeePerGas") or 0)
        value = int(tx.get("value") or 0)
        buffered = int(((gas_limit * max_fee) + value) * BALANCE_PREFLIGHT_MULTIPLIER)
        if buffered > bal:
            raise InsufficientFunds(
                f"insufficient_balance_for_tx chain={self.chain_id} have_wei={bal} want_wei={buffered} "
                f"gas={gas_limit} value_wei={value}"
            )

        signed = self.account.sign_transaction(tx)
        raw_tx = getattr(signed, "raw_transaction", None)
        if raw_tx is None:
            raw_tx = getattr(signed, "rawTransaction", None)
        if raw_tx is None:
            raise TradeError("signed_tx_missing_raw_bytes")
        tx_hash = self.w3.eth.send_raw_transaction(raw_tx)
        tx_ref = self.w3.to_hex(tx_hash)
        timeout = int(config.LIVE_TX_TIMEOUT_SECONDS)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        except TimeExhausted as exc:
            raise SwapTimeout(tx_ref, float(timeout)) from exc
        except Exception as exc:
            # Sent but unobservable: the outcome is as unknown as a timeout.
            logger.warning("SWAP receipt_lookup_failed chain=%s tx=%s err=%s", self.chain_id, tx_ref, exc)
            raise SwapTimeout(tx_ref, float(timeout)) from exc
        if int(receipt.get("status", 0)) != 1:
            raise SwapReverted(tx_ref, f"chain={self.chain_id}")
        return tx_ref, receipt
