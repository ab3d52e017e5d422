"""Engine settings, read once from the environment (and .env files) at import time."""

import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _read_env_file(path: str | None = None, *, override: bool = False) -> None:
    # utf-8-sig tolerates a BOM in front of the first key
    try:
        load_dotenv(dotenv_path=path, override=override, encoding="utf-8-sig")
    except TypeError:
        load_dotenv(dotenv_path=path, override=override)


def _resolve_override_file(raw: str) -> Path | None:
    raw = raw.strip()
    if not raw:
        return None
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    if not path.exists():
        raise FileNotFoundError(f"ENGINE_ENV_FILE does not exist: {path}")
    if not path.is_file():
        raise IsADirectoryError(f"ENGINE_ENV_FILE is not a file: {path}")
    return path


_read_env_file()
_ENGINE_ENV_PATH = _resolve_override_file(os.getenv("ENGINE_ENV_FILE", ""))
if _ENGINE_ENV_PATH is not None:
    try:
        _read_env_file(str(_ENGINE_ENV_PATH), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load ENGINE_ENV_FILE '{_ENGINE_ENV_PATH}': {exc}") from exc


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except Exception:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_source_float_map(raw: str) -> Dict[str, float]:
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, value_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source:
            continue
        try:
            out[source] = max(0.0, float(value_part.strip()))
        except Exception:
            continue
    return out


def _parse_int_list(raw: str) -> list[int]:
    out: list[int] = []
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item:
            continue
        try:
            value = int(item)
        except ValueError:
            continue
        if value not in out:
            out.append(value)
    return out


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///positions.db")
ENGINE_INSTANCE_ID = os.getenv("ENGINE_INSTANCE_ID", "").strip()
RUN_TAG = os.getenv("RUN_TAG", ENGINE_INSTANCE_ID).strip()

# Chains the engine trades and refreshes. 56 = BSC, 8453 = Base, 999 = Solana.
TRADE_ENABLED_CHAINS = _parse_int_list(os.getenv("TRADE_ENABLED_CHAINS", "56")) or [56]
TRADE_AMOUNT_USD = max(0.01, float(os.getenv("TRADE_AMOUNT_USD", "10")))

DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex")
COINGECKO_API = os.getenv("COINGECKO_API", "https://api.coingecko.com/api/v3")
DEX_TIMEOUT = int(os.getenv("DEX_TIMEOUT", "10"))
DEX_RETRIES = int(os.getenv("DEX_RETRIES", "3"))
RATE_SOURCE_TIMEOUT = int(os.getenv("RATE_SOURCE_TIMEOUT", "10"))
RATE_CACHE_TTL_SECONDS = max(0, int(os.getenv("RATE_CACHE_TTL_SECONDS", "60")))

HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.00")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "90")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "HTTP_SOURCE_RATE_LIMITS",
        "dex_price:240/60,coingecko:20/60,jupiter:60/60",
    )
)
HTTP_SOURCE_429_COOLDOWNS = _parse_source_float_map(
    os.getenv(
        "HTTP_SOURCE_429_COOLDOWNS",
        "dex_price:20,coingecko:60,jupiter:10",
    )
)

# Conservative native-asset USD rates used when the rate source is unavailable.
NATIVE_PRICE_FALLBACK_USD: Dict[str, float] = {
    "BNB": float(os.getenv("NATIVE_PRICE_FALLBACK_USD_BNB", "300")),
    "ETH": float(os.getenv("NATIVE_PRICE_FALLBACK_USD_ETH", "3000")),
    "SOL": float(os.getenv("NATIVE_PRICE_FALLBACK_USD_SOL", "150")),
}

RPC_TIMEOUT_SECONDS = max(3, int(os.getenv("RPC_TIMEOUT_SECONDS", "10")))
BSC_RPC_URL = os.getenv("BSC_RPC_URL", "https://bsc-dataseed1.binance.org/").strip()
BASE_RPC_URL = os.getenv("BASE_RPC_URL", "https://mainnet.base.org").strip()
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com").strip()
JUPITER_API = os.getenv("JUPITER_API", "https://lite-api.jup.ag/swap/v1").strip().rstrip("/")

LIVE_WALLET_ADDRESS = os.getenv("LIVE_WALLET_ADDRESS", "").strip()
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "").strip()
SOLANA_PRIVATE_KEY = os.getenv("SOLANA_PRIVATE_KEY", "").strip()
LIVE_ROUTER_ADDRESS_BSC = os.getenv("LIVE_ROUTER_ADDRESS_BSC", "0x10ED43C718714eb63d5aA57B78B54704E256024E").strip()
LIVE_ROUTER_ADDRESS_BASE = os.getenv("LIVE_ROUTER_ADDRESS_BASE", "0x4752ba5DBc23f44D87826276BF6Fd6b1C372aD24").strip()
# Extra intermediates tried after the base asset when routing, comma separated.
LIVE_ROUTE_INTERMEDIATE_ADDRESSES = [
    x.strip()
    for x in os.getenv("LIVE_ROUTE_INTERMEDIATE_ADDRESSES", "").split(",")
    if x.strip()
]
LIVE_SLIPPAGE_BPS = max(1, min(9_999, int(os.getenv("LIVE_SLIPPAGE_BPS", "500"))))
LIVE_SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("LIVE_SWAP_DEADLINE_SECONDS", "1200")))
LIVE_TX_TIMEOUT_SECONDS = max(10, int(os.getenv("LIVE_TX_TIMEOUT_SECONDS", "120")))
LIVE_MAX_GAS_GWEI = float(os.getenv("LIVE_MAX_GAS_GWEI", "5.0"))
LIVE_PRIORITY_FEE_GWEI = float(os.getenv("LIVE_PRIORITY_FEE_GWEI", "0.10"))
LIVE_MAX_SWAP_GAS = max(50_000, int(os.getenv("LIVE_MAX_SWAP_GAS", "600000")))
# Native balance kept aside for gas on top of the buy amount.
LIVE_GAS_BUFFER_NATIVE: Dict[str, float] = {
    "BNB": float(os.getenv("LIVE_GAS_BUFFER_BNB", "0.003")),
    "ETH": float(os.getenv("LIVE_GAS_BUFFER_ETH", "0.0007")),
    "SOL": float(os.getenv("LIVE_GAS_BUFFER_SOL", "0.01")),
}
# Extra share of the shortfall bought during a reserve top-up, to absorb slippage.
LIVE_TOPUP_MARGIN_PERCENT = max(0.0, float(os.getenv("LIVE_TOPUP_MARGIN_PERCENT", "10")))
SOLANA_CONFIRM_POLL_SECONDS = max(0.2, float(os.getenv("SOLANA_CONFIRM_POLL_SECONDS", "2.0")))

STORE_WRITE_RETRIES = max(1, int(os.getenv("STORE_WRITE_RETRIES", "3")))
STORE_WRITE_RETRY_DELAY_SECONDS = max(0.0, float(os.getenv("STORE_WRITE_RETRY_DELAY_SECONDS", "0.5")))
# A timed-out swap the chain has never seen is dropped after this long.
SWAP_UNCONFIRMED_DROP_SECONDS = max(60, int(os.getenv("SWAP_UNCONFIRMED_DROP_SECONDS", "600")))

PRICE_REFRESH_INTERVAL_SECONDS = max(5, int(os.getenv("PRICE_REFRESH_INTERVAL_SECONDS", "45")))
PRICE_REFRESH_BATCH_SIZE = max(1, int(os.getenv("PRICE_REFRESH_BATCH_SIZE", "5")))
PRICE_REFRESH_BATCH_DELAY_SECONDS = max(0.0, float(os.getenv("PRICE_REFRESH_BATCH_DELAY_SECONDS", "1.0")))
PRICE_REFRESH_SELL_DELAY_SECONDS = max(0.0, float(os.getenv("PRICE_REFRESH_SELL_DELAY_SECONDS", "2.0")))
RECONCILE_ON_START = os.getenv("RECONCILE_ON_START", "true").lower() == "true"

# PROFIT_FLOOR_MODE:
# - relative: thresholds scale with the invested amount (5x / 10x)
# - fixed: legacy absolute thresholds ($50 -> $20, then floor(h/100)*50)
# - trailing: peak-based absolute floor (peak-5 from $20, peak-10 from $30)
PROFIT_FLOOR_MODE = os.getenv("PROFIT_FLOOR_MODE", "relative").strip().lower()

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = int(os.getenv("TELEGRAM_CHAT_ID", "0") or 0)
TRADE_EVENTS_FILE = os.getenv("TRADE_EVENTS_FILE", os.path.join("data", "trade_events.jsonl"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
