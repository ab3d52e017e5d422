"""Stable JSON shapes for trade lifecycle events."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

from utils.addressing import normalize_address

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_TRADE_EVENT = "trade_event.v1"

STAGE_OPEN = "trade_open"
STAGE_CLOSE = "trade_close"

_STAGE_PREFIX: dict[str, str] = {
    STAGE_OPEN: "EXEC",
    STAGE_CLOSE: "EXIT",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "EXEC_BUY": {"severity": "INFO", "category": "execute", "title": "Position opened"},
    "EXEC_BUY_RECONCILED": {"severity": "WARN", "category": "execute", "title": "Position recovered from swap journal"},
    "EXIT_PROFIT_FLOOR": {"severity": "INFO", "category": "exit", "title": "Closed at profit floor"},
    "EXIT_MANUAL": {"severity": "INFO", "category": "exit", "title": "Closed on request"},
    "EXIT_RECONCILED": {"severity": "WARN", "category": "exit", "title": "Close recovered from swap journal"},
}


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)


def _as_ts(value: Any) -> float:
    if value is None or value == "":
        return datetime.now(timezone.utc).timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    try:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc).timestamp()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _sanitize_code_token(value: Any) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or "UNKNOWN"


def reason_code_for_event(*, reason: Any, stage: Any) -> str:
    prefix = _STAGE_PREFIX.get(str(stage or ""), "UNKNOWN")
    return f"{prefix}_{_sanitize_code_token(reason)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {
        "severity": "INFO",
        "category": "unknown",
        "title": key.replace("_", " ").title(),
    }


def _event_id(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return "evt_" + hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def _stamp(event: dict[str, Any], *, stage: str, run_tag: str, default_reason: str) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts", payload.get("timestamp")))
    payload["ts"] = float(ts)
    payload["timestamp"] = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", SCHEMA_TRADE_EVENT)
    payload["stage"] = stage
    if run_tag:
        payload.setdefault("run_tag", str(run_tag))
    payload["token_address"] = normalize_address(payload.get("token_address", ""))
    payload["chain_id"] = int(payload.get("chain_id", 0) or 0)
    payload["symbol"] = str(payload.get("symbol", "") or "N/A")
    payload["reason"] = str(payload.get("reason", "") or default_reason).strip().lower()
    payload["reason_code"] = str(
        payload.get("reason_code", "") or reason_code_for_event(reason=payload["reason"], stage=stage)
    ).upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    payload["event_id"] = _event_id(stage, payload.get("position_id", ""), payload.get("tx_ref", ""))
    return payload


def trade_open_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = _stamp(event, stage=STAGE_OPEN, run_tag=run_tag, default_reason="buy")
    payload["position_id"] = int(payload.get("position_id", 0) or 0)
    payload["tx_ref"] = str(payload.get("tx_ref", "") or "")
    payload["amount_usd_invested"] = _safe_float(payload.get("amount_usd_invested"))
    payload["buy_price_usd"] = _safe_float(payload.get("buy_price_usd"))
    payload["amount_token"] = str(payload.get("amount_token", "0") or "0")
    return payload


def trade_close_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = _stamp(event, stage=STAGE_CLOSE, run_tag=run_tag, default_reason="manual")
    payload["position_id"] = int(payload.get("position_id", 0) or 0)
    payload["tx_ref"] = str(payload.get("tx_ref", "") or "")
    payload["amount_usd_invested"] = _safe_float(payload.get("amount_usd_invested"))
    payload["proceeds_usd"] = _safe_float(payload.get("proceeds_usd"))
    payload["pnl"] = _safe_float(payload.get("pnl"))
    payload["pnl_percentage"] = _safe_float(payload.get("pnl_percentage"))
    payload["highest_price_ever"] = _safe_float(payload.get("highest_price_ever"))
    payload["profit_floor"] = _safe_float(payload.get("profit_floor"))
    return payload
