"""Shared aiohttp client: per-source concurrency, call windows, 429 cooldowns and retry with backoff."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

UNLIMITED_CALLS = 1_000_000


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    limiter_waits: int = 0
    cooldown_waits: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def observe_latency(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_total_ms += elapsed_ms
        self.latency_count += 1
        self.latency_max_ms = max(self.latency_max_ms, elapsed_ms)


@dataclass
class _SourceGate:
    """Throttling state for one upstream (dex_price, coingecko, jupiter, ...)."""

    name: str
    semaphore: asyncio.Semaphore
    max_calls: int
    window_seconds: float
    cooldown_seconds: float
    calls: deque[float] = field(default_factory=deque)
    window_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cooldown_until: float = 0.0
    stats: HttpSourceStats = field(default_factory=HttpSourceStats)

    async def wait_turn(self, url: str) -> None:
        await self._wait_cooldown(url)
        await self._wait_window(url)

    async def _wait_cooldown(self, url: str) -> None:
        while True:
            remaining = self.cooldown_until - time.monotonic()
            if remaining <= 0:
                return
            self.stats.cooldown_waits += 1
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs url=%s", self.name, remaining, url)
            await asyncio.sleep(max(0.01, remaining))

    async def _wait_window(self, url: str) -> None:
        if self.max_calls >= UNLIMITED_CALLS:
            return
        while True:
            async with self.window_lock:
                now = time.monotonic()
                while self.calls and self.calls[0] <= now - self.window_seconds:
                    self.calls.popleft()
                if len(self.calls) < self.max_calls:
                    self.calls.append(now)
                    return
                wait_for = max(0.01, self.calls[0] + self.window_seconds - now)
            self.stats.limiter_waits += 1
            logger.debug(
                "HTTP_RATE_WAIT source=%s wait=%.2fs window=%ss max_calls=%s url=%s",
                self.name,
                wait_for,
                self.window_seconds,
                self.max_calls,
                url,
            )
            await asyncio.sleep(wait_for)

    def start_cooldown(self, retry_after_header: str | None) -> None:
        try:
            retry_after = max(0.0, float(retry_after_header or 0))
        except ValueError:
            retry_after = 0.0
        seconds = max(self.cooldown_seconds, retry_after)
        if seconds > 0:
            self.cooldown_until = max(self.cooldown_until, time.monotonic() + seconds)


def _source_key(source: str) -> str:
    return str(source or "default").strip().lower() or "default"


def _backoff_delay(attempt: int, status: int) -> float:
    base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5))
    cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
    jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.25))
    delay = min(cap, base * (2 ** max(0, attempt - 1)))
    if status == 429:
        delay = min(cap, delay + max(0.0, float(getattr(config, "HTTP_RATE_LIMIT_DELAY_SECONDS", 2.0) or 2.0)))
    return max(0.01, delay + random.uniform(0.0, jitter))


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = {_source_key(k): int(v) for k, v in (source_limits or {}).items()}
        self._session: aiohttp.ClientSession | None = None
        self._gates: dict[str, _SourceGate] = {}

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _gate(self, source: str) -> _SourceGate:
        key = _source_key(source)
        gate = self._gates.get(key)
        if gate is not None:
            return gate
        concurrency = self._source_limits.get(key, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
        max_calls, window_seconds = (getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}).get(
            key, (UNLIMITED_CALLS, 1.0)
        )
        cooldowns = getattr(config, "HTTP_SOURCE_429_COOLDOWNS", {}) or {}
        cooldown = cooldowns.get(key, getattr(config, "HTTP_429_COOLDOWN_SECONDS", 90.0))
        gate = _SourceGate(
            name=key,
            semaphore=asyncio.Semaphore(max(1, int(concurrency))),
            max_calls=max(1, int(max_calls)),
            window_seconds=max(1.0, float(window_seconds)),
            cooldown_seconds=max(0.0, float(cooldown or 0.0)),
        )
        self._gates[key] = gate
        return gate

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        """Per-source counters, logged once per refresh cycle."""
        out: dict[str, dict[str, int | float]] = {}
        now = time.monotonic()
        for key, gate in self._gates.items():
            row = gate.stats
            total = row.ok + row.fail
            out[key] = {
                "ok": row.ok,
                "fail": row.fail,
                "rate_limited": row.rate_limited,
                "retries": row.retries,
                "error_percent": round(row.fail / total * 100.0, 2) if total else 0.0,
                "cooldown_remaining_sec": round(max(0.0, gate.cooldown_until - now), 2),
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
            }
            if reset:
                gate.stats = HttpSourceStats()
        return out

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request_json("GET", url, source, params=params, headers=headers, max_attempts=max_attempts)

    async def post_json(
        self,
        url: str,
        *,
        source: str = "default",
        payload: Any = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        return await self._request_json("POST", url, source, payload=payload, headers=headers, max_attempts=max_attempts)

    async def _request_json(
        self,
        method: str,
        url: str,
        source: str,
        *,
        params: dict[str, Any] | None = None,
        payload: Any = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3))
        req_headers = {**self._headers, **(headers or {})}
        gate = self._gate(source)
        stats = gate.stats

        for attempt in range(1, attempts + 1):
            status = 0
            await gate.wait_turn(url)
            async with gate.semaphore:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.request(method, url, params=params, json=payload, headers=req_headers) as resp:
                        stats.observe_latency(started)
                        status = int(resp.status or 0)
                        if status == 200:
                            data = await resp.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=data)
                        if status == 429:
                            stats.rate_limited += 1
                            gate.start_cooldown((resp.headers or {}).get("Retry-After"))
                        retryable = status == 429 or 500 <= status <= 599
                        if not retryable or attempt >= attempts:
                            stats.fail += 1
                            return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    stats.observe_latency(started)
                    if attempt >= attempts:
                        stats.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            stats.retries += 1
            delay = _backoff_delay(attempt, status)
            logger.debug(
                "HTTP_RETRY source=%s method=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                gate.name,
                method,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
