from __future__ import annotations

import unittest
from typing import Any

from trading.chains import NATIVE, get_chain
from trading.errors import NoRoute, UnsupportedChain
from trading.registry import build_registry
from trading.swap_provider import SwapProviderRegistry, min_amount_out
from fakes import BSC, TOKEN_A, TOKEN_B, FakeProvider

USDT = BSC.extra_intermediates[0]


class MinAmountOutTests(unittest.TestCase):
    def test_applies_slippage_with_floor_division(self) -> None:
        self.assertEqual(min_amount_out(1_000_000, 500), 950_000)
        self.assertEqual(min_amount_out(999, 100), 989)
        self.assertEqual(min_amount_out(1_000, 0), 1_000)

    def test_never_returns_zero(self) -> None:
        self.assertEqual(min_amount_out(1, 9_999), 1)
        self.assertEqual(min_amount_out(0, 500), 1)

    def test_rejects_out_of_range_slippage(self) -> None:
        for bps in (-1, 10_000, 20_000):
            with self.subTest(bps=bps):
                with self.assertRaises(ValueError):
                    min_amount_out(1_000, bps)


class CandidatePathTests(unittest.TestCase):
    def test_direct_first_then_base_then_extras(self) -> None:
        provider = FakeProvider()

        paths = provider.candidate_paths(TOKEN_A, TOKEN_B)

        self.assertEqual(
            paths,
            [
                (TOKEN_A, TOKEN_B),
                (TOKEN_A, BSC.base_asset, TOKEN_B),
                (TOKEN_A, USDT, TOKEN_B),
            ],
        )

    def test_base_asset_is_not_an_intermediate_for_native(self) -> None:
        provider = FakeProvider()

        paths = provider.candidate_paths(NATIVE, TOKEN_A)

        self.assertEqual(paths, [(NATIVE, TOKEN_A), (NATIVE, USDT, TOKEN_A)])

    def test_configured_intermediates_are_deduplicated(self) -> None:
        provider = FakeProvider(BSC, [USDT.lower(), "0x4444444444444444444444444444444444444444"])

        self.assertEqual(provider.intermediates, (USDT, "0x4444444444444444444444444444444444444444"))


class QuoteTests(unittest.IsolatedAsyncioTestCase):
    async def test_direct_quote_wins_when_available(self) -> None:
        provider = FakeProvider()
        provider.outputs[(TOKEN_A, TOKEN_B)] = 500

        quote = await provider.quote(TOKEN_A, TOKEN_B, 1_000)

        self.assertEqual(quote.path, (TOKEN_A, TOKEN_B))
        self.assertEqual((quote.amount_in, quote.amount_out), (1_000, 500))
        self.assertEqual(quote.chain_id, 56)

    async def test_falls_back_to_routed_path(self) -> None:
        provider = FakeProvider()
        provider.outputs[(TOKEN_A, TOKEN_B)] = 500
        provider.blocked_paths.update({(TOKEN_A, TOKEN_B), (TOKEN_A, BSC.base_asset, TOKEN_B)})

        quote = await provider.quote(TOKEN_A, TOKEN_B, 1_000)

        self.assertEqual(quote.path, (TOKEN_A, USDT, TOKEN_B))

    async def test_no_candidate_raises_no_route(self) -> None:
        provider = FakeProvider()

        with self.assertRaises(NoRoute):
            await provider.quote(TOKEN_A, TOKEN_B, 1_000)

    async def test_non_positive_amount_is_rejected(self) -> None:
        provider = FakeProvider()

        with self.assertRaises(ValueError):
            await provider.quote(TOKEN_A, TOKEN_B, 0)

    async def test_native_balance_reads_native_asset(self) -> None:
        provider = FakeProvider()
        provider.balances[NATIVE] = 42

        self.assertEqual(await provider.native_balance(), 42)


class _ClosingProvider(FakeProvider):
    async def close(self) -> None:
        raise RuntimeError("socket already closed")


class _ConfiguredProvider(FakeProvider):
    built: list[tuple[int, Any]] = []

    @classmethod
    def from_config(cls, chain, **kwargs: Any) -> "_ConfiguredProvider":
        cls.built.append((chain.chain_id, kwargs.get("http")))
        return cls(chain)


class RegistryTests(unittest.IsolatedAsyncioTestCase):
    async def test_unknown_chain_is_unsupported(self) -> None:
        registry = SwapProviderRegistry({56: FakeProvider()})

        with self.assertRaises(UnsupportedChain):
            registry.get(8453)
        self.assertEqual(registry.chain_ids(), [56])

    async def test_close_continues_past_failing_provider(self) -> None:
        healthy = FakeProvider(get_chain(8453))
        registry = SwapProviderRegistry()
        registry.register(_ClosingProvider())
        registry.register(healthy)

        with self.assertLogs("trading.swap_provider", level="WARNING"):
            await registry.close()

        self.assertTrue(healthy.closed)
        self.assertEqual(registry.chain_ids(), [])

    async def test_build_registry_uses_chain_family(self) -> None:
        _ConfiguredProvider.built = []
        http = object()

        registry = build_registry([56, 8453], http=http, families={"evm": _ConfiguredProvider})

        self.assertEqual(registry.chain_ids(), [56, 8453])
        self.assertEqual(_ConfiguredProvider.built, [(56, http), (8453, http)])
        with self.assertRaises(ValueError):
            build_registry([999], families={"evm": _ConfiguredProvider})
        with self.assertRaises(UnsupportedChain):
            build_registry([1], families={"evm": _ConfiguredProvider})


if __name__ == "__main__":
    unittest.main()
