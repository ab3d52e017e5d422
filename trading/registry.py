"""Static chain family -> swap provider wiring."""

from __future__ import annotations

import logging
from typing import Iterable

from trading.chains import FAMILY_EVM, FAMILY_SOLANA, get_chain
from trading.evm_router import EvmRouterProvider
from trading.jupiter_aggregator import JupiterAggregatorProvider
from trading.swap_provider import SwapProvider, SwapProviderRegistry
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

PROVIDER_FAMILIES: dict[str, type[SwapProvider]] = {
    FAMILY_EVM: EvmRouterProvider,
    FAMILY_SOLANA: JupiterAggregatorProvider,
}


def build_registry(
    chain_ids: Iterable[int],
    http: ResilientHttpClient | None = None,
    families: dict[str, type[SwapProvider]] | None = None,
) -> SwapProviderRegistry:
    families = families or PROVIDER_FAMILIES
    registry = SwapProviderRegistry()
    for chain_id in chain_ids:
        chain = get_chain(chain_id)
        provider_cls = families.get(chain.family)
        if provider_cls is None:
            raise ValueError(f"no provider family '{chain.family}' for chain_id={chain_id}")
        provider = provider_cls.from_config(chain, http=http)
        registry.register(provider)
        logger.info("SWAP provider chain=%s name=%s family=%s", chain.chain_id, chain.name, chain.family)
    return registry
