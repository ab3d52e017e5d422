"""Static chain registry keyed by numeric chain id."""

from __future__ import annotations

from dataclasses import dataclass, field

from trading.errors import UnsupportedChain

FAMILY_EVM = "evm"
FAMILY_SOLANA = "solana"

# Sentinel naming the chain's native coin in swap paths (BNB, ETH, SOL).
NATIVE = "native"


@dataclass(frozen=True)
class ChainSpec:
    chain_id: int
    name: str
    family: str
    dexscreener_id: str
    native_symbol: str
    native_decimals: int
    coingecko_id: str
    # Wrapped native; the intermediate hop for routed quotes.
    base_asset: str
    # Asset received on sell.
    quote_asset: str
    quote_asset_usd_pegged: bool
    # Stablecoin used to top up the native balance before a buy. Empty disables top-ups.
    reserve_asset: str = ""
    extra_intermediates: tuple[str, ...] = field(default_factory=tuple)


CHAINS: dict[int, ChainSpec] = {
    56: ChainSpec(
        chain_id=56,
        name="bsc",
        family=FAMILY_EVM,
        dexscreener_id="bsc",
        native_symbol="BNB",
        native_decimals=18,
        coingecko_id="binancecoin",
        base_asset="0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",
        quote_asset="0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56",
        quote_asset_usd_pegged=True,
        reserve_asset="0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56",
        extra_intermediates=("0x55d398326f99059fF775485246999027B3197955",),
    ),
    8453: ChainSpec(
        chain_id=8453,
        name="base",
        family=FAMILY_EVM,
        dexscreener_id="base",
        native_symbol="ETH",
        native_decimals=18,
        coingecko_id="ethereum",
        base_asset="0x4200000000000000000000000000000000000006",
        quote_asset="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
        quote_asset_usd_pegged=True,
        reserve_asset="0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
    ),
    999: ChainSpec(
        chain_id=999,
        name="solana",
        family=FAMILY_SOLANA,
        dexscreener_id="solana",
        native_symbol="SOL",
        native_decimals=9,
        coingecko_id="solana",
        base_asset="So11111111111111111111111111111111111111112",
        quote_asset="So11111111111111111111111111111111111111112",
        quote_asset_usd_pegged=False,
        reserve_asset="EPjFWdd5AufqSSqeM2qFJPKvjvWgXzLUwtxuNFDU7uhm",
    ),
}


def get_chain(chain_id: int) -> ChainSpec:
    spec = CHAINS.get(int(chain_id))
    if spec is None:
        raise UnsupportedChain(f"unsupported chain_id={chain_id}")
    return spec
