"""Address normalization helpers."""

from __future__ import annotations


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup.

    EVM hex addresses are case-insensitive and get lowercased. Base58 addresses
    (Solana mints) are case-sensitive and are only stripped.
    """
    raw = str(value or "").strip()
    if raw.lower().startswith("0x"):
        return raw.lower()
    return raw
