"""Trade engine error taxonomy."""

from __future__ import annotations


class TradeError(Exception):
    code = "TRADE_ERROR"


class AlreadyOpen(TradeError):
    code = "ALREADY_OPEN"

    def __init__(self, token_address: str, chain_id: int) -> None:
        super().__init__(f"open position already exists token={token_address} chain={chain_id}")
        self.token_address = token_address
        self.chain_id = chain_id


class NoPrice(TradeError):
    code = "NO_PRICE"


class NoRoute(TradeError):
    code = "NO_ROUTE"


class InsufficientFunds(TradeError):
    code = "INSUFFICIENT_FUNDS"


class SwapReverted(TradeError):
    code = "SWAP_REVERTED"

    def __init__(self, tx_ref: str, detail: str = "") -> None:
        super().__init__(f"swap reverted tx={tx_ref} {detail}".strip())
        self.tx_ref = tx_ref


class SwapTimeout(TradeError):
    """Confirmation not observed in time. The swap may or may not have landed."""

    code = "SWAP_TIMEOUT"

    def __init__(self, tx_ref: str, waited_seconds: float = 0.0) -> None:
        super().__init__(f"swap confirmation timeout tx={tx_ref} waited={waited_seconds:.0f}s")
        self.tx_ref = tx_ref
        self.waited_seconds = waited_seconds


class SwapUnconfirmed(TradeError):
    """An earlier swap on this token timed out and its outcome is still unknown."""

    code = "SWAP_UNCONFIRMED"

    def __init__(self, tx_ref: str, token_address: str, chain_id: int) -> None:
        super().__init__(f"earlier swap unconfirmed tx={tx_ref} token={token_address} chain={chain_id}")
        self.tx_ref = tx_ref
        self.token_address = token_address
        self.chain_id = chain_id


class PositionNotFound(TradeError):
    code = "POSITION_NOT_FOUND"


class AlreadyClosed(TradeError):
    code = "ALREADY_CLOSED"


class StoreWriteFailed(TradeError):
    code = "STORE_WRITE_FAILED"


class UnsupportedChain(TradeError):
    code = "UNSUPPORTED_CHAIN"
