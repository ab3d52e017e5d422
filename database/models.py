"""SQLAlchemy models."""

from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"

RECEIPT_PENDING = "PENDING"
RECEIPT_APPLIED = "APPLIED"
# Submitted swap whose confirmation was never observed.
RECEIPT_UNCONFIRMED = "UNCONFIRMED"
# Unconfirmed swap later found failed or dropped.
RECEIPT_FAILED = "FAILED"

SIDE_BUY = "BUY"
SIDE_SELL = "SELL"


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Position(Base):
    __tablename__ = "positions"
    __table_args__ = (
        # At most one OPEN row per (token, chain); closed history is unconstrained.
        Index(
            "uq_positions_open_token",
            "token_address",
            "chain_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
        Index("ix_positions_status_chain", "status", "chain_id"),
    )

    id = Column(Integer, primary_key=True)
    token_address = Column(String, nullable=False, index=True)
    chain_id = Column(Integer, nullable=False)
    symbol = Column(String, nullable=True)
    buy_price_usd = Column(Float, nullable=False)
    current_price_usd = Column(Float, nullable=True)
    current_value_usd = Column(Float, nullable=True)
    # Peak USD value of the whole position; input of the profit floor policy.
    highest_price_ever = Column(Float, nullable=False)
    profit_floor = Column(Float, nullable=True)
    amount_token = Column(String, nullable=False)
    token_decimals = Column(Integer, nullable=False, default=18)
    amount_usd_invested = Column(Float, nullable=False)
    status = Column(String, nullable=False, default=STATUS_OPEN)
    buy_tx_ref = Column(String, nullable=False)
    sell_tx_ref = Column(String, nullable=True)
    pnl = Column(Float, nullable=True)
    pnl_percentage = Column(Float, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    closed_at = Column(DateTime, nullable=True)

    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    def __repr__(self) -> str:
        return (
            f"<Position id={self.id} token={self.token_address} chain={self.chain_id} "
            f"status={self.status} highest={self.highest_price_ever} floor={self.profit_floor}>"
        )


class SwapReceiptRecord(Base):
    """Journal of submitted swaps, written before the position row they affect.

    PENDING rows are confirmed swaps waiting to be applied. UNCONFIRMED rows
    timed out; their amounts are the slippage floors until a lookup settles them.
    """

    __tablename__ = "swap_receipts"

    id = Column(Integer, primary_key=True)
    tx_ref = Column(String, unique=True, nullable=False, index=True)
    chain_id = Column(Integer, nullable=False)
    token_address = Column(String, nullable=False)
    side = Column(String, nullable=False)
    amount_in = Column(String, nullable=False)
    amount_out = Column(String, nullable=False)
    token_amount = Column(String, nullable=False)
    token_decimals = Column(Integer, nullable=False, default=18)
    price_usd = Column(Float, nullable=True)
    amount_usd = Column(Float, nullable=True)
    symbol = Column(String, nullable=True)
    position_id = Column(Integer, nullable=True)
    status = Column(String, nullable=False, default=RECEIPT_PENDING, index=True)
    detail = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    applied_at = Column(DateTime, nullable=True)
