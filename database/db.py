"""Position store and swap receipt journal."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine, event, func, inspect, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from database.models import (
    RECEIPT_APPLIED,
    RECEIPT_FAILED,
    RECEIPT_PENDING,
    RECEIPT_UNCONFIRMED,
    STATUS_CLOSED,
    STATUS_OPEN,
    Base,
    Position,
    SwapReceiptRecord,
    utcnow,
)
from trading.errors import AlreadyClosed, AlreadyOpen, PositionNotFound, StoreWriteFailed
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset(
    {
        "current_price_usd",
        "current_value_usd",
        "highest_price_ever",
        "profit_floor",
        "symbol",
    }
)

CREATE_FIELDS = (
    "token_address",
    "chain_id",
    "buy_price_usd",
    "amount_token",
    "amount_usd_invested",
    "buy_tx_ref",
)


class PositionStore:
    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.engine = create_engine(database_url, future=True)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _sqlite_on_connect)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)

    def init(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        self._apply_runtime_migrations()

    def close(self) -> None:
        self.engine.dispose()

    def _apply_runtime_migrations(self) -> None:
        inspector = inspect(self.engine)
        if "positions" not in set(inspector.get_table_names()):
            return
        columns = {col["name"] for col in inspector.get_columns("positions")}
        if "current_value_usd" not in columns:
            with self.engine.begin() as conn:
                conn.execute(text("ALTER TABLE positions ADD COLUMN current_value_usd FLOAT"))
        if "token_decimals" not in columns:
            with self.engine.begin() as conn:
                conn.execute(text("ALTER TABLE positions ADD COLUMN token_decimals INTEGER NOT NULL DEFAULT 18"))

    @contextmanager
    def _session(self) -> Iterator[Session]:
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    # Positions

    def create(self, params: dict[str, Any]) -> int:
        missing = [name for name in CREATE_FIELDS if params.get(name) in (None, "")]
        if missing:
            raise ValueError(f"missing position fields: {', '.join(missing)}")
        token = normalize_address(params["token_address"])
        chain_id = int(params["chain_id"])
        invested = float(params["amount_usd_invested"])
        with self._session() as db:
            existing = (
                db.query(Position.id)
                .filter(
                    Position.token_address == token,
                    Position.chain_id == chain_id,
                    Position.status == STATUS_OPEN,
                )
                .first()
            )
            if existing:
                raise AlreadyOpen(token, chain_id)

            highest = params.get("highest_price_ever")
            value = params.get("current_value_usd")
            position = Position(
                token_address=token,
                chain_id=chain_id,
                symbol=params.get("symbol"),
                buy_price_usd=float(params["buy_price_usd"]),
                current_price_usd=params.get("current_price_usd", float(params["buy_price_usd"])),
                current_value_usd=invested if value is None else float(value),
                highest_price_ever=invested if highest is None else float(highest),
                profit_floor=params.get("profit_floor"),
                amount_token=str(params["amount_token"]),
                token_decimals=int(params.get("token_decimals", 18)),
                amount_usd_invested=invested,
                status=STATUS_OPEN,
                buy_tx_ref=str(params["buy_tx_ref"]),
            )
            db.add(position)
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise AlreadyOpen(token, chain_id) from exc
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreWriteFailed(f"position insert failed token={token} chain={chain_id}: {exc}") from exc
            return int(position.id)

    def get_by_id(self, position_id: int) -> Optional[Position]:
        with self._session() as db:
            return db.query(Position).filter(Position.id == int(position_id)).first()

    def get_open_by_token(self, token_address: str, chain_id: int) -> Optional[Position]:
        with self._session() as db:
            return (
                db.query(Position)
                .filter(
                    Position.token_address == normalize_address(token_address),
                    Position.chain_id == int(chain_id),
                    Position.status == STATUS_OPEN,
                )
                .first()
            )

    def get_by_buy_tx(self, buy_tx_ref: str) -> Optional[Position]:
        with self._session() as db:
            return db.query(Position).filter(Position.buy_tx_ref == str(buy_tx_ref)).first()

    def get_all_open(self, chain_id: int | None = None) -> list[Position]:
        with self._session() as db:
            query = db.query(Position).filter(Position.status == STATUS_OPEN)
            if chain_id is not None:
                query = query.filter(Position.chain_id == int(chain_id))
            return query.order_by(Position.created_at.asc(), Position.id.asc()).all()

    def list_positions(self, status: str | None = None, limit: int = 100) -> list[Position]:
        with self._session() as db:
            query = db.query(Position)
            if status:
                query = query.filter(Position.status == str(status).upper())
            return query.order_by(Position.created_at.desc(), Position.id.desc()).limit(int(limit)).all()

    def update(self, position_id: int, **fields: Any) -> Position:
        refused = sorted(set(fields) - MUTABLE_FIELDS)
        if refused:
            raise ValueError(f"fields not updatable: {', '.join(refused)}")
        with self._session() as db:
            position = db.query(Position).filter(Position.id == int(position_id)).first()
            if position is None:
                raise PositionNotFound(f"position not found id={position_id}")
            if position.status != STATUS_OPEN:
                raise AlreadyClosed(f"position already closed id={position_id}")
            for name, value in fields.items():
                if name == "highest_price_ever" and value is not None:
                    value = max(float(position.highest_price_ever or 0.0), float(value))
                setattr(position, name, value)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreWriteFailed(f"position update failed id={position_id}: {exc}") from exc
            db.refresh(position)
            return position

    def transition_closed(
        self,
        position_id: int,
        sell_tx_ref: str,
        pnl: float,
        pnl_percentage: float,
    ) -> None:
        with self._session() as db:
            try:
                result = db.execute(
                    update(Position)
                    .where(Position.id == int(position_id), Position.status == STATUS_OPEN)
                    .values(
                        status=STATUS_CLOSED,
                        sell_tx_ref=str(sell_tx_ref),
                        pnl=float(pnl),
                        pnl_percentage=float(pnl_percentage),
                        closed_at=utcnow(),
                        updated_at=utcnow(),
                    )
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreWriteFailed(f"position close failed id={position_id}: {exc}") from exc
            if result.rowcount == 1:
                return
            exists = db.query(Position.id).filter(Position.id == int(position_id)).first()
        if exists is None:
            raise PositionNotFound(f"position not found id={position_id}")
        raise AlreadyClosed(f"position already closed id={position_id}")

    def total_pnl(self) -> dict[str, float]:
        with self._session() as db:
            total_pnl, total_invested, closed = (
                db.query(
                    func.coalesce(func.sum(Position.pnl), 0.0),
                    func.coalesce(func.sum(Position.amount_usd_invested), 0.0),
                    func.count(Position.id),
                )
                .filter(Position.status == STATUS_CLOSED)
                .one()
            )
        invested = float(total_invested or 0.0)
        pnl = float(total_pnl or 0.0)
        return {
            "total_pnl": pnl,
            "total_invested": invested,
            "total_pnl_percentage": (pnl / invested * 100.0) if invested > 0 else 0.0,
            "closed_positions": int(closed or 0),
        }

    # Receipt journal

    def record_receipt(
        self,
        *,
        tx_ref: str,
        chain_id: int,
        token_address: str,
        side: str,
        amount_in: int,
        amount_out: int,
        token_amount: int,
        token_decimals: int = 18,
        price_usd: float | None = None,
        amount_usd: float | None = None,
        symbol: str | None = None,
        position_id: int | None = None,
        detail: str | None = None,
        status: str = RECEIPT_PENDING,
    ) -> int:
        with self._session() as db:
            existing = db.query(SwapReceiptRecord).filter(SwapReceiptRecord.tx_ref == str(tx_ref)).first()
            if existing:
                return int(existing.id)
            record = SwapReceiptRecord(
                tx_ref=str(tx_ref),
                chain_id=int(chain_id),
                token_address=normalize_address(token_address),
                side=str(side).upper(),
                amount_in=str(int(amount_in)),
                amount_out=str(int(amount_out)),
                token_amount=str(int(token_amount)),
                token_decimals=int(token_decimals),
                price_usd=price_usd,
                amount_usd=amount_usd,
                symbol=symbol,
                position_id=position_id,
                status=status,
                detail=detail,
            )
            db.add(record)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreWriteFailed(f"receipt insert failed tx={tx_ref}: {exc}") from exc
            return int(record.id)

    def mark_receipt_applied(self, receipt_id: int, position_id: int | None = None) -> None:
        with self._session() as db:
            record = db.query(SwapReceiptRecord).filter(SwapReceiptRecord.id == int(receipt_id)).first()
            if record is None:
                return
            record.status = RECEIPT_APPLIED
            record.applied_at = utcnow()
            if position_id is not None:
                record.position_id = int(position_id)
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreWriteFailed(f"receipt update failed id={receipt_id}: {exc}") from exc

    def pending_receipts(self) -> list[SwapReceiptRecord]:
        with self._session() as db:
            return (
                db.query(SwapReceiptRecord)
                .filter(SwapReceiptRecord.status == RECEIPT_PENDING)
                .order_by(SwapReceiptRecord.created_at.asc(), SwapReceiptRecord.id.asc())
                .all()
            )

    def unconfirmed_receipts(
        self, token_address: str | None = None, chain_id: int | None = None
    ) -> list[SwapReceiptRecord]:
        with self._session() as db:
            query = db.query(SwapReceiptRecord).filter(SwapReceiptRecord.status == RECEIPT_UNCONFIRMED)
            if token_address is not None:
                query = query.filter(SwapReceiptRecord.token_address == normalize_address(token_address))
            if chain_id is not None:
                query = query.filter(SwapReceiptRecord.chain_id == int(chain_id))
            return query.order_by(SwapReceiptRecord.id.asc()).all()

    def settle_receipt(
        self,
        receipt_id: int,
        confirmed: bool,
        *,
        token_amount: int | None = None,
        amount_usd: float | None = None,
        detail: str | None = None,
    ) -> SwapReceiptRecord:
        """UNCONFIRMED -> PENDING (landed, ready to apply) or FAILED."""
        with self._session() as db:
            record = db.query(SwapReceiptRecord).filter(SwapReceiptRecord.id == int(receipt_id)).first()
            if record is None:
                raise StoreWriteFailed(f"receipt not found id={receipt_id}")
            if record.status != RECEIPT_UNCONFIRMED:
                return record
            record.status = RECEIPT_PENDING if confirmed else RECEIPT_FAILED
            if token_amount is not None:
                record.token_amount = str(int(token_amount))
            if amount_usd is not None:
                record.amount_usd = float(amount_usd)
            if detail:
                record.detail = detail
            if not confirmed:
                record.applied_at = utcnow()
            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                raise StoreWriteFailed(f"receipt settle failed id={receipt_id}: {exc}") from exc
            db.refresh(record)
            return record

    def get_receipt_by_tx(self, tx_ref: str) -> Optional[SwapReceiptRecord]:
        with self._session() as db:
            return db.query(SwapReceiptRecord).filter(SwapReceiptRecord.tx_ref == str(tx_ref)).first()


def _sqlite_on_connect(dbapi_connection, _record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
    finally:
        cursor.close()
