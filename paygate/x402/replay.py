# paygate/x402/replay.py
"""
Replay store for verified payment references.

Every transaction hash that reached a final verdict is recorded once:
- accepted: with the response that was served, returned verbatim on retries
- rejected: for permanent failures, so reuse is flagged as a replay

The reference is the table's primary key. insert_if_absent relies on the
database's unique constraint, so two racing requests cannot both record an
acceptance for one payment, even across processes sharing the database.

Records are never updated or deleted by the gateway.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, DateTime, Integer, String, Text, create_engine, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

VERDICT_ACCEPTED = "accepted"
VERDICT_REJECTED = "rejected"


class ReplayStoreError(Exception):
    """The replay store could not be read or written."""


class Base(DeclarativeBase):
    """Declarative base for replay store tables."""


class PaymentRecord(Base):
    """A transaction hash that has received a final verdict."""

    __tablename__ = "payment_records"

    reference: Mapped[str] = mapped_column(String(66), primary_key=True)
    verdict: Mapped[str] = mapped_column(String(16), nullable=False)
    response_payload: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    payer: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)
    # Decimal string: wei amounts overflow 64-bit integer columns
    amount: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    chain_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    block_height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    confirmations: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    endpoint: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    client_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


@dataclass(frozen=True)
class ReplayRecord:
    reference: str
    verdict: str
    created_at: datetime
    payer: Optional[str] = None
    response_payload: Optional[Any] = None
    amount: Optional[int] = None
    chain_id: Optional[int] = None
    block_height: Optional[int] = None
    confirmations: Optional[int] = None
    reason_code: Optional[str] = None
    detail: Optional[str] = None
    endpoint: Optional[str] = None
    client_ip: Optional[str] = None

    @property
    def is_accepted(self) -> bool:
        return self.verdict == VERDICT_ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the dashboard API (amount as a string, timestamps ISO 8601)."""
        return {
            "tx_hash": self.reference,
            "status": self.verdict,
            "agent_address": self.payer,
            "amount": str(self.amount) if self.amount is not None else None,
            "chain_id": self.chain_id,
            "block_number": self.block_height,
            "confirmations": self.confirmations,
            "reason_code": self.reason_code,
            "detail": self.detail,
            "service_endpoint": self.endpoint,
            "client_ip": self.client_ip,
            "created_at": self.created_at.isoformat(),
        }


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: PaymentRecord) -> ReplayRecord:
    return ReplayRecord(
        reference=row.reference,
        verdict=row.verdict,
        created_at=_as_utc(row.created_at),
        payer=row.payer,
        response_payload=row.response_payload,
        amount=int(row.amount) if row.amount is not None else None,
        chain_id=row.chain_id,
        block_height=row.block_height,
        confirmations=row.confirmations,
        reason_code=row.reason_code,
        detail=row.detail,
        endpoint=row.endpoint,
        client_ip=row.client_ip,
    )


def _to_row(record: ReplayRecord) -> PaymentRecord:
    return PaymentRecord(
        reference=record.reference,
        verdict=record.verdict,
        response_payload=record.response_payload,
        created_at=record.created_at,
        payer=record.payer,
        amount=str(record.amount) if record.amount is not None else None,
        chain_id=record.chain_id,
        block_height=record.block_height,
        confirmations=record.confirmations,
        reason_code=record.reason_code,
        detail=record.detail,
        endpoint=record.endpoint,
        client_ip=record.client_ip,
    )


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:")


class SqlReplayStore:
    """
    Replay store on any SQLAlchemy-supported database.

    SQLite is the default for single-node deployments; point
    X402_REPLAY_DB_URL at Postgres when several gateway processes share
    one store.

    In-memory SQLite ("sqlite://") is for tests only: every session shares
    one connection, so concurrent sessions share one transaction and a
    commit or rollback in one affects the others. Use a file URL whenever
    the store is hit from several threads at once.
    """

    def __init__(self, url: str, create_tables: bool = True):
        """
        Initialize the store.

        Args:
            url: SQLAlchemy database URL
            create_tables: Create the payment_records table if missing
        """
        engine_kwargs: Dict[str, Any] = {}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if _is_memory_sqlite(url):
                # One shared connection, or each thread sees its own empty database
                engine_kwargs["poolclass"] = StaticPool

        self.engine = create_engine(url, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

        if create_tables:
            Base.metadata.create_all(self.engine)

    def lookup(self, reference: str) -> Optional[ReplayRecord]:
        """
        Find the record for a reference.

        Raises:
            ReplayStoreError: If the database cannot be queried
        """
        try:
            with self._session_factory() as session:
                row = session.get(PaymentRecord, reference)
                return _to_record(row) if row is not None else None
        except SQLAlchemyError as e:
            logger.error(f"Replay lookup failed for {reference}: {e}")
            raise ReplayStoreError(f"Replay lookup failed: {e}") from e

    def insert_if_absent(self, record: ReplayRecord) -> bool:
        """
        Record a verdict unless the reference already has one.

        Returns:
            True if this call created the record, False if it already existed

        Raises:
            ReplayStoreError: If the database cannot be written
        """
        try:
            with self._session_factory() as session:
                session.add(_to_row(record))
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    logger.info(f"Replay record for {record.reference} already exists")
                    return False
            logger.debug(f"Recorded {record.verdict} verdict for {record.reference}")
            return True
        except SQLAlchemyError as e:
            logger.error(f"Replay insert failed for {record.reference}: {e}")
            raise ReplayStoreError(f"Replay insert failed: {e}") from e

    def list_records(self, payer: Optional[str] = None, limit: int = 100) -> List[ReplayRecord]:
        """
        List the most recent records, newest first.

        Args:
            payer: Only records paid by this address (case-insensitive)
            limit: Maximum number of records
        """
        query = select(PaymentRecord).order_by(PaymentRecord.created_at.desc()).limit(limit)
        if payer:
            query = query.where(func.lower(PaymentRecord.payer) == payer.lower())

        try:
            with self._session_factory() as session:
                return [_to_record(row) for row in session.scalars(query)]
        except SQLAlchemyError as e:
            logger.error(f"Replay listing failed: {e}")
            raise ReplayStoreError(f"Replay listing failed: {e}") from e

    def stats(self) -> Dict[str, Any]:
        """
        Aggregate figures over all records.

        Returns:
            Dict with total, accepted and rejected counts, unique payers and
            the accepted volume in the smallest unit
        """
        try:
            with self._session_factory() as session:
                rows = session.execute(
                    select(PaymentRecord.verdict, PaymentRecord.payer, PaymentRecord.amount)
                ).all()
        except SQLAlchemyError as e:
            logger.error(f"Replay stats failed: {e}")
            raise ReplayStoreError(f"Replay stats failed: {e}") from e

        accepted = [row for row in rows if row.verdict == VERDICT_ACCEPTED]
        return {
            "total_records": len(rows),
            "accepted": len(accepted),
            "rejected": len(rows) - len(accepted),
            "unique_payers": len({row.payer.lower() for row in accepted if row.payer}),
            "total_volume": sum(int(row.amount) for row in accepted if row.amount is not None),
        }
