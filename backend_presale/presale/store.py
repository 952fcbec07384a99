"""
Verification records keyed by payment transaction signature.

The unique key on signature is the anti-replay invariant: a signature is credited
at most once. Status changes go through compare-and-set `transition` so that a
record only moves forward from the status the caller observed:

    pending -> confirmed -> disbursed
    pending -> rejected

Two backends share one interface:
- InMemoryVerificationStore (default, single process)
- SqlVerificationStore (SQLAlchemy; VERIFICATION_DB_URL), survives restarts
KeyedLocks gives the per-signature critical section used by the verifier.
TransferRequestLog remembers accepted direct-transfer requests for as long as
their timestamp is fresh, so a captured signed request pays out once.
"""

from __future__ import annotations

import enum
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Iterator, Protocol

from sqlalchemy import BigInteger, Column, Float, String, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend_presale.logging import get_logger

logger = get_logger(__name__)


class VerificationStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    DISBURSED = "disbursed"


@dataclass(frozen=True)
class VerificationRecord:
    signature: str
    payer: str
    asset: str
    amount: Decimal
    reward_amount: Decimal
    status: VerificationStatus = VerificationStatus.PENDING
    reason: str | None = None
    disbursement_signature: str | None = None
    # Treasury transfer signed and broadcast but not yet known to have landed
    inflight_signature: str | None = None
    inflight_valid_height: int | None = None
    first_seen_at: float = 0.0
    updated_at: float = 0.0


class VerificationStore(Protocol):
    def get(self, signature: str) -> VerificationRecord | None: ...

    def create(self, record: VerificationRecord) -> bool: ...

    def transition(
        self,
        signature: str,
        expected: VerificationStatus,
        new: VerificationStatus,
        **changes: Any,
    ) -> VerificationRecord | None: ...


class KeyedLocks:
    """One mutex per key, created on demand and dropped when no thread holds or waits on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock, users = self._locks.get(key, (threading.Lock(), 0))
            self._locks[key] = (lock, users + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                lock, users = self._locks[key]
                if users <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# -----------------------------------------------------------------------------
# In-memory backend
# -----------------------------------------------------------------------------


class InMemoryVerificationStore:
    """Dict keyed by signature. Records are immutable; updates swap whole records."""

    def __init__(self) -> None:
        self._records: dict[str, VerificationRecord] = {}
        self._lock = threading.Lock()

    def get(self, signature: str) -> VerificationRecord | None:
        with self._lock:
            return self._records.get(signature)

    def create(self, record: VerificationRecord) -> bool:
        now = time.time()
        with self._lock:
            if record.signature in self._records:
                return False
            self._records[record.signature] = replace(record, first_seen_at=now, updated_at=now)
            return True

    def transition(
        self,
        signature: str,
        expected: VerificationStatus,
        new: VerificationStatus,
        **changes: Any,
    ) -> VerificationRecord | None:
        with self._lock:
            current = self._records.get(signature)
            if current is None or current.status is not expected:
                return None
            updated = replace(current, status=new, updated_at=time.time(), **changes)
            self._records[signature] = updated
            return updated

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


# -----------------------------------------------------------------------------
# SQLAlchemy backend
# -----------------------------------------------------------------------------

Base = declarative_base()


class PaymentVerification(Base):
    """One row per payment signature. Amounts stored as strings to avoid precision loss."""

    __tablename__ = "payment_verifications"

    signature = Column(String(128), primary_key=True)
    payer = Column(String(64), nullable=False, index=True)
    asset = Column(String(16), nullable=False)
    amount = Column(String(64), nullable=False)
    reward_amount = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, index=True)
    reason = Column(String(256), nullable=True)
    disbursement_signature = Column(String(128), nullable=True)
    inflight_signature = Column(String(128), nullable=True)
    inflight_valid_height = Column(BigInteger, nullable=True)
    first_seen_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    def to_record(self) -> VerificationRecord:
        return VerificationRecord(
            signature=self.signature,
            payer=self.payer,
            asset=self.asset,
            amount=Decimal(self.amount),
            reward_amount=Decimal(self.reward_amount),
            status=VerificationStatus(self.status),
            reason=self.reason,
            disbursement_signature=self.disbursement_signature,
            inflight_signature=self.inflight_signature,
            inflight_valid_height=self.inflight_valid_height,
            first_seen_at=self.first_seen_at,
            updated_at=self.updated_at,
        )


def _column_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, VerificationStatus):
        return value.value
    return value


def _create_engine(url: str) -> Engine:
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, connect_args=connect_args, pool_pre_ping=True)


@contextmanager
def _session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """Single session. Commits on success, rolls back on error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class SqlVerificationStore:
    """Verification records in a SQL database (SQLite or PostgreSQL URL)."""

    def __init__(self, url: str) -> None:
        self._engine = _create_engine(url)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        Base.metadata.create_all(bind=self._engine)
        logger.info("verification_store_ready", backend="sql", url=url.split("?")[0].split("//")[-1])

    def get(self, signature: str) -> VerificationRecord | None:
        with _session_scope(self._session_factory) as session:
            row = session.get(PaymentVerification, signature)
            return row.to_record() if row else None

    def create(self, record: VerificationRecord) -> bool:
        now = time.time()
        try:
            with _session_scope(self._session_factory) as session:
                session.add(
                    PaymentVerification(
                        signature=record.signature,
                        payer=record.payer,
                        asset=record.asset,
                        amount=str(record.amount),
                        reward_amount=str(record.reward_amount),
                        status=record.status.value,
                        reason=record.reason,
                        first_seen_at=now,
                        updated_at=now,
                    )
                )
                session.flush()
            return True
        except IntegrityError:
            return False

    def transition(
        self,
        signature: str,
        expected: VerificationStatus,
        new: VerificationStatus,
        **changes: Any,
    ) -> VerificationRecord | None:
        values = {key: _column_value(val) for key, val in changes.items()}
        values["status"] = new.value
        values["updated_at"] = time.time()
        with _session_scope(self._session_factory) as session:
            updated = (
                session.query(PaymentVerification)
                .filter(
                    PaymentVerification.signature == signature,
                    PaymentVerification.status == expected.value,
                )
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                return None
            row = session.get(PaymentVerification, signature)
            return row.to_record() if row else None


def create_store(url: str | None) -> VerificationStore:
    """Empty URL → in-memory store; otherwise a SQL store at that URL."""
    url = (url or "").strip()
    if not url:
        logger.info("verification_store_ready", backend="memory")
        return InMemoryVerificationStore()
    return SqlVerificationStore(url)


# -----------------------------------------------------------------------------
# Used direct-transfer requests
# -----------------------------------------------------------------------------


class TransferRequestLog(Protocol):
    """
    Keys of signed direct-transfer requests already accepted. claim() is the
    compare-and-set: exactly one caller gets True for a key until it expires.
    """

    def claim(self, key: str, expires_at_ms: int, now_ms: int) -> bool: ...


class InMemoryTransferRequestLog:
    def __init__(self) -> None:
        self._expiry: dict[str, int] = {}
        self._lock = threading.Lock()

    def claim(self, key: str, expires_at_ms: int, now_ms: int) -> bool:
        with self._lock:
            self._expiry = {k: exp for k, exp in self._expiry.items() if exp >= now_ms}
            if key in self._expiry:
                return False
            self._expiry[key] = expires_at_ms
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._expiry)


class UsedTransferRequest(Base):
    """One row per accepted direct-transfer request; rows past expires_at_ms are purged on claim."""

    __tablename__ = "used_transfer_requests"

    request_key = Column(String(128), primary_key=True)
    expires_at_ms = Column(BigInteger, nullable=False, index=True)


class SqlTransferRequestLog:
    def __init__(self, url: str) -> None:
        self._engine = _create_engine(url)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        Base.metadata.create_all(bind=self._engine)

    def claim(self, key: str, expires_at_ms: int, now_ms: int) -> bool:
        with _session_scope(self._session_factory) as session:
            session.query(UsedTransferRequest).filter(UsedTransferRequest.expires_at_ms < now_ms).delete(
                synchronize_session=False
            )
        try:
            with _session_scope(self._session_factory) as session:
                session.add(UsedTransferRequest(request_key=key, expires_at_ms=expires_at_ms))
                session.flush()
            return True
        except IntegrityError:
            return False


def create_request_log(url: str | None) -> TransferRequestLog:
    """Same backend selection as create_store."""
    url = (url or "").strip()
    if not url:
        return InMemoryTransferRequestLog()
    return SqlTransferRequestLog(url)
