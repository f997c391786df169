"""
Prepaid Recharge Engine - Database Schema and Value Types
=========================================================

Relational tables for the system of record:
- recargas: one master row per persisted batch of provider charges
- detalle_recargas: one row per charged SIM, folio unique per provider
- recargas_process_locks: per-fleet processing locks shared across workers
- recargas_metricas: one row per finished processing cycle

Plus the in-memory value types that flow through a processing cycle.
"""

import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, JSON,
    ForeignKey, UniqueConstraint, Index, func
)
from sqlalchemy.orm import DeclarativeBase, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# ============================================================================
# ENUMS - Processing Constants
# ============================================================================

class FleetType(Enum):
    """Device fleets handled by the engine"""
    GPS = "GPS"
    VOZ = "VOZ"
    ELIOT = "ELIOT"


class QueueItemStatus(Enum):
    """Lifecycle of an auxiliary queue item"""
    PENDING_DB = "webservice_success_pending_db"
    COMPLETED = "completed"


class FailureClass(Enum):
    """Retry decision for a classified failure"""
    FATAL = "fatal"
    RETRIABLE = "retriable"


class RechargeErrorCode(Enum):
    """Structural failure categories produced at the call site"""
    # Provider side
    PROVIDER_TIMEOUT = "provider_timeout"
    CONNECTION_RESET = "connection_reset"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    AUTHENTICATION_FAILED = "authentication_failed"
    MALFORMED_REQUEST = "malformed_request"
    INVALID_RECORD = "invalid_record"
    DUPLICATE_FOLIO = "duplicate_folio"
    MISSING_FOLIO = "missing_folio"
    NO_PROVIDER_AVAILABLE = "no_provider_available"
    # Persistence side
    PERSISTENCE_TRANSIENT = "persistence_transient"
    DATABASE_CONNECTION_LOST = "database_connection_lost"
    QUEUE_WRITE_FAILED = "queue_write_failed"
    # Coordination
    LOCK_DENIED = "lock_denied"
    RETRIES_EXHAUSTED = "retries_exhausted"
    UNKNOWN = "unknown"


class CycleState(Enum):
    """Processing cycle state machine"""
    IDLE = "idle"
    LOCK_ACQUIRING = "lock_acquiring"
    LOCK_DENIED = "lock_denied"
    DRAINING_QUEUE = "draining_queue"
    SELECTING_CANDIDATES = "selecting_candidates"
    CHARGING = "charging"
    PERSISTING = "persisting"
    LOCK_RELEASING = "lock_releasing"


class AlertPriority(Enum):
    """Alert priority levels"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# ============================================================================
# TABLES
# ============================================================================

class RechargeBatch(Base):
    """Master row for one persisted group of charges"""
    __tablename__ = 'recargas'

    id = Column(Integer, primary_key=True, autoincrement=True)
    fecha = Column(Integer, nullable=False)  # unix seconds
    total = Column(Float, nullable=False, default=0)
    proveedor = Column(String(50), nullable=False)
    tipo = Column(String(20), nullable=False, index=True)
    notas = Column(Text, nullable=True)
    quien = Column(String(100), nullable=False, default='system')
    resumen = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=False), server_default=func.now())

    details = relationship("RechargeDetail", back_populates="batch")


class RechargeDetail(Base):
    """One charged SIM; (proveedor, folio) is the idempotency anchor"""
    __tablename__ = 'detalle_recargas'

    id = Column(Integer, primary_key=True, autoincrement=True)
    id_recarga = Column(Integer, ForeignKey('recargas.id'), nullable=False, index=True)
    sim = Column(String(32), nullable=False, index=True)
    importe = Column(Float, nullable=False)
    dispositivo = Column(String(100), nullable=True)
    vehiculo = Column(String(255), nullable=True)
    detalle = Column(Text, nullable=True)
    folio = Column(String(100), nullable=False)
    proveedor = Column(String(50), nullable=False)
    status = Column(Integer, nullable=False, default=1)

    batch = relationship("RechargeBatch", back_populates="details")

    __table_args__ = (
        UniqueConstraint('proveedor', 'folio', name='uq_detalle_recargas_proveedor_folio'),
        Index('ix_detalle_recargas_folio', 'folio'),
    )


class RechargeProcessLock(Base):
    """Per-fleet processing lock, unique per lock_key"""
    __tablename__ = 'recargas_process_locks'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lock_key = Column(String(100), nullable=False, unique=True)
    owner_token = Column(String(255), nullable=False)
    pid = Column(Integer, nullable=True)
    acquired_at = Column(DateTime(timezone=False), nullable=False, default=utcnow)
    expires_at = Column(DateTime(timezone=False), nullable=False)

    __table_args__ = (
        Index('ix_recargas_process_locks_expires_at', 'expires_at'),
    )


class RechargeCycleMetric(Base):
    """Summary of one finished processing cycle"""
    __tablename__ = 'recargas_metricas'

    id = Column(Integer, primary_key=True, autoincrement=True)
    fleet_type = Column(String(20), nullable=False, index=True)
    start_time = Column(DateTime(timezone=False), nullable=False)
    end_time = Column(DateTime(timezone=False), nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    processed = Column(Integer, nullable=False, default=0)
    success = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    recovered = Column(Integer, nullable=False, default=0)
    total_amount = Column(Float, nullable=False, default=0)
    provider = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)


# ============================================================================
# VALUE TYPES
# ============================================================================

@dataclass(frozen=True)
class RechargeCandidate:
    """A device or line eligible for top-up in the current cycle"""
    sim: str
    fleet_type: str
    eligibility_reason: str = ""
    device_id: Optional[str] = None
    vehicle_label: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RechargeCandidate":
        return cls(
            sim=str(data["sim"]),
            fleet_type=data["fleet_type"],
            eligibility_reason=data.get("eligibility_reason", ""),
            device_id=data.get("device_id"),
            vehicle_label=data.get("vehicle_label"),
            extra=dict(data.get("extra") or {}),
        )


@dataclass(frozen=True)
class RechargeProduct:
    """What to charge for a candidate"""
    code: str
    amount: float
    validity_days: int


@dataclass(frozen=True)
class ProviderTransaction:
    """Result of a successful provider charge"""
    provider: str
    transaction_id: str
    folio: str
    amount: float
    raw_payload: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "transaction_id": self.transaction_id,
            "folio": self.folio,
            "amount": self.amount,
            "raw_payload": self.raw_payload,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderTransaction":
        return cls(
            provider=data["provider"],
            transaction_id=str(data["transaction_id"]),
            folio=str(data["folio"]),
            amount=float(data["amount"]),
            raw_payload=dict(data.get("raw_payload") or {}),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class AuxiliaryQueueItem:
    """Durable record of a charge the provider confirmed but the database has not"""
    sim: str
    fleet_type: str
    transaction: ProviderTransaction
    candidate: Dict[str, Any] = field(default_factory=dict)
    status: QueueItemStatus = QueueItemStatus.PENDING_DB
    recovery_reason: str = "provider charge succeeded, database write pending"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    added_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.sim}:{self.transaction.folio}"

    @property
    def folio(self) -> str:
        return self.transaction.folio

    @property
    def is_pending(self) -> bool:
        return self.status == QueueItemStatus.PENDING_DB

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sim": self.sim,
            "fleet_type": self.fleet_type,
            "transaction": self.transaction.to_dict(),
            "candidate": self.candidate,
            "status": self.status.value,
            "recovery_reason": self.recovery_reason,
            "added_at": self.added_at.isoformat(),
            "attempts": self.attempts,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuxiliaryQueueItem":
        last_attempt = data.get("last_attempt_at")
        return cls(
            id=data["id"],
            sim=str(data["sim"]),
            fleet_type=data["fleet_type"],
            transaction=ProviderTransaction.from_dict(data["transaction"]),
            candidate=dict(data.get("candidate") or {}),
            status=QueueItemStatus(data.get("status", QueueItemStatus.PENDING_DB.value)),
            recovery_reason=data.get("recovery_reason", ""),
            added_at=datetime.fromisoformat(data["added_at"]),
            attempts=int(data.get("attempts", 0)),
            last_attempt_at=datetime.fromisoformat(last_attempt) if last_attempt else None,
            last_error=data.get("last_error"),
        )


@dataclass(frozen=True)
class ProviderBalance:
    name: str
    balance: float
    priority: int = 99


@dataclass(frozen=True)
class LockResult:
    granted: bool
    key: str
    owner_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    reason: Optional[str] = None


@dataclass
class BatchInsertResult:
    """Outcome of persisting a group of queue items"""
    processed: int = 0
    success: int = 0
    failed: int = 0
    duplicates: int = 0
    per_item_errors: List[Dict[str, Any]] = field(default_factory=list)
    batch_id: Optional[int] = None
    # Keys of items whose detail row exists after the call
    persisted_keys: List[str] = field(default_factory=list)

    def merge(self, other: "BatchInsertResult") -> "BatchInsertResult":
        self.processed += other.processed
        self.success += other.success
        self.failed += other.failed
        self.duplicates += other.duplicates
        self.per_item_errors.extend(other.per_item_errors)
        self.persisted_keys.extend(other.persisted_keys)
        if self.batch_id is None:
            self.batch_id = other.batch_id
        return self


@dataclass
class CycleResult:
    """Externally observable outcome of one processing cycle"""
    fleet_type: str
    processed: int = 0
    success: int = 0
    failed: int = 0
    lock_denied: bool = False
    recovered: int = 0
    recovery_pending: int = 0
    persisted: int = 0
    total_amount: float = 0.0
    aborted_reason: Optional[str] = None
    states: List[CycleState] = field(default_factory=list)
    providers_used: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def summary(self) -> Dict[str, int]:
        return {"processed": self.processed, "success": self.success, "failed": self.failed}
