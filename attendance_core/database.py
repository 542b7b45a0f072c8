from __future__ import annotations

import threading
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

import numpy as np
from cryptography.fernet import Fernet
from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings
from .exceptions import StoreUnavailable
from .tenant import Tenant
from .types import AttendanceLog, Member, MemberStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _to_utc_naive(value: datetime) -> datetime:
    # Stored timestamps are naive UTC; naive inputs are taken as local wall-clock time.
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    pass


class MemberRow(Base):
    __tablename__ = "members"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(120), index=True)
    status: Mapped[str] = mapped_column(String(16), default=MemberStatus.ALLOWED.value)
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


class MemberEmbeddingRow(Base):
    __tablename__ = "member_embeddings"
    __table_args__ = (
        # One vector per member per extractor; vectors from different engines are not comparable.
        UniqueConstraint("member_id", "engine", name="uq_member_embedding_engine"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    member_id: Mapped[str] = mapped_column(ForeignKey("members.id", ondelete="CASCADE"), index=True)
    engine: Mapped[str] = mapped_column(String(64), default="", index=True)
    ciphertext: Mapped[bytes] = mapped_column(LargeBinary)
    dim: Mapped[int] = mapped_column(Integer)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


class AttendanceLogRow(Base):
    __tablename__ = "attendance_logs"
    __table_args__ = (
        # One attendance row per member per tenant per day.
        UniqueConstraint("member_id", "tenant_scope", "attendance_date", name="uq_attendance_member_scope_day"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    member_id: Mapped[str] = mapped_column(String(64), index=True)
    organization_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    tenant_scope: Mapped[str] = mapped_column(String(64), index=True)
    attendance_date: Mapped[str] = mapped_column(String(10), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    confidence: Mapped[float] = mapped_column(Float)


class EmbeddingCipher:
    def __init__(self, key: bytes | str):
        self.fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmbeddingCipher":
        if settings.embedding_key:
            return cls(settings.embedding_key.encode("utf-8"))

        key_path = settings.embedding_key_path
        if key_path.exists():
            return cls(key_path.read_bytes().strip())

        key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        key_path.write_bytes(key)
        return cls(key)

    def encrypt(self, embedding: np.ndarray) -> bytes:
        raw = np.asarray(embedding, dtype=np.float32).tobytes()
        return self.fernet.encrypt(raw)

    def decrypt(self, blob: bytes, dim: int) -> np.ndarray:
        raw = self.fernet.decrypt(blob)
        return np.frombuffer(raw, dtype=np.float32, count=dim).copy()


def create_store_engine(database_url: str) -> Engine:
    # Render-style URLs come without an explicit driver.
    if database_url.startswith("postgres://"):
        database_url = f"postgresql+psycopg://{database_url[len('postgres://'):]}"
    elif database_url.startswith("postgresql://"):
        database_url = f"postgresql+psycopg://{database_url[len('postgresql://'):]}"

    if database_url.startswith("sqlite"):
        kwargs: dict = {"connect_args": {"check_same_thread": False}}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, future=True, **kwargs)
    return create_engine(database_url, future=True, pool_pre_ping=True)


def _tenant_filter(column, tenant: Tenant):
    if tenant.is_legacy:
        return column.is_(None)
    return column == tenant.organization_id


class SqlAlchemyStore:
    """Tenant-scoped member and attendance storage.

    All driver errors surface as :class:`StoreUnavailable`. Same-day duplicate
    attendance inserts are rejected by a unique constraint and reported as
    ``None`` rather than as errors.
    """

    def __init__(self, engine: Engine, cipher: EmbeddingCipher):
        self.engine = engine
        self.cipher = cipher
        self._sessions = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)
        # SQLite connections are shared across worker threads.
        self._lock = threading.RLock()
        try:
            Base.metadata.create_all(bind=engine)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to initialize database: {exc}") from exc

    @classmethod
    def from_settings(cls, settings: Settings) -> "SqlAlchemyStore":
        if settings.database_url.startswith("sqlite:///") and settings.database_url != "sqlite:///:memory:":
            Path(settings.database_url[len("sqlite:///"):]).parent.mkdir(parents=True, exist_ok=True)
        return cls(create_store_engine(settings.database_url), EmbeddingCipher.from_settings(settings))

    # Members

    def upsert_member(
        self,
        tenant: Tenant,
        name: str,
        embedding: np.ndarray,
        status: MemberStatus = MemberStatus.ALLOWED,
        member_id: str | None = None,
        engine: str = "",
    ) -> Member:
        vector = np.asarray(embedding, dtype=np.float32).reshape(-1)
        try:
            with self._lock, self._sessions() as db:
                row = self._member_row(db, tenant, member_id) if member_id is not None else None
                if row is None:
                    row = MemberRow(id=member_id or str(uuid.uuid4()), organization_id=tenant.organization_id)
                    db.add(row)
                row.name = name
                row.status = MemberStatus(status).value

                stored = db.scalar(
                    select(MemberEmbeddingRow).where(
                        MemberEmbeddingRow.member_id == row.id,
                        MemberEmbeddingRow.engine == engine,
                    )
                )
                if stored is None:
                    stored = MemberEmbeddingRow(member_id=row.id, engine=engine)
                    db.add(stored)
                stored.ciphertext = self.cipher.encrypt(vector)
                stored.dim = int(vector.size)
                stored.updated_at = _utcnow()
                db.commit()
                return self._to_member(row, stored)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to save member {name}: {exc}") from exc

    def get_member(self, tenant: Tenant, member_id: str, engine: str | None = None) -> Member | None:
        """Load one member with the embedding for ``engine``, or its latest one."""
        try:
            with self._lock, self._sessions() as db:
                row = self._member_row(db, tenant, member_id)
                if row is None:
                    return None
                query = select(MemberEmbeddingRow).where(MemberEmbeddingRow.member_id == row.id)
                if engine is not None:
                    query = query.where(MemberEmbeddingRow.engine == engine)
                stored = db.scalars(
                    query.order_by(MemberEmbeddingRow.updated_at.desc(), MemberEmbeddingRow.id.desc()).limit(1)
                ).first()
                return self._to_member(row, stored)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to load member {member_id}: {exc}") from exc

    def update_member_status(self, tenant: Tenant, member_id: str, status: MemberStatus) -> bool:
        try:
            with self._lock, self._sessions() as db:
                row = self._member_row(db, tenant, member_id)
                if row is None:
                    return False
                row.status = MemberStatus(status).value
                db.commit()
                return True
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to update member {member_id}: {exc}") from exc

    def delete_member(self, tenant: Tenant, member_id: str) -> bool:
        try:
            with self._lock, self._sessions() as db:
                row = self._member_row(db, tenant, member_id)
                if row is None:
                    return False
                db.execute(delete(MemberEmbeddingRow).where(MemberEmbeddingRow.member_id == row.id))
                db.delete(row)
                db.commit()
                return True
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to delete member {member_id}: {exc}") from exc

    def list_members_with_embeddings(self, tenant: Tenant, engine: str | None = None) -> list[Member]:
        """Members of ``tenant`` that have an embedding, ordered by name.

        With ``engine`` only that extractor's vectors are returned. Without it
        each member appears once, carrying its most recently written vector.
        """
        query = (
            select(MemberRow, MemberEmbeddingRow)
            .join(MemberEmbeddingRow, MemberEmbeddingRow.member_id == MemberRow.id)
            .where(_tenant_filter(MemberRow.organization_id, tenant), MemberEmbeddingRow.dim > 0)
            .order_by(
                MemberRow.name.asc(),
                MemberRow.id.asc(),
                MemberEmbeddingRow.updated_at.desc(),
                MemberEmbeddingRow.id.desc(),
            )
        )
        if engine is not None:
            query = query.where(MemberEmbeddingRow.engine == engine)
        try:
            with self._lock, self._sessions() as db:
                members: list[Member] = []
                seen: set[str] = set()
                for row, stored in db.execute(query).all():
                    if row.id in seen:
                        continue
                    seen.add(row.id)
                    members.append(self._to_member(row, stored))
                return members
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to load members for {tenant}: {exc}") from exc

    @staticmethod
    def _member_row(db: Session, tenant: Tenant, member_id: str) -> MemberRow | None:
        return db.scalar(
            select(MemberRow).where(
                MemberRow.id == member_id,
                _tenant_filter(MemberRow.organization_id, tenant),
            )
        )

    # Attendance

    def has_attendance_between(self, tenant: Tenant, member_id: str, start: datetime, end: datetime) -> bool:
        try:
            with self._lock, self._sessions() as db:
                found = db.scalar(
                    select(AttendanceLogRow.id)
                    .where(
                        AttendanceLogRow.member_id == member_id,
                        AttendanceLogRow.tenant_scope == tenant.scope_key,
                        AttendanceLogRow.timestamp >= _to_utc_naive(start),
                        AttendanceLogRow.timestamp < _to_utc_naive(end),
                    )
                    .limit(1)
                )
                return found is not None
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to query attendance for {member_id}: {exc}") from exc

    def insert_attendance(
        self,
        tenant: Tenant,
        member_id: str,
        confidence: float,
        timestamp: datetime,
    ) -> AttendanceLog | None:
        row = AttendanceLogRow(
            member_id=member_id,
            organization_id=tenant.organization_id,
            tenant_scope=tenant.scope_key,
            attendance_date=timestamp.date().isoformat(),
            timestamp=_to_utc_naive(timestamp),
            confidence=float(confidence),
        )
        try:
            with self._lock, self._sessions() as db:
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    return None
                return self._to_log(row)
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to insert attendance for {member_id}: {exc}") from exc

    def list_attendance(self, tenant: Tenant, day: date | None = None, limit: int = 1000) -> list[AttendanceLog]:
        query = select(AttendanceLogRow).where(AttendanceLogRow.tenant_scope == tenant.scope_key)
        if day is not None:
            query = query.where(AttendanceLogRow.attendance_date == day.isoformat())
        query = query.order_by(AttendanceLogRow.timestamp.asc()).limit(max(1, min(10_000, int(limit))))
        try:
            with self._lock, self._sessions() as db:
                return [self._to_log(row) for row in db.scalars(query).all()]
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Failed to list attendance for {tenant}: {exc}") from exc

    def _to_member(self, row: MemberRow, stored: MemberEmbeddingRow | None = None) -> Member:
        if stored is not None and stored.dim > 0:
            embedding = self.cipher.decrypt(stored.ciphertext, stored.dim)
        else:
            embedding = np.empty(0, dtype=np.float32)
        return Member(
            id=row.id,
            name=row.name,
            status=MemberStatus(row.status),
            embedding=embedding,
            organization_id=row.organization_id,
            engine=stored.engine if stored is not None else "",
        )

    @staticmethod
    def _to_log(row: AttendanceLogRow) -> AttendanceLog:
        return AttendanceLog(
            id=row.id,
            member_id=row.member_id,
            organization_id=row.organization_id,
            timestamp=row.timestamp.replace(tzinfo=timezone.utc),
            confidence=row.confidence,
        )

