"""SQLAlchemy-backed store.

Each operation runs in its own transaction. A template, samples included,
lives in a single row, so one statement reads or replaces it whole.
Template replacement is a version compare-and-swap; attendance inserts rely
on a unique constraint over (identity_id, cooldown_key), so racing writers
cannot both succeed.
"""

from __future__ import annotations

import logging
import threading
from contextlib import nullcontext
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import numpy as np
from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Integer,
    LargeBinary,
    String,
    UniqueConstraint,
    create_engine,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from attendx.domain import AttendanceRecord, Embedding, EnrollmentStatus, Identity, Template
from attendx.errors import ConflictError, StoreUnavailable, UnknownIdentity

if TYPE_CHECKING:
    from contextlib import AbstractContextManager

    from numpy.typing import NDArray
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

_VECTOR_DTYPE = "<f8"


class Base(DeclarativeBase):
    pass


class IdentityRow(Base):
    __tablename__ = "identities"

    identity_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(16), default=EnrollmentStatus.UNENROLLED.value)


class TemplateRow(Base):
    """One committed template; ``samples`` is a (sample_count, dimensionality) matrix."""

    __tablename__ = "templates"

    identity_id: Mapped[str] = mapped_column(ForeignKey("identities.identity_id", ondelete="CASCADE"), primary_key=True)
    version: Mapped[int] = mapped_column(Integer)
    extractor_version: Mapped[str] = mapped_column(String(64))
    dimensionality: Mapped[int] = mapped_column(Integer)
    sample_count: Mapped[int] = mapped_column(Integer)
    samples: Mapped[bytes] = mapped_column(LargeBinary)
    centroid: Mapped[bytes] = mapped_column(LargeBinary)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class AttendanceRow(Base):
    __tablename__ = "attendance_records"
    __table_args__ = (UniqueConstraint("identity_id", "cooldown_key", name="uq_attendance_cooldown"),)

    record_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    identity_id: Mapped[str] = mapped_column(
        ForeignKey("identities.identity_id", ondelete="CASCADE"),
        index=True,
    )
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    score: Mapped[float] = mapped_column(Float)
    cooldown_key: Mapped[str] = mapped_column(String(64))


def _to_blob(values: NDArray[np.float64]) -> bytes:
    return np.ascontiguousarray(values, dtype=_VECTOR_DTYPE).tobytes()


def _template_columns(template: Template) -> dict[str, Any]:
    return {
        "version": template.version,
        "extractor_version": template.extractor_version,
        "dimensionality": template.dimensionality,
        "sample_count": template.sample_count,
        "samples": _to_blob(np.stack([s.values for s in template.samples])),
        "centroid": _to_blob(template.centroid.values),
        "created_at": _as_utc(template.created_at),
    }


def _template_from_row(row: TemplateRow) -> Template:
    matrix = np.frombuffer(row.samples, dtype=_VECTOR_DTYPE).reshape(row.sample_count, row.dimensionality)
    return Template(
        identity_id=row.identity_id,
        samples=tuple(Embedding(values=vector, extractor_version=row.extractor_version) for vector in matrix),
        centroid=Embedding(
            values=np.frombuffer(row.centroid, dtype=_VECTOR_DTYPE),
            extractor_version=row.extractor_version,
        ),
        created_at=_as_utc(row.created_at),
        version=row.version,
    )


def _as_utc(value: datetime) -> datetime:
    # SQLite drops the offset; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _record_from_row(row: AttendanceRow) -> AttendanceRecord:
    return AttendanceRecord(
        identity_id=row.identity_id,
        recorded_at=_as_utc(row.recorded_at),
        score=row.score,
        cooldown_key=row.cooldown_key,
        record_id=row.record_id,
    )


def create_sql_engine(url: str, *, echo: bool = False) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across threads."""
    if url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith("sqlite:")):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, echo=echo, pool_pre_ping=True)


class SqlStore:
    """IdentityDirectory, TemplateStore and AttendanceLedger over SQLAlchemy.

    When the engine hands every thread the same connection (``StaticPool``),
    operations are serialized, since transactions on one DBAPI connection
    cannot interleave.
    """

    def __init__(self, engine: Engine, *, create_tables: bool = True) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self._guard: AbstractContextManager[Any] = (
            threading.RLock() if isinstance(engine.pool, StaticPool) else nullcontext()
        )
        if create_tables:
            Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False) -> SqlStore:
        return cls(create_sql_engine(url, echo=echo))

    @property
    def serialized(self) -> bool:
        return not isinstance(self._guard, nullcontext)

    # -- IdentityDirectory --------------------------------------------------

    def add_identity(self, identity: Identity) -> Identity:
        try:
            with self._guard, self._session_factory.begin() as session:
                row = session.get(IdentityRow, identity.identity_id)
                if row is None:
                    row = IdentityRow(
                        identity_id=identity.identity_id,
                        display_name=identity.display_name,
                        status=identity.status.value,
                    )
                    session.add(row)
                else:
                    row.display_name = identity.display_name
                return Identity(row.identity_id, row.display_name, EnrollmentStatus(row.status))
        except OperationalError as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc

    def get_identity(self, identity_id: str) -> Identity | None:
        try:
            with self._guard, self._session_factory() as session:
                row = session.get(IdentityRow, identity_id)
                if row is None:
                    return None
                return Identity(row.identity_id, row.display_name, EnrollmentStatus(row.status))
        except OperationalError as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc

    # -- TemplateStore ------------------------------------------------------

    def get(self, identity_id: str) -> Template | None:
        try:
            with self._guard, self._session_factory() as session:
                row = session.get(TemplateRow, identity_id)
                return _template_from_row(row) if row is not None else None
        except OperationalError as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc

    def atomic_replace(self, identity_id: str, template: Template, expected_prior_version: int | None) -> None:
        columns = _template_columns(template)
        try:
            with self._guard:
                self._replace(identity_id, columns, expected_prior_version)
        except OperationalError as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc
        logger.debug("Stored template v%s for %s", template.version, identity_id)

    def _replace(self, identity_id: str, columns: dict[str, Any], expected_prior_version: int | None) -> None:
        try:
            with self._session_factory.begin() as session:
                identity = session.get(IdentityRow, identity_id)
                if identity is None:
                    raise UnknownIdentity(identity_id)

                if expected_prior_version is None:
                    session.add(TemplateRow(identity_id=identity_id, **columns))
                    session.flush()
                else:
                    result = session.execute(
                        update(TemplateRow)
                        .where(
                            TemplateRow.identity_id == identity_id,
                            TemplateRow.version == expected_prior_version,
                        )
                        .values(**columns)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConflictError(identity_id, expected_prior_version, self._version_in(session, identity_id))
                identity.status = EnrollmentStatus.ENROLLED.value
        except IntegrityError:
            # First enrollment lost the race against another first enrollment.
            raise ConflictError(identity_id, expected_prior_version, self._current_version(identity_id)) from None

    @staticmethod
    def _version_in(session: Session, identity_id: str) -> int | None:
        return session.scalar(select(TemplateRow.version).where(TemplateRow.identity_id == identity_id))

    def _current_version(self, identity_id: str) -> int | None:
        with self._session_factory() as session:
            return self._version_in(session, identity_id)

    # -- AttendanceLedger ---------------------------------------------------

    def get_latest(self, identity_id: str) -> AttendanceRecord | None:
        try:
            with self._guard, self._session_factory() as session:
                row = session.scalars(
                    select(AttendanceRow)
                    .where(AttendanceRow.identity_id == identity_id)
                    .order_by(AttendanceRow.recorded_at.desc())
                    .limit(1)
                ).first()
                return _record_from_row(row) if row is not None else None
        except OperationalError as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc

    def insert_if_absent(self, identity_id: str, record: AttendanceRecord, cooldown_key: str) -> AttendanceRecord:
        try:
            with self._guard:
                return self._insert_or_find(identity_id, record, cooldown_key)
        except OperationalError as exc:
            raise StoreUnavailable(f"Database unavailable: {exc.orig}") from exc

    def _insert_or_find(self, identity_id: str, record: AttendanceRecord, cooldown_key: str) -> AttendanceRecord:
        try:
            with self._session_factory.begin() as session:
                if session.get(IdentityRow, identity_id) is None:
                    raise UnknownIdentity(identity_id)
                row = AttendanceRow(
                    record_id=record.record_id,
                    identity_id=identity_id,
                    recorded_at=_as_utc(record.recorded_at),
                    score=record.score,
                    cooldown_key=cooldown_key,
                )
                session.add(row)
                session.flush()
                return _record_from_row(row)
        except IntegrityError:
            existing = self._find_by_key(identity_id, cooldown_key)
            if existing is None:
                raise
            return existing

    def _find_by_key(self, identity_id: str, cooldown_key: str) -> AttendanceRecord | None:
        with self._session_factory() as session:
            row = session.scalars(
                select(AttendanceRow).where(
                    AttendanceRow.identity_id == identity_id,
                    AttendanceRow.cooldown_key == cooldown_key,
                )
            ).first()
            return _record_from_row(row) if row is not None else None

    def count_records(self, identity_id: str) -> int:
        with self._guard, self._session_factory() as session:
            query = select(AttendanceRow.record_id).where(AttendanceRow.identity_id == identity_id)
            return len(session.scalars(query).all())

    def close(self) -> None:
        self._engine.dispose()
