"""
Local Record Store - Emulated object store on SQLAlchemy

Development backend. Each record is stored once under a blob-style
location (<subject>/<ResourceType>/<id>.json) with its canonical content
hash and idempotency key.

Tenet #7: Immutability by Default - rows are inserted, never updated
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional, TypeVar
import asyncio

from sqlalchemy import JSON, Column, DateTime, Integer, String, create_engine, or_
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
import structlog

from triage.config import RetryPolicy, StoreConfig
from triage.errors import (
    IdempotencyConflictError,
    RecordNotFoundError,
    StorageError,
    StorageUnavailableError,
)
from triage.observability import hash_identifier
from triage.records.models import StructuredRecord, content_hash, record_from_resource
from triage.records.store import (
    RecordListing,
    RecordStore,
    StoredRecord,
    default_idempotency_key,
    record_location,
)
from triage.retry import retry_async, with_timeout

logger = structlog.get_logger()

T = TypeVar("T")

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClinicalRecordRow(Base):
    """
    One stored structured record.

    Note: body holds the full resource JSON; content_hash is the
    keccak-256 of its canonical form.
    """
    __tablename__ = "clinical_records"

    id = Column(Integer, primary_key=True, index=True)
    location = Column(String(512), unique=True, index=True, nullable=False)
    subject_id = Column(String(100), index=True, nullable=False)
    resource_type = Column(String(64), index=True, nullable=False)
    resource_id = Column(String(128), nullable=False)
    idempotency_key = Column(String(128), unique=True, nullable=False)
    content_hash = Column(String(66), nullable=False)
    body = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


def _build_engine(database_url: str):
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=False)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        # Single shared connection so every thread sees the same database
        kwargs["poolclass"] = StaticPool
    return create_engine(database_url, echo=False, **kwargs)


class LocalRecordStore(RecordStore):
    """
    Record store backed by a local SQL database.

    Example:
        store = LocalRecordStore("sqlite://")
        stored = await store.put(observation)
        again = await store.put(observation)   # no-op, same id
        assert again.created is False
    """

    storage_mode = "local"

    def __init__(
        self,
        database_url: str = "sqlite:///./triage_records.db",
        retry_policy: Optional[RetryPolicy] = None,
        timeout_s: float = 15.0,
    ):
        self.database_url = database_url
        self.retry_policy = retry_policy or RetryPolicy()
        self.timeout_s = timeout_s
        self.engine = _build_engine(database_url)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

        logger.info("local_record_store_initialized", database=self.engine.url.render_as_string(hide_password=True))

    @classmethod
    def from_config(cls, config: StoreConfig, retry_policy: RetryPolicy) -> "LocalRecordStore":
        return cls(config.database_url, retry_policy=retry_policy, timeout_s=config.timeout_s)

    async def _run(self, operation: str, fn: Callable[[Session], T]) -> T:
        def _in_session() -> T:
            with self._sessions() as session:
                try:
                    return fn(session)
                except OperationalError as e:
                    session.rollback()
                    raise StorageUnavailableError(
                        f"Database unavailable during {operation}", operation=operation,
                        details={"error": str(e.orig) if e.orig else str(e)},
                    ) from e
                except SQLAlchemyError as e:
                    session.rollback()
                    raise StorageError(
                        f"Database error during {operation}", operation=operation,
                        details={"error": str(e)},
                    ) from e

        async def _attempt() -> T:
            return await with_timeout(asyncio.to_thread(_in_session), self.timeout_s, f"store.{operation}")

        return await retry_async(_attempt, policy=self.retry_policy, operation=f"store.{operation}")

    async def put(self, record: StructuredRecord, idempotency_key: Optional[str] = None) -> StoredRecord:
        key = idempotency_key or default_idempotency_key(record)
        resource = record.to_resource()
        digest = content_hash(resource)
        location = record_location(record.subject_id, record.resource_type, record.id)

        def _replay_or_conflict(existing: ClinicalRecordRow) -> StoredRecord:
            if existing.content_hash != digest:
                raise IdempotencyConflictError(
                    "A different record is already stored under this key or address",
                    operation="put",
                    details={"location": existing.location},
                )
            return self._stored(existing, created=False)

        def _put(session: Session) -> StoredRecord:
            existing = self._find_existing(session, key, location)
            if existing is not None:
                return _replay_or_conflict(existing)

            row = ClinicalRecordRow(
                location=location,
                subject_id=record.subject_id,
                resource_type=record.resource_type,
                resource_id=record.id,
                idempotency_key=key,
                content_hash=digest,
                body=resource,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                # Lost a race with a concurrent put of the same key/address
                session.rollback()
                existing = self._find_existing(session, key, location)
                if existing is None:
                    raise
                return _replay_or_conflict(existing)
            session.refresh(row)
            return self._stored(row, created=True)

        stored = await self._run("put", _put)
        logger.info(
            "record_stored",
            resource_type=stored.resource_type,
            resource_id=stored.id,
            subject=hash_identifier(record.subject_id),
            created=stored.created,
            storage_mode=self.storage_mode,
        )
        return stored

    async def get(self, subject_id: str, resource_type: str, resource_id: str) -> StructuredRecord:
        location = record_location(subject_id, resource_type, resource_id)

        def _get(session: Session):
            row = session.query(ClinicalRecordRow).filter(ClinicalRecordRow.location == location).first()
            return dict(row.body) if row is not None else None

        body = await self._run("get", _get)
        if body is None:
            raise RecordNotFoundError(subject_id, resource_type, resource_id)
        return record_from_resource(body)

    async def list_by_subject(self, subject_id: str) -> RecordListing:
        def _list(session: Session):
            rows = (
                session.query(ClinicalRecordRow)
                .filter(ClinicalRecordRow.subject_id == subject_id)
                .order_by(ClinicalRecordRow.id.asc())
                .all()
            )
            return [dict(row.body) for row in rows]

        return self._listing(await self._run("list_by_subject", _list))

    async def list_by_type(self, resource_type: str) -> RecordListing:
        def _list(session: Session):
            rows = (
                session.query(ClinicalRecordRow)
                .filter(ClinicalRecordRow.resource_type == resource_type)
                .order_by(ClinicalRecordRow.id.asc())
                .all()
            )
            return [dict(row.body) for row in rows]

        return self._listing(await self._run("list_by_type", _list))

    async def list_subjects(self) -> List[str]:
        def _subjects(session: Session):
            rows = session.query(ClinicalRecordRow.subject_id).distinct().all()
            return sorted(row[0] for row in rows)

        return await self._run("list_subjects", _subjects)

    async def close(self) -> None:
        self.engine.dispose()

    @staticmethod
    def _find_existing(session: Session, key: str, location: str) -> Optional[ClinicalRecordRow]:
        return (
            session.query(ClinicalRecordRow)
            .filter(or_(ClinicalRecordRow.idempotency_key == key, ClinicalRecordRow.location == location))
            .first()
        )

    def _stored(self, row: ClinicalRecordRow, created: bool) -> StoredRecord:
        return StoredRecord(
            id=row.resource_id,
            resource_type=row.resource_type,
            subject_id=row.subject_id,
            location=row.location,
            storage_mode=self.storage_mode,
            created=created,
        )

    @staticmethod
    def _listing(bodies: List[dict]) -> RecordListing:
        records = []
        for body in bodies:
            try:
                records.append(record_from_resource(body))
            except (KeyError, ValueError) as e:
                logger.warning("stored_record_unparseable", resource_id=body.get("id"), error=str(e))
        return RecordListing(records=records)
