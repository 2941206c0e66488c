"""
Clinical Record Store - Backend-agnostic contract

Two interchangeable backends implement `RecordStore`:
- LocalRecordStore: emulated object store on SQLAlchemy (development)
- FhirServiceRecordStore: managed clinical-record REST API (production)

Callers never branch on the backend; `create_record_store` picks one at
construction time from `StoreConfig.mode`.

Idempotency:
    put(record, key) with a key already stored and identical content is a
    no-op success returning the original id and location. The same key
    (or the same address) with different content is rejected with
    IdempotencyConflictError, since records are immutable.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence
import hashlib
import re

from triage.records.models import StructuredRecord


@dataclass(frozen=True)
class StoredRecord:
    """Result of a put."""
    id: str
    resource_type: str
    subject_id: str
    location: str
    storage_mode: str
    created: bool  # False when the put was an idempotent replay

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "resourceType": self.resource_type,
            "location": self.location,
            "storageMode": self.storage_mode,
            "created": self.created,
        }


@dataclass(frozen=True)
class RecordListing:
    """
    Records plus a stable summary.

    `count` always equals `len(records)`; `resource_types` and
    `patient_ids` are sorted and de-duplicated.
    """
    records: List[StructuredRecord] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def resource_types(self) -> List[str]:
        return sorted({r.resource_type for r in self.records})

    @property
    def patient_ids(self) -> List[str]:
        return sorted({r.subject_id for r in self.records})

    def by_type(self) -> Dict[str, List[StructuredRecord]]:
        grouped: Dict[str, List[StructuredRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.resource_type, []).append(record)
        return grouped

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resources": [r.to_resource() for r in self.records],
            "resourcesByType": {
                rtype: [r.to_resource() for r in items]
                for rtype, items in sorted(self.by_type().items())
            },
            "resourceTypes": self.resource_types,
            "patientIds": self.patient_ids,
            "count": self.count,
        }


def default_idempotency_key(record: StructuredRecord) -> str:
    """Key derived from subject, resource type and resource id."""
    raw = f"{record.subject_id}|{record.resource_type}|{record.id}"
    return hashlib.sha256(raw.encode()).hexdigest()


def sanitize_path_segment(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9._@-]", "_", value)


def record_location(subject_id: str, resource_type: str, resource_id: str) -> str:
    """Blob-style address: <subject>/<ResourceType>/<id>.json"""
    return f"{sanitize_path_segment(subject_id)}/{resource_type}/{sanitize_path_segment(resource_id)}.json"


class RecordStore(ABC):
    """Persist and retrieve structured records by (subject, type, id)."""

    storage_mode: str = ""

    @abstractmethod
    async def put(self, record: StructuredRecord, idempotency_key: Optional[str] = None) -> StoredRecord:
        """
        Persist a record.

        Raises:
            IdempotencyConflictError: Key or address holds different content
            StorageError: The backend failed the write
        """

    @abstractmethod
    async def get(self, subject_id: str, resource_type: str, resource_id: str) -> StructuredRecord:
        """
        Raises:
            RecordNotFoundError: Nothing stored at that address
        """

    @abstractmethod
    async def list_by_subject(self, subject_id: str) -> RecordListing:
        """All records of a subject; empty listing for unknown subjects."""

    @abstractmethod
    async def list_by_type(self, resource_type: str) -> RecordListing:
        """All records of one resource type across subjects."""

    @abstractmethod
    async def list_subjects(self) -> List[str]:
        """Sorted distinct subject ids that own at least one record."""

    async def put_many(
        self,
        records: Sequence[StructuredRecord],
    ) -> List[StoredRecord]:
        """Persist records in order, stopping at the first failure."""
        return [await self.put(record) for record in records]

    async def close(self) -> None:
        """Release backend resources."""
