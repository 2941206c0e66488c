"""
Structured clinical records and their storage backends.
"""

from triage.config import RetryPolicy, StoreConfig
from triage.records.fhir_service import FhirServiceRecordStore
from triage.records.local import LocalRecordStore
from triage.records.models import (
    Observation,
    ResourceType,
    RiskAssessment,
    RiskLevel,
    StructuredRecord,
    canonical_json,
    content_hash,
    record_from_resource,
)
from triage.records.store import RecordListing, RecordStore, StoredRecord, default_idempotency_key


def create_record_store(config: StoreConfig, retry_policy: RetryPolicy) -> RecordStore:
    """Pick the backend named by `config.mode`."""
    if config.mode == "fhir-service":
        return FhirServiceRecordStore.from_config(config, retry_policy)
    return LocalRecordStore.from_config(config, retry_policy)


__all__ = [
    "FhirServiceRecordStore",
    "LocalRecordStore",
    "Observation",
    "RecordListing",
    "RecordStore",
    "ResourceType",
    "RiskAssessment",
    "RiskLevel",
    "StoredRecord",
    "StructuredRecord",
    "canonical_json",
    "content_hash",
    "create_record_store",
    "default_idempotency_key",
    "record_from_resource",
]
