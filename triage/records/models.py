"""
Structured Clinical Records - Observation and RiskAssessment

Tenet #7: Immutability by Default - records are frozen once synthesized;
an update is a new record that references the one it supersedes.

Canonical form (used for every content hash):
    json.dumps(resource, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
encoded as UTF-8 and hashed with keccak-256, rendered as lowercase
0x-prefixed hex. Identical content always hashes identically.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional
import json

from web3 import Web3


RECORD_SOURCE = "symptom-triage-pipeline"
SUBJECT_IDENTIFIER_SYSTEM = "urn:triage:subject-id"
RISK_PROBABILITY_SYSTEM = "http://terminology.hl7.org/CodeSystem/risk-probability"

CHIEF_COMPLAINT_CODE = {
    "coding": [
        {
            "system": "http://loinc.org",
            "code": "89261-2",
            "display": "Chief complaint - Reported",
        }
    ],
    "text": "Symptom assessment",
}


class ResourceType(str, Enum):
    """Supported structured record variants."""
    OBSERVATION = "Observation"
    RISK_ASSESSMENT = "RiskAssessment"


class RiskLevel(Enum):
    """Qualitative risk on the standard risk-probability scale."""
    NEGLIGIBLE = "negligible"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CERTAIN = "certain"

    @property
    def display(self) -> str:
        return {
            RiskLevel.NEGLIGIBLE: "Negligible likelihood",
            RiskLevel.LOW: "Low likelihood",
            RiskLevel.MODERATE: "Moderate likelihood",
            RiskLevel.HIGH: "High likelihood",
            RiskLevel.CERTAIN: "Certain",
        }[self]

    @property
    def is_high(self) -> bool:
        return self in (RiskLevel.HIGH, RiskLevel.CERTAIN)


def canonical_json(resource: Dict[str, Any]) -> str:
    """Serialize a resource to its canonical JSON form."""
    return json.dumps(resource, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_hash(resource: Dict[str, Any]) -> str:
    """keccak-256 of the canonical JSON form, as 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(text=canonical_json(resource)))


@dataclass(frozen=True, kw_only=True)
class StructuredRecord(ABC):
    """
    Fields shared by every structured record.

    Attributes:
        id: Globally unique id, independent of the subject id
        subject_id: Subject the record is about (binding invariant)
        value: Free-text payload (narrative or outcome text)
        created_at: ISO-8601 UTC timestamp
        status: Always "final" at creation
        source: Tag identifying the producing system
        subject_display: Optional human-readable subject label
        supersedes: Id of the record this one replaces, if any
    """
    resource_type: ClassVar[str] = ""
    profile: ClassVar[str] = ""

    id: str
    subject_id: str
    value: str
    created_at: str
    status: str = "final"
    source: str = RECORD_SOURCE
    subject_display: Optional[str] = None
    supersedes: Optional[str] = None

    @property
    def subject_reference(self) -> str:
        return f"Patient/{self.subject_id}"

    @property
    def ledger_resource_id(self) -> str:
        """Key under which the record's hash is written to the ledger."""
        return f"{self.resource_type}-{self.id}"

    def _common(self) -> Dict[str, Any]:
        subject: Dict[str, Any] = {"reference": self.subject_reference}
        if self.subject_display:
            subject["display"] = self.subject_display
        return {
            "resourceType": self.resource_type,
            "id": self.id,
            "status": self.status,
            "subject": subject,
            "identifier": [{"system": SUBJECT_IDENTIFIER_SYSTEM, "value": self.subject_id}],
            "meta": {"source": self.source, "profile": [self.profile]},
        }

    @abstractmethod
    def to_resource(self) -> Dict[str, Any]:
        """Structured form the record is stored, served and hashed as."""

    @property
    def data_hash(self) -> str:
        return content_hash(self.to_resource())


@dataclass(frozen=True, kw_only=True)
class Observation(StructuredRecord):
    """Narrative of the reported symptoms and the assessment outcome."""
    resource_type: ClassVar[str] = ResourceType.OBSERVATION.value
    profile: ClassVar[str] = "http://hl7.org/fhir/StructureDefinition/Observation"

    code: Dict[str, Any] = field(default_factory=lambda: json.loads(json.dumps(CHIEF_COMPLAINT_CODE)))
    note: Optional[str] = None

    def to_resource(self) -> Dict[str, Any]:
        resource = self._common()
        resource.update({
            "code": self.code,
            "effectiveDateTime": self.created_at,
            "issued": self.created_at,
            "valueString": self.value,
        })
        if self.note:
            resource["note"] = [{"text": self.note}]
        if self.supersedes:
            resource["derivedFrom"] = [{"reference": f"Observation/{self.supersedes}"}]
        return resource


@dataclass(frozen=True, kw_only=True)
class RiskAssessment(StructuredRecord):
    """Qualitative (and optionally numeric) risk with the predicted outcome."""
    resource_type: ClassVar[str] = ResourceType.RISK_ASSESSMENT.value
    profile: ClassVar[str] = "http://hl7.org/fhir/StructureDefinition/RiskAssessment"

    risk_level: RiskLevel
    probability: Optional[float] = None
    mitigation: Optional[str] = None
    basis_id: Optional[str] = None

    def __post_init__(self):
        if self.probability is not None and not 0.0 <= self.probability <= 1.0:
            raise ValueError(f"probability must be 0.0-1.0, got {self.probability}")

    def to_resource(self) -> Dict[str, Any]:
        prediction: Dict[str, Any] = {
            "outcome": {"text": self.value},
            "qualitativeRisk": {
                "coding": [{
                    "system": RISK_PROBABILITY_SYSTEM,
                    "code": self.risk_level.value,
                    "display": self.risk_level.display,
                }]
            },
        }
        if self.probability is not None:
            prediction["probabilityDecimal"] = self.probability

        resource = self._common()
        resource.update({
            "occurrenceDateTime": self.created_at,
            "prediction": [prediction],
        })
        if self.mitigation:
            resource["mitigation"] = self.mitigation
        if self.basis_id:
            resource["basis"] = [{"reference": f"Observation/{self.basis_id}"}]
        if self.supersedes:
            resource["parent"] = {"reference": f"RiskAssessment/{self.supersedes}"}
        return resource


def _subject_id(resource: Dict[str, Any]) -> str:
    reference = (resource.get("subject") or {}).get("reference", "")
    if reference.startswith("Patient/") and len(reference) > len("Patient/"):
        return reference[len("Patient/"):]
    for identifier in resource.get("identifier") or []:
        if identifier.get("system") == SUBJECT_IDENTIFIER_SYSTEM and identifier.get("value"):
            return identifier["value"]
    raise ValueError(
        f"Cannot extract subject id from {resource.get('resourceType')} resource {resource.get('id')}"
    )


def _reference_id(reference: Optional[str]) -> Optional[str]:
    if not reference or "/" not in reference:
        return None
    return reference.split("/", 1)[1]


def record_from_resource(resource: Dict[str, Any]) -> StructuredRecord:
    """
    Rebuild a structured record from its resource JSON.

    Raises:
        ValueError: If the resource type is unsupported or a required
                    field is missing
    """
    resource_type = resource.get("resourceType")
    meta = resource.get("meta") or {}
    common = dict(
        id=resource["id"],
        subject_id=_subject_id(resource),
        status=resource.get("status", "final"),
        source=meta.get("source", RECORD_SOURCE),
        subject_display=(resource.get("subject") or {}).get("display"),
    )

    if resource_type == ResourceType.OBSERVATION.value:
        notes: List[Dict[str, Any]] = resource.get("note") or []
        derived = resource.get("derivedFrom") or []
        return Observation(
            **common,
            value=resource.get("valueString", ""),
            created_at=resource.get("effectiveDateTime") or resource.get("issued", ""),
            code=resource.get("code") or json.loads(json.dumps(CHIEF_COMPLAINT_CODE)),
            note=notes[0].get("text") if notes else None,
            supersedes=_reference_id(derived[0].get("reference")) if derived else None,
        )

    if resource_type == ResourceType.RISK_ASSESSMENT.value:
        predictions = resource.get("prediction") or []
        if not predictions:
            raise ValueError(f"RiskAssessment {resource.get('id')} has no prediction")
        prediction = predictions[0]
        codings = (prediction.get("qualitativeRisk") or {}).get("coding") or []
        if not codings:
            raise ValueError(f"RiskAssessment {resource.get('id')} has no qualitative risk")
        basis = resource.get("basis") or []
        return RiskAssessment(
            **common,
            value=(prediction.get("outcome") or {}).get("text", ""),
            created_at=resource.get("occurrenceDateTime", ""),
            risk_level=RiskLevel(codings[0]["code"]),
            probability=prediction.get("probabilityDecimal"),
            mitigation=resource.get("mitigation"),
            basis_id=_reference_id(basis[0].get("reference")) if basis else None,
            supersedes=_reference_id((resource.get("parent") or {}).get("reference")),
        )

    raise ValueError(f"Unsupported resource type: {resource_type!r}")
