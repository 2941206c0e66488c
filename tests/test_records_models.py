"""
Tests for structured records and content hashing

Tenet #7: Immutability by Default - identical content, identical hash
"""

from dataclasses import dataclass, replace
from typing import ClassVar
import json

import pytest

from triage.records import (
    Observation,
    RiskAssessment,
    RiskLevel,
    StructuredRecord,
    canonical_json,
    content_hash,
    record_from_resource,
)


class TestCanonicalForm:

    def test_keys_sorted_and_compact(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_non_ascii_kept_verbatim(self):
        assert canonical_json({"note": "douleur thoracique é"}) == '{"note":"douleur thoracique é"}'

    def test_key_order_does_not_change_hash(self):
        assert content_hash({"a": 1, "b": 2}) == content_hash({"b": 2, "a": 1})

    def test_hash_is_lowercase_prefixed_keccak(self):
        digest = content_hash({"a": 1})

        assert digest.startswith("0x")
        assert len(digest) == 66
        assert digest == digest.lower()


class TestHashStability:

    def test_repeated_hash_identical(self, observation):
        assert observation.data_hash == observation.data_hash

    def test_equal_records_hash_identically(self, observation):
        twin = Observation(
            id="obs-1",
            subject_id="patient-abc",
            value="Sharp chest pain radiating to the left arm",
            created_at="2026-01-01T10:00:00.000Z",
        )
        assert twin.data_hash == observation.data_hash

    @pytest.mark.parametrize("change", [
        {"value": "Dull chest pain"},
        {"created_at": "2026-01-01T10:00:01.000Z"},
        {"subject_id": "patient-xyz"},
        {"note": "added note"},
    ])
    def test_any_field_change_changes_hash(self, observation, change):
        assert replace(observation, **change).data_hash != observation.data_hash


class TestObservationResource:

    def test_resource_shape(self, observation):
        resource = observation.to_resource()

        assert resource["resourceType"] == "Observation"
        assert resource["status"] == "final"
        assert resource["subject"] == {"reference": "Patient/patient-abc"}
        assert resource["valueString"] == "Sharp chest pain radiating to the left arm"
        assert resource["code"]["coding"][0]["code"] == "89261-2"
        assert resource["meta"]["source"] == "symptom-triage-pipeline"

    def test_supersedes_becomes_derived_from(self, observation):
        update = replace(observation, id="obs-2", supersedes="obs-1")

        assert update.to_resource()["derivedFrom"] == [{"reference": "Observation/obs-1"}]

    def test_ledger_resource_id(self, observation):
        assert observation.ledger_resource_id == "Observation-obs-1"

    def test_parse_back(self, observation):
        assert record_from_resource(json.loads(json.dumps(observation.to_resource()))) == observation


class TestRiskAssessmentResource:

    def test_prediction_carries_qualitative_and_numeric_risk(self, risk_assessment):
        prediction = risk_assessment.to_resource()["prediction"][0]

        assert prediction["qualitativeRisk"]["coding"][0]["code"] == "high"
        assert prediction["probabilityDecimal"] == 0.8
        assert prediction["outcome"]["text"] == "Possible acute coronary syndrome"

    def test_basis_references_observation(self, risk_assessment):
        assert risk_assessment.to_resource()["basis"] == [{"reference": "Observation/obs-1"}]

    def test_probability_out_of_range_rejected(self):
        with pytest.raises(ValueError, match="probability"):
            RiskAssessment(
                id="r", subject_id="patient-abc", value="x", created_at="2026-01-01T00:00:00Z",
                risk_level=RiskLevel.LOW, probability=1.5,
            )

    def test_parse_back(self, risk_assessment):
        parsed = record_from_resource(risk_assessment.to_resource())

        assert parsed == risk_assessment
        assert parsed.risk_level.is_high

    def test_unsupported_type_rejected(self):
        with pytest.raises(ValueError, match="Unsupported"):
            record_from_resource({"resourceType": "Patient", "id": "p1", "subject": {"reference": "Patient/p1"}})


class TestRecordBase:

    def test_base_record_cannot_be_built(self):
        with pytest.raises(TypeError):
            StructuredRecord(id="r1", subject_id="patient-abc", value="x", created_at="2024-01-01T00:00:00Z")

    def test_variant_without_resource_form_cannot_be_built(self):
        @dataclass(frozen=True, kw_only=True)
        class Encounter(StructuredRecord):
            resource_type: ClassVar[str] = "Encounter"

        with pytest.raises(TypeError, match="to_resource"):
            Encounter(id="e1", subject_id="patient-abc", value="x", created_at="2024-01-01T00:00:00Z")
