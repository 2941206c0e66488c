"""
Structured Record Synthesizer

Turns a finished assessment into one Observation and, when a risk level
was determinable, one RiskAssessment whose basis is that Observation.
Output is deterministic for identical inputs apart from the generated
ids and timestamp.

Tenet #1: Safety First - no risk level, no RiskAssessment
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional
import uuid

import structlog

from triage.assessment.completion import strip_markers
from triage.assessment.models import AssessmentOutcome, UserContext, validate_subject_id
from triage.records.models import RECORD_SOURCE, Observation, RiskAssessment, StructuredRecord

logger = structlog.get_logger()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _new_id() -> str:
    return str(uuid.uuid4())


class RecordSynthesizer:
    """
    Example:
        synthesizer = RecordSynthesizer()
        records = synthesizer.synthesize("patient-abc", reply.text, reply.outcome)
    """

    def __init__(
        self,
        source: str = RECORD_SOURCE,
        id_factory: Callable[[], str] = _new_id,
        clock: Callable[[], str] = _utc_timestamp,
    ):
        self.source = source
        self.id_factory = id_factory
        self.clock = clock

    def synthesize(
        self,
        subject_id: str,
        raw_reply_text: str,
        outcome: AssessmentOutcome,
        user_context: Optional[UserContext] = None,
    ) -> List[StructuredRecord]:
        """
        Build the structured records for a finished assessment.

        Raises:
            ValidationError: subject_id is malformed
            ValueError: outcome is not a finished assessment
        """
        subject_id = validate_subject_id(subject_id)
        if not outcome.status.is_final:
            raise ValueError(f"Cannot synthesize records for status {outcome.status.value}")

        created_at = self.clock()
        subject_display = user_context.display if user_context else None
        narrative = outcome.summary or strip_markers(raw_reply_text)

        observation = Observation(
            id=self.id_factory(),
            subject_id=subject_id,
            value=narrative,
            created_at=created_at,
            source=self.source,
            subject_display=subject_display,
            note=f"Reported symptoms: {', '.join(outcome.symptoms)}" if outcome.symptoms else None,
        )
        records: List[StructuredRecord] = [observation]

        if outcome.risk_level is not None:
            records.append(RiskAssessment(
                id=self.id_factory(),
                subject_id=subject_id,
                value=outcome.condition or narrative,
                created_at=created_at,
                source=self.source,
                subject_display=subject_display,
                risk_level=outcome.risk_level,
                probability=outcome.probability,
                mitigation=outcome.recommendation,
                basis_id=observation.id,
            ))

        logger.info(
            "records_synthesized",
            resource_types=[r.resource_type for r in records],
            risk_level=outcome.risk_level.value if outcome.risk_level else None,
        )
        return records
