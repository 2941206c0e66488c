"""
Assessment pipeline: completion detection, record synthesis, orchestration.
"""

from triage.assessment.completion import PROTOCOL_INSTRUCTIONS, parse_reply, strip_markers
from triage.assessment.models import (
    MAX_MESSAGE_LENGTH,
    AssessmentOutcome,
    AssistantReply,
    CompletionStatus,
    OrchestrationResult,
    Turn,
    UserContext,
)
from triage.assessment.orchestrator import AssessmentOrchestrator, build_orchestrator
from triage.assessment.synthesizer import RecordSynthesizer

__all__ = [
    "MAX_MESSAGE_LENGTH",
    "PROTOCOL_INSTRUCTIONS",
    "AssessmentOrchestrator",
    "AssessmentOutcome",
    "AssistantReply",
    "CompletionStatus",
    "OrchestrationResult",
    "RecordSynthesizer",
    "Turn",
    "UserContext",
    "build_orchestrator",
    "parse_reply",
    "strip_markers",
]
