"""
Assessment data model - turns, replies, outcomes and results
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import re

from triage.errors import ValidationError
from triage.records.models import RiskAssessment, RiskLevel, StructuredRecord

MAX_MESSAGE_LENGTH = 1000
SUBJECT_ID_PATTERN = re.compile(r"^[A-Za-z0-9\-_@.]+$")
SUBJECT_ID_MIN_LENGTH = 3
SUBJECT_ID_MAX_LENGTH = 100


class CompletionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    ESCALATE = "ESCALATE"

    @property
    def is_final(self) -> bool:
        return self is not CompletionStatus.IN_PROGRESS


@dataclass(frozen=True)
class UserContext:
    """Authenticated caller details, used only as a display label."""
    email: Optional[str] = None
    name: Optional[str] = None
    is_authenticated: bool = False

    @property
    def display(self) -> Optional[str]:
        return self.name or self.email


def validate_subject_id(subject_id: Any) -> str:
    if not isinstance(subject_id, str) or not subject_id:
        raise ValidationError("subjectId is required", field="subjectId")
    if not SUBJECT_ID_MIN_LENGTH <= len(subject_id) <= SUBJECT_ID_MAX_LENGTH:
        raise ValidationError(
            f"subjectId must be {SUBJECT_ID_MIN_LENGTH}-{SUBJECT_ID_MAX_LENGTH} characters",
            field="subjectId",
        )
    if not SUBJECT_ID_PATTERN.match(subject_id):
        raise ValidationError(
            "subjectId may only contain letters, digits, '-', '_', '@' and '.'",
            field="subjectId",
        )
    return subject_id


def validate_message(text: Any) -> str:
    if not isinstance(text, str):
        raise ValidationError("message is required", field="message")
    text = text.strip()
    if not text:
        raise ValidationError("message must not be empty", field="message")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"message must be at most {MAX_MESSAGE_LENGTH} characters",
            field="message",
            details={"length": len(text)},
        )
    return text


@dataclass(frozen=True)
class Turn:
    """
    Input to one orchestration cycle.

    Use `Turn.create` to build a validated turn; it trims the message and
    raises ValidationError on any constraint violation.
    """
    subject_id: str
    user_text: str
    thread_id: Optional[str] = None
    user_context: Optional[UserContext] = None

    @classmethod
    def create(
        cls,
        subject_id: Any,
        user_text: Any,
        thread_id: Optional[str] = None,
        user_context: Optional[UserContext] = None,
    ) -> "Turn":
        if thread_id is not None and not isinstance(thread_id, str):
            raise ValidationError("threadId must be a string", field="threadId")
        return cls(
            subject_id=validate_subject_id(subject_id),
            user_text=validate_message(user_text),
            thread_id=thread_id or None,
            user_context=user_context,
        )


@dataclass(frozen=True)
class AssessmentOutcome:
    """Structured result the assistant emits when an assessment finishes."""
    status: CompletionStatus
    risk_level: Optional[RiskLevel] = None
    probability: Optional[float] = None
    condition: Optional[str] = None
    summary: Optional[str] = None
    recommendation: Optional[str] = None
    symptoms: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "riskLevel": self.risk_level.value if self.risk_level else None,
            "probability": self.probability,
            "condition": self.condition,
            "summary": self.summary,
            "recommendation": self.recommendation,
            "symptoms": list(self.symptoms),
        }


@dataclass(frozen=True)
class AssistantReply:
    """Reply text with markers removed, plus the detected completion status."""
    text: str
    completion_status: CompletionStatus
    outcome: Optional[AssessmentOutcome] = None


@dataclass(frozen=True)
class OrchestrationResult:
    """Everything one turn produced. Returned to the caller, never persisted."""
    reply_text: str
    thread_id: str
    subject_id: str
    completion_status: CompletionStatus
    correlation_id: Optional[str] = None
    forked: bool = False
    records: List[StructuredRecord] = field(default_factory=list)
    stored: List[Any] = field(default_factory=list)
    ledger_receipt: Optional[Any] = None
    ledger_error: Optional[str] = None

    @property
    def risk_assessment(self) -> Optional[RiskAssessment]:
        for record in self.records:
            if isinstance(record, RiskAssessment):
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "reply": self.reply_text,
            "threadId": self.thread_id,
            "subjectId": self.subject_id,
            "completionStatus": self.completion_status.value,
        }
        if self.records:
            body["resources"] = {r.resource_type: r.to_resource() for r in self.records}
            body["storage"] = [s.to_dict() for s in self.stored]
        if self.ledger_receipt is not None:
            body["ledgerReceipt"] = self.ledger_receipt.to_dict()
        elif self.ledger_error is not None:
            body["ledgerReceipt"] = {"success": False, "error": self.ledger_error, "results": []}
        return body
