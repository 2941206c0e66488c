"""
Completion Detection - Structured markers in assistant replies

The assistant signals progress with a fenced `triage-status` JSON block
and/or inline directives:

    ```triage-status
    {"status": "COMPLETE",
     "risk": {"level": "high", "probability": 0.8, "condition": "Possible ACS"},
     "summary": "...", "recommendation": "...", "symptoms": ["chest pain"]}
    ```
    [[STATUS: COMPLETE]]   [[STAGE: assessment]]   [[RISK: high]]

Tenet #1: Safety First - missing, malformed or conflicting markers mean
IN_PROGRESS. A false COMPLETE would create and hash unwarranted records.
"""

from typing import Any, Dict, List, Optional, Tuple
import json
import re

import structlog

from triage.assessment.models import AssessmentOutcome, AssistantReply, CompletionStatus
from triage.records.models import RiskLevel

logger = structlog.get_logger()

PROTOCOL_INSTRUCTIONS = """\
When, and only when, you have gathered enough information to finish the
assessment, end your reply with a fenced code block tagged triage-status
containing a single JSON object:

```triage-status
{"status": "COMPLETE", "risk": {"level": "<negligible|low|moderate|high|certain>", \
"probability": <0.0-1.0>, "condition": "<most likely condition>"}, \
"summary": "<one-paragraph summary>", "recommendation": "<next step for the patient>", \
"symptoms": ["<symptom>", "..."]}
```

Use "ESCALATE" instead of "COMPLETE" when the patient needs emergency care.
While you are still asking questions, either omit the block or use
{"status": "IN_PROGRESS"}. Never include more than one block."""

_STATUS_BLOCK = re.compile(r"```[ \t]*triage-status[ \t]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
_DIRECTIVE = re.compile(r"\[\[\s*(STATUS|STAGE|RISK)\s*:\s*([^\]]*?)\s*\]\]", re.IGNORECASE)
_RISK_PHRASE = re.compile(
    r"\b(negligible|minimal|low|moderate|medium|high|severe|critical)[\s-]+risk\b",
    re.IGNORECASE,
)

_STAGES = {
    "initial": CompletionStatus.IN_PROGRESS,
    "gathering": CompletionStatus.IN_PROGRESS,
    "assessment": CompletionStatus.IN_PROGRESS,
    "in_progress": CompletionStatus.IN_PROGRESS,
    "complete": CompletionStatus.COMPLETE,
    "completed": CompletionStatus.COMPLETE,
    "escalate": CompletionStatus.ESCALATE,
    "escalated": CompletionStatus.ESCALATE,
}

_RISK_ALIASES = {
    "negligible": RiskLevel.NEGLIGIBLE,
    "minimal": RiskLevel.NEGLIGIBLE,
    "low": RiskLevel.LOW,
    "moderate": RiskLevel.MODERATE,
    "medium": RiskLevel.MODERATE,
    "high": RiskLevel.HIGH,
    "severe": RiskLevel.HIGH,
    "certain": RiskLevel.CERTAIN,
    "critical": RiskLevel.CERTAIN,
}


class MarkerError(ValueError):
    """A completion marker could not be interpreted."""


def parse_status(value: Any) -> CompletionStatus:
    if not isinstance(value, str):
        raise MarkerError(f"status must be a string, got {type(value).__name__}")
    normalized = value.strip().upper().replace(" ", "_").replace("-", "_")
    try:
        return CompletionStatus(normalized)
    except ValueError:
        raise MarkerError(f"unknown status {value!r}") from None


def parse_stage(value: str) -> CompletionStatus:
    normalized = value.strip().lower().replace(" ", "_").replace("-", "_")
    if normalized not in _STAGES:
        raise MarkerError(f"unknown stage {value!r}")
    return _STAGES[normalized]


def normalize_risk_level(value: Any) -> Optional[RiskLevel]:
    """Map a free-form level onto the risk-probability scale; None if unknown."""
    if not isinstance(value, str):
        return None
    return _RISK_ALIASES.get(value.strip().lower())


def risk_level_from_probability(probability: float) -> RiskLevel:
    if probability < 0.1:
        return RiskLevel.NEGLIGIBLE
    if probability < 0.3:
        return RiskLevel.LOW
    if probability < 0.6:
        return RiskLevel.MODERATE
    if probability < 0.9:
        return RiskLevel.HIGH
    return RiskLevel.CERTAIN


def _probability(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    value = float(value)
    return value if 0.0 <= value <= 1.0 else None


def _single(values: List[RiskLevel]) -> Optional[RiskLevel]:
    distinct = set(values)
    return distinct.pop() if len(distinct) == 1 else None


def _parse_block(raw: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MarkerError(f"status block is not valid JSON: {e.msg}") from None
    if not isinstance(data, dict):
        raise MarkerError("status block must be a JSON object")
    if "status" not in data:
        raise MarkerError("status block has no status")
    return data


def strip_markers(text: str) -> str:
    """Remove status blocks and directives from reply text."""
    text = _STATUS_BLOCK.sub("", text)
    text = _DIRECTIVE.sub("", text)
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _collect(raw_text: str) -> Tuple[List[CompletionStatus], List[Dict[str, Any]], List[RiskLevel]]:
    statuses: List[CompletionStatus] = []
    blocks: List[Dict[str, Any]] = []
    risk_directives: List[RiskLevel] = []

    for raw_block in _STATUS_BLOCK.findall(raw_text):
        block = _parse_block(raw_block)
        statuses.append(parse_status(block["status"]))
        blocks.append(block)

    for kind, value in _DIRECTIVE.findall(raw_text):
        kind = kind.upper()
        if kind == "STATUS":
            statuses.append(parse_status(value))
        elif kind == "STAGE":
            statuses.append(parse_stage(value))
        else:
            level = normalize_risk_level(value)
            if level is None:
                raise MarkerError(f"unknown risk level {value!r}")
            risk_directives.append(level)

    return statuses, blocks, risk_directives


def _determine_risk(
    block: Optional[Dict[str, Any]],
    risk_directives: List[RiskLevel],
    text: str,
) -> Tuple[Optional[RiskLevel], Optional[float], Optional[str]]:
    risk = block.get("risk") if block else None
    if not isinstance(risk, dict):
        risk = {"level": risk} if isinstance(risk, str) else {}

    probability = _probability(risk.get("probability"))
    condition = risk.get("condition") if isinstance(risk.get("condition"), str) else None

    level = normalize_risk_level(risk.get("level"))
    if level is None:
        level = _single(risk_directives)
    if level is None and probability is not None:
        level = risk_level_from_probability(probability)
    if level is None:
        phrases = [_RISK_ALIASES[m.lower()] for m in _RISK_PHRASE.findall(text)]
        level = _single(phrases)
    return level, probability, condition


def parse_reply(raw_text: str) -> AssistantReply:
    """
    Detect the completion status of a raw assistant reply.

    Returns:
        AssistantReply with markers stripped from the text; `outcome` is
        set only for COMPLETE and ESCALATE
    """
    text = strip_markers(raw_text)

    try:
        statuses, blocks, risk_directives = _collect(raw_text)
    except MarkerError as e:
        logger.warning("completion_marker_malformed", error=str(e))
        return AssistantReply(text=text, completion_status=CompletionStatus.IN_PROGRESS)

    if not statuses:
        return AssistantReply(text=text, completion_status=CompletionStatus.IN_PROGRESS)

    if len(set(statuses)) > 1:
        logger.warning("completion_markers_conflict", statuses=sorted(s.value for s in set(statuses)))
        return AssistantReply(text=text, completion_status=CompletionStatus.IN_PROGRESS)

    status = statuses[0]
    if not status.is_final:
        return AssistantReply(text=text, completion_status=status)

    block = blocks[0] if blocks else None
    level, probability, condition = _determine_risk(block, risk_directives, text)
    block = block or {}
    symptoms = block.get("symptoms")
    outcome = AssessmentOutcome(
        status=status,
        risk_level=level,
        probability=probability,
        condition=condition,
        summary=block.get("summary") if isinstance(block.get("summary"), str) else None,
        recommendation=block.get("recommendation") if isinstance(block.get("recommendation"), str) else None,
        symptoms=[s for s in symptoms if isinstance(s, str)] if isinstance(symptoms, list) else [],
    )
    logger.info(
        "assessment_completed",
        status=status.value,
        risk_level=level.value if level else None,
    )
    return AssistantReply(text=text, completion_status=status, outcome=outcome)
