"""
Tests for completion detection in assistant replies

Tenet #1: Safety First - anything ambiguous stays IN_PROGRESS
"""

import pytest
from structlog.testing import capture_logs

from triage.assessment import CompletionStatus, parse_reply
from triage.assessment.completion import (
    PROTOCOL_INSTRUCTIONS,
    normalize_risk_level,
    risk_level_from_probability,
    strip_markers,
)
from triage.records import RiskLevel


class TestStatusDetection:

    def test_plain_question_is_in_progress(self):
        reply = parse_reply("How long have you had the pain?")

        assert reply.completion_status == CompletionStatus.IN_PROGRESS
        assert reply.text == "How long have you had the pain?"
        assert reply.outcome is None

    def test_stage_directive_stripped(self, follow_up_reply):
        reply = parse_reply(follow_up_reply)

        assert reply.completion_status == CompletionStatus.IN_PROGRESS
        assert "[[" not in reply.text
        assert reply.text.endswith("sweating?")

    def test_status_block_complete(self, complete_reply):
        reply = parse_reply(complete_reply)

        assert reply.completion_status == CompletionStatus.COMPLETE
        assert reply.outcome.risk_level == RiskLevel.HIGH
        assert reply.outcome.probability == 0.8
        assert reply.outcome.condition == "Possible acute coronary syndrome"
        assert reply.outcome.recommendation == "Call emergency services immediately."
        assert reply.outcome.symptoms == ["chest pain", "arm pain", "sweating"]
        assert "triage-status" not in reply.text
        assert reply.text.startswith("Thank you.")

    def test_escalate_directive(self):
        reply = parse_reply("Please go to the emergency room now. [[STATUS: ESCALATE]]")

        assert reply.completion_status == CompletionStatus.ESCALATE
        assert reply.outcome.status == CompletionStatus.ESCALATE
        assert reply.outcome.risk_level is None
        assert reply.text == "Please go to the emergency room now."

    @pytest.mark.parametrize("stage,expected", [
        ("complete", CompletionStatus.COMPLETE),
        ("Completed", CompletionStatus.COMPLETE),
        ("escalated", CompletionStatus.ESCALATE),
        ("assessment", CompletionStatus.IN_PROGRESS),
        ("initial", CompletionStatus.IN_PROGRESS),
    ])
    def test_stage_values(self, stage, expected):
        assert parse_reply(f"Text [[STAGE: {stage}]]").completion_status == expected

    def test_in_progress_block(self):
        reply = parse_reply('Tell me more.\n```triage-status\n{"status": "in progress"}\n```')

        assert reply.completion_status == CompletionStatus.IN_PROGRESS
        assert reply.text == "Tell me more."


class TestAmbiguousMarkers:

    def test_malformed_block_is_in_progress(self):
        with capture_logs() as logs:
            reply = parse_reply('Done.\n```triage-status\n{"status": "COMPLETE",\n```')

        assert reply.completion_status == CompletionStatus.IN_PROGRESS
        assert reply.text == "Done."
        assert logs[0]["event"] == "completion_marker_malformed"

    def test_block_without_status_is_in_progress(self):
        reply = parse_reply('```triage-status\n{"risk": "high"}\n```')

        assert reply.completion_status == CompletionStatus.IN_PROGRESS

    def test_non_object_block_is_in_progress(self):
        assert parse_reply('```triage-status\n["COMPLETE"]\n```').completion_status == CompletionStatus.IN_PROGRESS

    def test_unknown_status_is_in_progress(self):
        assert parse_reply("[[STATUS: FINISHED]]").completion_status == CompletionStatus.IN_PROGRESS

    def test_unknown_risk_directive_is_in_progress(self):
        assert parse_reply("[[STATUS: COMPLETE]] [[RISK: spicy]]").completion_status == CompletionStatus.IN_PROGRESS

    def test_conflicting_markers_are_in_progress(self, complete_reply):
        with capture_logs() as logs:
            reply = parse_reply(complete_reply + "\n[[STATUS: IN_PROGRESS]]")

        assert reply.completion_status == CompletionStatus.IN_PROGRESS
        assert reply.outcome is None
        assert logs[0]["event"] == "completion_markers_conflict"

    def test_repeated_identical_markers_agree(self):
        reply = parse_reply("[[STATUS: COMPLETE]] ok [[STAGE: complete]]")

        assert reply.completion_status == CompletionStatus.COMPLETE


class TestRiskLevel:

    def test_risk_directive_used_without_block(self):
        reply = parse_reply("You should see a doctor today. [[STATUS: COMPLETE]] [[RISK: severe]]")

        assert reply.outcome.risk_level == RiskLevel.HIGH

    def test_explicit_level_wins_over_probability(self):
        raw = '```triage-status\n{"status": "COMPLETE", "risk": {"level": "low", "probability": 0.95}}\n```'

        outcome = parse_reply(raw).outcome

        assert outcome.risk_level == RiskLevel.LOW
        assert outcome.probability == 0.95

    def test_probability_maps_to_level(self):
        raw = '```triage-status\n{"status": "COMPLETE", "risk": {"probability": 0.45}}\n```'

        assert parse_reply(raw).outcome.risk_level == RiskLevel.MODERATE

    def test_out_of_range_probability_ignored(self):
        raw = '```triage-status\n{"status": "COMPLETE", "risk": {"probability": 1.5}}\n```'

        outcome = parse_reply(raw).outcome

        assert outcome.probability is None
        assert outcome.risk_level is None

    def test_string_risk_in_block(self):
        raw = '```triage-status\n{"status": "COMPLETE", "risk": "medium"}\n```'

        assert parse_reply(raw).outcome.risk_level == RiskLevel.MODERATE

    def test_risk_phrase_in_text(self):
        reply = parse_reply("This looks like a low-risk muscle strain. [[STATUS: COMPLETE]]")

        assert reply.outcome.risk_level == RiskLevel.LOW

    def test_contradictory_phrases_give_no_level(self):
        reply = parse_reply("Not high risk, probably low risk. [[STATUS: COMPLETE]]")

        assert reply.outcome.risk_level is None

    @pytest.mark.parametrize("probability,expected", [
        (0.0, RiskLevel.NEGLIGIBLE),
        (0.09, RiskLevel.NEGLIGIBLE),
        (0.1, RiskLevel.LOW),
        (0.3, RiskLevel.MODERATE),
        (0.59, RiskLevel.MODERATE),
        (0.6, RiskLevel.HIGH),
        (0.9, RiskLevel.CERTAIN),
        (1.0, RiskLevel.CERTAIN),
    ])
    def test_probability_thresholds(self, probability, expected):
        assert risk_level_from_probability(probability) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("Minimal", RiskLevel.NEGLIGIBLE),
        ("medium", RiskLevel.MODERATE),
        (" critical ", RiskLevel.CERTAIN),
        ("unknown", None),
        (None, None),
    ])
    def test_level_aliases(self, raw, expected):
        assert normalize_risk_level(raw) == expected


class TestStripMarkers:

    def test_collapses_blank_lines(self):
        assert strip_markers("One.\n\n[[STAGE: gathering]]\n\n\nTwo.") == "One.\n\nTwo."

    def test_protocol_instructions_describe_block(self):
        assert "```triage-status" in PROTOCOL_INSTRUCTIONS
        assert "ESCALATE" in PROTOCOL_INSTRUCTIONS
