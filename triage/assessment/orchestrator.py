"""
Assessment Orchestrator - One turn of the triage pipeline

Graph:
    converse -> detect_completion -> in_progress: END
                                  -> complete:    synthesize -> persist -> audit -> END

Tenet #3: Explicit Over Clever - each pipeline step is a graph node
Tenet #4: Fail Loud, Fail Early - reply and persistence failures fail the
turn; ledger failures are reported as partial success
"""

from typing import List, Optional, TypedDict

from langgraph.graph import END, StateGraph
import structlog

from triage.assessment.completion import PROTOCOL_INSTRUCTIONS, parse_reply
from triage.assessment.models import AssistantReply, OrchestrationResult, Turn
from triage.assessment.synthesizer import RecordSynthesizer
from triage.config import AppConfig
from triage.conversation.driver import ConversationDriver
from triage.conversation.engine import OpenAIAssistantsEngine, ReasoningEngine
from triage.errors import InternalError
from triage.ledger import LedgerClient, LedgerReceipt, create_ledger_client
from triage.observability import (
    bind_correlation_id,
    clear_correlation_id,
    get_correlation_id,
    hash_identifier,
)
from triage.records import RecordStore, StoredRecord, StructuredRecord, create_record_store

logger = structlog.get_logger()


class AssessmentState(TypedDict, total=False):
    """State carried through the assessment graph."""
    turn: Turn
    thread_id: str
    forked: bool
    raw_reply: str
    reply: AssistantReply
    records: List[StructuredRecord]
    stored: List[StoredRecord]
    ledger_receipt: Optional[LedgerReceipt]
    ledger_error: Optional[str]


class AssessmentOrchestrator:
    """
    Accepts a turn, drives the conversation and, once the assessment is
    finished, synthesizes, persists and audits the structured records.

    Example:
        orchestrator = build_orchestrator(AppConfig.from_env())
        result = await orchestrator.assess(Turn.create("patient-abc", "I have chest pain"))
        next_turn = Turn.create("patient-abc", "Since this morning", thread_id=result.thread_id)
    """

    def __init__(
        self,
        driver: ConversationDriver,
        synthesizer: RecordSynthesizer,
        store: RecordStore,
        ledger: Optional[LedgerClient] = None,
    ):
        self.driver = driver
        self.synthesizer = synthesizer
        self.store = store
        self.ledger = ledger
        self.graph = self._build_graph()

    def _build_graph(self):
        workflow = StateGraph(AssessmentState)

        workflow.add_node("converse", self._converse)
        workflow.add_node("detect_completion", self._detect_completion)
        workflow.add_node("synthesize", self._synthesize)
        workflow.add_node("persist", self._persist)
        workflow.add_node("audit", self._audit)

        workflow.set_entry_point("converse")
        workflow.add_edge("converse", "detect_completion")
        workflow.add_conditional_edges(
            "detect_completion",
            self._route_completion,
            {"complete": "synthesize", "in_progress": END},
        )
        workflow.add_edge("synthesize", "persist")
        workflow.add_edge("persist", "audit")
        workflow.add_edge("audit", END)

        return workflow.compile()

    async def _converse(self, state: AssessmentState) -> dict:
        turn = state["turn"]
        reply = await self.driver.advance(turn.thread_id, turn.subject_id, turn.user_text)
        return {"thread_id": reply.thread_id, "forked": reply.forked, "raw_reply": reply.text}

    async def _detect_completion(self, state: AssessmentState) -> dict:
        return {"reply": parse_reply(state["raw_reply"])}

    def _route_completion(self, state: AssessmentState) -> str:
        reply = state["reply"]
        if reply.completion_status.is_final and reply.outcome is not None:
            return "complete"
        return "in_progress"

    async def _synthesize(self, state: AssessmentState) -> dict:
        turn = state["turn"]
        records = self.synthesizer.synthesize(
            turn.subject_id, state["raw_reply"], state["reply"].outcome, turn.user_context,
        )
        return {"records": records}

    async def _persist(self, state: AssessmentState) -> dict:
        subject_id = state["turn"].subject_id
        records = state["records"]
        for record in records:
            if record.subject_id != subject_id:
                raise InternalError(
                    "Record is not bound to the assessed subject",
                    details={"resourceType": record.resource_type, "resourceId": record.id},
                )
        return {"stored": await self.store.put_many(records)}

    async def _audit(self, state: AssessmentState) -> dict:
        if self.ledger is None:
            return {"ledger_receipt": None}
        subject_id = state["turn"].subject_id
        try:
            receipt = await self.ledger.log_records(state["records"], subject_id)
        except Exception as e:
            # Persisted records stay; the caller sees a partial success
            logger.error("ledger_batch_failed", error_type=type(e).__name__, error=str(e))
            return {"ledger_receipt": None, "ledger_error": getattr(e, "message", str(e))}
        return {"ledger_receipt": receipt}

    async def assess(self, turn: Turn, correlation_id: Optional[str] = None) -> OrchestrationResult:
        """
        Run one turn through the pipeline.

        Raises:
            ValidationError: The turn violates a field constraint (no external calls made)
            EngineError, OperationTimeoutError, SafetyError: No reply could be obtained
            StorageError: A synthesized record could not be persisted
        """
        turn = Turn.create(turn.subject_id, turn.user_text, turn.thread_id, turn.user_context)
        outer_correlation_id = get_correlation_id()
        correlation_id = bind_correlation_id(correlation_id or outer_correlation_id)
        try:
            return await self._run(turn, correlation_id)
        finally:
            # Restore whatever the caller had bound
            if outer_correlation_id is None:
                clear_correlation_id()
            elif outer_correlation_id != correlation_id:
                bind_correlation_id(outer_correlation_id)

    async def _run(self, turn: Turn, correlation_id: str) -> OrchestrationResult:
        log = logger.bind(subject=hash_identifier(turn.subject_id))
        log.info("assessment_turn_started", thread_id=turn.thread_id, message_length=len(turn.user_text))

        final = await self.graph.ainvoke({"turn": turn})

        reply: AssistantReply = final["reply"]
        result = OrchestrationResult(
            reply_text=reply.text,
            thread_id=final["thread_id"],
            subject_id=turn.subject_id,
            completion_status=reply.completion_status,
            correlation_id=correlation_id,
            forked=final.get("forked", False),
            records=final.get("records") or [],
            stored=final.get("stored") or [],
            ledger_receipt=final.get("ledger_receipt"),
            ledger_error=final.get("ledger_error"),
        )
        log.info(
            "assessment_turn_completed",
            thread_id=result.thread_id,
            completion_status=result.completion_status.value,
            records=len(result.records),
            ledger_success=result.ledger_receipt.success if result.ledger_receipt else None,
        )
        return result

    async def close(self) -> None:
        await self.store.close()


def build_orchestrator(config: AppConfig, engine: Optional[ReasoningEngine] = None) -> AssessmentOrchestrator:
    """Wire every collaborator from configuration resolved at process start."""
    if engine is None:
        engine = OpenAIAssistantsEngine.from_config(config.engine, additional_instructions=PROTOCOL_INSTRUCTIONS)
    return AssessmentOrchestrator(
        driver=ConversationDriver.from_config(engine, config),
        synthesizer=RecordSynthesizer(),
        store=create_record_store(config.store, config.retry),
        ledger=create_ledger_client(config.ledger, config.retry),
    )
