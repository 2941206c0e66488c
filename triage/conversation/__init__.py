"""
Conversation with the reasoning assistant.

Tenet #3: Explicit Over Clever - thread ids are passed through, never cached
"""

from triage.conversation.driver import ConversationDriver, DriverReply
from triage.conversation.engine import OpenAIAssistantsEngine, ReasoningEngine, RunState

__all__ = [
    "ConversationDriver",
    "DriverReply",
    "OpenAIAssistantsEngine",
    "ReasoningEngine",
    "RunState",
]
