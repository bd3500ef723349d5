"""Turn orchestration for the facilitator agent."""

from .directive_parser import (
    CLOSE_MARKER,
    OPEN_MARKER,
    DirectiveBlock,
    DirectiveOption,
    parse_directive_payload,
    strip_directive_block,
)
from .orchestrator import (
    EMPTY_RESPONSE_FALLBACK,
    MAX_TURNS_NOTICE,
    ConversationOrchestrator,
    OrchestratorConfig,
)
from .prompt_builder import Persona, PersonaProvider, PromptBuilder, StaticPersonaProvider
from .stream_processor import StreamOutput, StreamProcessor
from .tool_correlator import ToolCallCorrelator, ToolInvocation, normalize_tool_output
from .types import (
    CancellationToken,
    NavigationContext,
    StreamCallbacks,
    TurnRequest,
    TurnState,
    TurnStatus,
)

__all__ = [
    "CLOSE_MARKER",
    "OPEN_MARKER",
    "DirectiveBlock",
    "DirectiveOption",
    "parse_directive_payload",
    "strip_directive_block",
    "EMPTY_RESPONSE_FALLBACK",
    "MAX_TURNS_NOTICE",
    "ConversationOrchestrator",
    "OrchestratorConfig",
    "Persona",
    "PersonaProvider",
    "PromptBuilder",
    "StaticPersonaProvider",
    "StreamOutput",
    "StreamProcessor",
    "ToolCallCorrelator",
    "ToolInvocation",
    "normalize_tool_output",
    "CancellationToken",
    "NavigationContext",
    "StreamCallbacks",
    "TurnRequest",
    "TurnState",
    "TurnStatus",
]
