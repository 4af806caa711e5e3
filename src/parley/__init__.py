"""parley — session and context compression engine for LLM chat clients."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import EngineConfig
from .context import (
    SUMMARY_HEADER,
    TEMP_SESSION_NAME,
    AssembledContext,
    AsyncSummarizer,
    CharRatioEstimator,
    CompressionPolicy,
    CompressionResult,
    CompressionStrategy,
    ContentPart,
    ContextAssembler,
    EstimatorRegistry,
    FallbackEstimator,
    MessageStore,
    ModelSummarizer,
    PartKind,
    Session,
    SessionRecord,
    SessionState,
    Summarizer,
    TiktokenEstimator,
    TokenEstimator,
    TruncatingSummarizer,
    Turn,
    default_estimator,
)
from .conversation import Conversation
from .defaults import AgentDefaults, DefaultsProvider, DefaultsRegistry, RoleDefaults
from .errors import (
    BudgetExceededAfterCompression,
    ConcurrentSaveConflict,
    DefaultsNotFound,
    EstimationFallback,
    InvalidSessionName,
    ModelCallError,
    ParleyError,
    SessionCorrupt,
    SessionNotFound,
    StreamAborted,
    UnsavedSessionError,
)
from .manager import SessionManager
from .provider import (
    ChatMessage,
    ChatRequest,
    ChatRole,
    LLMProvider,
    StubLLMProvider,
)
from .storage import YamlSessionStorage, validate_session_name
from .streaming import PARTIAL_MARKER, AbortPolicy, ReplyStream, StreamPhase
from .telemetry import (
    ParleyTracer,
    TelemetryConfig,
    trace_compression,
    trace_model_call,
    trace_session_load,
    trace_session_save,
)

__all__ = [
    "AbortPolicy",
    "AgentDefaults",
    "AssembledContext",
    "AsyncSummarizer",
    "BudgetExceededAfterCompression",
    "CharRatioEstimator",
    "ChatMessage",
    "ChatRequest",
    "ChatRole",
    "CompressionPolicy",
    "CompressionResult",
    "CompressionStrategy",
    "ConcurrentSaveConflict",
    "ContentPart",
    "ContextAssembler",
    "Conversation",
    "DefaultsNotFound",
    "DefaultsProvider",
    "DefaultsRegistry",
    "EngineConfig",
    "EstimationFallback",
    "EstimatorRegistry",
    "FallbackEstimator",
    "InvalidSessionName",
    "LLMProvider",
    "MessageStore",
    "ModelCallError",
    "ModelSummarizer",
    "PARTIAL_MARKER",
    "ParleyError",
    "ParleyTracer",
    "PartKind",
    "ReplyStream",
    "RoleDefaults",
    "SUMMARY_HEADER",
    "Session",
    "SessionCorrupt",
    "SessionManager",
    "SessionNotFound",
    "SessionRecord",
    "SessionState",
    "StreamAborted",
    "StreamPhase",
    "StubLLMProvider",
    "Summarizer",
    "TEMP_SESSION_NAME",
    "TelemetryConfig",
    "TiktokenEstimator",
    "TokenEstimator",
    "TruncatingSummarizer",
    "Turn",
    "UnsavedSessionError",
    "YamlSessionStorage",
    "default_estimator",
    "trace_compression",
    "trace_model_call",
    "trace_session_load",
    "trace_session_save",
    "validate_session_name",
]
