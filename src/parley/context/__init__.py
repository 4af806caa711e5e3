"""Context engine --- turns, token estimation, compression and assembly."""

from .assembler import AssembledContext, ContextAssembler
from .compression import (
    SUMMARY_HEADER,
    AsyncSummarizer,
    CompressionPolicy,
    CompressionResult,
    CompressionStrategy,
    ModelSummarizer,
    Summarizer,
    TruncatingSummarizer,
)
from .session import TEMP_SESSION_NAME, Session, SessionRecord, SessionState
from .store import ContentPart, MessageStore, PartKind, Turn
from .tokens import (
    CharRatioEstimator,
    EstimatorRegistry,
    FallbackEstimator,
    TiktokenEstimator,
    TokenEstimator,
    default_estimator,
)

__all__ = [
    "AssembledContext",
    "AsyncSummarizer",
    "CharRatioEstimator",
    "CompressionPolicy",
    "CompressionResult",
    "CompressionStrategy",
    "ContentPart",
    "ContextAssembler",
    "EstimatorRegistry",
    "FallbackEstimator",
    "MessageStore",
    "ModelSummarizer",
    "PartKind",
    "SUMMARY_HEADER",
    "Session",
    "SessionRecord",
    "SessionState",
    "Summarizer",
    "TEMP_SESSION_NAME",
    "TiktokenEstimator",
    "TokenEstimator",
    "TruncatingSummarizer",
    "Turn",
    "default_estimator",
]
