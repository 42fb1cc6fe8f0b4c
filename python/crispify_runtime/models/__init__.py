"""Generation pipeline: session lifecycle, prompt building, batching and decoding."""

from .cancellation import CancellationToken
from .engine import ChatFormat, EngineParams, InferenceEngine, ModelHandle, RuntimeContext, TokenBatch
from .session import GenerationResult, ModelSession, SessionState

__all__ = [
    "CancellationToken",
    "ChatFormat",
    "EngineParams",
    "GenerationResult",
    "InferenceEngine",
    "ModelHandle",
    "ModelSession",
    "RuntimeContext",
    "SessionState",
    "TokenBatch",
]
