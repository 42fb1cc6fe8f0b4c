"""
Custom exception types for the Crispify runtime

Provides typed exceptions for the generation pipeline and consistent
JSON-RPC error mapping. All domain-specific errors should inherit from
these base types.

Exceptions never cross the token sink: ModelSession converts them to an
ErrorKind and flushes the terminal fragment instead.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Outcome classification reported for every process_text call"""

    NONE = "none"
    TOKEN_LIMIT_EXCEEDED = "token_limit_exceeded"
    CONTEXT_OVERFLOW = "context_overflow"
    OUT_OF_MEMORY = "out_of_memory"
    MODEL_NOT_LOADED = "model_not_loaded"
    INFERENCE_FAILED = "inference_failed"
    CANCELLED = "cancelled"
    BUSY = "busy"


class CrispifyRuntimeError(Exception):
    """Base exception for all Crispify runtime errors"""

    kind: ErrorKind = ErrorKind.INFERENCE_FAILED

    def __init__(self, message: str, model_path: Optional[str] = None):
        self.message = message
        self.model_path = model_path
        super().__init__(message)


class ModelNotLoaded(CrispifyRuntimeError):
    """Raised when attempting to generate before a model is loaded"""

    kind = ErrorKind.MODEL_NOT_LOADED

    def __init__(self, model_path: Optional[str] = None):
        super().__init__("Model not loaded", model_path)


class ModelLoadError(CrispifyRuntimeError):
    """Raised when model loading fails"""

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Failed to load model {model_path}: {reason}", model_path)
        self.reason = reason


class GenerationInProgress(CrispifyRuntimeError):
    """Raised when a second generation is started on a busy session"""

    kind = ErrorKind.BUSY

    def __init__(self, model_path: Optional[str] = None):
        super().__init__("A generation is already in progress", model_path)


class TokenizerError(CrispifyRuntimeError):
    """Raised when tokenization/detokenization fails"""

    def __init__(self, model_path: Optional[str], reason: str):
        super().__init__(f"Tokenizer error: {reason}", model_path)
        self.reason = reason


class GenerationError(CrispifyRuntimeError):
    """Raised when a request cannot be (fully) generated"""

    def __init__(self, model_path: Optional[str], reason: str):
        super().__init__(f"Generation failed: {reason}", model_path)
        self.reason = reason


class TokenLimitExceeded(GenerationError):
    """Raw input has more tokens than the input ceiling"""

    kind = ErrorKind.TOKEN_LIMIT_EXCEEDED

    def __init__(self, model_path: Optional[str], tokens: int, limit: int):
        super().__init__(model_path, f"input has {tokens} tokens, limit is {limit}")
        self.tokens = tokens
        self.limit = limit


class ContextOverflow(GenerationError):
    """Formatted prompt does not fit the prompt ceiling or context window"""

    kind = ErrorKind.CONTEXT_OVERFLOW

    def __init__(self, model_path: Optional[str], tokens: int, limit: int):
        super().__init__(model_path, f"prompt has {tokens} tokens, limit is {limit}")
        self.tokens = tokens
        self.limit = limit


class OutOfMemory(GenerationError):
    """Host memory is below the preflight threshold"""

    kind = ErrorKind.OUT_OF_MEMORY

    def __init__(self, model_path: Optional[str], available_bytes: int, required_bytes: int):
        super().__init__(
            model_path,
            f"{available_bytes // (1024 * 1024)}MB available, "
            f"{required_bytes // (1024 * 1024)}MB required",
        )
        self.available_bytes = available_bytes
        self.required_bytes = required_bytes


class InferenceFailed(GenerationError):
    """Engine decode step failed"""

    kind = ErrorKind.INFERENCE_FAILED


# JSON-RPC error code mapping used by runtime.py
ERROR_CODE_MAP = {
    ModelLoadError: -32001,
    GenerationError: -32002,
    TokenizerError: -32003,
    GenerationInProgress: -32004,
    ModelNotLoaded: -32005,
    TokenLimitExceeded: -32006,
    ContextOverflow: -32007,
    OutOfMemory: -32008,
    InferenceFailed: -32009,
    CrispifyRuntimeError: -32099,  # Generic runtime error
}


def error_kind_of(exc: BaseException) -> ErrorKind:
    """Classify an exception raised inside the pipeline"""
    if isinstance(exc, CrispifyRuntimeError):
        return exc.kind
    if isinstance(exc, MemoryError):
        return ErrorKind.OUT_OF_MEMORY
    return ErrorKind.INFERENCE_FAILED
