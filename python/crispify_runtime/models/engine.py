"""
Inference engine boundary

The orchestration layer never touches weights, kernels or tokenizer
vocabularies directly. Everything it needs from the local inference
engine goes through InferenceEngine; there is exactly one implementation
per deployment (models/llama_engine.py) plus test doubles.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .sampling import SamplerParams, SamplerState


@dataclass
class EngineParams:
    """Parameters for loading weights and creating a runtime context"""

    context_length: int = 2048
    batch_size: int = 128
    n_threads: int = 4
    n_threads_batch: int = 4
    gpu_layers: int = 0


@dataclass
class ModelHandle:
    """Loaded weights and vocabulary (owned by exactly one ModelSession)"""

    model_path: str
    native: Any
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RuntimeContext:
    """Mutable inference state bound to a ModelHandle"""

    native: Any
    context_length: int
    batch_size: int
    n_past: int = 0


@dataclass
class TokenBatch:
    """Ordered (token, position, wants_logits) triples for one decode call"""

    tokens: List[int]
    positions: List[int]
    logits: List[bool]

    def __len__(self) -> int:
        return len(self.tokens)

    @classmethod
    def single(cls, token: int, position: int) -> "TokenBatch":
        return cls(tokens=[token], positions=[position], logits=[True])


@dataclass
class ChatFormat:
    """Result of rendering role-tagged messages with a model chat template"""

    prompt: str
    stop_markers: List[str] = field(default_factory=list)


class InferenceEngine(ABC):
    """Capabilities consumed from the local inference engine"""

    @abstractmethod
    def load(self, model_path: str, params: EngineParams) -> ModelHandle:
        """Load weights. Raises ModelLoadError on failure."""

    @abstractmethod
    def create_context(self, handle: ModelHandle, params: EngineParams) -> RuntimeContext:
        """Create a runtime context. Raises ModelLoadError on failure."""

    @abstractmethod
    def tokenize(self, handle: ModelHandle, text: str, add_special: bool = True) -> List[int]:
        """Tokenize text. Raises TokenizerError on failure."""

    @abstractmethod
    def detokenize(self, handle: ModelHandle, token: int) -> str:
        """Convert a single token to its text fragment"""

    @abstractmethod
    def decode(self, context: RuntimeContext, batch: TokenBatch) -> bool:
        """Advance runtime state with a batch; False on failure"""

    def create_sampler(
        self, handle: ModelHandle, params: SamplerParams, seed: Optional[int] = None
    ) -> SamplerState:
        """Build the sampler for a loaded model. Raises ModelLoadError on failure."""
        return SamplerState(params, seed=seed)

    @abstractmethod
    def sample(self, context: RuntimeContext, sampler: SamplerState) -> int:
        """Sample the next token from the logits of the last decoded position"""

    @abstractmethod
    def eos_token(self, handle: ModelHandle) -> int:
        """End-of-sequence token id"""

    def is_end_of_generation(self, handle: ModelHandle, token: int) -> bool:
        """True for EOS and any other end-of-turn control token"""
        return token == self.eos_token(handle)

    def chat_format(
        self, handle: ModelHandle, messages: Sequence[Dict[str, str]]
    ) -> Optional[ChatFormat]:
        """Render messages with the model's chat template (None if unsupported)"""
        return None

    @abstractmethod
    def model_size_bytes(self, handle: ModelHandle) -> int:
        """Size of the loaded weights"""

    @abstractmethod
    def context_size_bytes(self, context: RuntimeContext) -> int:
        """Size of the runtime context state"""

    def reset_context(self, context: RuntimeContext) -> None:
        """Drop cached state so the next decode can start at position 0"""
        context.n_past = 0

    @abstractmethod
    def free_context(self, context: RuntimeContext) -> None:
        """Release a runtime context"""

    @abstractmethod
    def free_model(self, handle: ModelHandle) -> None:
        """Release loaded weights"""
