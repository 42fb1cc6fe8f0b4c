"""
Sampler state - Parameters and per-call state of token selection

The selection kernel itself (penalties, top-k, top-p, min-p, temperature,
seeded distribution) belongs to the inference engine. SamplerState holds
the fixed parameters of the loaded profile, the engine's native sampler
chain, and the repetition history of the current generation call.
"""

from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional


@dataclass(frozen=True)
class SamplerParams:
    """Sampling parameters, fixed per loaded model profile"""

    temperature: float = 0.3
    top_p: float = 0.9
    top_k: int = 40
    min_p: float = 0.05
    repeat_penalty: float = 1.1
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    penalty_last_n: int = 64

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "SamplerParams":
        known = {k: v for k, v in values.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @property
    def greedy(self) -> bool:
        return self.temperature <= 0

    @property
    def has_penalties(self) -> bool:
        return self.penalty_last_n != 0 and (
            self.repeat_penalty != 1.0
            or self.frequency_penalty != 0.0
            or self.presence_penalty != 0.0
        )


class SamplerState:
    """
    Sampling parameters plus the state of one generation

    The history and the native chain are mutated only by the generation
    call that owns the session's in-flight slot, and reset() runs at the
    start of every call, so penalties never leak between requests.
    """

    def __init__(self, params: SamplerParams, seed: Optional[int] = None, native: Any = None):
        self.params = params
        self.seed = seed
        self.native = native
        self._history: Deque[int] = deque(maxlen=max(params.penalty_last_n, 0) or None)

    @property
    def history(self) -> List[int]:
        return list(self._history)

    def reset(self) -> None:
        """Clear the repetition history and the native chain state"""
        self._history.clear()
        if self.native is not None:
            self.native.reset()

    def accept(self, token: int) -> None:
        """Register a sampled token into the repetition history"""
        if self.params.penalty_last_n > 0:
            self._history.append(token)

    def close(self) -> None:
        """Free the native chain (idempotent)"""
        native, self.native = self.native, None
        if native is not None:
            native.close()
