"""
Generator module - Token-by-token streaming generation loop

Responsibilities:
- Sample tokens from the runtime context and feed them back one by one
- Detect stop conditions (end-of-generation tokens, stop markers, prompt echo, token budget)
- Stream each fragment to the caller sink as soon as it is safe to emit
- Poll the cancellation token once per generated token

The loop never emits the terminal fragment itself; ModelSession does
that exactly once on every exit path.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ..benchmark_utils import BenchmarkAwareLogger
from ..errors import CrispifyRuntimeError, InferenceFailed
from ..telemetry import StatsCollector
from .cancellation import CancellationToken
from .engine import InferenceEngine, ModelHandle, RuntimeContext, TokenBatch
from .prompt_builder import PROMPT_ECHO_MARKERS
from .sampling import SamplerState

TokenSink = Callable[[str, bool], None]

# Completion marker used by the first prompt template revision
LEGACY_COMPLETION_MARKER = "### End"

# Turn delimiters of common chat formats, checked even when the template
# did not report them
MANUAL_STOP_MARKERS: Tuple[str, ...] = (
    "<end_of_turn>",
    "<start_of_turn>",
    "<|im_end|>",
    "<|im_start|>",
    "<|eot_id|>",
    "<|endoftext|>",
    "</s>",
)

_logger = BenchmarkAwareLogger("generator")


class StopReason(str, Enum):
    EOS = "eos"
    STOP_MARKER = "stop_marker"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"
    DECODE_ERROR = "decode_error"


class StopScanner:
    """
    Running output buffer checked against stop markers

    Text that could still turn into a marker is held back, so emitted text
    never contains any part of a marker. Marker groups are ranked
    (legacy completion marker, stop markers, prompt echo); the earliest
    match in the buffer wins and ties go to the higher-ranked group.
    """

    def __init__(self, stop_markers: Iterable[str] = ()):
        stops = tuple(dict.fromkeys(m for m in (*stop_markers, *MANUAL_STOP_MARKERS) if m))
        self.groups: Tuple[Tuple[str, ...], ...] = (
            (LEGACY_COMPLETION_MARKER,),
            stops,
            PROMPT_ECHO_MARKERS,
        )
        self._markers: List[str] = [m for group in self.groups for m in group]
        self._max_len = max(len(m) for m in self._markers)
        self.buffer = ""
        self._flushed = 0
        self.matched: Optional[str] = None

    @property
    def text(self) -> str:
        """Everything emitted (or emittable) so far"""
        return self.buffer

    def _find_match(self) -> Optional[Tuple[int, str]]:
        search_start = max(0, self._flushed - (self._max_len - 1))
        best: Optional[Tuple[int, int, str]] = None
        for rank, group in enumerate(self.groups):
            for marker in group:
                idx = self.buffer.find(marker, search_start)
                if idx != -1 and (best is None or (idx, rank) < best[:2]):
                    best = (idx, rank, marker)
        return (best[0], best[2]) if best else None

    def _held_back(self) -> int:
        pending = len(self.buffer) - self._flushed
        for k in range(min(self._max_len - 1, pending), 0, -1):
            suffix = self.buffer[-k:]
            if any(marker.startswith(suffix) for marker in self._markers):
                return k
        return 0

    def feed(self, fragment: str) -> Tuple[str, Optional[str]]:
        """
        Append a fragment

        Returns:
            (text safe to emit now, matched marker or None)
        """
        self.buffer += fragment
        match = self._find_match()
        if match is not None:
            idx, marker = match
            emit = self.buffer[self._flushed:idx]
            self.buffer = self.buffer[:idx]
            self._flushed = len(self.buffer)
            self.matched = marker
            return emit, marker

        emit_end = len(self.buffer) - self._held_back()
        emit = self.buffer[self._flushed:emit_end]
        self._flushed = emit_end
        return emit, None

    def flush(self) -> str:
        """Release held-back text once generation ended without a marker"""
        emit = self.buffer[self._flushed:]
        self._flushed = len(self.buffer)
        return emit


@dataclass
class LoopOutcome:
    stop_reason: StopReason
    text: str
    tokens_generated: int
    matched_marker: Optional[str] = None
    error: Optional[CrispifyRuntimeError] = None


class GenerationLoop:
    """Per-request generation state machine"""

    def __init__(
        self,
        engine: InferenceEngine,
        handle: ModelHandle,
        context: RuntimeContext,
        sampler: SamplerState,
        stop_markers: Sequence[str] = (),
        max_tokens: int = 150,
        stats: Optional[StatsCollector] = None,
    ):
        self.engine = engine
        self.handle = handle
        self.context = context
        self.sampler = sampler
        self.max_tokens = max_tokens
        self.scanner = StopScanner(stop_markers)
        self.stats = stats or StatsCollector()

    def run(self, sink: TokenSink, cancellation: CancellationToken, start_pos: int) -> LoopOutcome:
        """
        Generate until a stop condition

        Args:
            sink: Receives (fragment, False) for each emitted fragment
            cancellation: Polled once per iteration, before sampling
            start_pos: Position of the first generated token (prompt length)
        """
        self.sampler.reset()
        pos = start_pos
        reason = StopReason.MAX_TOKENS
        error: Optional[CrispifyRuntimeError] = None

        for _ in range(self.max_tokens):
            if cancellation.cancelled:
                reason = StopReason.CANCELLED
                break

            token = self.engine.sample(self.context, self.sampler)
            self.sampler.accept(token)
            # End-of-turn control tokens detokenize to "" and never reach the stop scan
            if self.engine.is_end_of_generation(self.handle, token):
                reason = StopReason.EOS
                break

            self.stats.record_token()
            fragment = self.engine.detokenize(self.handle, token)
            emit, marker = self.scanner.feed(fragment)
            if emit:
                sink(emit, False)
            if marker is not None:
                reason = StopReason.STOP_MARKER
                _logger.debug("Stop marker matched", marker=repr(marker), position=pos)
                break

            if pos >= self.context.context_length:
                _logger.warning("Context window full", position=pos)
                break

            if not self.engine.decode(self.context, TokenBatch.single(token, pos)):
                reason = StopReason.DECODE_ERROR
                error = InferenceFailed(self.handle.model_path, f"decode failed at position {pos}")
                break
            pos += 1
            self.context.n_past = pos

        if reason is not StopReason.STOP_MARKER:
            tail = self.scanner.flush()
            if tail:
                sink(tail, False)

        return LoopOutcome(
            stop_reason=reason,
            text=self.scanner.text,
            tokens_generated=self.stats.tokens,
            matched_marker=self.scanner.matched,
            error=error,
        )
