"""
Model session - Lifecycle owner of one loaded model

Responsibilities:
- Load weights, create the runtime context and sampler as one unit
- Run the text-leveling pipeline for process_text:
  preflight -> prompt -> token budget -> batch ingest -> generation loop
- Allow at most one generation in flight; reject (never queue) the rest
- Convert every pipeline failure into an ErrorKind at this boundary
- Emit exactly one terminal ("", True) fragment per process_text call
- Release resources idempotently (sampler, context, model in that order)
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..benchmark_utils import BenchmarkAwareLogger
from ..config_loader import Config, get_config
from ..diagnostics import DiagnosticErrorCode, DiagnosticsRecorder
from ..errors import (
    CrispifyRuntimeError,
    ErrorKind,
    GenerationInProgress,
    ModelNotLoaded,
    error_kind_of,
)
from ..telemetry import GenerationStats, RuntimeTelemetry, StatsCollector
from ..validators import validate_model_path
from .batch_ingester import BatchIngester
from .cancellation import CancellationToken
from .engine import EngineParams, InferenceEngine, ModelHandle, RuntimeContext
from .generator import GenerationLoop, StopReason, TokenSink
from .preflight import BYTES_PER_MB, MemoryPreflight
from .prompt_builder import PromptBuilder
from .sampling import SamplerParams, SamplerState
from .token_budget import TokenBudgetValidator

logger = BenchmarkAwareLogger("session")

ProgressCallback = Callable[[float], None]

# Load progress milestones
PROGRESS_LOAD_STARTED = 0.1
PROGRESS_WEIGHTS_LOADED = 0.5
PROGRESS_CONTEXT_READY = 0.9
PROGRESS_COMPLETE = 1.0


class SessionState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"


@dataclass
class GenerationResult:
    """Outcome of one process_text call (the streamed fragments carry the text)"""

    error_kind: ErrorKind = ErrorKind.NONE
    text: str = ""
    stop_reason: Optional[str] = None
    tier: Optional[str] = None
    prompt_tokens: int = 0
    stats: GenerationStats = field(default_factory=GenerationStats)
    error_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is ErrorKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_kind": self.error_kind.value,
            "stop_reason": self.stop_reason,
            "tier": self.tier,
            "prompt_tokens": self.prompt_tokens,
            "stats": self.stats.to_dict(),
            "error_message": self.error_message,
        }


class ModelSession:
    """
    Owns a ModelHandle, its RuntimeContext and SamplerState

    The three are created and released together; none of them is ever
    visible half-initialized. Instances are explicitly owned by the
    caller (runtime server, tests); there is no module-level singleton.

    Example:
        >>> session = ModelSession(LlamaCppEngine())
        >>> session.load_model("/models/gemma-3-270m-it-Q4_K_M.gguf")
        True
        >>> session.process_text("The municipality ...", on_token)
    """

    def __init__(
        self,
        engine: InferenceEngine,
        config: Optional[Config] = None,
        preflight: Optional[MemoryPreflight] = None,
        telemetry: Optional[RuntimeTelemetry] = None,
        diagnostics: Optional[DiagnosticsRecorder] = None,
    ):
        self.engine = engine
        self.config = config or get_config()
        self.preflight = preflight or MemoryPreflight(self.config.memory_threshold_bytes)
        self.telemetry = telemetry or RuntimeTelemetry(
            enabled=self.config.telemetry_enabled,
            sampling_rate=self.config.telemetry_sampling_rate,
        )
        self.diagnostics_recorder = diagnostics or DiagnosticsRecorder(
            enabled=self.config.diagnostics_enabled,
            max_metrics=self.config.diagnostics_max_metrics,
        )

        self._state = SessionState.UNLOADED
        self._state_lock = threading.Lock()
        self._generation_lock = threading.Lock()

        self._handle: Optional[ModelHandle] = None
        self._context: Optional[RuntimeContext] = None
        self._sampler: Optional[SamplerState] = None
        self._memory_bytes = 0
        self._active_token: Optional[CancellationToken] = None
        self._last_error: Optional[str] = None
        # Bumped by every load start and by release during LOADING; a load
        # commits only if the epoch is still the one it started with
        self._load_epoch = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def model_path(self) -> Optional[str]:
        handle = self._handle
        return handle.model_path if handle is not None else None

    def is_model_loaded(self) -> bool:
        return self._state in (SessionState.READY, SessionState.GENERATING)

    def get_memory_usage(self) -> int:
        """Cached estimate in bytes (weights + context), 0 when unloaded"""
        return self._memory_bytes

    def diagnostics(self) -> Dict[str, Any]:
        """Snapshot of the session for support screens"""
        return {
            "state": self._state.value,
            "model_loaded": self.is_model_loaded(),
            "model_path": self.model_path,
            "memory_usage_mb": self._memory_bytes // BYTES_PER_MB,
            "context_length": self._context.context_length if self._context else None,
            "batch_size": self._context.batch_size if self._context else None,
            "last_error": self._last_error,
        }

    def _engine_params(self) -> EngineParams:
        cfg = self.config
        return EngineParams(
            context_length=cfg.context_length,
            batch_size=cfg.batch_size,
            n_threads=cfg.n_threads,
            n_threads_batch=cfg.n_threads_batch,
            gpu_layers=cfg.gpu_layers,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_model(self, model_path: str, on_progress: Optional[ProgressCallback] = None) -> bool:
        """
        Load weights, context and sampler as one unit

        Args:
            model_path: Path to a GGUF model file
            on_progress: Called with non-decreasing values ending at 1.0 on success

        Returns:
            True when the session is READY, False on any failure (partial
            resources are released and the session stays UNLOADED)
        """
        with self._state_lock:
            if self._state is not SessionState.UNLOADED:
                logger.warning("load_model ignored", state=self._state.value)
                return False
            self._state = SessionState.LOADING
            self._load_epoch += 1
            epoch = self._load_epoch

        def report(value: float) -> None:
            if on_progress is None:
                return
            try:
                on_progress(value)
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Progress callback raised: {exc}")

        started = time.perf_counter()
        params = self._engine_params()
        handle: Optional[ModelHandle] = None
        context: Optional[RuntimeContext] = None

        try:
            path = validate_model_path(model_path)
            report(PROGRESS_LOAD_STARTED)
            logger.info("Loading model", path=path)

            handle = self.engine.load(path, params)
            report(PROGRESS_WEIGHTS_LOADED)

            context = self.engine.create_context(handle, params)
            report(PROGRESS_CONTEXT_READY)

            memory = self.engine.model_size_bytes(handle) + self.engine.context_size_bytes(context)
            sampler = self.engine.create_sampler(
                handle,
                SamplerParams.from_dict(self.config.sampling_params()),
                seed=self.config.seed,
            )
        except Exception as exc:  # noqa: BLE001
            # LOAD_FAILED: free whatever was created, then back to UNLOADED
            self._discard(handle, context)
            self._last_error = str(exc)
            duration_ms = (time.perf_counter() - started) * 1000.0
            self.telemetry.record_load(duration_ms, success=False)
            self.diagnostics_recorder.record_error(DiagnosticErrorCode.MODEL_INITIALIZATION_FAILED)
            logger.error("Model load failed", path=model_path, error=str(exc))
            with self._state_lock:
                if self._load_epoch == epoch:
                    self._state = SessionState.UNLOADED
            return False

        with self._state_lock:
            superseded = self._load_epoch != epoch
            if not superseded:
                self._handle = handle
                self._context = context
                self._sampler = sampler
                self._memory_bytes = memory
                self._last_error = None
                self._state = SessionState.READY

        if superseded:
            # release_model ran while loading; nothing of this load may survive
            sampler.close()
            self._discard(handle, context)
            logger.warning("Model load discarded by release", path=handle.model_path)
            return False

        duration_ms = (time.perf_counter() - started) * 1000.0
        self.telemetry.record_load(duration_ms, success=True)
        logger.info(
            "Model ready",
            path=handle.model_path,
            memory_mb=memory // BYTES_PER_MB,
            load_ms=round(duration_ms, 1),
        )
        report(PROGRESS_COMPLETE)
        return True

    def release_model(self) -> None:
        """
        Free sampler, context and model (in that order)

        Safe to call repeatedly and from any state. An in-flight generation
        is cancelled and allowed to finish first. A load in progress is
        abandoned: its resources are freed by the loading thread and its
        load_model call returns False.
        """
        token = self._active_token
        if token is not None:
            token.cancel()

        with self._generation_lock:
            with self._state_lock:
                if self._state is SessionState.UNLOADED:
                    return
                if self._state is SessionState.LOADING:
                    self._load_epoch += 1
                    self._state = SessionState.UNLOADED
                    logger.info("Pending model load abandoned")
                    return
                handle, context, sampler = self._handle, self._context, self._sampler
                self._sampler = None
                self._context = None
                self._handle = None
                self._memory_bytes = 0
                self._state = SessionState.UNLOADED

            if sampler is not None:
                sampler.close()
            self._discard(handle, context)
            logger.info("Model released")

    def _discard(self, handle: Optional[ModelHandle], context: Optional[RuntimeContext]) -> None:
        if context is not None:
            self.engine.free_context(context)
        if handle is not None:
            self.engine.free_model(handle)

    def close(self) -> None:
        self.release_model()

    def __enter__(self) -> "ModelSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release_model()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def cancel_processing(self) -> None:
        """Request cancellation of the in-flight generation (no-op when idle)"""
        token = self._active_token
        if token is not None:
            token.cancel()

    def process_text(
        self,
        text: str,
        on_token: TokenSink,
        cancellation: Optional[CancellationToken] = None,
    ) -> GenerationResult:
        """
        Level one input text, streaming fragments through on_token

        on_token receives (fragment, False) for each fragment and exactly
        one final ("", True) on every path, including rejection, failure
        and cancellation. Errors are reported in the returned result,
        never raised.
        """
        if not self._generation_lock.acquire(blocking=False):
            return self._reject(GenerationInProgress(self.model_path), on_token)

        try:
            with self._state_lock:
                ready = self._state is SessionState.READY
                if ready:
                    self._state = SessionState.GENERATING
                    token = cancellation or CancellationToken()
                    self._active_token = token
            if not ready:
                return self._reject(ModelNotLoaded(self.model_path), on_token)

            try:
                return self._run_pipeline(text, on_token, token)
            finally:
                with self._state_lock:
                    self._active_token = None
                    if self._state is SessionState.GENERATING:
                        self._state = SessionState.READY
        finally:
            self._generation_lock.release()

    def _reject(self, exc: CrispifyRuntimeError, on_token: TokenSink) -> GenerationResult:
        logger.warning("process_text rejected", reason=exc.message)
        self.telemetry.record_error(exc.kind.value)
        _deliver(on_token, "", True)
        return GenerationResult(error_kind=exc.kind, error_message=exc.message)

    def _run_pipeline(
        self, text: str, on_token: TokenSink, cancellation: CancellationToken
    ) -> GenerationResult:
        handle, context, sampler = self._handle, self._context, self._sampler

        stats = StatsCollector()
        stats.start()
        result = GenerationResult()
        emitted_chars = 0

        def sink(fragment: str, is_final: bool) -> None:
            nonlocal emitted_chars
            emitted_chars += len(fragment)
            _deliver(on_token, fragment, is_final)

        try:
            if handle is None or context is None or sampler is None:
                raise ModelNotLoaded(self.model_path)

            self.preflight.check(handle.model_path)

            formatted = PromptBuilder(self.engine, handle, self.config).build(text)
            result.tier = formatted.tier.value

            budget = TokenBudgetValidator(
                self.engine, handle, context.context_length, self.config
            ).validate(text, formatted)
            result.prompt_tokens = budget.prompt_token_count

            if cancellation.cancelled:
                result.stop_reason = StopReason.CANCELLED.value
                result.error_kind = ErrorKind.CANCELLED
                return result

            start_pos = BatchIngester(self.engine, context.batch_size).ingest(
                context, budget.prompt_tokens, handle.model_path
            )

            loop = GenerationLoop(
                self.engine,
                handle,
                context,
                sampler,
                stop_markers=formatted.stop_markers,
                max_tokens=formatted.max_output_tokens,
                stats=stats,
            )
            outcome = loop.run(sink, cancellation, start_pos)

            result.text = outcome.text
            result.stop_reason = outcome.stop_reason.value
            if outcome.error is not None:
                raise outcome.error
            if outcome.stop_reason is StopReason.CANCELLED:
                result.error_kind = ErrorKind.CANCELLED
            return result

        except Exception as exc:  # noqa: BLE001
            result.error_kind = error_kind_of(exc)
            result.error_message = str(exc)
            self._last_error = result.error_message
            code = DiagnosticErrorCode.from_error_kind(result.error_kind)
            if code is not None:
                self.diagnostics_recorder.record_error(code)
            logger.warning(
                "Generation failed",
                kind=result.error_kind.value,
                error=result.error_message,
            )
            return result

        finally:
            result.stats = stats.finish(result.prompt_tokens, result.stop_reason)
            self.telemetry.record_generation(result.stats, result.error_kind.value)
            if result.error_kind is ErrorKind.NONE:
                ttft = result.stats.time_to_first_token_s
                self.diagnostics_recorder.record_processing_session(
                    input_length=len(text),
                    output_length=emitted_chars,
                    time_to_first_token_ms=(ttft or 0.0) * 1000.0,
                    tokens_per_second=result.stats.tokens_per_second,
                    memory_used_mb=self._memory_bytes // BYTES_PER_MB,
                )
            logger.debug(
                "Generation finished",
                stop_reason=result.stop_reason,
                tokens=result.stats.tokens_generated,
                kind=result.error_kind.value,
            )
            _deliver(on_token, "", True)


def _deliver(on_token: TokenSink, fragment: str, is_final: bool) -> None:
    """Invoke the caller sink; its failures never abort the pipeline"""
    try:
        on_token(fragment, is_final)
    except Exception as exc:  # noqa: BLE001
        logger.error(f"Token sink raised: {exc}")
