"""
llama.cpp engine binding - GGUF inference via llama-cpp-python

Responsibilities:
- Load GGUF weights (CPU only) and create a runtime context
- Tokenize / detokenize through the model vocabulary
- Run decode steps on position-tagged batches
- Build the native sampler chain and sample from the last decoded position
- Report end-of-generation control tokens from the vocabulary
- Render chat templates embedded in GGUF metadata
"""

import codecs
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ..config_loader import Config, get_config
from ..errors import ModelLoadError, TokenizerError
from ..validators import verify_gguf_file
from .engine import (
    ChatFormat,
    EngineParams,
    InferenceEngine,
    ModelHandle,
    RuntimeContext,
    TokenBatch,
)
from .sampling import SamplerParams, SamplerState

logger = logging.getLogger(__name__)

# llama.cpp LLAMA_DEFAULT_SEED: pick a random seed at chain creation
DEFAULT_SEED = 0xFFFFFFFF

# llama-cpp-python is a compiled extension; record why it is missing so
# load() can explain the failure instead of crashing on import.
LLAMA_CPP_AVAILABLE = False
LLAMA_CPP_IMPORT_ERROR: Optional[str] = None

try:
    import llama_cpp
    from llama_cpp._internals import LlamaBatch, LlamaContext, LlamaModel, LlamaSampler
    from llama_cpp.llama_chat_format import Jinja2ChatFormatter

    LLAMA_CPP_AVAILABLE = True
except Exception as exc:  # noqa: BLE001
    LLAMA_CPP_IMPORT_ERROR = f"llama-cpp-python import failed: {exc}"


@dataclass
class _NativeModel:
    model: Any
    decoder: Any = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")("replace"))


@dataclass
class _NativeContext:
    ctx: Any
    batch: Any
    owner: _NativeModel


def build_sampler_chain(params: SamplerParams, seed: Optional[int] = None) -> Any:
    """
    Native sampler chain in llama.cpp's usual order:
    penalties -> top-k -> top-p -> min-p -> temperature -> seeded draw
    (greedy pick instead of the last four when temperature <= 0)
    """
    chain = LlamaSampler()
    if params.has_penalties:
        chain.add_penalties(
            params.penalty_last_n,
            params.repeat_penalty,
            params.frequency_penalty,
            params.presence_penalty,
        )
    if params.greedy:
        chain.add_greedy()
        return chain

    if params.top_k > 0:
        chain.add_top_k(params.top_k)
    chain.add_top_p(params.top_p, 1)
    chain.add_min_p(params.min_p, 1)
    chain.add_temp(params.temperature)
    chain.add_dist(DEFAULT_SEED if seed is None else seed & 0xFFFFFFFF)
    return chain


class LlamaCppEngine(InferenceEngine):
    """InferenceEngine backed by llama.cpp"""

    def __init__(self, verbose: bool = False, config: Optional[Config] = None):
        self.verbose = verbose
        self.config = config

    def load(self, model_path: str, params: EngineParams) -> ModelHandle:
        if not LLAMA_CPP_AVAILABLE:
            raise ModelLoadError(model_path, LLAMA_CPP_IMPORT_ERROR or "llama-cpp-python not installed")

        config = self.config or get_config()
        try:
            path = verify_gguf_file(
                model_path,
                min_size_bytes=config.min_model_size_bytes,
                check_magic=config.verify_gguf_magic,
            )
        except ValueError as exc:
            raise ModelLoadError(model_path, str(exc)) from exc

        model_params = llama_cpp.llama_model_default_params()
        model_params.n_gpu_layers = params.gpu_layers

        try:
            model = LlamaModel(path_model=str(path), params=model_params, verbose=self.verbose)
        except Exception as exc:
            raise ModelLoadError(model_path, f"weights failed to load: {exc}") from exc

        metadata: Dict[str, Any] = {}
        try:
            metadata = dict(model.metadata())
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Could not read GGUF metadata: {exc}")

        return ModelHandle(model_path=str(path), native=_NativeModel(model=model), metadata=metadata)

    def create_context(self, handle: ModelHandle, params: EngineParams) -> RuntimeContext:
        native: _NativeModel = handle.native
        ctx_params = llama_cpp.llama_context_default_params()
        ctx_params.n_ctx = params.context_length
        ctx_params.n_batch = params.batch_size
        ctx_params.n_ubatch = params.batch_size
        ctx_params.n_threads = params.n_threads
        ctx_params.n_threads_batch = params.n_threads_batch

        try:
            ctx = LlamaContext(model=native.model, params=ctx_params, verbose=self.verbose)
        except Exception as exc:
            raise ModelLoadError(handle.model_path, f"context creation failed: {exc}") from exc

        try:
            batch = LlamaBatch(n_tokens=params.batch_size, embd=0, n_seq_max=1, verbose=self.verbose)
        except Exception as exc:
            ctx.close()
            raise ModelLoadError(handle.model_path, f"batch allocation failed: {exc}") from exc

        return RuntimeContext(
            native=_NativeContext(ctx=ctx, batch=batch, owner=native),
            context_length=params.context_length,
            batch_size=params.batch_size,
        )

    def tokenize(self, handle: ModelHandle, text: str, add_special: bool = True) -> List[int]:
        # LlamaModel.tokenize grows its buffer and retries when llama.cpp
        # reports an undersized output buffer.
        try:
            return list(handle.native.model.tokenize(text.encode("utf-8"), add_special, True))
        except Exception as exc:
            raise TokenizerError(handle.model_path, f"encode failed: {exc}") from exc

    def detokenize(self, handle: ModelHandle, token: int) -> str:
        native: _NativeModel = handle.native
        piece = native.model.token_to_piece(token, special=False)
        # Incremental decoding keeps multi-byte characters split across tokens intact
        return native.decoder.decode(piece)

    def decode(self, context: RuntimeContext, batch: TokenBatch) -> bool:
        native: _NativeContext = context.native
        raw = native.batch.batch
        if len(batch) > context.batch_size:
            logger.error(f"Batch of {len(batch)} exceeds configured batch size {context.batch_size}")
            return False

        for i, (token, pos, wants_logits) in enumerate(zip(batch.tokens, batch.positions, batch.logits)):
            raw.token[i] = token
            raw.pos[i] = pos
            raw.n_seq_id[i] = 1
            raw.seq_id[i][0] = 0
            raw.logits[i] = wants_logits
        raw.n_tokens = len(batch)

        try:
            native.ctx.decode(native.batch)
        except RuntimeError as exc:
            logger.error(f"llama_decode failed: {exc}")
            return False
        return True

    def create_sampler(
        self, handle: ModelHandle, params: SamplerParams, seed: Optional[int] = None
    ) -> SamplerState:
        try:
            chain = build_sampler_chain(params, seed)
        except Exception as exc:
            raise ModelLoadError(handle.model_path, f"sampler creation failed: {exc}") from exc
        return SamplerState(params, seed=seed, native=chain)

    def sample(self, context: RuntimeContext, sampler: SamplerState) -> int:
        native: _NativeContext = context.native
        # llama_sampler_sample also accepts the token into the chain
        return int(sampler.native.sample(native.ctx, -1))

    def eos_token(self, handle: ModelHandle) -> int:
        return int(handle.native.model.token_eos())

    def is_end_of_generation(self, handle: ModelHandle, token: int) -> bool:
        model = handle.native.model
        is_eog = getattr(model, "token_is_eog", None)
        if is_eog is not None:
            return bool(is_eog(token))
        vocab = llama_cpp.llama_model_get_vocab(model.model)
        return bool(llama_cpp.llama_vocab_is_eog(vocab, token))

    def chat_format(
        self, handle: ModelHandle, messages: Sequence[Dict[str, str]]
    ) -> Optional[ChatFormat]:
        template = handle.metadata.get("tokenizer.chat_template")
        if not template:
            return None

        model = handle.native.model
        eos_id, bos_id = model.token_eos(), model.token_bos()
        eos_token = model.token_get_text(eos_id) if eos_id != -1 else ""
        bos_token = model.token_get_text(bos_id) if bos_id != -1 else ""

        try:
            formatter = Jinja2ChatFormatter(
                template=template,
                eos_token=eos_token,
                bos_token=bos_token,
                add_generation_prompt=True,
            )
            response = formatter(messages=list(messages))
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"Chat template rendering failed, using fallback format: {exc}")
            return None

        stop = response.stop
        if stop is None:
            stops: List[str] = []
        elif isinstance(stop, str):
            stops = [stop]
        else:
            stops = list(stop)
        return ChatFormat(prompt=response.prompt, stop_markers=[s for s in stops if s])

    def model_size_bytes(self, handle: ModelHandle) -> int:
        return int(handle.native.model.size())

    def context_size_bytes(self, context: RuntimeContext) -> int:
        return int(llama_cpp.llama_state_get_size(context.native.ctx.ctx))

    def reset_context(self, context: RuntimeContext) -> None:
        native: _NativeContext = context.native
        clear = getattr(native.ctx, "kv_cache_clear", None) or getattr(native.ctx, "memory_clear")
        clear()
        native.owner.decoder.reset()
        context.n_past = 0

    def free_context(self, context: RuntimeContext) -> None:
        native: _NativeContext = context.native
        native.batch.close()
        native.ctx.close()

    def free_model(self, handle: ModelHandle) -> None:
        handle.native.model.close()
