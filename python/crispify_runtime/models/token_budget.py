"""
Token budget validation

All checks complete before any batch reaches the engine, so a request
that will be rejected never costs decode work. Order of checks:

1. raw input tokens      <= max_input_tokens          (TokenLimitExceeded)
2. formatted prompt      <= max_prompt_tokens         (ContextOverflow)
3. prompt + headroom     <= context window            (ContextOverflow)
"""

from dataclasses import dataclass
from typing import List, Optional

from ..config_loader import Config, get_config
from ..errors import ContextOverflow, TokenLimitExceeded
from .engine import InferenceEngine, ModelHandle
from .prompt_builder import FormattedPrompt


@dataclass
class TokenBudget:
    input_tokens: int
    prompt_tokens: List[int]

    @property
    def prompt_token_count(self) -> int:
        return len(self.prompt_tokens)


class TokenBudgetValidator:
    def __init__(
        self,
        engine: InferenceEngine,
        handle: ModelHandle,
        context_length: int,
        config: Optional[Config] = None,
    ):
        self.engine = engine
        self.handle = handle
        self.context_length = context_length
        self.config = config or get_config()

    def count_input_tokens(self, text: str) -> int:
        return len(self.engine.tokenize(self.handle, text, add_special=False))

    def validate(self, text: str, formatted: FormattedPrompt) -> TokenBudget:
        """
        Tokenize input and prompt and enforce every ceiling

        Returns:
            TokenBudget carrying the prompt token sequence for ingestion

        Raises:
            TokenLimitExceeded: raw input over the input ceiling
            ContextOverflow: prompt over its ceiling or the context window
        """
        cfg = self.config
        model_path = self.handle.model_path

        input_tokens = self.count_input_tokens(text)
        if input_tokens > cfg.max_input_tokens:
            raise TokenLimitExceeded(model_path, input_tokens, cfg.max_input_tokens)

        # Templates already render BOS; avoid adding a second one
        prompt_tokens = self.engine.tokenize(
            self.handle, formatted.prompt, add_special=not formatted.from_template
        )
        if len(prompt_tokens) > cfg.max_prompt_tokens:
            raise ContextOverflow(model_path, len(prompt_tokens), cfg.max_prompt_tokens)

        available = self.context_length - cfg.context_headroom_tokens
        if len(prompt_tokens) > available:
            raise ContextOverflow(model_path, len(prompt_tokens), available)

        return TokenBudget(input_tokens=input_tokens, prompt_tokens=prompt_tokens)
