"""
Unit tests for TokenBudgetValidator
"""

import pytest

from fake_engine import BOS_ID, FakeEngine

from crispify_runtime.config_loader import Config
from crispify_runtime.errors import ContextOverflow, TokenLimitExceeded
from crispify_runtime.models.prompt_builder import PromptBuilder
from crispify_runtime.models.token_budget import TokenBudgetValidator


def words(n: int) -> str:
    return " ".join(f"w{i}" for i in range(n))


def validate(text, config=None, context_length=2048, chat_template=False):
    config = config or Config({})
    engine = FakeEngine(chat_template=chat_template)
    handle = engine.load("model.gguf", None)
    formatted = PromptBuilder(engine, handle, config).build(text)
    validator = TokenBudgetValidator(engine, handle, context_length, config)
    return validator.validate(text, formatted), formatted, engine, handle


class TestTokenBudget:
    def test_within_all_limits(self):
        budget, formatted, engine, handle = validate("The cat sat.")

        assert budget.input_tokens == 3
        assert budget.prompt_tokens == engine.tokenize(handle, formatted.prompt)
        assert budget.prompt_token_count == len(budget.prompt_tokens)

    def test_input_exactly_at_ceiling_passes(self):
        budget, *_ = validate(words(1000))
        assert budget.input_tokens == 1000

    def test_input_over_ceiling(self):
        with pytest.raises(TokenLimitExceeded) as exc_info:
            validate(words(1001))
        assert exc_info.value.tokens == 1001
        assert exc_info.value.limit == 1000

    def test_input_ceiling_checked_first(self):
        # Also overflows the tiny context window, but the input check wins
        with pytest.raises(TokenLimitExceeded):
            validate(words(1001), context_length=128)

    def test_prompt_over_prompt_ceiling(self):
        config = Config({"limits": {"max_input_tokens": 50, "max_prompt_tokens": 60}})
        with pytest.raises(ContextOverflow) as exc_info:
            validate(words(45), config=config)
        assert exc_info.value.limit == 60
        assert exc_info.value.tokens > 60

    def test_prompt_over_context_minus_headroom(self):
        with pytest.raises(ContextOverflow) as exc_info:
            validate(words(80), context_length=150)
        assert exc_info.value.limit == 50

    def test_headroom_follows_config(self):
        config = Config({"limits": {"context_headroom_tokens": 0}})
        budget, *_ = validate(words(10), config=config, context_length=100)
        assert budget.prompt_token_count <= 100

    def test_template_prompt_tokenized_without_extra_bos(self):
        budget, formatted, *_ = validate("The cat sat.", chat_template=True)
        assert formatted.from_template is True
        assert budget.prompt_tokens[0] != BOS_ID

    def test_fallback_prompt_gets_bos(self):
        budget, *_ = validate("The cat sat.")
        assert budget.prompt_tokens[0] == BOS_ID
