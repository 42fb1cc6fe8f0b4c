"""
Unit tests for PromptBuilder

Tier classification, output caps, few-shot gating and the two
formatting paths (model chat template vs role-labelled fallback).
"""

import pytest

from fake_engine import FakeEngine

from crispify_runtime.config_loader import Config
from crispify_runtime.models.prompt_builder import (
    FALLBACK_STOP_MARKERS,
    FEW_SHOT_EXAMPLE,
    PromptBuilder,
    PromptSpec,
    PromptTier,
    count_words,
    format_fallback,
)


def words(n: int) -> str:
    return " ".join(f"word{i}" for i in range(n))


def make_builder(config=None, chat_template=False):
    engine = FakeEngine(chat_template=chat_template)
    handle = engine.load("model.gguf", None)
    return PromptBuilder(engine, handle, config or Config({})), engine


class TestClassification:
    @pytest.mark.parametrize("count, tier, cap", [
        (1, PromptTier.SHORT, 150),
        (25, PromptTier.SHORT, 150),
        (26, PromptTier.MEDIUM, 300),
        (75, PromptTier.MEDIUM, 300),
        (76, PromptTier.LONG, 500),
        (400, PromptTier.LONG, 500),
    ])
    def test_tier_boundaries_and_caps(self, count, tier, cap):
        builder, _ = make_builder()
        formatted = builder.build(words(count))

        assert formatted.tier is tier
        assert formatted.word_count == count
        assert formatted.max_output_tokens == cap

    def test_word_count_ignores_extra_whitespace(self):
        assert count_words("  The   cat\nsat.\t") == 3
        assert count_words("") == 0

    def test_tier_limits_follow_config(self):
        config = Config({"generation": {"short_tier_max_words": 3, "medium_tier_max_words": 5}})
        builder, _ = make_builder(config)
        assert builder.classify(words(4))[0] is PromptTier.MEDIUM
        assert builder.classify(words(6))[0] is PromptTier.LONG


class TestTemplates:
    def test_input_embedded_in_user_message(self):
        builder, _ = make_builder()
        spec = builder.prompt_spec("The cat sat.", PromptTier.SHORT)
        assert spec.user_message.endswith("The cat sat.")
        assert spec.example is None

    def test_tiers_use_different_instructions(self):
        builder, _ = make_builder()
        systems = {builder.prompt_spec("x", tier).system_message for tier in PromptTier}
        assert len(systems) == 3

    def test_messages_order_with_example(self):
        spec = PromptSpec("sys", "user", FEW_SHOT_EXAMPLE)
        roles = [m["role"] for m in spec.messages()]
        assert roles == ["system", "user", "assistant", "user"]


class TestFormatting:
    def test_fallback_layout(self):
        prompt = format_fallback(PromptSpec("Be brief.", "Rewrite: hi"))
        assert prompt == "System: Be brief.\n\nUser: Rewrite: hi\nAssistant:"

    def test_fallback_used_without_chat_template(self):
        builder, _ = make_builder(chat_template=False)
        formatted = builder.build("The cat sat.")

        assert formatted.from_template is False
        assert formatted.prompt.startswith("System: ")
        assert formatted.prompt.endswith("Assistant:")
        assert formatted.stop_markers == FALLBACK_STOP_MARKERS

    def test_chat_template_used_when_available(self):
        builder, _ = make_builder(chat_template=True)
        formatted = builder.build("The cat sat.")

        assert formatted.from_template is True
        assert formatted.prompt.endswith("<start_of_turn>model\n")
        assert "<end_of_turn>" in formatted.stop_markers

    def test_chat_template_can_be_disabled(self):
        config = Config({"generation": {"use_chat_template": False}})
        builder, _ = make_builder(config, chat_template=True)
        assert builder.build("The cat sat.").from_template is False


class TestFewShot:
    def test_short_input_gets_no_example(self):
        builder, _ = make_builder()
        formatted = builder.build(words(10))
        assert formatted.few_shot is False
        assert FEW_SHOT_EXAMPLE.output not in formatted.prompt

    def test_example_added_above_word_threshold(self):
        builder, _ = make_builder()
        formatted = builder.build(words(20))
        assert formatted.few_shot is True
        assert FEW_SHOT_EXAMPLE.input in formatted.prompt
        assert FEW_SHOT_EXAMPLE.output in formatted.prompt

    def test_example_skipped_when_base_prompt_too_long(self):
        builder, _ = make_builder()
        # 420 input words alone exceed the 400 token budget
        formatted = builder.build(words(420))
        assert formatted.few_shot is False

    def test_example_can_be_disabled(self):
        builder, _ = make_builder(Config({"generation": {"few_shot": {"enabled": False}}}))
        assert builder.build(words(20)).few_shot is False

    def test_example_rendered_through_chat_template(self):
        builder, _ = make_builder(chat_template=True)
        formatted = builder.build(words(20))
        assert formatted.few_shot is True
        assert f"<start_of_turn>model\n{FEW_SHOT_EXAMPLE.output}<end_of_turn>" in formatted.prompt
