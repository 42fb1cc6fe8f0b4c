"""
Prompt builder - Adaptive prompt construction for text leveling

Responsibilities:
- Classify input by word count into short / medium / long tiers
- Pick the fixed system + user template of the tier
- Optionally add one few-shot demonstration when budget allows
- Format through the model chat template, or a plain
  System/User/Assistant concatenation when the model has none
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..config_loader import Config, get_config
from .engine import InferenceEngine, ModelHandle


class PromptTier(str, Enum):
    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


@dataclass(frozen=True)
class TierTemplate:
    system: str
    user: str


TIER_TEMPLATES: Dict[PromptTier, TierTemplate] = {
    PromptTier.SHORT: TierTemplate(
        system=(
            "You rewrite text in plain, simple English. "
            "Reply with only the rewritten text in 1-2 short sentences."
        ),
        user="Rewrite this text so it is easy to read:\n\n{text}",
    ),
    PromptTier.MEDIUM: TierTemplate(
        system=(
            "You rewrite text at a 7th-grade reading level. "
            "Keep every fact, name and number. "
            "Reply with only the rewritten text in 2-3 sentences."
        ),
        user="Rewrite this text at a 7th-grade reading level:\n\n{text}",
    ),
    PromptTier.LONG: TierTemplate(
        system=(
            "You summarize text in plain English for a 7th-grade reader. "
            "Keep the key facts, names and numbers. "
            "Reply with only the summary in 3-4 sentences."
        ),
        user="Summarize the key facts of this text:\n\n{text}",
    ),
}


@dataclass(frozen=True)
class FewShotExample:
    input: str
    output: str


FEW_SHOT_EXAMPLE = FewShotExample(
    input=(
        "The municipality has implemented a comprehensive initiative to facilitate "
        "the utilization of public transportation among residents."
    ),
    output="The city started a big plan to help people use buses and trains more.",
)

# Substrings that only appear when the model repeats its own instructions
PROMPT_ECHO_MARKERS: Tuple[str, ...] = (
    "Rewrite this text",
    "Summarize the key facts of this text",
    "You rewrite text",
    "You summarize text",
    "Reply with only the",
)

FALLBACK_STOP_MARKERS: Tuple[str, ...] = ("\nUser:", "\nSystem:")


@dataclass
class PromptSpec:
    system_message: str
    user_message: str
    example: Optional[FewShotExample] = None

    def messages(self) -> List[Dict[str, str]]:
        msgs = [{"role": "system", "content": self.system_message}]
        if self.example is not None:
            msgs.append({"role": "user", "content": self.example.input})
            msgs.append({"role": "assistant", "content": self.example.output})
        msgs.append({"role": "user", "content": self.user_message})
        return msgs


@dataclass
class FormattedPrompt:
    prompt: str
    stop_markers: Tuple[str, ...]
    tier: PromptTier
    word_count: int
    max_output_tokens: int
    from_template: bool = False
    few_shot: bool = False
    spec: Optional[PromptSpec] = field(default=None, repr=False)


def count_words(text: str) -> int:
    return len(text.split())


def format_fallback(spec: PromptSpec) -> str:
    """Plain role-labelled concatenation for models without a chat template"""
    parts = [f"System: {spec.system_message}\n"]
    if spec.example is not None:
        parts.append(f"User: {spec.example.input}\nAssistant: {spec.example.output}\n")
    parts.append(f"User: {spec.user_message}\nAssistant:")
    return "\n".join(parts)


class PromptBuilder:
    """Builds the FormattedPrompt for one request"""

    def __init__(
        self,
        engine: InferenceEngine,
        handle: ModelHandle,
        config: Optional[Config] = None,
    ):
        self.engine = engine
        self.handle = handle
        self.config = config or get_config()

    def classify(self, text: str) -> Tuple[PromptTier, int]:
        words = count_words(text)
        if words <= self.config.short_tier_max_words:
            return PromptTier.SHORT, words
        if words <= self.config.medium_tier_max_words:
            return PromptTier.MEDIUM, words
        return PromptTier.LONG, words

    def prompt_spec(self, text: str, tier: PromptTier, with_example: bool = False) -> PromptSpec:
        template = TIER_TEMPLATES[tier]
        return PromptSpec(
            system_message=template.system,
            user_message=template.user.format(text=text),
            example=FEW_SHOT_EXAMPLE if with_example else None,
        )

    def format(self, spec: PromptSpec) -> Tuple[str, Tuple[str, ...], bool]:
        """Return (prompt, stop markers, rendered-by-template)"""
        if self.config.use_chat_template:
            rendered = self.engine.chat_format(self.handle, spec.messages())
            if rendered is not None:
                stops = tuple(dict.fromkeys(rendered.stop_markers))
                return rendered.prompt, stops, True
        return format_fallback(spec), FALLBACK_STOP_MARKERS, False

    def build(self, text: str) -> FormattedPrompt:
        tier, words = self.classify(text)
        spec = self.prompt_spec(text, tier)
        prompt, stops, from_template = self.format(spec)
        few_shot = False

        if self.config.few_shot_enabled and words > self.config.few_shot_min_words:
            base_tokens = len(self.engine.tokenize(self.handle, prompt, add_special=not from_template))
            if base_tokens < self.config.few_shot_max_prompt_tokens:
                spec = self.prompt_spec(text, tier, with_example=True)
                prompt, stops, from_template = self.format(spec)
                few_shot = True

        return FormattedPrompt(
            prompt=prompt,
            stop_markers=stops,
            tier=tier,
            word_count=words,
            max_output_tokens=self.config.max_output_tokens[tier.value],
            from_template=from_template,
            few_shot=few_shot,
            spec=spec,
        )
