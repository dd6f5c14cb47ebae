"""Deterministic prompt rewrites used when the LLM cannot be reached."""

import random
import re
from typing import Callable, List, Optional

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def _sub(pattern: str, replacement: str) -> Callable[[str], str]:
    compiled = re.compile(pattern, re.IGNORECASE)
    return lambda text: compiled.sub(replacement, text)


def _chain(*steps: Callable[[str], str]) -> Callable[[str], str]:
    def apply(text: str) -> str:
        for step in steps:
            text = step(text)
        return text
    return apply


def split_into_sentences(text: str) -> List[str]:
    """Split on . ! or ? followed by whitespace, dropping empty pieces."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


def interleave_sentences(prompt1: str, prompt2: str) -> str:
    """
    Sentence-level crossover: even positions come from the first prompt, odd
    positions from the second, and once the shorter one runs out the longer
    one's remaining sentences are kept in place.
    """
    sentences1 = split_into_sentences(prompt1)
    sentences2 = split_into_sentences(prompt2)

    result = []
    for i in range(max(len(sentences1), len(sentences2))):
        primary, secondary = (sentences1, sentences2) if i % 2 == 0 else (sentences2, sentences1)
        if i < len(primary):
            result.append(primary[i])
        elif i < len(secondary):
            result.append(secondary[i])

    return " ".join(result)


# Variant rules, cycled by population index
VARIANT_RULES: List[Callable[[str], str]] = [
    # More formal
    _chain(_sub(r"you're", "you are"), _sub(r"don't", "do not"), _sub(r"can't", "cannot")),
    # More casual
    _chain(_sub(r"you are", "you're"), _sub(r"do not", "don't"), _sub(r"cannot", "can't")),
    # More encouraging
    _chain(_sub(r"\bremember\b", "Always remember"), _sub(r"\bthink\b", "Please think")),
    # More direct
    _chain(_sub(r"please ", ""), _sub(r"always ", ""), _sub(r"\bremember\b", "Note")),
    # Add emphasis
    _chain(_sub(r"\bimportant\b", "very important"), _sub(r"\bgood\b", "excellent")),
]

# Appended when no rule changed the text so every variant still differs
TONE_DIRECTIVES = [
    "Use a formal, precise tone.",
    "Keep the tone warm and conversational.",
    "Be encouraging and supportive throughout.",
    "Be direct and concise.",
    "Emphasize the most important points.",
]


def variant_transform(prompt: str, index: int) -> str:
    """Deterministic variant of ``prompt`` for population slot ``index``."""
    rule = VARIANT_RULES[index % len(VARIANT_RULES)]
    variant = rule(prompt)
    if variant == prompt:
        directive = TONE_DIRECTIVES[index % len(TONE_DIRECTIVES)]
        variant = f"{prompt.rstrip()} {directive}".strip()
    return variant


def _swap_sentences(rng: random.Random) -> Callable[[str], str]:
    def apply(text: str) -> str:
        sentences = split_into_sentences(text)
        if len(sentences) > 2:
            i = rng.randrange(len(sentences))
            j = rng.randrange(len(sentences))
            sentences[i], sentences[j] = sentences[j], sentences[i]
            return " ".join(sentences)
        return text
    return apply


def mutation_rules(rng: random.Random) -> List[Callable[[str], str]]:
    return [
        # Tone
        _chain(_sub(r"\bremember\b", "always remember"), _sub(r"\bthink\b", "carefully consider")),
        _chain(_sub(r"always ", ""), _sub(r"carefully ", ""), _sub(r"very ", "")),
        # Emphasis
        _chain(_sub(r"\bimportant\b", "crucial"), _sub(r"\bgood\b", "excellent")),
        _chain(_sub(r"\bcrucial\b", "important"), _sub(r"\bexcellent\b", "good")),
        # Structure
        _swap_sentences(rng),
        # Formality
        _chain(_sub(r"you're", "you are"), _sub(r"don't", "do not"), _sub(r"won't", "will not")),
        _chain(_sub(r"you are", "you're"), _sub(r"do not", "don't"), _sub(r"will not", "won't")),
    ]


def mutate_transform(prompt: str, rng: Optional[random.Random] = None) -> str:
    """Apply one randomly chosen rule-based mutation."""
    rng = rng or random.Random()
    rule = rng.choice(mutation_rules(rng))
    return rule(prompt)


def render_template(template: str, values: dict) -> str:
    """Replace ``{{key}}`` placeholders with the matching values."""
    rendered = template
    for key, value in values.items():
        rendered = re.sub(r"\{\{" + re.escape(str(key)) + r"\}\}", lambda _m, v=value: str(v), rendered)
    return rendered
