import logging
import re
from typing import List, Sequence, Set

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^\w\s]")


def tokenize(text: str) -> List[str]:
    """
    Split a prompt into comparable words.

    Lowercases, replaces punctuation with spaces and keeps words longer than
    two characters.
    """
    cleaned = _NON_WORD.sub(" ", text.lower())
    return [word for word in cleaned.split() if len(word) > 2]


def jaccard_similarity(set_a: Set[str], set_b: Set[str]) -> float:
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


def calculate_diversity(prompts: Sequence[str]) -> float:
    """
    Population diversity as 1 minus the mean pairwise Jaccard similarity.

    Args:
        prompts: Prompt texts of the population

    Returns:
        Diversity in [0, 1]; fewer than two prompts count as fully diverse
    """
    if len(prompts) < 2:
        return 1.0

    word_sets = [set(tokenize(p)) for p in prompts]

    total_similarity = 0.0
    comparisons = 0
    for i in range(len(word_sets)):
        for j in range(i + 1, len(word_sets)):
            total_similarity += jaccard_similarity(word_sets[i], word_sets[j])
            comparisons += 1

    avg_similarity = total_similarity / comparisons if comparisons > 0 else 0.0
    diversity = 1.0 - avg_similarity
    logger.debug(f"Diversity over {len(prompts)} prompts ({comparisons} pairs): {diversity:.4f}")
    return diversity
