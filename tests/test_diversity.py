import sys
from pathlib import Path

import pytest

# Add the project root to the path so imports work
sys.path.insert(0, str(Path(__file__).parent.parent))

from promptevo.diversity import calculate_diversity, jaccard_similarity, tokenize


def test_tokenize_lowercases_and_drops_short_words():
    assert tokenize("Hi, it's a GREAT day!") == ["great", "day"]


def test_jaccard_similarity():
    assert jaccard_similarity({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    assert jaccard_similarity(set(), set()) == 0.0


def test_identical_prompts_have_zero_diversity():
    prompt = "Write a warm letter to your future self"
    assert calculate_diversity([prompt, prompt, prompt]) == pytest.approx(0.0)


def test_disjoint_prompts_are_fully_diverse():
    assert calculate_diversity(["apples oranges", "trucks planes"]) == pytest.approx(1.0)


def test_small_populations_are_fully_diverse():
    assert calculate_diversity([]) == 1.0
    assert calculate_diversity(["only one"]) == 1.0


def test_prompts_without_tokens_count_as_dissimilar():
    assert calculate_diversity(["a b", "c d"]) == pytest.approx(1.0)


def test_partial_overlap():
    # {"write", "letter"} vs {"write", "poem"} -> similarity 1/3
    assert calculate_diversity(["write letter", "write poem"]) == pytest.approx(2 / 3)
