import asyncio
import random
import sys
from pathlib import Path

# Add the project root to the path so imports work
sys.path.insert(0, str(Path(__file__).parent.parent))

from promptevo.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from promptevo.models import Individual, LLMResponse
from promptevo.operators import GeneticOperators
from promptevo.prompts import CROSSOVER_SYSTEM_PROMPT
from promptevo.transforms import interleave_sentences, variant_transform


class FakeLLM:
    def __init__(self, available=True, reply="  rewritten prompt  ", error=None):
        self.available = available
        self.reply = reply
        self.error = error
        self.calls = []

    def is_available(self):
        return self.available

    async def generate(self, prompt, max_tokens=None, system_prompt=None, timeout_ms=None):
        self.calls.append({"prompt": prompt, "system_prompt": system_prompt})
        if self.error is not None:
            raise self.error
        return LLMResponse(content=self.reply)


def make_operators(llm, seed=0):
    breaker = CircuitBreaker(CircuitBreakerConfig(failure_threshold=2))
    return GeneticOperators(llm, breaker, rng=random.Random(seed)), breaker


PARENT1 = Individual(prompt="First one. First two. First three.", fitness=0.8, generation=1)
PARENT2 = Individual(prompt="Second one. Second two.", fitness=0.6, generation=1)


def test_crossover_without_llm_interleaves_sentences():
    operators, _ = make_operators(FakeLLM(available=False))
    child = asyncio.run(operators.crossover(PARENT1, PARENT2, 2))

    assert child.prompt == interleave_sentences(PARENT1.prompt, PARENT2.prompt)
    assert child.id not in (PARENT1.id, PARENT2.id)
    assert child.generation == 2
    assert child.fitness == 0.0
    assert child.parent_ids == [PARENT1.id, PARENT2.id]
    assert child.is_elite is False


def test_crossover_with_llm_uses_trimmed_response():
    llm = FakeLLM()
    operators, _ = make_operators(llm)
    child = asyncio.run(operators.crossover(PARENT1, PARENT2, 2))

    assert child.prompt == "rewritten prompt"
    assert len(llm.calls) == 1
    assert PARENT1.prompt in llm.calls[0]["prompt"]
    assert PARENT2.prompt in llm.calls[0]["prompt"]
    assert llm.calls[0]["system_prompt"] == CROSSOVER_SYSTEM_PROMPT


def test_crossover_llm_failure_falls_back_to_first_parent():
    llm = FakeLLM(error=RuntimeError("rate limited"))
    operators, breaker = make_operators(llm)
    child = asyncio.run(operators.crossover(PARENT1, PARENT2, 2))

    assert child.prompt == PARENT1.prompt
    assert breaker.get_state_details("crossover").failure_count == 1


def test_crossover_skips_llm_when_circuit_open():
    llm = FakeLLM()
    operators, breaker = make_operators(llm)
    breaker.force_open("crossover")

    child = asyncio.run(operators.crossover(PARENT1, PARENT2, 3))

    assert llm.calls == []
    assert child.prompt == PARENT1.prompt


def test_empty_llm_response_counts_as_failure():
    llm = FakeLLM(reply="   ")
    operators, breaker = make_operators(llm)
    variant = asyncio.run(operators.generate_variant("Write a short letter.", 2))

    assert variant == variant_transform("Write a short letter.", 2)
    assert breaker.get_state_details("variant_generation").failure_count == 1


def test_mutate_rate_zero_returns_same_object():
    operators, _ = make_operators(FakeLLM(available=False))
    result = asyncio.run(operators.mutate(PARENT1, 0.0))

    assert result.mutated is False
    assert result.individual is PARENT1


def test_mutate_rate_one_creates_new_individual():
    child = Individual(prompt="It is important to be good.", generation=4, parent_ids=[PARENT1.id, PARENT2.id])
    operators, _ = make_operators(FakeLLM(available=False))
    result = asyncio.run(operators.mutate(child, 1.0))

    assert result.mutated is True
    assert result.individual is not child
    assert result.individual.id != child.id
    assert result.individual.generation == 4
    assert result.individual.parent_ids == child.parent_ids


def test_mutate_llm_failure_keeps_prompt_text():
    operators, _ = make_operators(FakeLLM(error=RuntimeError("down")))
    result = asyncio.run(operators.mutate(PARENT2, 1.0))

    assert result.mutated is True
    assert result.individual.prompt == PARENT2.prompt
    assert result.individual.id != PARENT2.id


def test_generate_variant_without_llm_uses_rules():
    operators, _ = make_operators(FakeLLM(available=False))
    variant = asyncio.run(operators.generate_variant("You're great. Don't stop.", 1))
    assert variant == variant_transform("You're great. Don't stop.", 1)


def test_strategy_is_chosen_on_every_call():
    llm = FakeLLM(available=False)
    operators, _ = make_operators(llm)

    asyncio.run(operators.generate_variant("Write a letter.", 1))
    assert llm.calls == []

    llm.available = True
    variant = asyncio.run(operators.generate_variant("Write a letter.", 1))
    assert variant == "rewritten prompt"
    assert len(llm.calls) == 1


def test_circuit_breaker_status():
    operators, breaker = make_operators(FakeLLM())
    breaker.force_open("mutation")

    assert operators.get_circuit_breaker_status() == {
        "crossover": "CLOSED",
        "mutation": "OPEN",
        "variant_generation": "CLOSED",
    }
