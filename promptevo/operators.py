import logging
import random
from typing import Awaitable, Callable, Dict, Optional

from promptevo.circuit_breaker import CircuitBreaker
from promptevo.config import EVOLUTION_EVALUATION_TIMEOUT_MS, EVOLUTION_MAX_TOKENS
from promptevo.evolution_types import MutationResult
from promptevo.llm import LLMWrapper
from promptevo.models import Individual
from promptevo.prompts import (
    CROSSOVER_PROMPT,
    CROSSOVER_SYSTEM_PROMPT,
    MUTATION_PROMPT,
    MUTATION_SYSTEM_PROMPT,
    VARIANT_PROMPT,
    VARIANT_SYSTEM_PROMPT,
)
from promptevo.transforms import interleave_sentences, mutate_transform, variant_transform

logger = logging.getLogger(__name__)


class TextTransformRewriter:
    """Rule-based rewrites that never touch the network"""

    def __init__(self, rng: random.Random):
        self.rng = rng

    async def crossover(self, prompt1: str, prompt2: str) -> str:
        return interleave_sentences(prompt1, prompt2)

    async def mutate(self, prompt: str) -> str:
        return mutate_transform(prompt, self.rng)

    async def variant(self, prompt: str, index: int) -> str:
        return variant_transform(prompt, index)


class LLMRewriter:
    """
    LLM-backed rewrites, each call guarded by the circuit breaker.

    Crossover falls back to the first parent, mutation to the original prompt,
    and variant generation to the deterministic variant rules.
    """

    def __init__(self, llm: LLMWrapper, circuit_breaker: CircuitBreaker, fallback: TextTransformRewriter):
        self.llm = llm
        self.circuit_breaker = circuit_breaker
        self.fallback = fallback

    async def _rewrite(self, operation_type: str, prompt: str, system_prompt: str) -> str:
        response = await self.llm.generate(
            prompt,
            EVOLUTION_MAX_TOKENS,
            system_prompt,
            EVOLUTION_EVALUATION_TIMEOUT_MS,
        )
        content = response.content.strip()
        if not content:
            raise ValueError(f"Empty {operation_type} response from LLM")
        return content

    async def _guarded(self,
                       operation_type: str,
                       operation: Callable[[], Awaitable[str]],
                       fallback: Callable[[], str],
                       last_resort: Callable[[], Awaitable[str]]) -> str:
        result = await self.circuit_breaker.execute(operation_type, operation, fallback)
        if result.used_fallback:
            logger.debug(f"{operation_type} used fallback (circuit state: {result.circuit_state.value})")
        if result.data is None:
            return await last_resort()
        return result.data

    async def crossover(self, prompt1: str, prompt2: str) -> str:
        return await self._guarded(
            "crossover",
            lambda: self._rewrite(
                "crossover",
                CROSSOVER_PROMPT.format(parent1=prompt1, parent2=prompt2),
                CROSSOVER_SYSTEM_PROMPT,
            ),
            lambda: prompt1,
            lambda: self.fallback.crossover(prompt1, prompt2),
        )

    async def mutate(self, prompt: str) -> str:
        return await self._guarded(
            "mutation",
            lambda: self._rewrite("mutation", MUTATION_PROMPT.format(prompt=prompt), MUTATION_SYSTEM_PROMPT),
            lambda: prompt,
            lambda: self.fallback.mutate(prompt),
        )

    async def variant(self, prompt: str, index: int) -> str:
        return await self._guarded(
            "variant_generation",
            lambda: self._rewrite("variant_generation", VARIANT_PROMPT.format(prompt=prompt), VARIANT_SYSTEM_PROMPT),
            lambda: variant_transform(prompt, index),
            lambda: self.fallback.variant(prompt, index),
        )


class GeneticOperators:
    """Crossover, mutation and variant generation over Individuals"""

    def __init__(self,
                 llm: LLMWrapper,
                 circuit_breaker: CircuitBreaker,
                 rng: Optional[random.Random] = None):
        self.llm = llm
        self.circuit_breaker = circuit_breaker
        self.rng = rng or random.Random()
        self.text_rewriter = TextTransformRewriter(self.rng)
        self.llm_rewriter = LLMRewriter(llm, circuit_breaker, self.text_rewriter)

    def _rewriter(self):
        # Re-checked on every call so a client configured mid-run is picked up
        if self.llm.is_available():
            return self.llm_rewriter
        return self.text_rewriter

    async def crossover(self, parent1: Individual, parent2: Individual, generation: int) -> Individual:
        """Combine two parents into a child for ``generation``."""
        offspring_prompt = await self._rewriter().crossover(parent1.prompt, parent2.prompt)
        return Individual(
            prompt=offspring_prompt,
            generation=generation,
            fitness=0.0,
            parent_ids=[parent1.id, parent2.id],
            is_elite=False,
        )

    async def mutate(self, individual: Individual, mutation_rate: float) -> MutationResult:
        """
        Mutate with probability ``mutation_rate``.

        A single uniform draw above the rate leaves the individual untouched
        and returns the same object. Otherwise a new Individual with a fresh
        id, the same generation and lineage, and a rewritten prompt is returned.
        """
        if self.rng.random() > mutation_rate:
            return MutationResult(mutated=False, individual=individual)

        mutated_prompt = await self._rewriter().mutate(individual.prompt)
        mutated = Individual(
            prompt=mutated_prompt,
            generation=individual.generation,
            fitness=0.0,
            parent_ids=list(individual.parent_ids),
            is_elite=False,
        )
        return MutationResult(mutated=True, individual=mutated)

    async def generate_variant(self, base_prompt: str, index: int = 1) -> str:
        return await self._rewriter().variant(base_prompt, index)

    def get_circuit_breaker_status(self) -> Dict[str, str]:
        return {
            "crossover": self.circuit_breaker.get_state("crossover").value,
            "mutation": self.circuit_breaker.get_state("mutation").value,
            "variant_generation": self.circuit_breaker.get_state("variant_generation").value,
        }
