import asyncio
import logging
import math
from typing import Any, Dict, List, Mapping, Sequence, Union

import numpy as np
from tqdm import tqdm

from promptevo import diversity
from promptevo.circuit_breaker import CircuitBreaker
from promptevo.config import (
    DEFAULT_EVALUATION_CONCURRENCY,
    EVALUATION_OUTPUT_MAX_TOKENS,
    EVOLUTION_EVALUATION_TIMEOUT_MS,
    NEUTRAL_FITNESS_SCORE,
)
from promptevo.evolution_types import FitnessEvaluation, PopulationMetrics
from promptevo.llm import LLMWrapper
from promptevo.metrics import BaseMetric
from promptevo.models import EvaluationItem, Individual
from promptevo.operators import GeneticOperators
from promptevo.prompts import PLACEHOLDER_OUTPUT
from promptevo.transforms import render_template

logger = logging.getLogger(__name__)

DatasetItem = Union[EvaluationItem, Mapping[str, Any]]


def to_evaluation_items(dataset: Sequence[DatasetItem]) -> List[EvaluationItem]:
    """Validate raw dataset rows; a malformed row raises pydantic.ValidationError."""
    return [item if isinstance(item, EvaluationItem) else EvaluationItem.model_validate(item) for item in dataset]


class PopulationManager:
    """Owns a population's lifecycle: seeding, scoring, selection and metrics"""

    def __init__(self,
                 llm: LLMWrapper,
                 metric: BaseMetric,
                 circuit_breaker: CircuitBreaker,
                 operators: GeneticOperators,
                 evaluation_concurrency: int = DEFAULT_EVALUATION_CONCURRENCY):
        if evaluation_concurrency < 1:
            raise ValueError("evaluation_concurrency must be at least 1")
        self.llm = llm
        self.metric = metric
        self.circuit_breaker = circuit_breaker
        self.operators = operators
        self.evaluation_concurrency = evaluation_concurrency

    async def initialize_population(self, base_prompt: str, size: int) -> List[Individual]:
        """
        Seed a population from ``base_prompt``.

        The first individual is the base prompt itself; the rest are variants.
        """
        if size < 1:
            raise ValueError(f"Population size must be positive, got {size}")

        population = [Individual(prompt=base_prompt, generation=0, fitness=0.0)]
        for index in tqdm(range(1, size), desc="Generating variants"):
            variant = await self.operators.generate_variant(base_prompt, index)
            population.append(Individual(prompt=variant, generation=0, fitness=0.0))

        logger.info(f"Initialized population of {len(population)} individuals")
        return population

    async def evaluate_population(self,
                                  population: Sequence[Individual],
                                  dataset: Sequence[DatasetItem]) -> List[Individual]:
        """
        Score every individual against the dataset.

        Returns:
            Copies of the individuals with fitness set, best first
        """
        items = to_evaluation_items(dataset)

        if self.evaluation_concurrency == 1:
            evaluations = [await self.evaluate_individual(individual, items) for individual in population]
        else:
            semaphore = asyncio.Semaphore(self.evaluation_concurrency)

            async def bounded(individual: Individual) -> FitnessEvaluation:
                async with semaphore:
                    return await self.evaluate_individual(individual, items)

            evaluations = await asyncio.gather(*(bounded(individual) for individual in population))

        evaluated = [
            individual.model_copy(update={"fitness": evaluation.fitness})
            for individual, evaluation in zip(population, evaluations)
        ]
        evaluated.sort(key=lambda ind: ind.fitness, reverse=True)
        return evaluated

    async def evaluate_individual(self,
                                  individual: Individual,
                                  dataset: Sequence[DatasetItem]) -> FitnessEvaluation:
        items = to_evaluation_items(dataset)
        scores: List[float] = []
        errors: List[str] = []

        for item in items:
            result = await self.circuit_breaker.execute(
                "evaluation",
                lambda item=item: self._score_item(individual, item),
                lambda: NEUTRAL_FITNESS_SCORE,
            )
            if result.error is not None:
                errors.append(str(result.error))
            scores.append(result.data if result.data is not None else NEUTRAL_FITNESS_SCORE)

        fitness = sum(scores) / len(scores) if scores else 0.0
        logger.debug(f"Individual {individual.id} fitness {fitness:.4f} over {len(scores)} items")
        return FitnessEvaluation(
            individual_id=individual.id,
            fitness=fitness,
            evaluation_count=len(scores),
            detailed_scores=scores,
            errors=errors,
        )

    async def _score_item(self, individual: Individual, item: EvaluationItem) -> float:
        rendered = self.render_prompt(individual.prompt, item.input)
        if self.llm.is_available():
            response = await self.llm.generate(
                rendered,
                EVALUATION_OUTPUT_MAX_TOKENS,
                None,
                EVOLUTION_EVALUATION_TIMEOUT_MS,
            )
            output = response.content
        else:
            output = PLACEHOLDER_OUTPUT
        metric_result = await self.metric.score(item, output)
        return metric_result.score

    @staticmethod
    def render_prompt(prompt: str, variables: Dict[str, Any]) -> str:
        return render_template(prompt, variables)

    def select_survivors(self, population: Sequence[Individual], survival_rate: float) -> List[Individual]:
        ranked = sorted(population, key=lambda ind: ind.fitness, reverse=True)
        survivor_count = max(2, math.ceil(len(ranked) * survival_rate))
        return ranked[:survivor_count]

    def calculate_diversity(self, population: Sequence[Individual]) -> float:
        return diversity.calculate_diversity([ind.prompt for ind in population])

    def calculate_metrics(self,
                          population: Sequence[Individual],
                          previous_best_fitness: float,
                          current_stagnation_count: int) -> PopulationMetrics:
        fitnesses = [ind.fitness for ind in population]
        best_fitness = max(fitnesses) if fitnesses else 0.0
        fitness_variance = float(np.var(fitnesses)) if fitnesses else 0.0

        if previous_best_fitness > 0:
            improvement_rate = (best_fitness - previous_best_fitness) / previous_best_fitness
        else:
            improvement_rate = 1.0 if best_fitness > 0 else 0.0

        stagnation_count = current_stagnation_count + 1 if best_fitness <= previous_best_fitness else 0

        return PopulationMetrics(
            diversity=self.calculate_diversity(population),
            fitness_variance=fitness_variance,
            improvement_rate=improvement_rate,
            stagnation_count=stagnation_count,
        )

    def get_circuit_breaker_status(self) -> Dict[str, str]:
        return {
            "evaluation": self.circuit_breaker.get_state("evaluation").value,
            "variant_generation": self.circuit_breaker.get_state("variant_generation").value,
        }
