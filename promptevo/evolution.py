import logging
import random
import time
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from promptevo.config import (
    ADAPTIVE_GOOD_IMPROVEMENT_THRESHOLD,
    ADAPTIVE_MUTATION_DECREASE_FACTOR,
    ADAPTIVE_MUTATION_INCREASE_FACTOR,
    ADAPTIVE_SURVIVAL_DECREASE_FACTOR,
)
from promptevo.evolution_progress import EvolutionObserver, ProgressEmitter
from promptevo.evolution_types import (
    AdaptiveConfig,
    AdaptiveParameters,
    PopulationConfig,
    PopulationMetrics,
)
from promptevo.models import EvolutionResult, GenerationResult, Individual
from promptevo.operators import GeneticOperators
from promptevo.population import DatasetItem, PopulationManager, to_evaluation_items

logger = logging.getLogger(__name__)


def _clip(value: float, bounds) -> float:
    low, high = bounds
    return max(low, min(high, value))


def adapt_parameters(metrics: PopulationMetrics,
                     params: AdaptiveParameters,
                     adaptive_config: Optional[AdaptiveConfig] = None) -> AdaptiveParameters:
    """
    Retune mutation and survival rates from population metrics.

    Rules are applied in order, each clipped to its bounds immediately:
    stagnation raises mutation, low diversity raises mutation and lowers
    survival, and good progress with no stagnation lowers mutation.
    """
    cfg = adaptive_config or AdaptiveConfig()
    mutation_rate = params.mutation_rate
    survival_rate = params.survival_rate

    if metrics.stagnation_count >= cfg.stagnation_threshold:
        mutation_rate = _clip(mutation_rate * ADAPTIVE_MUTATION_INCREASE_FACTOR, cfg.mutation_rate_bounds)
        logger.debug(f"Stagnation detected ({metrics.stagnation_count} generations), mutation rate -> {mutation_rate:.3f}")

    if metrics.diversity < cfg.diversity_threshold:
        mutation_rate = _clip(mutation_rate * ADAPTIVE_MUTATION_INCREASE_FACTOR, cfg.mutation_rate_bounds)
        survival_rate = _clip(survival_rate * ADAPTIVE_SURVIVAL_DECREASE_FACTOR, cfg.survival_rate_bounds)
        logger.debug(
            f"Low diversity ({metrics.diversity:.3f}), mutation rate -> {mutation_rate:.3f}, "
            f"survival rate -> {survival_rate:.3f}"
        )

    if metrics.improvement_rate > ADAPTIVE_GOOD_IMPROVEMENT_THRESHOLD and metrics.stagnation_count == 0:
        mutation_rate = _clip(mutation_rate * ADAPTIVE_MUTATION_DECREASE_FACTOR, cfg.mutation_rate_bounds)
        logger.debug(f"Good improvement ({metrics.improvement_rate * 100:.1f}%), mutation rate -> {mutation_rate:.3f}")

    return AdaptiveParameters(
        mutation_rate=_clip(mutation_rate, cfg.mutation_rate_bounds),
        survival_rate=_clip(survival_rate, cfg.survival_rate_bounds),
    )


def create_generation_result(generation: int, population: Sequence[Individual]) -> GenerationResult:
    if not population:
        raise ValueError("Cannot summarize an empty population")
    ranked = sorted(population, key=lambda ind: ind.fitness, reverse=True)
    average_fitness = sum(ind.fitness for ind in ranked) / len(ranked)
    return GenerationResult(
        generation=generation,
        population=ranked,
        average_fitness=average_fitness,
        best_fitness=ranked[0].fitness,
        best_individual=ranked[0],
    )


class EvolutionCoordinator:
    """Runs the generation loop: select, keep elites, breed, evaluate, adapt"""

    def __init__(self,
                 population_manager: PopulationManager,
                 operators: GeneticOperators,
                 adaptive_config: Optional[AdaptiveConfig] = None,
                 observers: Optional[Iterable[EvolutionObserver]] = None,
                 rng: Optional[random.Random] = None):
        self.population_manager = population_manager
        self.operators = operators
        self.adaptive_config = adaptive_config or AdaptiveConfig()
        self.progress = ProgressEmitter(observers)
        self.rng = rng or random.Random()

    @staticmethod
    def _resolve_config(config: Union[PopulationConfig, Dict[str, Any], None]) -> PopulationConfig:
        if isinstance(config, PopulationConfig):
            return config
        return PopulationConfig.from_partial(config)

    async def evolve_prompt(self,
                            base_prompt: str,
                            dataset: Sequence[DatasetItem],
                            config: Union[PopulationConfig, Dict[str, Any], None] = None,
                            experiment_id: Optional[str] = None) -> EvolutionResult:
        """
        Evolve ``base_prompt`` against ``dataset``.

        Args:
            base_prompt: Seed prompt; it is always part of generation 0
            dataset: Evaluation items (EvaluationItem or plain dicts)
            config: PopulationConfig, a partial dict of its fields, or None

        Returns:
            EvolutionResult with every generation, the best individual seen
            and the adaptive history

        Raises:
            ValueError: invalid config
            pydantic.ValidationError: malformed dataset item
            Any exception that escapes an operation the circuit breaker does not wrap
        """
        population_config = self._resolve_config(config)
        experiment_id = experiment_id or str(uuid.uuid4())
        start = time.perf_counter()

        logger.info(
            f"Starting evolution {experiment_id}: population={population_config.population_size}, "
            f"generations={population_config.generations}, dataset={len(dataset)} items"
        )

        try:
            result = await self._run(experiment_id, base_prompt, dataset, population_config, start)
        except Exception as error:
            logger.exception(f"Evolution {experiment_id} failed")
            try:
                await self.progress.on_failed(experiment_id, error)
            except Exception:
                logger.exception(f"Failure notification for {experiment_id} raised")
            raise

        logger.info(
            f"Evolution {experiment_id} complete: best fitness={result.best_prompt.fitness:.2f}, "
            f"improvement={result.improvement_percentage:.2f}%"
        )
        return result

    async def _run(self,
                   experiment_id: str,
                   base_prompt: str,
                   dataset: Sequence[DatasetItem],
                   config: PopulationConfig,
                   start: float) -> EvolutionResult:
        items = to_evaluation_items(dataset)
        pm = self.population_manager

        await self.progress.on_started(experiment_id, config, base_prompt, len(items))

        params = AdaptiveParameters(mutation_rate=config.mutation_rate, survival_rate=config.survival_rate)

        population = await pm.initialize_population(base_prompt, config.population_size)
        population = await pm.evaluate_population(population, items)

        # Generation 0 is recorded but never adapts the parameters
        metrics = pm.calculate_metrics(population, 0.0, 0)
        stagnation_count = 0

        generations: List[GenerationResult] = []
        fitness_history: List[float] = []
        metrics_history: List[PopulationMetrics] = []
        parameter_history: List[AdaptiveParameters] = []

        await self._record(experiment_id, create_generation_result(0, population), metrics, params,
                           generations, fitness_history, metrics_history, parameter_history)

        for gen in range(1, config.generations + 1):
            survivors = pm.select_survivors(population, params.survival_rate)

            elites = [
                survivor.model_copy(update={"generation": gen, "is_elite": True})
                for survivor in survivors[:config.elitism_count]
            ]
            offspring = await self._generate_offspring(
                survivors, config.population_size - len(elites), gen, params.mutation_rate
            )

            population = await pm.evaluate_population(elites + offspring, items)

            metrics = pm.calculate_metrics(population, fitness_history[-1], stagnation_count)
            stagnation_count = metrics.stagnation_count
            params = adapt_parameters(metrics, params, self.adaptive_config)

            await self._record(experiment_id, create_generation_result(gen, population), metrics, params,
                               generations, fitness_history, metrics_history, parameter_history)

        best_prompt = generations[0].best_individual
        for generation_result in generations[1:]:
            if generation_result.best_individual.fitness > best_prompt.fitness:
                best_prompt = generation_result.best_individual

        initial_best = generations[0].best_fitness
        improvement_percentage = (
            (best_prompt.fitness - initial_best) / initial_best * 100 if initial_best > 0 else 0.0
        )

        result = EvolutionResult(
            experiment_id=experiment_id,
            generations=generations,
            best_prompt=best_prompt,
            improvement_percentage=improvement_percentage,
            fitness_history=fitness_history,
            metrics_history=metrics_history,
            parameter_history=parameter_history,
            duration_ms=(time.perf_counter() - start) * 1000,
        )
        await self.progress.on_completed(result)
        return result

    async def _record(self, experiment_id, generation_result, metrics, params,
                      generations, fitness_history, metrics_history, parameter_history) -> None:
        generations.append(generation_result)
        fitness_history.append(generation_result.best_fitness)
        metrics_history.append(metrics)
        parameter_history.append(AdaptiveParameters(params.mutation_rate, params.survival_rate))

        logger.debug(
            f"Generation {generation_result.generation}: best={generation_result.best_fitness:.3f}, "
            f"avg={generation_result.average_fitness:.3f}, diversity={metrics.diversity:.3f}, "
            f"mutation={params.mutation_rate:.3f}, survival={params.survival_rate:.3f}"
        )

        await self.progress.on_generation(experiment_id, generation_result)
        await self.progress.on_adaptive_feedback(experiment_id, generation_result.generation, metrics, params)

    async def _generate_offspring(self,
                                  survivors: Sequence[Individual],
                                  count: int,
                                  generation: int,
                                  mutation_rate: float) -> List[Individual]:
        offspring = []
        for _ in range(count):
            parent1 = self.tournament_select(survivors)
            parent2 = self.tournament_select(survivors)
            child = await self.operators.crossover(parent1, parent2, generation)
            mutation = await self.operators.mutate(child, mutation_rate)
            offspring.append(mutation.individual)
        return offspring

    def tournament_select(self, population: Sequence[Individual]) -> Individual:
        """Binary tournament; ties go to the first contestant."""
        if not population:
            raise ValueError("Cannot select from an empty population")
        if len(population) == 1:
            return population[0]

        first = self.rng.randrange(len(population))
        second = self.rng.randrange(len(population))
        while second == first:
            second = self.rng.randrange(len(population))

        contestant1 = population[first]
        contestant2 = population[second]
        return contestant1 if contestant1.fitness >= contestant2.fitness else contestant2

    # Module-level helpers exposed on the coordinator for callers holding an instance
    def adapt_parameters(self, metrics: PopulationMetrics, params: AdaptiveParameters) -> AdaptiveParameters:
        return adapt_parameters(metrics, params, self.adaptive_config)

    def create_generation_result(self, generation: int, population: Sequence[Individual]) -> GenerationResult:
        return create_generation_result(generation, population)
