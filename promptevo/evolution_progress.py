from __future__ import annotations

import logging
from typing import Iterable, List, Optional, TYPE_CHECKING

from promptevo.config import FEEDBACK_ADAPTIVE_METRICS, FEEDBACK_GENERATION_FITNESS
from promptevo.evolution_types import AdaptiveParameters, PopulationConfig, PopulationMetrics

if TYPE_CHECKING:
    from promptevo.models import EvolutionResult, GenerationResult

logger = logging.getLogger(__name__)


class EvolutionObserver:
    """Receives run lifecycle events. Every hook is a no-op by default."""

    async def on_started(self, experiment_id: str, config: PopulationConfig, base_prompt: str, dataset_size: int) -> None:
        pass

    async def on_generation(self, experiment_id: str, generation_result: "GenerationResult") -> None:
        pass

    async def on_adaptive_feedback(
        self,
        experiment_id: str,
        generation: int,
        metrics: PopulationMetrics,
        params: AdaptiveParameters,
    ) -> None:
        pass

    async def on_completed(self, result: "EvolutionResult") -> None:
        pass

    async def on_failed(self, experiment_id: str, error: BaseException) -> None:
        pass


class ProgressEmitter(EvolutionObserver):
    """Fans each event out to the registered observers, in order."""

    def __init__(self, observers: Optional[Iterable[EvolutionObserver]] = None):
        self.observers: List[EvolutionObserver] = list(observers or [])

    def add(self, observer: EvolutionObserver) -> None:
        self.observers.append(observer)

    async def on_started(self, experiment_id, config, base_prompt, dataset_size):
        for observer in self.observers:
            await observer.on_started(experiment_id, config, base_prompt, dataset_size)

    async def on_generation(self, experiment_id, generation_result):
        for observer in self.observers:
            await observer.on_generation(experiment_id, generation_result)

    async def on_adaptive_feedback(self, experiment_id, generation, metrics, params):
        for observer in self.observers:
            await observer.on_adaptive_feedback(experiment_id, generation, metrics, params)

    async def on_completed(self, result):
        for observer in self.observers:
            await observer.on_completed(result)

    async def on_failed(self, experiment_id, error):
        for observer in self.observers:
            await observer.on_failed(experiment_id, error)


class LoggingObserver(EvolutionObserver):
    """Writes per-generation feedback records to the log."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self.log = log or logger

    async def on_started(self, experiment_id, config, base_prompt, dataset_size):
        self.log.info(
            f"Evolution {experiment_id} started: population={config.population_size}, "
            f"generations={config.generations}, dataset={dataset_size} items"
        )

    async def on_generation(self, experiment_id, generation_result):
        self.log.info(
            f"[{experiment_id}] {FEEDBACK_GENERATION_FITNESS} "
            f"generation={generation_result.generation} "
            f"best={generation_result.best_fitness:.4f} "
            f"average={generation_result.average_fitness:.4f}"
        )

    async def on_adaptive_feedback(self, experiment_id, generation, metrics, params):
        self.log.info(
            f"[{experiment_id}] {FEEDBACK_ADAPTIVE_METRICS} generation={generation} "
            f"diversity={metrics.diversity:.4f} variance={metrics.fitness_variance:.4f} "
            f"improvement={metrics.improvement_rate:.4f} stagnation={metrics.stagnation_count} "
            f"mutation_rate={params.mutation_rate:.4f} survival_rate={params.survival_rate:.4f}"
        )

    async def on_completed(self, result):
        self.log.info(
            f"Evolution {result.experiment_id} completed: best fitness "
            f"{result.best_prompt.fitness:.4f}, improvement {result.improvement_percentage:.1f}%"
        )

    async def on_failed(self, experiment_id, error):
        self.log.error(f"Evolution {experiment_id} failed: {error}")


def feedback_scores(generation_result: "GenerationResult") -> List[dict]:
    """Feedback records for one generation in name/value form."""
    return [
        {
            "name": FEEDBACK_GENERATION_FITNESS,
            "value": generation_result.best_fitness,
            "reason": f"Generation {generation_result.generation} best fitness",
        },
        {
            "name": f"{FEEDBACK_GENERATION_FITNESS}_average",
            "value": generation_result.average_fitness,
            "reason": f"Generation {generation_result.generation} average fitness",
        },
    ]


def adaptive_feedback_record(generation: int, metrics: PopulationMetrics, params: AdaptiveParameters) -> dict:
    return {
        "name": FEEDBACK_ADAPTIVE_METRICS,
        "generation": generation,
        "diversity": metrics.diversity,
        "fitness_variance": metrics.fitness_variance,
        "improvement_rate": metrics.improvement_rate,
        "stagnation_count": metrics.stagnation_count,
        "mutation_rate": params.mutation_rate,
        "survival_rate": params.survival_rate,
    }
