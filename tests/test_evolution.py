import asyncio
import random
import sys
from pathlib import Path

import pytest
from pydantic import ValidationError

# Add the project root to the path so imports work
sys.path.insert(0, str(Path(__file__).parent.parent))

from promptevo.circuit_breaker import CircuitBreaker
from promptevo.evolution import EvolutionCoordinator, adapt_parameters, create_generation_result
from promptevo.evolution_progress import EvolutionObserver
from promptevo.evolution_types import AdaptiveParameters, PopulationConfig, PopulationMetrics
from promptevo.metrics import BaseMetric
from promptevo.models import Individual, LLMResponse, MetricResult
from promptevo.operators import GeneticOperators
from promptevo.population import PopulationManager


class ScriptedLLM:
    """Operator calls get numbered prompts of varying length; output generation echoes."""

    def __init__(self):
        self.counter = 0

    def is_available(self):
        return True

    async def generate(self, prompt, max_tokens=None, system_prompt=None, timeout_ms=None):
        if system_prompt is None:
            return LLMResponse(content=prompt)
        self.counter += 1
        padding = " ".join(["detail"] * (self.counter % 7))
        return LLMResponse(content=f"Prompt number {self.counter} for {{{{name}}}} {padding}".strip())


class WordCountMetric(BaseMetric):
    name = "word_count"

    async def score(self, item, output):
        return MetricResult(score=min(1.0, len(output.split()) / 20))


class ZeroMetric(BaseMetric):
    name = "zero"

    async def score(self, item, output):
        return MetricResult(score=0.0)


class RecordingObserver(EvolutionObserver):
    def __init__(self, fail_on=None):
        self.events = []
        self.fail_on = fail_on

    async def on_started(self, experiment_id, config, base_prompt, dataset_size):
        self.events.append(("started", dataset_size))

    async def on_generation(self, experiment_id, generation_result):
        self.events.append(("generation", generation_result.generation))
        if self.fail_on == generation_result.generation:
            raise RuntimeError("observer exploded")

    async def on_adaptive_feedback(self, experiment_id, generation, metrics, params):
        self.events.append(("feedback", generation))

    async def on_completed(self, result):
        self.events.append(("completed", result.experiment_id))

    async def on_failed(self, experiment_id, error):
        self.events.append(("failed", error))


def make_coordinator(observers=None, seed=0, metric=None):
    llm = ScriptedLLM()
    breaker = CircuitBreaker()
    operators = GeneticOperators(llm, breaker, rng=random.Random(seed))
    manager = PopulationManager(llm, metric or WordCountMetric(), breaker, operators)
    return EvolutionCoordinator(manager, operators, observers=observers, rng=random.Random(seed))


DATASET = [{"input": {"name": "Ana"}}, {"input": {"name": "Bo"}}]
BASE_PROMPT = "Write a warm letter to {{name}}."


def metrics(diversity=0.5, improvement_rate=0.0, stagnation_count=0):
    return PopulationMetrics(
        diversity=diversity,
        fitness_variance=0.0,
        improvement_rate=improvement_rate,
        stagnation_count=stagnation_count,
    )


def test_adapt_raises_mutation_on_stagnation():
    params = adapt_parameters(metrics(stagnation_count=3), AdaptiveParameters(0.2, 0.3))
    assert params.mutation_rate == pytest.approx(0.3)
    assert params.survival_rate == pytest.approx(0.3)


def test_adapt_low_diversity_explores():
    params = adapt_parameters(metrics(diversity=0.1), AdaptiveParameters(0.2, 0.3))
    assert params.mutation_rate == pytest.approx(0.3)
    assert params.survival_rate == pytest.approx(0.255)


def test_adapt_good_improvement_exploits():
    params = adapt_parameters(metrics(improvement_rate=0.1), AdaptiveParameters(0.2, 0.3))
    assert params.mutation_rate == pytest.approx(0.18)
    assert params.survival_rate == pytest.approx(0.3)


def test_adapt_rules_apply_in_order():
    params = adapt_parameters(metrics(diversity=0.1, improvement_rate=0.1), AdaptiveParameters(0.2, 0.3))
    assert params.mutation_rate == pytest.approx(0.27)
    assert params.survival_rate == pytest.approx(0.255)


def test_adapt_clips_to_bounds():
    params = adapt_parameters(
        metrics(diversity=0.1, stagnation_count=5),
        AdaptiveParameters(0.4, 0.22),
    )
    assert params.mutation_rate == pytest.approx(0.5)
    assert params.survival_rate == pytest.approx(0.2)

    params = adapt_parameters(metrics(improvement_rate=1.0), AdaptiveParameters(0.05, 0.9))
    assert params.mutation_rate == pytest.approx(0.05)
    assert params.survival_rate == pytest.approx(0.5)


def test_adapt_no_change_when_steady():
    params = adapt_parameters(metrics(improvement_rate=0.01), AdaptiveParameters(0.2, 0.3))
    assert params == AdaptiveParameters(0.2, 0.3)


def test_tournament_select_edge_cases():
    coordinator = make_coordinator()
    with pytest.raises(ValueError):
        coordinator.tournament_select([])

    only = Individual(prompt="only", fitness=0.1)
    assert coordinator.tournament_select([only]) is only


def test_tournament_select_prefers_fitter():
    coordinator = make_coordinator()
    weak = Individual(prompt="weak", fitness=0.1)
    strong = Individual(prompt="strong", fitness=0.9)
    for _ in range(20):
        assert coordinator.tournament_select([weak, strong]) is strong


def test_tournament_select_favours_high_fitness_over_many_draws():
    coordinator = make_coordinator(seed=1)
    population = [Individual(prompt=f"p{f}", fitness=f) for f in (1.0, 3.0, 5.0)]

    counts = {1.0: 0, 3.0: 0, 5.0: 0}
    for _ in range(1000):
        counts[coordinator.tournament_select(population).fitness] += 1

    assert counts[5.0] > counts[1.0]
    # the weakest can never win a two-way tournament between distinct entrants
    assert counts[1.0] == 0


def test_create_generation_result_sorts_population():
    population = [Individual(prompt="a", fitness=0.2), Individual(prompt="b", fitness=0.6)]
    result = create_generation_result(3, population)

    assert result.generation == 3
    assert result.best_fitness == 0.6
    assert result.best_individual.prompt == "b"
    assert result.average_fitness == pytest.approx(0.4)
    assert [ind.prompt for ind in result.population] == ["b", "a"]


def test_evolve_prompt_end_to_end():
    observer = RecordingObserver()
    coordinator = make_coordinator(observers=[observer])
    config = PopulationConfig(population_size=5, generations=2, elitism_count=1)

    result = asyncio.run(coordinator.evolve_prompt(BASE_PROMPT, DATASET, config))

    assert len(result.generations) == 3
    assert [g.generation for g in result.generations] == [0, 1, 2]
    assert result.fitness_history == [g.best_fitness for g in result.generations]
    assert all(len(g.population) == 5 for g in result.generations)
    assert len(result.metrics_history) == 3
    assert len(result.parameter_history) == 3
    assert result.parameter_history[0] == AdaptiveParameters(0.2, 0.3)

    assert any(ind.prompt == BASE_PROMPT for ind in result.generations[0].population)
    for generation_result in result.generations[1:]:
        elites = [ind for ind in generation_result.population if ind.is_elite]
        assert len(elites) == 1
        assert all(ind.generation == generation_result.generation for ind in generation_result.population)

    assert result.best_prompt.fitness == max(result.fitness_history)
    # Elites are re-scored with a deterministic metric, so the best never drops
    assert result.fitness_history == sorted(result.fitness_history)

    initial_best = result.fitness_history[0]
    expected = (result.best_prompt.fitness - initial_best) / initial_best * 100
    assert result.improvement_percentage == pytest.approx(expected)
    assert result.duration_ms >= 0

    assert observer.events[0] == ("started", 2)
    assert observer.events[-1] == ("completed", result.experiment_id)
    assert [e for e in observer.events if e[0] == "generation"] == [
        ("generation", 0), ("generation", 1), ("generation", 2)
    ]


def test_evolve_prompt_accepts_partial_config():
    coordinator = make_coordinator()
    result = asyncio.run(coordinator.evolve_prompt(
        BASE_PROMPT, DATASET, {"population_size": 3, "generations": 1, "elitism_count": 1, "mutation_rate": None}
    ))
    assert len(result.generations) == 2
    assert result.parameter_history[0].mutation_rate == 0.2


def test_evolve_prompt_zero_generations():
    coordinator = make_coordinator()
    result = asyncio.run(coordinator.evolve_prompt(
        BASE_PROMPT, DATASET, {"population_size": 3, "generations": 0, "elitism_count": 0}
    ))
    assert len(result.generations) == 1
    assert result.improvement_percentage == 0.0


def test_invalid_config_is_rejected():
    coordinator = make_coordinator()
    with pytest.raises(ValueError):
        asyncio.run(coordinator.evolve_prompt(BASE_PROMPT, DATASET, {"population_size": 3, "elitism_count": 3}))
    with pytest.raises(ValueError):
        asyncio.run(coordinator.evolve_prompt(BASE_PROMPT, DATASET, {"populationSize": 3}))


def test_observer_failure_aborts_run_and_is_reported():
    observer = RecordingObserver(fail_on=1)
    coordinator = make_coordinator(observers=[observer])

    with pytest.raises(RuntimeError, match="observer exploded"):
        asyncio.run(coordinator.evolve_prompt(
            BASE_PROMPT, DATASET, {"population_size": 3, "generations": 3, "elitism_count": 1}
        ))

    assert observer.events[-1][0] == "failed"
    assert str(observer.events[-1][1]) == "observer exploded"
    assert not any(e[0] == "completed" for e in observer.events)


def test_malformed_dataset_aborts_run():
    observer = RecordingObserver()
    coordinator = make_coordinator(observers=[observer])

    with pytest.raises(ValidationError):
        asyncio.run(coordinator.evolve_prompt(BASE_PROMPT, [{"metadata": {}}], {"population_size": 3}))

    assert isinstance(observer.events[-1][1], ValidationError)


def test_stagnation_count_starts_fresh_after_generation_zero():
    coordinator = make_coordinator(metric=ZeroMetric())
    config = PopulationConfig(population_size=4, generations=2)

    result = asyncio.run(coordinator.evolve_prompt(BASE_PROMPT, DATASET, config))

    # generation 0 is measured but does not seed the running counter
    assert [m.stagnation_count for m in result.metrics_history] == [1, 1, 2]
    assert result.improvement_percentage == 0.0
