from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Tuple

from promptevo.config import (
    ADAPTIVE_DIVERSITY_THRESHOLD,
    ADAPTIVE_MUTATION_RATE_MAX,
    ADAPTIVE_MUTATION_RATE_MIN,
    ADAPTIVE_STAGNATION_THRESHOLD,
    ADAPTIVE_SURVIVAL_RATE_MAX,
    ADAPTIVE_SURVIVAL_RATE_MIN,
    DEFAULT_ELITISM_COUNT,
    DEFAULT_EVALUATION_CONCURRENCY,
    DEFAULT_GENERATIONS,
    DEFAULT_MUTATION_RATE,
    DEFAULT_POPULATION_SIZE,
    DEFAULT_SURVIVAL_RATE,
)


@dataclass
class PopulationConfig:
    population_size: int = DEFAULT_POPULATION_SIZE
    generations: int = DEFAULT_GENERATIONS
    survival_rate: float = DEFAULT_SURVIVAL_RATE
    mutation_rate: float = DEFAULT_MUTATION_RATE
    elitism_count: int = DEFAULT_ELITISM_COUNT
    evaluation_concurrency: int = DEFAULT_EVALUATION_CONCURRENCY

    def __post_init__(self):
        if self.population_size < 1:
            raise ValueError(f"population_size must be positive, got {self.population_size}")
        if self.generations < 0:
            raise ValueError(f"generations must be non-negative, got {self.generations}")
        if not 0 <= self.elitism_count < self.population_size:
            raise ValueError(
                f"elitism_count must satisfy 0 <= elitism_count < population_size "
                f"(got {self.elitism_count} for population_size {self.population_size})"
            )
        if self.evaluation_concurrency < 1:
            raise ValueError("evaluation_concurrency must be at least 1")

    @classmethod
    def from_partial(cls, overrides: Optional[Dict[str, Any]] = None) -> "PopulationConfig":
        """Build a config from a partial mapping, ignoring keys that are None."""
        if not overrides:
            return cls()
        if not isinstance(overrides, dict):
            raise TypeError(f"Population config must be an object, got {type(overrides).__name__}")
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown population config options: {sorted(unknown)}")
        return cls(**{k: v for k, v in overrides.items() if v is not None})


@dataclass
class AdaptiveConfig:
    mutation_rate_bounds: Tuple[float, float] = (ADAPTIVE_MUTATION_RATE_MIN, ADAPTIVE_MUTATION_RATE_MAX)
    survival_rate_bounds: Tuple[float, float] = (ADAPTIVE_SURVIVAL_RATE_MIN, ADAPTIVE_SURVIVAL_RATE_MAX)
    stagnation_threshold: int = ADAPTIVE_STAGNATION_THRESHOLD
    diversity_threshold: float = ADAPTIVE_DIVERSITY_THRESHOLD


@dataclass
class AdaptiveParameters:
    mutation_rate: float
    survival_rate: float


@dataclass
class PopulationMetrics:
    diversity: float
    fitness_variance: float
    improvement_rate: float
    stagnation_count: int


@dataclass
class FitnessEvaluation:
    individual_id: Any
    fitness: float
    evaluation_count: int
    detailed_scores: List[float] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class MutationResult:
    """Outcome of a mutation draw; ``individual`` is the input object when not mutated."""
    mutated: bool
    individual: Any
