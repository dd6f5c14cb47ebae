import uuid
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from promptevo.evolution_types import AdaptiveParameters, PopulationMetrics


class Individual(BaseModel):
    """
    One candidate prompt plus its fitness and lineage.

    The prompt is never edited in place: mutation and evaluation produce
    copies via ``model_copy``.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    prompt: str
    generation: int = 0
    fitness: float = 0.0
    parent_ids: List[uuid.UUID] = Field(default_factory=list)
    is_elite: bool = False


class EvaluationItem(BaseModel):
    """A single dataset row used to score a prompt."""
    input: Dict[str, Any]
    expected_output: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class MetricResult(BaseModel):
    score: float
    reason: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LLMResponse(BaseModel):
    content: str


class GenerationResult(BaseModel):
    """Snapshot of one generation, population sorted by fitness (descending)."""
    model_config = ConfigDict(frozen=True)

    generation: int
    population: List[Individual]
    average_fitness: float
    best_fitness: float
    best_individual: Individual


class EvolutionResult(BaseModel):
    experiment_id: str
    generations: List[GenerationResult]
    best_prompt: Individual
    improvement_percentage: float
    fitness_history: List[float]
    metrics_history: List[PopulationMetrics] = Field(default_factory=list)
    parameter_history: List[AdaptiveParameters] = Field(default_factory=list)
    duration_ms: float = 0.0
