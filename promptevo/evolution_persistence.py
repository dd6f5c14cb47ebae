from __future__ import annotations

import asyncio
import json
import logging
import os
import uuid
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from promptevo.config import DEFAULT_DATA_DIR
from promptevo.evolution_progress import EvolutionObserver, adaptive_feedback_record, feedback_scores
from promptevo.evolution_types import PopulationConfig
from promptevo.models import EvolutionResult, GenerationResult, Individual

logger = logging.getLogger(__name__)

STATUS_RUNNING = "RUNNING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"


class EvolutionSerializer:
    @staticmethod
    def serialize_individual(individual: Individual) -> Dict[str, Any]:
        return {
            "id": str(individual.id),
            "prompt": individual.prompt,
            "generation": individual.generation,
            "fitness": individual.fitness,
            "parent_ids": [str(pid) for pid in individual.parent_ids],
            "is_elite": individual.is_elite,
        }

    @staticmethod
    def deserialize_individual(data: Dict[str, Any]) -> Individual:
        restored = dict(data)
        if isinstance(restored.get("id"), str):
            restored["id"] = uuid.UUID(restored["id"])
        restored["parent_ids"] = [
            uuid.UUID(pid) if isinstance(pid, str) else pid for pid in restored.get("parent_ids", [])
        ]
        return Individual.model_validate(restored)

    @classmethod
    def serialize_generation(cls, generation_result: GenerationResult) -> Dict[str, Any]:
        return {
            "generation": generation_result.generation,
            "population": [cls.serialize_individual(ind) for ind in generation_result.population],
            "average_fitness": generation_result.average_fitness,
            "best_fitness": generation_result.best_fitness,
            "best_individual": cls.serialize_individual(generation_result.best_individual),
        }

    @classmethod
    def serialize_result(cls, result: EvolutionResult) -> Dict[str, Any]:
        return {
            "experiment_id": result.experiment_id,
            "generations": [cls.serialize_generation(g) for g in result.generations],
            "best_prompt": cls.serialize_individual(result.best_prompt),
            "improvement_percentage": result.improvement_percentage,
            "fitness_history": list(result.fitness_history),
            "metrics_history": [asdict(m) for m in result.metrics_history],
            "parameter_history": [asdict(p) for p in result.parameter_history],
            "duration_ms": result.duration_ms,
        }


class JsonExperimentRepository(EvolutionObserver):
    """
    Keeps one JSON document per experiment under ``data_dir``.

    The document is rewritten on every lifecycle event, so a crashed run
    leaves its last completed generation on disk with status RUNNING.
    """

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir or os.environ.get("EVOLUTION_DATA_DIR", DEFAULT_DATA_DIR))
        self._documents: Dict[str, Dict[str, Any]] = {}

    def path_for(self, experiment_id: str) -> Path:
        return self.data_dir / f"{experiment_id}.json"

    def _write(self, experiment_id: str) -> None:
        document = self._documents[experiment_id]
        document["updated_at"] = datetime.now().isoformat()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(experiment_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(document, f, indent=2)
        os.replace(tmp_path, path)

    async def _save(self, experiment_id: str) -> None:
        await asyncio.to_thread(self._write, experiment_id)

    def _document(self, experiment_id: str) -> Dict[str, Any]:
        if experiment_id not in self._documents:
            existing = self.load(experiment_id)
            self._documents[experiment_id] = existing or {
                "experiment_id": experiment_id,
                "status": STATUS_RUNNING,
                "generations": [],
                "feedback": [],
            }
        return self._documents[experiment_id]

    async def on_started(self, experiment_id: str, config: PopulationConfig, base_prompt: str, dataset_size: int) -> None:
        now = datetime.now().isoformat()
        self._documents[experiment_id] = {
            "experiment_id": experiment_id,
            "status": STATUS_RUNNING,
            "config": asdict(config),
            "base_prompt": base_prompt,
            "dataset_size": dataset_size,
            "created_at": now,
            "updated_at": now,
            "generations": [],
            "feedback": [],
        }
        await self._save(experiment_id)
        logger.debug(f"Experiment {experiment_id} saved to {self.path_for(experiment_id)}")

    async def on_generation(self, experiment_id: str, generation_result: GenerationResult) -> None:
        document = self._document(experiment_id)
        document["generations"].append(EvolutionSerializer.serialize_generation(generation_result))
        document["feedback"].extend(feedback_scores(generation_result))
        await self._save(experiment_id)

    async def on_adaptive_feedback(self, experiment_id, generation, metrics, params) -> None:
        document = self._document(experiment_id)
        document["feedback"].append(adaptive_feedback_record(generation, metrics, params))
        await self._save(experiment_id)

    async def on_completed(self, result: EvolutionResult) -> None:
        document = self._document(result.experiment_id)
        document["status"] = STATUS_COMPLETED
        document["completed_at"] = datetime.now().isoformat()
        document["result"] = EvolutionSerializer.serialize_result(result)
        await self._save(result.experiment_id)
        self._documents.pop(result.experiment_id, None)

    async def on_failed(self, experiment_id: str, error: BaseException) -> None:
        document = self._document(experiment_id)
        document["status"] = STATUS_FAILED
        document["completed_at"] = datetime.now().isoformat()
        document["error"] = f"{type(error).__name__}: {error}"
        await self._save(experiment_id)
        self._documents.pop(experiment_id, None)

    def load(self, experiment_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(experiment_id)
        if not path.exists():
            return None
        with open(path) as f:
            return json.load(f)

    def load_best_prompt(self, experiment_id: str) -> Optional[Individual]:
        """Best prompt of a completed experiment, or None if it has not completed."""
        document = self.load(experiment_id)
        if document is None or "result" not in document:
            return None
        return EvolutionSerializer.deserialize_individual(document["result"]["best_prompt"])

    def list_experiments(self) -> List[Dict[str, Any]]:
        if not self.data_dir.exists():
            return []
        summaries = []
        for path in sorted(self.data_dir.glob("*.json")):
            with open(path) as f:
                data = json.load(f)
            summaries.append({
                "experiment_id": data.get("experiment_id", path.stem),
                "status": data.get("status", "unknown"),
                "created_at": data.get("created_at"),
                "updated_at": data.get("updated_at"),
                "generations": len(data.get("generations", [])),
            })
        return summaries
