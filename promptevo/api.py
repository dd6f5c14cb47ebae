# HTTP surface: circuit breaker admin and evolution runs

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from promptevo.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from promptevo.config import OPERATION_TYPES
from promptevo.evolution import EvolutionCoordinator
from promptevo.evolution_persistence import EvolutionSerializer, JsonExperimentRepository
from promptevo.evolution_progress import LoggingObserver
from promptevo.evolution_types import PopulationConfig
from promptevo.llm import LLMWrapper
from promptevo.metrics import GEvalMetric
from promptevo.operators import GeneticOperators
from promptevo.population import PopulationManager, to_evaluation_items

logger = logging.getLogger(__name__)

DEFAULT_CRITERIA = (
    "Evaluate how well the AI response follows the instructions, addresses the user input "
    "and is clear, accurate and appropriate in tone."
)

# --- Shared components ---
app = FastAPI(title="promptevo")

llm = LLMWrapper(agent_name="Evolution")
circuit_breaker = CircuitBreaker(CircuitBreakerConfig.from_env())
repository = JsonExperimentRepository()


def build_coordinator(criteria: Optional[str] = None, evaluation_concurrency: int = 1) -> EvolutionCoordinator:
    operators = GeneticOperators(llm, circuit_breaker)
    metric = GEvalMetric(llm, criteria or DEFAULT_CRITERIA)
    population_manager = PopulationManager(
        llm, metric, circuit_breaker, operators, evaluation_concurrency=evaluation_concurrency
    )
    return EvolutionCoordinator(
        population_manager,
        operators,
        observers=[LoggingObserver(), repository],
    )


def _unknown_operation(operation_type: str) -> Optional[JSONResponse]:
    if operation_type not in OPERATION_TYPES:
        return JSONResponse(
            {"status": "error", "message": f"Unknown operation type: {operation_type}"},
            status_code=404,
        )
    return None


# --------------------------------------------------
# Circuit breaker routes
# --------------------------------------------------

@app.get("/api/circuit-breaker/health")
def circuit_breaker_health():
    return JSONResponse(circuit_breaker.get_health().to_dict())


@app.get("/api/circuit-breaker/metrics")
def circuit_breaker_metrics():
    return JSONResponse({
        "metrics": [m.to_dict() for m in circuit_breaker.get_all_metrics()],
    })


@app.post("/api/circuit-breaker/reset")
def reset_all_circuits():
    circuit_breaker.reset_all()
    return JSONResponse({"status": "success", "message": "All circuits reset"})


@app.post("/api/circuit-breaker/{operation_type}/force-open")
def force_open_circuit(operation_type: str):
    error = _unknown_operation(operation_type)
    if error:
        return error
    circuit_breaker.force_open(operation_type)
    return JSONResponse({"status": "success", "operation_type": operation_type,
                         "state": circuit_breaker.get_state(operation_type).value})


@app.post("/api/circuit-breaker/{operation_type}/force-close")
def force_close_circuit(operation_type: str):
    error = _unknown_operation(operation_type)
    if error:
        return error
    circuit_breaker.force_close(operation_type)
    return JSONResponse({"status": "success", "operation_type": operation_type,
                         "state": circuit_breaker.get_state(operation_type).value})


@app.post("/api/circuit-breaker/{operation_type}/reset")
def reset_circuit(operation_type: str):
    error = _unknown_operation(operation_type)
    if error:
        return error
    circuit_breaker.reset(operation_type)
    return JSONResponse({"status": "success", "operation_type": operation_type,
                         "state": circuit_breaker.get_state(operation_type).value})


# --------------------------------------------------
# Evolution routes
# --------------------------------------------------

@app.post("/api/evolutions")
async def start_evolution(request: Request):
    """
    Runs a complete evolution and returns the serialized result
    """
    try:
        data: Dict[str, Any] = await request.json()
    except ValueError as e:
        logger.warning(f"Rejected evolution request with invalid JSON: {e}")
        return JSONResponse({"status": "error", "message": "Request body must be valid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "Request body must be a JSON object"}, status_code=400)

    base_prompt = data.get("base_prompt")
    if not isinstance(base_prompt, str) or not base_prompt.strip():
        return JSONResponse({"status": "error", "message": "base_prompt is required"}, status_code=400)

    try:
        config = PopulationConfig.from_partial(data.get("config"))
        dataset = to_evaluation_items(data.get("dataset") or [])
    except (ValueError, TypeError, ValidationError) as e:
        logger.warning(f"Rejected evolution request: {e}")
        return JSONResponse({"status": "error", "message": str(e)}, status_code=400)

    coordinator = build_coordinator(data.get("criteria"), config.evaluation_concurrency)
    try:
        result = await coordinator.evolve_prompt(base_prompt, dataset, config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": str(e)}, status_code=500)

    return JSONResponse({
        "status": "success",
        "result": EvolutionSerializer.serialize_result(result),
        "circuit_breaker": {
            **coordinator.operators.get_circuit_breaker_status(),
            **coordinator.population_manager.get_circuit_breaker_status(),
        },
        "token_counts": llm.get_token_counts(),
    })


@app.get("/api/evolutions")
def list_evolutions():
    return JSONResponse({"status": "success", "experiments": repository.list_experiments()})


@app.get("/api/evolutions/{experiment_id}")
def get_evolution(experiment_id: str):
    document = repository.load(experiment_id)
    if document is None:
        return JSONResponse({"status": "error", "message": "Experiment not found"}, status_code=404)
    return JSONResponse(document)


@app.get("/api/evolutions/{experiment_id}/best")
def get_best_prompt(experiment_id: str):
    best = repository.load_best_prompt(experiment_id)
    if best is None:
        return JSONResponse({"status": "error", "message": "No completed experiment found"}, status_code=404)
    return JSONResponse({"status": "success", "best_prompt": EvolutionSerializer.serialize_individual(best)})
