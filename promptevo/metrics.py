import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

from promptevo.config import JUDGE_MAX_TOKENS, EVOLUTION_EVALUATION_TIMEOUT_MS
from promptevo.llm import LLMWrapper
from promptevo.models import EvaluationItem, MetricResult
from promptevo.prompts import JUDGE_PROMPT, JUDGE_SYSTEM_PROMPT

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\"score\"[\s\S]*\"reason\"[\s\S]*\}")


def parse_evaluation_response(content: str, fallback_score: float) -> Tuple[float, str]:
    """
    Pull ``score`` and ``reason`` out of a judge response.

    The JSON object may be wrapped in markdown or prose. Anything that cannot
    be parsed yields ``fallback_score`` with an explanatory reason.
    """
    match = _JSON_OBJECT.search(content)
    candidate = match.group(0) if match else content
    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, TypeError):
        return fallback_score, f"Failed to parse evaluation response: {content[:100]}..."

    if not isinstance(parsed, dict):
        return fallback_score, f"Failed to parse evaluation response: {content[:100]}..."

    score = parsed.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        score = fallback_score
    reason = parsed.get("reason")
    if not isinstance(reason, str):
        reason = "Unable to extract reason"
    return float(score), reason


class BaseMetric(ABC):
    """A scorer that maps (dataset item, generated output) to a value in [0, 1]"""

    name: str = "base"
    description: str = ""

    @abstractmethod
    async def score(self, item: EvaluationItem, output: str) -> MetricResult:
        ...

    def get_metadata(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description}


class GEvalMetric(BaseMetric):
    """LLM-as-judge metric scored on 1..scale and normalized to 0..1"""

    name = "g_eval"

    def __init__(self,
                 llm: LLMWrapper,
                 criteria: str,
                 scale: int = 5,
                 name: Optional[str] = None,
                 description: str = ""):
        if scale < 2:
            raise ValueError("scale must be at least 2")
        self.llm = llm
        self.criteria = criteria
        self.scale = scale
        if name:
            self.name = name
        self.description = description or criteria.strip().split("\n", 1)[0]

    @property
    def default_score(self) -> float:
        return (1 + self.scale) / 2

    def normalize_score(self, raw_score: float) -> float:
        return (raw_score - 1) / (self.scale - 1)

    async def score(self, item: EvaluationItem, output: str) -> MetricResult:
        if not self.llm.is_available():
            return MetricResult(
                score=self.normalize_score(self.default_score),
                reason="LLM unavailable, returning default score",
                metadata={"is_default": True},
            )

        prompt = JUDGE_PROMPT.format(
            criteria=self.criteria,
            scale=self.scale,
            input=json.dumps(item.input, ensure_ascii=False),
            output=output,
        )
        response = await self.llm.generate(
            prompt,
            JUDGE_MAX_TOKENS,
            JUDGE_SYSTEM_PROMPT,
            EVOLUTION_EVALUATION_TIMEOUT_MS,
        )

        raw_score, reason = parse_evaluation_response(response.content, self.default_score)
        validated = max(1.0, min(float(self.scale), float(round(raw_score))))
        return MetricResult(
            score=self.normalize_score(validated),
            reason=reason,
            metadata={"raw_score": raw_score, "scale": self.scale},
        )

    def get_metadata(self) -> Dict[str, Any]:
        metadata = super().get_metadata()
        metadata.update({"criteria": self.criteria, "scale": self.scale})
        return metadata
