import asyncio
import logging
import os
from typing import Optional

from google import genai
from google.genai import types
from tenacity import retry, retry_if_not_exception_type, stop_after_attempt, wait_exponential

from promptevo.config import DEFAULT_MODEL, EVOLUTION_MAX_TOKENS
from promptevo.models import LLMResponse

logger = logging.getLogger(__name__)


class LLMUnavailableError(RuntimeError):
    pass


class LLMWrapper:
    """Thin async wrapper around a Gemini client used by the operators and metrics"""

    def __init__(self,
                 provider: str = "google_genai",
                 model_name: str = DEFAULT_MODEL,
                 temperature: float = 0.7,
                 agent_name: str = ""):
        self.provider = provider
        self.model_name = model_name
        self.temperature = temperature
        self.agent_name = agent_name
        self.total_token_count = 0
        self.input_token_count = 0
        self.output_token_count = 0
        self.client = None
        self._setup_provider()

    def _setup_provider(self):
        if self.provider != "google_genai":
            raise ValueError(f"Unsupported LLM provider: {self.provider}")
        api_key = os.environ.get("GEMINI_API_KEY")
        if not api_key:
            logger.warning("GEMINI_API_KEY not found. LLM operators will use deterministic fallbacks.")
            return
        self.client = genai.Client(api_key=api_key)
        logger.info(f"{self.agent_name or 'LLM'} initialized with model {self.model_name}")

    def is_available(self) -> bool:
        return self.client is not None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_not_exception_type(LLMUnavailableError),
        reraise=True
    )
    def generate_text(self,
                      prompt: str,
                      max_tokens: int = EVOLUTION_MAX_TOKENS,
                      system_prompt: Optional[str] = None,
                      timeout_ms: Optional[int] = None,
                      temperature: Optional[float] = None) -> str:
        """Blocking generation call with retry logic built in"""
        if not self.is_available():
            raise LLMUnavailableError("LLM client is not configured (set GEMINI_API_KEY)")

        config = types.GenerateContentConfig(
            temperature=temperature if temperature is not None else self.temperature,
            max_output_tokens=max_tokens,
            system_instruction=system_prompt,
            http_options=types.HttpOptions(timeout=timeout_ms) if timeout_ms else None,
        )
        response = self.client.models.generate_content(
            model=self.model_name,
            contents=prompt,
            config=config,
        )

        usage = response.usage_metadata
        if usage is not None:
            self.total_token_count += usage.total_token_count or 0
            self.input_token_count += usage.prompt_token_count or 0
            self.output_token_count += usage.candidates_token_count or 0
            logger.debug(
                f"Total tokens {self.agent_name}: {self.total_token_count} "
                f"(Input: {self.input_token_count}, Output: {self.output_token_count})"
            )

        return response.text or ""

    async def generate(self,
                       prompt: str,
                       max_tokens: int = EVOLUTION_MAX_TOKENS,
                       system_prompt: Optional[str] = None,
                       timeout_ms: Optional[int] = None) -> LLMResponse:
        content = await asyncio.to_thread(
            self.generate_text, prompt, max_tokens, system_prompt, timeout_ms
        )
        return LLMResponse(content=content)

    def get_token_counts(self) -> dict:
        return {
            "total": self.total_token_count,
            "input": self.input_token_count,
            "output": self.output_token_count,
        }
