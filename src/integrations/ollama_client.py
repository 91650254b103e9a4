"""
Ollama client for local text generation.

Talks to a local Ollama server over HTTP:
- POST /api/generate  non-streaming completion
- GET  /api/tags      installed models (health check)

Every failure is raised as GeneratorError with a code the content pipeline
records: NETWORK, TIMEOUT, HTTP or INVALID_RESPONSE. There are no retries;
the pipeline falls back to deterministic content instead.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from loguru import logger

from src.textbook.models import GenerationParams

DEFAULT_OLLAMA_URL = "http://127.0.0.1:11434"
DEFAULT_MODEL = "qwen2.5:1.5b-instruct"
HEALTHCHECK_TIMEOUT_MS = 8000


class GeneratorError(Exception):
    """Generation call failed; code is NETWORK | TIMEOUT | HTTP | INVALID_RESPONSE."""

    def __init__(self, code: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


@dataclass
class GeneratorResponse:
    """Text returned by a generator plus what produced it."""

    text: str
    model: str
    params: GenerationParams
    tokens_used: Optional[int] = None


@dataclass
class HealthStatus:
    ok: bool
    message: str
    available_models: list[str] = field(default_factory=list)


def _compact(text: str, limit: int = 220) -> str:
    return re.sub(r"\s+", " ", text or "").strip()[:limit]


def _format_models(models: list[str]) -> str:
    if not models:
        return "none reported"
    preview = ", ".join(models[:4])
    return f"{preview}, ..." if len(models) > 4 else preview


class OllamaClient:
    """HTTP client for a local Ollama server."""

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        default_model: str = DEFAULT_MODEL,
        healthcheck_timeout_ms: int = HEALTHCHECK_TIMEOUT_MS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Ollama client.

        Args:
            base_url: Ollama server URL
            default_model: Model used when a call does not name one
            healthcheck_timeout_ms: Timeout for the /api/tags listing
            transport: Optional httpx transport (tests use MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.default_model = default_model
        self.healthcheck_timeout_seconds = healthcheck_timeout_ms / 1000.0
        self.client = httpx.AsyncClient(base_url=self.base_url, transport=transport)

    @classmethod
    def from_settings(cls, settings: Any) -> "OllamaClient":
        return cls(
            base_url=settings.ollama_url,
            default_model=settings.llm_model,
            healthcheck_timeout_ms=settings.llm_healthcheck_timeout_ms,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "OllamaClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        params: Optional[GenerationParams] = None,
    ) -> GeneratorResponse:
        """
        Run one non-streaming completion.

        Raises:
            GeneratorError: On timeout, transport failure, non-2xx status or
                a payload without a 'response' string
        """
        model_name = model or self.default_model
        call_params = params or GenerationParams()
        payload = {
            "model": model_name,
            "prompt": prompt,
            "stream": call_params.stream,
            "options": {
                "temperature": call_params.temperature,
                "top_p": call_params.top_p,
            },
        }

        try:
            response = await self.client.post(
                "/api/generate",
                json=payload,
                timeout=httpx.Timeout(call_params.timeout_ms / 1000.0),
            )
        except httpx.TimeoutException as e:
            raise GeneratorError(
                "TIMEOUT", f"Ollama request timed out after {call_params.timeout_ms}ms."
            ) from e
        except httpx.RequestError as e:
            raise GeneratorError("NETWORK", str(e) or "Failed to reach Ollama.") from e

        if response.status_code >= 400:
            raise GeneratorError(
                "HTTP",
                f"Ollama HTTP {response.status_code}: {_compact(response.text)}",
                status=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise GeneratorError("INVALID_RESPONSE", "Ollama returned a non-JSON payload.") from e

        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise GeneratorError("INVALID_RESPONSE", "Ollama returned an unexpected response payload.")

        tokens = data.get("eval_count")
        return GeneratorResponse(
            text=data["response"],
            model=model_name,
            params=call_params,
            tokens_used=tokens if isinstance(tokens, int) else None,
        )

    async def list_models(self) -> list[str]:
        """
        Names of installed models.

        Raises:
            GeneratorError: If the listing cannot be fetched
        """
        try:
            response = await self.client.get(
                "/api/tags", timeout=httpx.Timeout(self.healthcheck_timeout_seconds)
            )
        except httpx.TimeoutException as e:
            raise GeneratorError(
                "TIMEOUT",
                f"timed out after {int(self.healthcheck_timeout_seconds * 1000)}ms while calling /api/tags",
            ) from e
        except httpx.RequestError as e:
            raise GeneratorError("NETWORK", str(e) or "Failed to reach Ollama.") from e

        if response.status_code >= 400:
            body = _compact(response.text)
            details = f"status {response.status_code}: {body}" if body else f"status {response.status_code}"
            raise GeneratorError("HTTP", details, status=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise GeneratorError("INVALID_RESPONSE", "Ollama returned a non-JSON model list.") from e

        entries = data.get("models") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            return []
        return [entry["name"] for entry in entries if isinstance(entry, dict) and entry.get("name")]

    async def check_health(self, model: Optional[str] = None) -> HealthStatus:
        """Report whether the server is reachable and the model is installed."""
        model_name = model or self.default_model
        try:
            models = await self.list_models()
        except GeneratorError as e:
            logger.warning(f"Ollama health check failed ({e.code}): {e}")
            return HealthStatus(
                ok=False,
                message=(
                    f"Could not reach Ollama at {self.base_url}. Details: {e}. "
                    f'Start Ollama ("ollama serve") and verify with "ollama list".'
                ),
            )

        if model_name in models:
            return HealthStatus(
                ok=True,
                message=f"Connected. Model '{model_name}' is available.",
                available_models=models,
            )

        return HealthStatus(
            ok=False,
            message=(
                f"Connected, but model '{model_name}' is not available. "
                f'Run "ollama pull {model_name}". Available models: {_format_models(models)}.'
            ),
            available_models=models,
        )
