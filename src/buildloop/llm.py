"""Chat-completion clients used by the completion judge."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Protocol

import httpx

from buildloop.config import LLMSettings

logger = logging.getLogger(__name__)

# Transient provider statuses that are retried.
RETRY_STATUS = frozenset({429, 500, 502, 503, 504})


@lru_cache(maxsize=1)
def _shared_http_client() -> httpx.Client:
    return httpx.Client()


@dataclass(frozen=True)
class LLMResponse:
    content: str
    model: str


class LLMClient(Protocol):
    def generate(self, prompt: str, *, temperature: float | None = None) -> LLMResponse:
        ...


def post_json(
    client: httpx.Client,
    url: str,
    payload: dict[str, Any],
    *,
    headers: dict[str, str] | None = None,
    timeout_s: float,
    max_retries: int,
    retry_delay_s: float,
) -> dict[str, Any]:
    """POST ``payload`` and return the decoded body.

    Timeouts and ``RETRY_STATUS`` responses are retried with a linear backoff;
    the last failure is raised once ``max_retries`` is exhausted.
    """
    attempts = max(0, max_retries) + 1
    for attempt in range(1, attempts + 1):
        try:
            response = client.post(url, headers=headers, json=payload, timeout=timeout_s)
            if response.status_code in RETRY_STATUS and attempt < attempts:
                logger.warning(
                    "LLM endpoint returned %d (attempt %d/%d)", response.status_code, attempt, attempts
                )
            else:
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException:
            if attempt >= attempts:
                raise
            logger.warning("LLM request timed out (attempt %d/%d)", attempt, attempts)
        if retry_delay_s > 0:
            time.sleep(retry_delay_s * attempt)
    raise RuntimeError(f"No response from {url}")


@dataclass(frozen=True)
class OpenAIClient:
    """OpenAI-compatible ``/chat/completions`` endpoint."""

    base_url: str
    api_key: str
    model: str
    timeout_s: float = 60.0
    default_temperature: float = 0.0
    json_output: bool = True
    max_retries: int = 2
    retry_delay_s: float = 1.0
    http_client: httpx.Client | None = None

    def generate(self, prompt: str, *, temperature: float | None = None) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature if temperature is not None else self.default_temperature,
        }
        if self.json_output:
            payload["response_format"] = {"type": "json_object"}
        data = post_json(
            self.http_client or _shared_http_client(),
            f"{self.base_url.rstrip('/')}/chat/completions",
            payload,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout_s=self.timeout_s,
            max_retries=self.max_retries,
            retry_delay_s=self.retry_delay_s,
        )
        return LLMResponse(content=data["choices"][0]["message"]["content"], model=self.model)


@dataclass(frozen=True)
class OllamaClient:
    base_url: str
    model: str
    timeout_s: float = 300.0
    default_temperature: float = 0.0
    json_output: bool = True
    max_retries: int = 2
    retry_delay_s: float = 1.0
    http_client: httpx.Client | None = None

    def generate(self, prompt: str, *, temperature: float | None = None) -> LLMResponse:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "stream": False,
            "options": {
                "temperature": temperature if temperature is not None else self.default_temperature
            },
        }
        if self.json_output:
            payload["format"] = "json"
        data = post_json(
            self.http_client or _shared_http_client(),
            f"{self.base_url.rstrip('/')}/api/chat",
            payload,
            timeout_s=self.timeout_s,
            max_retries=self.max_retries,
            retry_delay_s=self.retry_delay_s,
        )
        return LLMResponse(content=data["message"]["content"], model=self.model)


def build_llm_client(settings: LLMSettings, *, json_output: bool = True) -> LLMClient:
    """Client for the configured judge provider."""
    if settings.provider == "openai":
        if not settings.api_key:
            raise ValueError("OpenAI provider requires an API key (OPENAI_API_KEY)")
        return OpenAIClient(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            json_output=json_output,
        )
    if settings.provider == "ollama":
        return OllamaClient(base_url=settings.base_url, model=settings.model, json_output=json_output)
    raise ValueError(f"Unsupported LLM provider: {settings.provider}")
