"""LLM Client — raw text completions over any OpenAI-compatible endpoint.

Both the masking model and the analysis model are plain prompt-in, text-out
round trips. No schema is enforced on the reply, which is why the masking
aligner and the analysis normalizer parse leniently.

Clients are constructed explicitly and handed to the pipeline per run, so
tests can substitute a fake with the same ``complete()`` signature.
"""

from typing import Protocol

import requests
from openai import OpenAI
from loguru import logger

from config import settings


class CompletionClient(Protocol):
    """Anything that turns a prompt into a text completion."""

    model: str

    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        ...


class LLMClient:
    """Synchronous chat-completion client for one model.

    Failures (network, auth, HTTP status) propagate to the caller unchanged;
    callers decide how to degrade.
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.0,
    ):
        self.model = model or settings.ANALYSIS_MODEL
        self.base_url = base_url or settings.LLM_BASE_URL
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.temperature = temperature
        self._client = OpenAI(
            base_url=self.base_url,
            api_key=api_key or settings.LLM_API_KEY,
            timeout=timeout or settings.LLM_TIMEOUT,
        )

    def complete(self, prompt: str, system_prompt: str | None = None) -> str:
        """Raw LLM completion — no JSON mode, no schema validation.

        Returns:
            Raw text response from the model ("" if the model sent no content)
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        response = self._client.chat.completions.create(
            model=self.model,
            messages=messages,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        if not response.choices:
            raise ValueError("Unexpected API response structure: no choices returned")
        return response.choices[0].message.content or ""


def build_analysis_client() -> LLMClient:
    return LLMClient(model=settings.ANALYSIS_MODEL)


def build_masking_client() -> LLMClient:
    return LLMClient(model=settings.MASKING_MODEL)


def check_llm_health(base_url: str | None = None) -> dict:
    """Check if the LLM endpoint is reachable and which models it serves."""
    url = (base_url or settings.LLM_BASE_URL).rstrip("/")
    try:
        resp = requests.get(
            f"{url}/models",
            headers={"Authorization": f"Bearer {settings.LLM_API_KEY}"},
            timeout=5,
        )
        if resp.status_code == 200:
            models = [m.get("id") for m in resp.json().get("data", [])]
            return {"status": "healthy", "models": models}
        logger.warning(f"LLM health check returned {resp.status_code}")
        return {"status": "error", "detail": f"HTTP {resp.status_code}"}
    except requests.ConnectionError:
        return {"status": "unreachable", "detail": f"Cannot connect to {url}"}
