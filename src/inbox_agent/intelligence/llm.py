"""Ollama client used to write reply bodies."""

from __future__ import annotations

import json
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from inbox_agent.core.config import LlmSettings

_MAX_ATTEMPTS = 3
REPLY_SYSTEM_PROMPT = (
    "You write the body of email replies. Return only the reply text: "
    "no subject line, no greeting placeholder and no signature."
)
_FENCE = re.compile(r"^```[a-z]*\s*|\s*```$")
_SUBJECT_LINE = re.compile(r"^subject:[^\n]*\n+", re.IGNORECASE)


class LLMError(RuntimeError):
    """Raised when the LLM provider fails to respond as expected."""


class LLMClient(Protocol):
    """What the reply drafter needs from a model backend."""

    @property
    def provider_id(self) -> str:
        """Identifier recorded alongside each draft."""
        raise NotImplementedError

    def generate(self, prompt: str) -> str:
        """Return the reply body written for ``prompt``."""
        raise NotImplementedError


@dataclass(slots=True)
class OllamaClient:
    """Blocking Ollama client; the drafter calls it from a worker thread.

    Server errors and transport failures are retried with a capped
    exponential backoff. Client errors such as an unknown model fail at once.
    """

    settings: LlmSettings
    system_prompt: str = REPLY_SYSTEM_PROMPT
    sleep: Callable[[float], None] = time.sleep

    @property
    def provider_id(self) -> str:
        """Return ``ollama:<model>``."""
        return f"ollama:{self.settings.model}"

    @property
    def endpoint(self) -> str:
        """The generate endpoint under the configured base URL."""
        return f"{(self.settings.base_url or '').rstrip('/')}/api/generate"

    def generate(self, prompt: str) -> str:
        """Request a reply body for ``prompt``."""
        if not self.settings.base_url or not self.settings.model:
            raise LLMError("LLM endpoint is not configured")
        data = self._post(self._payload(prompt))
        result = data.get("response")
        if not isinstance(result, str):
            raise LLMError("LLM response missing 'response' field")
        return clean_completion(result)

    def _payload(self, prompt: str) -> dict[str, Any]:
        options: dict[str, Any] = {"temperature": self.settings.temperature}
        if self.settings.max_output_tokens is not None:
            options["num_predict"] = self.settings.max_output_tokens
        return {
            "model": self.settings.model,
            "prompt": prompt,
            "system": self.system_prompt,
            "stream": False,
            "options": options,
        }

    def _post(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                response = httpx.post(
                    self.endpoint,
                    json=payload,
                    timeout=self.settings.timeout_seconds,
                )
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if status < 500:
                    raise LLMError(f"Ollama rejected the request ({status})") from exc
                last_error = exc
            except httpx.HTTPError as exc:
                last_error = exc
            except json.JSONDecodeError as exc:
                raise LLMError("LLM returned invalid JSON") from exc
            else:
                if not isinstance(data, dict):
                    raise LLMError("LLM returned an unexpected payload")
                return data

            if attempt < _MAX_ATTEMPTS:
                self.sleep(min(2**attempt, 8))

        raise LLMError(f"LLM request failed after {_MAX_ATTEMPTS} attempts") from last_error


def clean_completion(text: str) -> str:
    """Strip code fences, a leading subject line and wrapping quotes."""
    cleaned = _FENCE.sub("", text.strip()).strip()
    cleaned = _SUBJECT_LINE.sub("", cleaned, count=1).strip()
    if len(cleaned) > 1 and cleaned[0] == cleaned[-1] and cleaned[0] in "\"'":
        cleaned = cleaned[1:-1].strip()
    return cleaned


def build_llm_client(settings: LlmSettings) -> OllamaClient | None:
    """Return a client when an endpoint and model are configured."""
    if settings.base_url and settings.model:
        return OllamaClient(settings)
    return None


__all__ = [
    "LLMClient",
    "LLMError",
    "OllamaClient",
    "REPLY_SYSTEM_PROMPT",
    "build_llm_client",
    "clean_completion",
]
