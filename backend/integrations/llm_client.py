"""OpenAI-compatible chat completions client used for chase email drafting."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from backend.core.config import settings

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class LlmResponse:
    """Response from the completions endpoint."""

    success: bool
    content: str | None = None
    error: str | None = None


def extract_json(text: str) -> dict[str, Any] | None:
    """Parse a JSON object from model output, tolerating surrounding prose."""
    try:
        obj = json.loads(text)
        if isinstance(obj, dict):
            return obj
    except ValueError:
        pass

    match = _JSON_OBJECT.search(text)
    if not match:
        return None
    try:
        obj = json.loads(match.group(0))
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None


class LlmClient:
    """Minimal chat completions client."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        timeout: float | None = None,
    ):
        self.logger = logging.getLogger(__name__)
        self.api_key = api_key if api_key is not None else settings.LLM_API_KEY
        self.model = model or settings.LLM_MODEL
        self._client = httpx.Client(
            base_url=base_url or settings.LLM_BASE_URL,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout or settings.LLM_TIMEOUT_S,
        )

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        temperature: float | None = None,
        json_mode: bool = True,
    ) -> LlmResponse:
        """Run one chat completion.

        Args:
            system_prompt: Instructions for the model
            user_prompt: Request content
            temperature: Sampling temperature, defaults to settings
            json_mode: Ask the endpoint for a JSON object response

        Returns:
            LlmResponse with the message content or an error
        """
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": settings.LLM_TEMPERATURE if temperature is None else temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = self._client.post("/chat/completions", json=payload)
        except httpx.RequestError as e:
            self.logger.error("LLM request failed", extra={"error": str(e)})
            return LlmResponse(success=False, error=f"Network error calling LLM: {e}")

        if response.status_code >= 400:
            return LlmResponse(
                success=False,
                error=f"LLM API error: {response.status_code} - {response.text}",
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError):
            return LlmResponse(success=False, error="LLM response missing message content")

        if not content:
            return LlmResponse(success=False, error="LLM returned empty content")
        return LlmResponse(success=True, content=content)

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
