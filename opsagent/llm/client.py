"""AI collaborator: the narrow contract the orchestrator needs, plus an
OpenAI-compatible chat-completions implementation over httpx.

The client makes exactly one request per ``complete`` call; retry policy
belongs to the caller.
"""

from __future__ import annotations

import os
from typing import Any, Protocol, runtime_checkable

import httpx
import structlog

from opsagent.errors import CollaboratorUnavailable
from opsagent.models.config import LLMConfig

_log = structlog.get_logger(component="llm.client")


@runtime_checkable
class AIClient(Protocol):
    """Anything that can turn a system prompt and a user prompt into text."""

    async def complete(self, system_prompt: str, user_prompt: str) -> str: ...


class ChatCompletionsClient:
    """Calls ``{base_url}/chat/completions`` with a bearer key read from the environment.

    Raises CollaboratorUnavailable for transport errors, non-2xx responses
    and bodies without a message.
    """

    def __init__(self, config: LLMConfig, timeout_seconds: float = 60.0, model: str | None = None) -> None:
        self._config = config
        self._model = model or config.model
        headers = {"Content-Type": "application/json"}
        api_key = os.environ.get(config.api_key_env, "") if config.api_key_env else ""
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_seconds,
        )

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self._config.temperature,
            "max_tokens": self._config.max_tokens,
        }
        try:
            response = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as exc:
            _log.warning("ai_request_timeout", model=self._model)
            raise CollaboratorUnavailable("ai", "request timed out") from exc
        except httpx.HTTPError as exc:
            _log.warning("ai_http_error", model=self._model, error=str(exc))
            raise CollaboratorUnavailable("ai", exc) from exc

        if not response.is_success:
            _log.warning("ai_non_2xx_response", status_code=response.status_code, body=response.text[:200])
            raise CollaboratorUnavailable("ai", f"HTTP {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise CollaboratorUnavailable("ai", "response carried no message content") from exc
        if not isinstance(content, str):
            raise CollaboratorUnavailable("ai", "response carried no message content")
        return content

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stop(self) -> None:
        await self.aclose()
