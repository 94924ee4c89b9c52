"""Structured-output LLM access for the digest agent.

Only the OpenAI chat-completions endpoint is supported. Replies are requested
in the JSON schema of the digest output model and validated with pydantic;
anything that fails here is handled by the digest agent's fallback.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol, TypeVar
from urllib import error, request

from pydantic import BaseModel

from quest_orchestrator.config.settings import Settings

TModel = TypeVar("TModel", bound=BaseModel)
logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"


class LLMAdapter(Protocol):
    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel: ...


class LLMRequestError(RuntimeError):
    """The provider answered with a non-2xx status."""

    def __init__(self, status: int, detail: str) -> None:
        super().__init__(f"LLM provider returned HTTP {status}: {detail[:200]}")
        self.status = status


def chat_request_body(
    model: str, system_prompt: str, user_prompt: str, response_model: type[BaseModel]
) -> dict[str, Any]:
    schema = {
        "name": response_model.__name__.lower(),
        # Metric params and action payloads are open maps, which strict mode rejects.
        "strict": False,
        "schema": response_model.model_json_schema(),
    }
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "response_format": {"type": "json_schema", "json_schema": schema},
    }


def reply_text(completion: dict[str, Any]) -> str:
    """Text of the first choice; content may be a string or a list of text parts."""
    try:
        content = completion["choices"][0]["message"].get("content")
    except (KeyError, IndexError, AttributeError) as exc:
        raise ValueError("Completion has no first choice message") from exc
    if isinstance(content, list):
        content = "".join(
            part.get("text", "") for part in content if isinstance(part, dict)
        )
    if not isinstance(content, str) or not content.strip():
        raise ValueError("Completion message has no text content")
    return content.strip()


class OpenAIChatCompletionsAdapter:
    """Blocking client; the digest agent runs it in a worker thread."""

    retryable = (TimeoutError, ValueError, error.URLError, LLMRequestError)

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        if not api_key:
            raise ValueError("api_key is required")
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def generate_structured(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        response_model: type[TModel],
        timeout_s: float,
    ) -> TModel:
        body = chat_request_body(self.model, system_prompt, user_prompt, response_model)
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                completion = self._post(body, timeout_s=timeout_s)
                return response_model.model_validate_json(reply_text(completion))
            except self.retryable as exc:
                logger.warning(
                    "llm_request event=failed provider=openai model=%s attempt=%d/%d reason=%s",
                    self.model,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt == attempts:
                    raise
                if self.backoff_s:
                    time.sleep(self.backoff_s)
        raise AssertionError("unreachable")

    def _post(self, body: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            self.base_url + CHAT_COMPLETIONS_PATH,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                return json.load(response)
        except error.HTTPError as exc:
            raise LLMRequestError(exc.code, exc.read().decode("utf-8", errors="replace")) from exc


def build_llm_adapter(settings: Settings) -> LLMAdapter | None:
    """Adapter for the configured provider, or None to use deterministic output only."""
    api_key = settings.resolved_openai_api_key()
    if settings.llm_provider.lower() != "openai" or not api_key:
        return None
    return OpenAIChatCompletionsAdapter(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
