from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from dealdesk.context import get_correlation_id
from dealdesk.core.config import get_settings
from dealdesk.errors import CollaboratorFailure
from dealdesk.metrics import observe_collaborator_call, observe_collaborator_failure


logger = logging.getLogger("dealdesk.collaborators.ai")
tracer = trace.get_tracer("dealdesk.collaborators.ai")


class CompletionClient(Protocol):
    def complete(self, prompt: str, system_prompt: str) -> str: ...


class HttpCompletionClient:
    """Chat completion over an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        url: str,
        *,
        model: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        temperature: float = 0.1,
        max_tokens: int = 2000,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout = timeout
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-Id"] = correlation_id
        return headers

    def complete(self, prompt: str, system_prompt: str) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        with tracer.start_as_current_span("ai.complete") as span:
            span.set_attribute("ai.model", self.model)
            span.set_attribute("correlation_id", get_correlation_id() or "")
            started = time.perf_counter()
            try:
                with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                    response = client.post(self.url, json=payload, headers=self._headers())
                    response.raise_for_status()
                    body = response.json()
            except (httpx.HTTPError, json.JSONDecodeError) as exc:
                observe_collaborator_failure("ai_completion")
                logger.warning("ai.complete_failed", extra={"collaborator": "ai_completion", "error": str(exc)})
                raise CollaboratorFailure("ai_completion", "AI completion request failed", str(exc)) from exc
            finally:
                observe_collaborator_call("ai_completion", time.perf_counter() - started)

            try:
                content = body["choices"][0]["message"]["content"]
            except (KeyError, IndexError, TypeError) as exc:
                observe_collaborator_failure("ai_completion")
                raise CollaboratorFailure("ai_completion", "AI completion reply had no content") from exc
            span.set_attribute("ai.reply_length", len(content or ""))
            return content or ""


class StubCompletionClient:
    """Offline client used when no completion endpoint is configured.

    Replies with an empty JSON object, so extraction succeeds with no fields and
    e-mail generation falls back to its static template.
    """

    def __init__(self, reply: str = "{}") -> None:
        self.reply = reply
        self.calls: list[tuple[str, str]] = []

    def complete(self, prompt: str, system_prompt: str) -> str:
        with tracer.start_as_current_span("ai.complete.stub"):
            self.calls.append((prompt, system_prompt))
            return self.reply


def get_completion_client() -> CompletionClient:
    settings = get_settings()
    if not settings.ai_completion_url:
        return StubCompletionClient()
    return HttpCompletionClient(
        settings.ai_completion_url,
        model=settings.ai_model,
        api_key=settings.ai_api_key,
        timeout=settings.ai_timeout_seconds,
    )
