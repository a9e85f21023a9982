"""OpenAI Responses API client plus helpers for reading JSON out of replies."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Sequence


class ModelUnavailableError(RuntimeError):
    """Raised when the OpenAI client cannot be created."""


def _import_openai() -> Any:
    try:
        from openai import OpenAI  # type: ignore
    except ModuleNotFoundError as exc:  # pragma: no cover - import guard
        raise ModelUnavailableError("openai package is required. Install openai>=1.0.") from exc
    return OpenAI


@dataclass(slots=True)
class OpenAIClientFactory:
    """Creates OpenAI clients from an API key held in the environment."""

    api_key_env: str = "OPENAI_API_KEY"
    timeout_s: float | None = 30.0

    def is_configured(self) -> bool:
        return bool(os.getenv(self.api_key_env))

    def create(self) -> Any:
        OpenAI = _import_openai()
        api_key = os.getenv(self.api_key_env)
        if not api_key:
            raise ModelUnavailableError(f"Environment variable '{self.api_key_env}' is not set")
        # Retries stay with the caller so rate limits surface to the request queue.
        return OpenAI(api_key=api_key, timeout=self.timeout_s, max_retries=0)


@dataclass(slots=True)
class GPTResponseClient:
    """Thin wrapper around ``client.responses.create``."""

    model: str
    client_factory: OpenAIClientFactory = field(default_factory=OpenAIClientFactory)
    _client: Any | None = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = self.client_factory.create()
        return self._client

    def generate(
        self,
        *,
        messages: Sequence[dict[str, str]],
        max_output_tokens: int | None = None,
        json_output: bool = False,
    ) -> Any:
        payload: dict[str, Any] = {
            "model": self.model,
            "input": [
                {"role": message.get("role", "user"), "content": message.get("content", "")}
                for message in messages
            ],
        }
        if max_output_tokens is not None:
            payload["max_output_tokens"] = max_output_tokens
        if json_output:
            payload["text"] = {"format": {"type": "json_object"}}
        return self.client.responses.create(**payload)


def status_code_of(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def retry_after_of(exc: BaseException) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def response_text_blocks(response: Any) -> list[str]:
    """Collect distinct non-empty text blocks from a Responses API reply."""

    seen: set[str] = set()
    texts: list[str] = []

    def remember(text: Any) -> None:
        if isinstance(text, str) and text.strip() and text.strip() not in seen:
            seen.add(text.strip())
            texts.append(text.strip())

    for item in getattr(response, "output", None) or []:
        content = getattr(item, "content", None)
        if isinstance(content, list):
            for block in content:
                remember(getattr(block, "text", None))
        elif isinstance(content, dict):
            remember(content.get("text") or content.get("output_text"))
        elif content is not None:
            remember(getattr(content, "text", None))
    for attr in ("output_text", "text"):
        raw = getattr(response, attr, None)
        if isinstance(raw, (list, tuple)):
            for value in raw:
                remember(value)
        else:
            remember(raw)
    return texts


def decode_json_objects(text: str) -> list[dict[str, Any]]:
    """Find every JSON object embedded in *text*, fenced or not."""

    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = re.sub(r"^```(?:json)?\s*\n", "", cleaned)
        cleaned = re.sub(r"```\s*$", "", cleaned)

    decoder = json.JSONDecoder()
    results: list[dict[str, Any]] = []
    index = 0
    while index < len(cleaned):
        if cleaned[index] not in "[{":
            index += 1
            continue
        try:
            value, index = decoder.raw_decode(cleaned, index)
        except json.JSONDecodeError:
            index += 1
            continue
        if isinstance(value, dict):
            results.append(value)
        elif isinstance(value, list):
            results.extend(item for item in value if isinstance(item, dict))
    return results


def iter_json_payloads(response: Any) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for text in response_text_blocks(response):
        payloads.extend(decode_json_objects(text))
    return payloads
