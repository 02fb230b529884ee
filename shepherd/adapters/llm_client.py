"""Minimal OpenAI Responses API client (httpx only)."""

from __future__ import annotations

import json
import os
import time
from typing import Any, Optional

import httpx

from shepherd.models.errors import LlmError, LlmParseError

DEFAULT_MODEL = "gpt-4.1"
DEFAULT_URL = "https://api.openai.com/v1/responses"


def model_for(role: str, env: Optional[dict[str, str]] = None) -> str:
    """Model for a role (``PRD``, ``DEV``, ``REVIEW``) from ``OPENAI_MODEL_<ROLE>``."""
    source = os.environ if env is None else env
    return (source.get(f"OPENAI_MODEL_{role.upper()}") or DEFAULT_MODEL).strip()


def _input_messages(system: str, user: str) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = []
    if system:
        messages.append({"role": "system", "content": [{"type": "input_text", "text": system}]})
    if user:
        messages.append({"role": "user", "content": [{"type": "input_text", "text": user}]})
    return messages


def _output_text(data: dict[str, Any]) -> str:
    text = data.get("output_text")
    if isinstance(text, str):
        return text
    chunks: list[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict):
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "output_text" and isinstance(part.get("text"), str):
                chunks.append(part["text"])
    return "".join(chunks)


class LlmClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        timeout_s: float = 180.0,
    ) -> None:
        self._api_key = (api_key or os.getenv("OPENAI_API_KEY", "")).strip()
        self._url = (url or os.getenv("OPENAI_RESPONSES_URL", DEFAULT_URL)).strip()
        self._timeout = timeout_s
        # Per-process usage tally.
        self.calls = 0
        self.elapsed_ms = 0

    def responses_text(
        self,
        *,
        model: str,
        system: str,
        user: str,
        temperature: Optional[float] = None,
        json_mode: bool = False,
    ) -> str:
        if not self._api_key:
            raise LlmError("OPENAI_API_KEY is not configured")

        payload: dict[str, Any] = {"model": model, "input": _input_messages(system, user)}
        if json_mode:
            payload["text"] = {"format": {"type": "json_object"}}
        # Some codex models reject sampling params; only send when asked.
        if temperature is not None:
            payload["temperature"] = float(temperature)

        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        started = time.perf_counter()
        try:
            with httpx.Client(timeout=self._timeout, headers=headers) as client:
                resp = client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise LlmError(f"OpenAI request failed: {exc}") from exc
        finally:
            self.calls += 1
            self.elapsed_ms += int(round((time.perf_counter() - started) * 1000))

        status = int(resp.status_code)
        try:
            data = resp.json()
        except ValueError:
            raise LlmError(f"OpenAI response was not JSON (status={status}): {(resp.text or '')[:500]}")

        if status >= 400:
            err = data.get("error") if isinstance(data, dict) else None
            raise LlmError(f"OpenAI error (status={status}): {err or data}")
        if not isinstance(data, dict):
            raise LlmError(f"Unexpected OpenAI payload type: {type(data).__name__}")
        return _output_text(data)


def parse_json_or_raise(text: str, label: str) -> dict[str, Any]:
    raw = text or "{}"
    try:
        data = json.loads(raw)
    except ValueError as exc:
        raise LlmParseError(f"{label} returned non-JSON: {raw[:300]}") from exc
    if not isinstance(data, dict):
        raise LlmParseError(f"{label} returned {type(data).__name__}, expected an object: {raw[:300]}")
    return data
