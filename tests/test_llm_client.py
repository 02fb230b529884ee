"""Tests for the OpenAI Responses client. Uses mocked HTTP responses (respx)."""

import json

import pytest
import respx
from httpx import Response

from shepherd.adapters.llm_client import DEFAULT_MODEL, DEFAULT_URL, LlmClient, model_for, parse_json_or_raise
from shepherd.models.errors import LlmError, LlmParseError


@respx.mock
def test_responses_text_prefers_output_text():
    route = respx.post(DEFAULT_URL).mock(return_value=Response(200, json={"output_text": "Verdict: PASS"}))

    client = LlmClient(api_key="sk-test")
    text = client.responses_text(model="gpt-4.1", system="You review code.", user="diff")

    assert text == "Verdict: PASS"
    request = route.calls[0].request
    assert request.headers["authorization"] == "Bearer sk-test"
    payload = json.loads(request.content)
    assert payload["model"] == "gpt-4.1"
    assert [m["role"] for m in payload["input"]] == ["system", "user"]
    assert "temperature" not in payload
    assert "text" not in payload
    assert client.calls == 1


@respx.mock
def test_responses_text_joins_output_parts():
    respx.post(DEFAULT_URL).mock(
        return_value=Response(
            200,
            json={
                "output": [
                    {"type": "reasoning", "content": []},
                    {
                        "type": "message",
                        "content": [
                            {"type": "output_text", "text": '{"decision": '},
                            {"type": "refusal", "refusal": "no"},
                            {"type": "output_text", "text": '"single"}'},
                        ],
                    },
                ]
            },
        )
    )

    text = LlmClient(api_key="sk-test").responses_text(model="m", system="", user="u")

    assert text == '{"decision": "single"}'


@respx.mock
def test_json_mode_and_temperature_are_sent_when_asked():
    route = respx.post(DEFAULT_URL).mock(return_value=Response(200, json={"output_text": "{}"}))

    LlmClient(api_key="sk-test").responses_text(model="m", system="s", user="u", temperature=0.2, json_mode=True)

    payload = json.loads(route.calls[0].request.content)
    assert payload["text"] == {"format": {"type": "json_object"}}
    assert payload["temperature"] == 0.2


@respx.mock
def test_error_status_raises_llm_error():
    respx.post(DEFAULT_URL).mock(
        return_value=Response(401, json={"error": {"code": "invalid_api_key", "message": "Incorrect API key"}})
    )

    with pytest.raises(LlmError) as exc_info:
        LlmClient(api_key="sk-bad").responses_text(model="m", system="s", user="u")

    assert "status=401" in str(exc_info.value)
    assert "invalid_api_key" in str(exc_info.value)


@respx.mock
def test_non_json_body_raises_llm_error():
    respx.post(DEFAULT_URL).mock(return_value=Response(502, text="<html>bad gateway</html>"))

    with pytest.raises(LlmError, match="not JSON"):
        LlmClient(api_key="sk-test").responses_text(model="m", system="s", user="u")


def test_missing_api_key_raises(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(LlmError, match="OPENAI_API_KEY"):
        LlmClient().responses_text(model="m", system="s", user="u")


def test_model_for_role():
    assert model_for("dev", {"OPENAI_MODEL_DEV": "gpt-5-codex"}) == "gpt-5-codex"
    assert model_for("review", {}) == DEFAULT_MODEL


def test_parse_json_or_raise():
    assert parse_json_or_raise('{"title": "x"}', "PRD") == {"title": "x"}
    assert parse_json_or_raise("", "PRD") == {}
    with pytest.raises(LlmParseError, match="PRD returned non-JSON"):
        parse_json_or_raise("Sure! Here is", "PRD")
    with pytest.raises(LlmParseError, match="expected an object"):
        parse_json_or_raise("[1]", "PRD")
