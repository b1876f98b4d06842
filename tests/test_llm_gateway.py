"""
Test the LLM gateway client against a mocked HTTP transport.
"""
import json
import os
from unittest.mock import Mock, patch

import httpx
import pytest

from inbox_digest.config import LLMConfig
from inbox_digest.llm.gateway import JudgmentGateway

ENDPOINT = "https://llm.example.com/v1/chat/completions"


def _completion(content):
    return {
        "choices": [{"message": {"content": content}}],
        "usage": {"prompt_tokens": 120, "completion_tokens": 30},
    }


def _gateway(handler, metrics=None, **config):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return JudgmentGateway(LLMConfig(endpoint=ENDPOINT, **config), metrics=metrics, client=client)


def test_complete_returns_first_choice_content():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=_completion('[{"id": "m1"}]'))

    metrics = Mock()
    gateway = _gateway(handler, metrics=metrics, model="judge-mini", max_tokens=500)

    with patch.dict(os.environ, {"LLM_TOKEN": "secret-token"}):
        text = gateway.complete("classify these", trace_id="trace-1")

    assert text == '[{"id": "m1"}]'
    body = json.loads(requests[0].content)
    assert body["model"] == "judge-mini"
    assert body["max_tokens"] == 500
    assert body["messages"] == [{"role": "user", "content": "classify these"}]
    assert requests[0].headers["Authorization"] == "Bearer secret-token"
    metrics.record_llm_latency.assert_called_once()


def test_no_token_sends_no_authorization_header():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json=_completion("[]"))

    gateway = _gateway(handler)
    with patch.dict(os.environ, {}, clear=True):
        gateway.complete("hi", trace_id="t")

    assert "Authorization" not in requests[0].headers


def test_empty_choices_returns_empty_string():
    gateway = _gateway(lambda request: httpx.Response(200, json={"choices": []}))

    assert gateway.complete("hi", trace_id="t") == ""


def test_http_error_propagates():
    gateway = _gateway(lambda request: httpx.Response(503, json={"error": "overloaded"}))

    with pytest.raises(httpx.HTTPStatusError):
        gateway.complete("hi", trace_id="t")


def test_connect_error_is_retried_once():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=_completion("[]"))

    gateway = _gateway(handler)

    assert gateway.complete("hi", trace_id="t") == "[]"
    assert len(calls) == 2


def test_timeout_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("too slow", request=request)

    gateway = _gateway(handler)

    with pytest.raises(httpx.ReadTimeout):
        gateway.complete("hi", trace_id="t")
    assert len(calls) == 1
