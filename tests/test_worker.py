from __future__ import annotations

import httpx
import pytest

from schedoputer.errors import ExternalFatal, ExternalTransient
from schedoputer.jobs import create_job
from schedoputer.worker import EchoResourceInvoker, HttpResourceInvoker, as_text, build_payload


def _invoker(handler) -> HttpResourceInvoker:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpResourceInvoker(base_url="https://resources.example", client=client)


def test_http_invoker_posts_payload_and_returns_json() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, json={"text": "hello"})

    result = _invoker(handler).invoke("content", {"prompt": "p"})

    assert result == {"text": "hello"}
    assert seen["url"] == "https://resources.example/content"
    assert b'"prompt"' in seen["body"]


def test_http_invoker_payment_required_is_transient() -> None:
    invoker = _invoker(lambda request: httpx.Response(402, json={"x402Version": 1}))
    with pytest.raises(ExternalTransient):
        invoker.invoke("content", {})


def test_http_invoker_timeout_is_transient() -> None:
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(ExternalTransient, match="timed out"):
        _invoker(handler).invoke("content", {})


@pytest.mark.parametrize("status", [400, 401, 404, 500])
def test_http_invoker_other_errors_are_fatal(status) -> None:
    with pytest.raises(ExternalFatal):
        _invoker(lambda request: httpx.Response(status, text="nope")).invoke("content", {})


def test_http_invoker_non_json_is_fatal() -> None:
    with pytest.raises(ExternalFatal):
        _invoker(lambda request: httpx.Response(200, text="<html>")).invoke("content", {})


def test_absolute_resource_url_is_used_as_is() -> None:
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        return httpx.Response(200, json={})

    _invoker(handler).invoke("https://other.example/run", {})
    assert seen["url"] == "https://other.example/run"


def test_build_payload_root_and_follow_up(store, clock) -> None:
    job = create_job(store, "about otters", "00:00", clock=clock)
    job.context["content"] = {"text": "y" * 50}
    job.task("t3").params = {"depth": 2}

    assert build_payload(job, job.task("t1")) == {"prompt": "about otters", "task": "t1"}
    follow_up = build_payload(job, job.task("t3"), max_chars=10)
    assert follow_up["content"] == "y" * 10
    assert follow_up["params"] == {"depth": 2}


def test_as_text() -> None:
    assert as_text(None) == ""
    assert as_text("plain") == "plain"
    assert as_text({"result": "r"}) == "r"
    assert as_text({"n": 1}) == '{"n": 1}'


def test_echo_invoker() -> None:
    assert EchoResourceInvoker().invoke("summary", {"prompt": "p"}) == {"text": "[summary] p"}
