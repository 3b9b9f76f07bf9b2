import json

import httpx
import pytest

from companion.core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from companion.llm.responders import (
    GenerationConfig,
    GuardedResponder,
    OllamaResponder,
    OpenAICompatibleResponder,
    ResponderError,
    ResponderTimeout,
    build_responders,
    extract_tool_intents,
)

from .conftest import StubResponder


def _transport(handler, seen=None):
    def wrapped(request):
        if seen is not None:
            seen.append(request)
        return handler(request)
    return httpx.MockTransport(wrapped)


def test_extract_tool_intents_keeps_paragraphs():
    text, intents = extract_tool_intents("Sure thing. [[intent:music.play]]\n\nAnything else?  [[intent:music.play]]")
    assert intents == ("music.play",)
    assert text == "Sure thing.\n\nAnything else?"


@pytest.mark.asyncio
async def test_ollama_payload_and_reply():
    seen = []
    responder = OllamaResponder(
        "http://ollama.test", "llama3",
        transport=_transport(lambda r: httpx.Response(200, json={"response": " Hi there! [[intent:timer.set]]"}), seen),
    )

    reply = await responder.invoke("Host: hi\nSynth:", GenerationConfig(max_tokens=120))
    await responder.aclose()

    assert reply.text == "Hi there!"
    assert reply.engine_used == "ollama:llama3"
    assert reply.tool_intents == ("timer.set",)
    body = json.loads(seen[0].content)
    assert seen[0].url.path == "/api/generate"
    assert body["stream"] is False
    assert body["options"]["num_predict"] == 120


@pytest.mark.asyncio
async def test_openai_compatible_reads_tool_calls():
    seen = []
    payload = {"choices": [{"message": {
        "content": "I can do that for you.",
        "tool_calls": [{"function": {"name": "reminder.create"}}, {"function": {}}],
    }}]}
    responder = OpenAICompatibleResponder(
        "http://api.test", "gpt-test", api_key="sk-test",
        transport=_transport(lambda r: httpx.Response(200, json=payload), seen),
    )

    reply = await responder.invoke("prompt", GenerationConfig())

    assert reply.text == "I can do that for you."
    assert reply.tool_intents == ("reminder.create",)
    assert seen[0].headers["Authorization"] == "Bearer sk-test"
    assert seen[0].url.path == "/v1/chat/completions"


@pytest.mark.asyncio
async def test_openai_without_choices_is_empty_text():
    responder = OpenAICompatibleResponder(
        "http://api.test", "gpt-test", transport=_transport(lambda r: httpx.Response(200, json={"choices": []}))
    )
    reply = await responder.invoke("prompt", GenerationConfig())
    assert reply.text == ""


@pytest.mark.asyncio
async def test_retryable_status_is_retried_then_raises():
    seen = []
    responder = OllamaResponder(
        "http://ollama.test", "llama3", retries=3, retry_delay=0,
        transport=_transport(lambda r: httpx.Response(503, text="overloaded"), seen),
    )
    with pytest.raises(ResponderError, match="HTTP 503"):
        await responder.invoke("prompt", GenerationConfig())
    assert len(seen) == 3


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    seen = []
    responder = OllamaResponder(
        "http://ollama.test", "llama3", retries=3, retry_delay=0,
        transport=_transport(lambda r: httpx.Response(404, text="model not found"), seen),
    )
    with pytest.raises(ResponderError) as excinfo:
        await responder.invoke("prompt", GenerationConfig())
    assert len(seen) == 1
    assert not isinstance(excinfo.value, ResponderTimeout)


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    statuses = iter([500, 200])

    def handler(request):
        status = next(statuses)
        return httpx.Response(status, json={"response": "Back again."} if status == 200 else {})

    responder = OllamaResponder("http://ollama.test", "llama3", retry_delay=0, transport=_transport(handler))
    assert (await responder.invoke("prompt", GenerationConfig())).text == "Back again."


@pytest.mark.asyncio
async def test_transport_timeout_raises_responder_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    responder = OllamaResponder("http://ollama.test", "llama3", transport=_transport(handler))
    with pytest.raises(ResponderTimeout):
        await responder.invoke("prompt", GenerationConfig())


@pytest.mark.asyncio
async def test_guarded_responder_fails_fast_when_open():
    inner = StubResponder(error=ResponderError("down"))
    breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=2, expected_exception=(ResponderError,)))
    guarded = GuardedResponder(inner, breaker)

    for _ in range(2):
        with pytest.raises(ResponderError):
            await guarded.invoke("prompt", GenerationConfig())
    with pytest.raises(ResponderError, match="open"):
        await guarded.invoke("prompt", GenerationConfig())

    assert len(inner.calls) == 2
    assert guarded.breaker.get_state()["state"] == "open"


def test_scaled_generation_config_has_floor():
    assert GenerationConfig(max_tokens=300).scaled(0.6).max_tokens == 180
    assert GenerationConfig(max_tokens=40).scaled(0.25).max_tokens == 32


def test_build_responders_adds_local_only_when_configured():
    cfg = {"backend": "ollama", "base_url": "http://a", "model": "m", "timeout": 8.0,
           "local_base_url": "", "local_model": "small", "local_timeout": 6.0}
    primary, local = build_responders(cfg)
    assert primary.name == "ollama"
    assert local is None

    primary, local = build_responders({**cfg, "backend": "openai", "local_base_url": "http://b"})
    assert primary.name == "openai"
    assert local.name == "local"
