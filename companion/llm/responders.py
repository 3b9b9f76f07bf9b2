"""
Language Model Responders

A responder turns a prompt into reply text. The orchestrator only sees the
``Responder`` protocol, so backends can be swapped freely:

* ``OllamaResponder``: a local Ollama server (``/api/generate``)
* ``OpenAICompatibleResponder``: any ``/v1/chat/completions`` endpoint
* ``GuardedResponder``: wraps either with a circuit breaker

Transport errors surface as ``ResponderError`` (``ResponderTimeout`` for
deadline overruns). Diagnostic text from a failing backend is never returned
as reply text.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from ..core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerError

logger = logging.getLogger("companion.llm.responders")

# Inline tool intent markers, e.g. "Sure. [[intent:music.play]]"
_INTENT_RE = re.compile(r"\[\[intent:([A-Za-z0-9_.\-]+)\]\]")

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class ResponderError(Exception):
    """The backend could not produce a reply."""


class ResponderTimeout(ResponderError):
    """The backend did not answer in time."""


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = 0.65
    top_p: float = 0.9
    max_tokens: int = 300
    stop: Tuple[str, ...] = ("Synth:", "Host:")

    def scaled(self, factor: float, floor: int = 32) -> "GenerationConfig":
        """Copy with ``max_tokens`` scaled by a guardrail length factor."""
        return replace(self, max_tokens=max(floor, int(round(self.max_tokens * factor))))


@dataclass(frozen=True)
class ResponderReply:
    text: str
    engine_used: str
    outcome_kind: str = "OK"
    tool_intents: Tuple[str, ...] = ()


class Responder(Protocol):
    name: str

    async def invoke(self, prompt: str, config: GenerationConfig) -> ResponderReply:
        ...


def extract_tool_intents(text: str) -> Tuple[str, Tuple[str, ...]]:
    """Strip inline intent markers, returning the clean text and the intent names."""
    intents = tuple(dict.fromkeys(_INTENT_RE.findall(text or "")))
    cleaned = _INTENT_RE.sub("", text or "")
    cleaned = re.sub(r"[ \t]*\n[ \t]*", "\n", re.sub(r"[ \t]{2,}", " ", cleaned))
    return cleaned.strip(), intents


class _HTTPResponder:
    """Shared httpx plumbing: retries on transient failures, error mapping."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        model: str,
        timeout: float = 8.0,
        retries: int = 2,
        retry_delay: float = 0.25,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.retries = max(1, retries)
        self.retry_delay = retry_delay
        self._transport = transport
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> Dict[str, str]:
        return {}

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        last_error: Optional[str] = None
        for attempt in range(self.retries):
            try:
                resp = await client.post(path, json=payload, headers=self._headers())
            except httpx.TimeoutException as e:
                raise ResponderTimeout(f"{self.name} timed out: {e}") from e
            except (httpx.ConnectError, httpx.NetworkError) as e:
                last_error = str(e) or type(e).__name__
                logger.debug(f"{self.name} attempt {attempt + 1}/{self.retries} failed: {last_error}")
            else:
                if resp.status_code == 200:
                    try:
                        return resp.json()
                    except ValueError as e:
                        raise ResponderError(f"{self.name} returned invalid JSON") from e
                last_error = f"HTTP {resp.status_code}"
                logger.warning(f"{self.name} request failed {resp.status_code} (attempt {attempt + 1}/{self.retries}): {resp.text[:200]}")
                if resp.status_code not in _RETRYABLE_STATUS:
                    break

            if attempt < self.retries - 1:
                await asyncio.sleep(self.retry_delay)

        raise ResponderError(f"{self.name} request failed: {last_error}")


class OllamaResponder(_HTTPResponder):
    name = "ollama"

    async def invoke(self, prompt: str, config: GenerationConfig) -> ResponderReply:
        data = await self._post("/api/generate", {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "num_predict": config.max_tokens,
                "temperature": config.temperature,
                "top_p": config.top_p,
                "stop": list(config.stop),
            },
        })
        text, intents = extract_tool_intents((data or {}).get("response") or "")
        return ResponderReply(text=text, engine_used=f"ollama:{self.model}", tool_intents=intents)


class OpenAICompatibleResponder(_HTTPResponder):
    name = "openai"

    def __init__(self, base_url: str, model: str, api_key: str = "", **kwargs: Any):
        super().__init__(base_url, model, **kwargs)
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def invoke(self, prompt: str, config: GenerationConfig) -> ResponderReply:
        data = await self._post("/v1/chat/completions", {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": config.temperature,
            "top_p": config.top_p,
            "max_tokens": config.max_tokens,
            "stop": list(config.stop),
        })
        choices = (data or {}).get("choices") or []
        if not choices:
            return ResponderReply(text="", engine_used=f"openai:{self.model}")
        message = choices[0].get("message") or {}
        text, intents = extract_tool_intents(message.get("content") or "")
        tool_calls: List[str] = [
            (call.get("function") or {}).get("name", "")
            for call in (message.get("tool_calls") or [])
        ]
        all_intents = tuple(dict.fromkeys(list(intents) + [t for t in tool_calls if t]))
        return ResponderReply(text=text, engine_used=f"openai:{self.model}", tool_intents=all_intents)


class GuardedResponder:
    """Circuit-breaker wrapper; an open circuit fails fast as ``ResponderError``."""

    def __init__(self, inner: Responder, breaker: Optional[CircuitBreaker] = None, name: Optional[str] = None):
        self.inner = inner
        self.name = name or inner.name
        self.breaker = breaker or CircuitBreaker(
            f"responder:{self.name}",
            CircuitBreakerConfig(failure_threshold=5, recovery_timeout=30.0, expected_exception=(ResponderError,)),
        )

    async def invoke(self, prompt: str, config: GenerationConfig) -> ResponderReply:
        try:
            return await self.breaker.call(self.inner.invoke, prompt, config)
        except CircuitBreakerError as e:
            raise ResponderError(str(e)) from e

    async def aclose(self) -> None:
        close = getattr(self.inner, "aclose", None)
        if close is not None:
            await close()


def build_responders(responder_cfg: Dict[str, Any]) -> Tuple[GuardedResponder, Optional[GuardedResponder]]:
    """Primary and optional local responder from ``AppConfig.get_responder_config()``."""
    # httpx deadline sits a little past the orchestrator's so the latter decides
    grace = 1.0
    if responder_cfg.get("backend") == "openai":
        primary: Responder = OpenAICompatibleResponder(
            responder_cfg["base_url"],
            responder_cfg["model"],
            api_key=responder_cfg.get("api_key", ""),
            timeout=responder_cfg["timeout"] + grace,
        )
    else:
        primary = OllamaResponder(responder_cfg["base_url"], responder_cfg["model"], timeout=responder_cfg["timeout"] + grace)

    local = None
    if responder_cfg.get("local_base_url"):
        local = GuardedResponder(OllamaResponder(
            responder_cfg["local_base_url"],
            responder_cfg["local_model"],
            timeout=responder_cfg["local_timeout"] + grace,
        ), name="local")

    logger.info(f"Responders ready: primary={primary.name}, local={'yes' if local else 'no'}")
    return GuardedResponder(primary), local
