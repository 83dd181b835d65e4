"""Solution providers for the APTAN agent.

Turns a task description into a solution. Providers are tried in the
configured order; each OpenAI-compatible provider walks its own list of
fallback models. When every provider fails, fallback_solution() produces
a templated answer so the agent always has something to submit.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from protocol import (
    DEFAULT_PROVIDER_ORDER, GROQ_CHAT_URL, GROQ_MODELS, OPENAI_CHAT_URL, OPENAI_MODELS,
    PROVIDER_PROBE_TIMEOUT, PROVIDER_TIMEOUT, SOLVER_SYSTEM_PROMPT,
)

logger = logging.getLogger(__name__)

# Error codes in the response body that mean "try the next model"
RETRYABLE_ERROR_CODES = ("rate_limit_exceeded", "insufficient_quota", "model_not_found")


class ProviderError(Exception):
    """A provider could not produce a solution.

    retryable=True means another model of the same provider may succeed.
    """

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class SolutionProvider(ABC):
    """Abstract solution provider."""

    name: str = "provider"

    @abstractmethod
    def solve(self, description: str) -> str:
        ...

    def probe(self) -> dict:
        """Connectivity check for the health endpoint."""
        return {"name": self.name, "ok": None, "detail": "probe not supported"}


@dataclass
class Solution:
    text: str
    provider: str
    fallback: bool = False
    error: str | None = None

    def to_dict(self) -> dict:
        return {
            "solution": self.text,
            "provider": self.provider,
            "fallback": self.fallback,
            "error": self.error,
        }


class ChatCompletionsProvider(SolutionProvider):
    """Any OpenAI-compatible chat completions endpoint.

    Args:
        name: Label used in logs and Solution.provider.
        url: Full chat completions URL.
        api_key: Bearer token.
        models: Models to try in order. Retryable failures move to the next one.
        timeout: Per-request timeout in seconds.
        client: Optional httpx.Client (tests pass one with a MockTransport).
    """

    def __init__(self, name: str, url: str, api_key: str, models: list[str],
                 timeout: float = PROVIDER_TIMEOUT, client: httpx.Client | None = None):
        if not models:
            raise ValueError(f"{name}: at least one model is required")
        self.name = name
        self.url = url
        self.api_key = api_key
        self.models = list(models)
        self.timeout = timeout
        self._client = client

    def _post(self, payload: dict, timeout: float) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if self._client is not None:
            return self._client.post(self.url, json=payload, headers=headers, timeout=timeout)
        with httpx.Client() as client:
            return client.post(self.url, json=payload, headers=headers, timeout=timeout)

    def _complete(self, model: str, description: str, timeout: float, max_tokens: int = 1000) -> str:
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SOLVER_SYSTEM_PROMPT},
                {"role": "user", "content": description},
            ],
            "temperature": 0.7,
            "max_tokens": max_tokens,
        }
        try:
            resp = self._post(payload, timeout)
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.name} request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} network error: {e}") from e

        if resp.status_code >= 400:
            code, message = _error_details(resp)
            retryable = resp.status_code == 429 or resp.status_code >= 500 or code in RETRYABLE_ERROR_CODES
            if resp.status_code in (401, 403):
                message = f"authentication failed, check the API key ({message})"
            raise ProviderError(f"{self.name} {model} HTTP {resp.status_code}: {message}", retryable=retryable)

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"{self.name} {model} returned an invalid response format") from e
        if not content or not content.strip():
            raise ProviderError(f"{self.name} {model} returned an empty solution", retryable=True)
        return content.strip()

    def solve(self, description: str) -> str:
        last_error = None
        for model in self.models:
            try:
                solution = self._complete(model, description, self.timeout)
            except ProviderError as e:
                last_error = e
                if not e.retryable:
                    raise
                logger.warning("[agent] %s model %s failed (%s), trying next model", self.name, model, e)
                continue
            logger.info("[agent] %s solved with %s (%d chars)", self.name, model, len(solution))
            return solution
        raise ProviderError(f"{self.name}: all models failed ({last_error})")

    def probe(self) -> dict:
        try:
            reply = self._complete(self.models[0], "Say 'ok'.", PROVIDER_PROBE_TIMEOUT, max_tokens=5)
        except ProviderError as e:
            return {"name": self.name, "ok": False, "model": self.models[0], "detail": str(e)}
        return {"name": self.name, "ok": True, "model": self.models[0], "detail": reply[:50]}


def _error_details(resp: httpx.Response) -> tuple[str | None, str]:
    try:
        body = resp.json()
    except ValueError:
        return None, resp.text[:200]
    err = body.get("error") if isinstance(body, dict) else None
    if not err:
        return None, resp.reason_phrase
    if isinstance(err, str):
        return None, err
    return err.get("code") or err.get("type"), err.get("message") or resp.reason_phrase


def openai_provider(api_key: str, client: httpx.Client | None = None) -> ChatCompletionsProvider:
    return ChatCompletionsProvider("openai", OPENAI_CHAT_URL, api_key, OPENAI_MODELS, client=client)


def groq_provider(api_key: str, client: httpx.Client | None = None) -> ChatCompletionsProvider:
    return ChatCompletionsProvider("groq", GROQ_CHAT_URL, api_key, GROQ_MODELS, client=client)


_FACTORIES = {"openai": openai_provider, "groq": groq_provider}


def build_providers(keys: dict[str, str | None], order: list[str] | None = None) -> list[SolutionProvider]:
    """Instantiate configured providers in order. Providers without a key are skipped."""
    providers = []
    for name in order or DEFAULT_PROVIDER_ORDER:
        factory = _FACTORIES.get(name)
        if factory is None:
            logger.warning("[agent] Unknown provider %r ignored", name)
            continue
        key = (keys.get(name) or "").strip()
        if not key:
            logger.info("[agent] Provider %s not configured", name)
            continue
        providers.append(factory(key))
    return providers


# --- Templated fallback ---

_MATH_RE = re.compile(r"(\d+)\s*(plus|\+|-|minus|times|multiply|\*|divide|/)\s*(\d+)", re.IGNORECASE)

_NO_PROVIDER_NOTE = (
    "To enable AI-powered task completion, configure OPENAI_API_KEY or GROQ_API_KEY "
    "and restart the agent."
)


def _arithmetic(description: str) -> str | None:
    match = _MATH_RE.search(description)
    if not match:
        return None
    a, op, b = int(match.group(1)), match.group(2).lower(), int(match.group(3))
    if op in ("plus", "+"):
        result = a + b
    elif op in ("minus", "-"):
        result = a - b
    elif op in ("times", "multiply", "*"):
        result = a * b
    else:
        if b == 0:
            return None
        result = a / b
        if result == int(result):
            result = int(result)
    return f"The answer is: {result}\n\nCalculation: {a} {op} {b} = {result}"


def fallback_solution(description: str) -> str:
    """Deterministic templated answer. Always returns non-empty text."""
    lower = description.lower()

    if any(w in lower for w in ("hello", "hellow", "greet")):
        return "Hello! Greetings and welcome. This is a friendly response to your greeting task."

    answer = _arithmetic(description)
    if answer:
        return answer

    if any(w in lower for w in ("blog", "article")):
        topic = re.sub(r"\b(write|blog|article|on)\b", "", description, flags=re.IGNORECASE)
        topic = " ".join(topic.split()) or "Blockchain"
        return (
            f"# Blog Post: {topic}\n\n"
            f"## Introduction\n\n{topic} is a topic worth a closer look. This post covers "
            f"the key ideas and where they apply.\n\n"
            f"## Key Points\n\n"
            f"1. **Foundations**: what {topic} is and where it came from.\n"
            f"2. **Practice**: how {topic} is used today.\n"
            f"3. **Outlook**: open questions and where {topic} is heading.\n\n"
            f"## Conclusion\n\n{topic} rewards further reading.\n\n"
            f"---\n*Generated by the fallback system. {_NO_PROVIDER_NOTE}*"
        )

    if any(w in lower for w in ("explain", "what is", "describe")):
        topic = re.sub(r"explain|what is|describe", "", description, flags=re.IGNORECASE).strip()
        return (
            f"Here's an explanation of {topic or 'the topic'}: This is a basic explanation "
            f"generated by the fallback system. {_NO_PROVIDER_NOTE}"
        )

    if any(w in lower for w in ("write", "create", "generate")):
        return f"Task completed: {description}\n\nThis response was generated by the basic fallback system. {_NO_PROVIDER_NOTE}"

    return (
        f"Task Response: {description}\n\n"
        "This is an automated response generated by the basic fallback system. "
        "The agent attempted to solve this task but no AI provider was available.\n\n"
        f"{_NO_PROVIDER_NOTE}"
    )


class SolverChain:
    """Try providers in order, then fall back to templates. Never raises."""

    def __init__(self, providers: list[SolutionProvider] | None = None):
        self.providers = list(providers or [])

    def solve(self, description: str) -> Solution:
        if not self.providers:
            logger.warning("[agent] No AI providers configured, using fallback solution")
            return Solution(fallback_solution(description), "fallback", fallback=True,
                            error="No AI providers configured")

        last_error = None
        for provider in self.providers:
            try:
                text = provider.solve(description)
            except Exception as e:
                last_error = str(e)
                logger.warning("[agent] %s error: %s", provider.name, e)
                continue
            if text and text.strip():
                return Solution(text.strip(), provider.name)
            last_error = f"{provider.name} returned empty solution"
            logger.warning("[agent] %s", last_error)

        logger.error("[agent] All AI providers failed, using fallback solution (last error: %s)", last_error)
        return Solution(fallback_solution(description), "fallback", fallback=True, error=last_error)

    def probe(self) -> list[dict]:
        return [p.probe() for p in self.providers]
