"""External-model client: one text-generation call plus error classification.

ModelClient is the only contract the pipelines depend on:
    gen = client.generate(system, user, max_tokens=4096)
    gen.text, gen.input_tokens, gen.output_tokens

AnthropicClient talks to the Messages API over urllib. Failures are raised as
RateLimitError (retry after a shared backoff), ServiceUnreachableError (every
retry is futile) or ModelError (this call failed).
"""

from __future__ import annotations

import json
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal, Protocol

if TYPE_CHECKING:
    from mg.config import ModelConfig

logger = logging.getLogger("mg.llm")

ErrorKind = Literal["rate-limit", "unreachable", "other"]

_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests", "429")
_UNREACHABLE_MARKERS = (
    "econnrefused", "econnreset", "etimedout", "enotfound",
    "fetch failed", "connection error",
)
_RATE_LIMIT_STATUS = {429, 529}

_FENCE_OPEN = re.compile(r"^```[^\n]*\n?")


class ModelError(Exception):
    """An external-model call failed."""


class RateLimitError(ModelError):
    """The service asked us to slow down."""


class ServiceUnreachableError(ModelError):
    """The service could not be reached at all (DNS, refused, reset, timeout)."""


@dataclass(frozen=True)
class Generation:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def tokens_used(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelClient(Protocol):
    def generate(self, system: str, user: str, max_tokens: int) -> Generation: ...


def classify_error(exc: BaseException) -> ErrorKind:
    """Three-way classification that drives backoff vs. abort."""
    if isinstance(exc, RateLimitError):
        return "rate-limit"
    if isinstance(exc, ServiceUnreachableError):
        return "unreachable"
    if isinstance(exc, urllib.error.HTTPError):
        return "rate-limit" if exc.code in _RATE_LIMIT_STATUS else "other"
    if isinstance(exc, (ConnectionError, TimeoutError, urllib.error.URLError)):
        return "unreachable"
    message = str(exc).lower()
    if any(m in message for m in _RATE_LIMIT_MARKERS):
        return "rate-limit"
    if any(m in message for m in _UNREACHABLE_MARKERS):
        return "unreachable"
    return "other"


def parse_json_response(text: str) -> Any:
    """Strip markdown fences and parse JSON from a model response.

    Raises ValueError when nothing parseable remains.
    """
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = _FENCE_OPEN.sub("", cleaned, count=1)
        close = cleaned.find("\n```")
        if close != -1:
            cleaned = cleaned[:close]
        elif cleaned.endswith("```"):
            cleaned = cleaned[:-3]
        cleaned = cleaned.strip()
    if not cleaned.startswith(("{", "[")):
        start = cleaned.find("{")
        if start != -1:
            cleaned = cleaned[start:]
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        msg = f"model returned non-JSON at line {exc.lineno}, col {exc.colno}: {text[:200]!r}"
        raise ValueError(msg) from exc


class AnthropicClient:
    """Calls the Anthropic Messages API directly with an API key."""

    API_URL = "https://api.anthropic.com/v1/messages"
    API_VERSION = "2023-06-01"

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-haiku-latest",
        timeout: float = 60.0,
        base_url: str = "",
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._url = base_url or self.API_URL

    def _request(self, body: dict[str, Any]) -> dict[str, Any]:
        req = urllib.request.Request(
            self._url,
            data=json.dumps(body).encode(),
            headers={
                "Content-Type": "application/json",
                "x-api-key": self._api_key,
                "anthropic-version": self.API_VERSION,
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as resp:
                data = json.loads(resp.read().decode())
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode(errors="replace")[:300]
            if exc.code in _RATE_LIMIT_STATUS:
                raise RateLimitError(f"HTTP {exc.code} from model API: {detail}") from exc
            raise ModelError(f"HTTP {exc.code} from model API: {detail}") from exc
        except (urllib.error.URLError, ConnectionError, TimeoutError) as exc:
            raise ServiceUnreachableError(f"model API unreachable: {exc}") from exc
        if not isinstance(data, dict):
            msg = f"model API returned non-object JSON: {type(data).__name__}"
            raise ModelError(msg)
        return data

    def generate(self, system: str, user: str, max_tokens: int) -> Generation:
        data = self._request({
            "model": self._model,
            "max_tokens": max_tokens,
            "system": system,
            "messages": [{"role": "user", "content": user}],
        })
        if data.get("type") == "error":
            err = data.get("error") or {}
            message = f"{err.get('type', 'error')}: {err.get('message', '')}"
            if classify_error(ModelError(message)) == "rate-limit" or err.get("type") == "overloaded_error":
                raise RateLimitError(message)
            raise ModelError(message)
        text = "".join(
            block.get("text", "")
            for block in data.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        gen = Generation(
            text=text,
            input_tokens=int(usage.get("input_tokens", 0) or 0),
            output_tokens=int(usage.get("output_tokens", 0) or 0),
        )
        logger.debug("model call: %d in / %d out tokens", gen.input_tokens, gen.output_tokens)
        return gen


def client_from_config(model_cfg: ModelConfig) -> ModelClient:
    """Build the configured client. Raises ModelError when no API key is available."""
    if model_cfg.provider != "anthropic":
        msg = f"unsupported model provider: {model_cfg.provider}"
        raise ModelError(msg)
    if not model_cfg.api_key:
        msg = "ANTHROPIC_API_KEY is not set (add it to .env or the environment)"
        raise ModelError(msg)
    return AnthropicClient(model_cfg.api_key, model=model_cfg.model, timeout=model_cfg.timeout)
