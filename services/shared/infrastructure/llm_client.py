"""
Haven Shared Infrastructure - Inference Gateway Client.
Prompt-in/text-out access to an OpenAI-compatible chat completions endpoint with
per-call timeouts, bounded retry and structured JSON extraction.
"""
from __future__ import annotations
import asyncio
import json
import re
import time
from typing import Any, Callable, Protocol, TypeVar, runtime_checkable
import httpx
from pydantic import BaseModel, Field, SecretStr
from pydantic import ValidationError as PydanticValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

from haven_common.exceptions import ValidationError

logger = structlog.get_logger(__name__)
T = TypeVar("T")

_FENCE_PATTERN = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class LLMClientSettings(BaseSettings):
    """Inference gateway configuration (HAVEN_LLM_ prefix)."""
    base_url: str = Field(default="https://api.openai.com/v1")
    api_key: SecretStr = Field(default=SecretStr(""))
    provider: str = Field(default="openai")
    model: str = Field(default="gpt-4o-mini")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1, le=32000)
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=2, ge=0, le=5)
    retry_delay_seconds: float = Field(default=0.5, ge=0.0)
    retry_multiplier: float = Field(default=2.0, ge=1.0, le=5.0)
    json_response_format: bool = Field(default=True)
    model_config = SettingsConfigDict(env_prefix="HAVEN_LLM_", env_file=".env", extra="ignore")


class CompletionOptions(BaseModel):
    """Per-call overrides; unset fields fall back to gateway settings."""
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0)
    json_mode: bool = True


@runtime_checkable
class InferenceGateway(Protocol):
    """Capability shared by every model-backed stage."""

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        ...


class RetryPolicy(BaseModel):
    """Retry policy configuration."""
    max_retries: int = 2
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 10.0

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for retry attempt."""
        delay = self.base_delay * (self.multiplier ** attempt)
        return min(delay, self.max_delay)


class LLMError(Exception):
    """Gateway failure: network, timeout or non-2xx from the provider."""
    def __init__(self, message: str, *, provider: str, error_type: str = "unknown",
                 status_code: int | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.provider = provider
        self.error_type = error_type
        self.status_code = status_code
        self.retryable = retryable


class RateLimitError(LLMError):
    """Rate limit exceeded."""
    def __init__(self, message: str, provider: str, retry_after: float | None = None) -> None:
        super().__init__(message, provider=provider, error_type="rate_limit",
                         status_code=429, retryable=True)
        self.retry_after = retry_after


class ContentFormatError(ValidationError):
    """Gateway reply could not be parsed into the structure a stage requires."""
    error_code = "CONTENT_FORMAT_ERROR"

    def __init__(self, message: str, *, task: str | None = None, raw: str | None = None,
                 **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if task:
            details["task"] = task
        if raw is not None:
            details["raw_preview"] = raw[:200]
        super().__init__(message, details=details, **kwargs)
        self.task = task


class HttpxInferenceGateway:
    """
    Inference gateway backed by httpx.AsyncClient.

    Each call carries its own timeout and is retried on transient failures
    (timeouts, connection errors, 429, 5xx) up to ``max_retries`` times.
    """

    def __init__(self, settings: LLMClientSettings | None = None,
                 http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or LLMClientSettings()
        self._http = http_client or httpx.AsyncClient(
            base_url=self._settings.base_url,
            timeout=httpx.Timeout(self._settings.timeout_seconds),
        )
        self._retry_policy = RetryPolicy(
            max_retries=self._settings.max_retries,
            base_delay=self._settings.retry_delay_seconds,
            multiplier=self._settings.retry_multiplier,
        )
        self._request_count = 0
        self._error_count = 0

    @property
    def provider(self) -> str:
        return self._settings.provider

    async def complete(self, prompt: str, options: CompletionOptions | None = None) -> str:
        """Send the prompt and return the raw completion text."""
        options = options or CompletionOptions()
        last_error: LLMError | None = None
        for attempt in range(self._retry_policy.max_retries + 1):
            try:
                return await self._complete_once(prompt, options)
            except LLMError as e:
                last_error = e
                self._error_count += 1
                if not e.retryable or attempt >= self._retry_policy.max_retries:
                    raise
                delay = self._retry_policy.get_delay(attempt)
                if isinstance(e, RateLimitError) and e.retry_after:
                    delay = max(delay, e.retry_after)
                logger.warning("llm_retry", provider=self.provider, attempt=attempt + 1,
                               delay=delay, error_type=e.error_type)
                await asyncio.sleep(delay)
        raise last_error or LLMError("Max retries exceeded", provider=self.provider)

    async def _complete_once(self, prompt: str, options: CompletionOptions) -> str:
        self._request_count += 1
        start_time = time.perf_counter()
        timeout = options.timeout_seconds or self._settings.timeout_seconds
        try:
            response = await self._http.post(
                "/chat/completions",
                json=self._build_payload(prompt, options),
                headers=self._build_headers(),
                timeout=httpx.Timeout(timeout),
            )
        except httpx.TimeoutException as e:
            raise LLMError(f"Request timeout: {e}", provider=self.provider,
                           error_type="timeout", retryable=True) from e
        except httpx.RequestError as e:
            raise LLMError(f"Connection error: {e}", provider=self.provider,
                           error_type="connection_error", retryable=True) from e
        self._check_response(response)
        content = self._extract_content(response)
        logger.debug("llm_completion", provider=self.provider,
                     model=options.model or self._settings.model,
                     latency_ms=round((time.perf_counter() - start_time) * 1000, 1))
        return content

    def _build_headers(self) -> dict[str, str]:
        """Build request headers."""
        return {
            "Authorization": f"Bearer {self._settings.api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }

    def _build_payload(self, prompt: str, options: CompletionOptions) -> dict[str, Any]:
        """Build API request payload."""
        payload: dict[str, Any] = {
            "model": options.model or self._settings.model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": options.max_tokens or self._settings.max_tokens,
            "temperature": (options.temperature if options.temperature is not None
                            else self._settings.temperature),
        }
        if options.json_mode and self._settings.json_response_format:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _check_response(self, response: httpx.Response) -> None:
        """Check response for errors."""
        if response.status_code == 200:
            return
        if response.status_code == 429:
            retry_after = response.headers.get("retry-after")
            raise RateLimitError("Rate limit exceeded", self.provider,
                                 float(retry_after) if retry_after else None)
        if response.status_code >= 500:
            raise LLMError(f"Server error: {response.status_code}", provider=self.provider,
                           error_type="server_error", status_code=response.status_code,
                           retryable=True)
        try:
            error_msg = response.json().get("error", {}).get("message", response.text)
        except (ValueError, AttributeError):
            error_msg = response.text
        raise LLMError(f"API error: {error_msg}", provider=self.provider,
                       error_type="api_error", status_code=response.status_code)

    def _extract_content(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise LLMError(f"Malformed provider response: {e}", provider=self.provider,
                           error_type="malformed_response") from e
        return content or ""

    async def close(self) -> None:
        """Close HTTP client."""
        await self._http.aclose()

    def get_statistics(self) -> dict[str, Any]:
        """Get client statistics."""
        return {
            "total_requests": self._request_count,
            "total_errors": self._error_count,
            "error_rate": self._error_count / max(self._request_count, 1),
            "provider": self.provider,
            "model": self._settings.model,
        }


def extract_json_object(text: str, *, task: str | None = None) -> dict[str, Any]:
    """
    Pull the outermost JSON object out of a model reply.

    Tolerates markdown code fences and prose around the object.
    """
    if not text or not text.strip():
        raise ContentFormatError("Empty completion", task=task, raw=text or "")
    candidate = text.strip()
    fenced = _FENCE_PATTERN.search(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end <= start:
        raise ContentFormatError("No JSON object in completion", task=task, raw=text)
    try:
        parsed = json.loads(candidate[start:end + 1])
    except json.JSONDecodeError as e:
        raise ContentFormatError(f"Unparsable JSON: {e.msg}", task=task, raw=text) from e
    if not isinstance(parsed, dict):
        raise ContentFormatError("Completion JSON is not an object", task=task, raw=text)
    return parsed


async def complete_structured(
    gateway: InferenceGateway,
    prompt: str,
    parse: Callable[[dict[str, Any]], T],
    *,
    options: CompletionOptions | None = None,
    format_retries: int = 1,
    task: str = "completion",
) -> T:
    """
    Complete a prompt and parse the JSON reply.

    Content-format failures are retried with the same prompt ``format_retries``
    times before a ContentFormatError is raised. Gateway errors propagate as-is.
    """
    last_error: ContentFormatError | None = None
    for attempt in range(format_retries + 1):
        raw = await gateway.complete(prompt, options)
        try:
            return parse(extract_json_object(raw, task=task))
        except ContentFormatError as e:
            last_error = e
        except PydanticValidationError as e:
            last_error = ContentFormatError(
                f"Invalid {task} structure: {e.error_count()} error(s)", task=task, raw=raw, cause=e,
            )
        logger.warning("llm_format_retry", task=task, attempt=attempt + 1,
                       remaining=format_retries - attempt)
    raise last_error or ContentFormatError("No completion parsed", task=task)
