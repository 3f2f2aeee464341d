"""
LLM HTTP Client

Single-shot prompt completion against a messages-style endpoint. Every
request is scheduled through the process-wide rate limiter, so all
analytics threads share one request allowance.
"""

import logging
import time
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..core.error_classifier import is_transient_error
from ..core.rate_limiter import RateLimiter, get_shared_rate_limiter
from ..models.config_models import LLMConfig
from ..models.errors import LLMClientError, LLMResponseError, LLMServerError

logger = logging.getLogger(__name__)

# Request defaults when the caller passes no generation options
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TOP_P = 0.9


def extract_text(body: Any) -> str:
    """
    Pull the reply text out of a response body.

    Accepts ``{"content": [{"type": "text", "text": ...}, ...]}`` or a bare
    string body.

    Raises:
        LLMResponseError: If the body holds only reasoning output or no text
    """
    if isinstance(body, str):
        return body

    if isinstance(body, dict) and isinstance(body.get("content"), list):
        blocks = body["content"]
        for block in blocks:
            if isinstance(block, dict) and block.get("type") == "text" and block.get("text"):
                return block["text"]
        if len(blocks) == 1 and isinstance(blocks[0], dict) and blocks[0].get("type") == "thinking":
            raise LLMResponseError("LLM returned only thinking content, no text response")

    raise LLMResponseError("Invalid LLM response structure: no text content found")


class LLMClient:
    """Rate-limited client for the LLM messages endpoint."""

    def __init__(
        self,
        config: LLMConfig,
        rate_limiter: Optional[RateLimiter] = None,
        requests_per_minute: int = 15,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_backoff: float = 2.0,
    ):
        """
        Args:
            config: Endpoint, model and generation settings
            rate_limiter: Limiter to schedule requests through; defaults to
                the shared limiter for ``requests_per_minute``
            requests_per_minute: Rate used when no limiter is passed
            transport: Optional transport override, used by tests
            retry_backoff: Multiplier for the exponential retry wait
        """
        self.config = config
        self.rate_limiter = rate_limiter or get_shared_rate_limiter(requests_per_minute)
        self.retry_backoff = retry_backoff
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._initialized = False

        self.metrics = {
            "requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "total_response_time": 0.0,
        }

    @property
    def enabled(self) -> bool:
        return bool(self.config.api_key)

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not self.enabled:
            raise LLMClientError("GROK_API_KEY not configured")

        self._client = httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self.config.timeout),
            transport=self._transport,
        )
        self._initialized = True
        logger.info(f"LLM client initialized for model {self.config.model}")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            self._initialized = False

    async def __aenter__(self) -> "LLMClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def generate(
        self,
        prompt: str,
        temperature: float = DEFAULT_TEMPERATURE,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        top_p: float = DEFAULT_TOP_P,
    ) -> str:
        """
        Send one prompt and return the reply text.

        Transient failures (network, timeout, 5xx, 429) are retried up to
        ``config.max_retries`` attempts; each attempt takes a rate limiter slot.

        Raises:
            LLMClientError: Not configured or a non-retryable error response
            LLMServerError: When every attempt failed transiently
            LLMResponseError: When the reply carries no usable text
        """
        if not self._initialized:
            await self.initialize()

        payload = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": top_p,
        }

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.max_retries),
            wait=wait_exponential(multiplier=self.retry_backoff, max=60),
            retry=retry_if_exception(is_transient_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                body = await self.rate_limiter.schedule(lambda: self._post(payload))
        return extract_text(body)

    async def _post(self, payload: Dict[str, Any]) -> Any:
        assert self._client is not None
        url = f"{self.config.base_url.rstrip('/')}/messages"

        start_time = time.time()
        self.metrics["requests"] += 1
        try:
            response = await self._client.post(url, json=payload)
        except httpx.TimeoutException as e:
            self.metrics["failed_requests"] += 1
            raise LLMServerError(f"LLM request timed out after {self.config.timeout}s") from e
        except httpx.TransportError as e:
            self.metrics["failed_requests"] += 1
            raise LLMServerError(f"LLM request failed: {e}") from e

        if response.status_code >= 400:
            self.metrics["failed_requests"] += 1
            message = self._error_message(response)
            logger.error(f"LLM API error {response.status_code}: {message}")
            if response.status_code >= 500 or response.status_code == 429:
                error = LLMServerError(f"LLM API error: {message}")
                error.status_code = response.status_code  # type: ignore[attr-defined]
                raise error
            raise LLMClientError(f"LLM API error: {message}")

        self.metrics["successful_requests"] += 1
        self.metrics["total_response_time"] += time.time() - start_time

        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            error = response.json().get("error")
        except (ValueError, AttributeError):
            return "Unknown error"
        if isinstance(error, dict):
            return error.get("message") or "Unknown error"
        return str(error) if error else "Unknown error"

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = dict(self.metrics)
        metrics["rate_limiter"] = self.rate_limiter.get_stats()
        return metrics
