"""
eCFR / govinfo HTTP client

Fetches the title registry, per-title bulk XML and per-title version
timelines from the public upstream endpoints.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..core.error_classifier import is_transient_error
from ..models.config_models import RefreshConfig
from ..models.errors import UpstreamError, UpstreamNotFoundError, UpstreamServerError
from ..models.record_models import TitleInfo

logger = logging.getLogger(__name__)


def _raise_for_status(response: httpx.Response, what: str) -> None:
    status = response.status_code
    if status < 400:
        return
    if status == 404:
        raise UpstreamNotFoundError(f"{what} not found ({response.request.url})", status)
    if status >= 500 or status == 429:
        raise UpstreamServerError(f"{what} failed with HTTP {status}", status)
    raise UpstreamError(f"{what} failed with HTTP {status}: {response.text[:200]}", status)


class EcfrClient:
    """Async client for the upstream title registry, XML and versions endpoints."""

    def __init__(
        self,
        config: RefreshConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            config: Refresh settings carrying URLs, timeouts and retry policy
            transport: Optional transport override, used by tests
        """
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._initialized = False

        self.metrics = {
            "requests": 0,
            "failures": 0,
            "bytes_downloaded": 0,
            "download_time": 0.0,
        }

    async def initialize(self) -> None:
        if self._initialized:
            return

        self._client = httpx.AsyncClient(
            headers={"User-Agent": self.config.user_agent},
            timeout=httpx.Timeout(self.config.registry_timeout, connect=10.0),
            follow_redirects=True,
            transport=self._transport,
        )
        self._initialized = True
        logger.debug("eCFR client initialized")

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            self._initialized = False

    async def __aenter__(self) -> "EcfrClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _get(self, url: str, what: str, **kwargs: Any) -> httpx.Response:
        if not self._initialized:
            await self.initialize()
        assert self._client is not None

        self.metrics["requests"] += 1
        try:
            response = await self._client.get(url, **kwargs)
            _raise_for_status(response, what)
        except (httpx.HTTPError, UpstreamError):
            self.metrics["failures"] += 1
            raise
        return response

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_transient_error),
        reraise=True,
    )
    async def fetch_titles(self) -> List[TitleInfo]:
        """
        Fetch the title registry.

        Returns:
            Every title the registry lists, reserved ones included

        Raises:
            UpstreamError: On a non-success response or malformed body
        """
        response = await self._get(self.config.registry_url, "Title registry")
        try:
            entries = response.json()["titles"]
            titles = [TitleInfo.from_api(entry) for entry in entries]
        except (ValueError, KeyError, TypeError) as e:
            raise UpstreamError(f"Malformed title registry response: {e}") from e

        logger.info(f"Title registry lists {len(titles)} titles")
        return titles

    async def download_title_xml(self, number: int) -> bytes:
        """
        Download a title's bulk XML.

        Transient failures are retried with exponential backoff. The body is
        read completely regardless of size.

        Raises:
            UpstreamNotFoundError: If the title has no bulk XML
            UpstreamError: When every attempt fails
        """
        url = self.config.xml_url_template.format(number=number)
        timeout = httpx.Timeout(self.config.download_timeout, connect=30.0)
        headers = {"Accept-Encoding": "gzip,deflate"}

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.download_attempts),
            wait=wait_exponential(multiplier=self.config.download_backoff, max=300),
            retry=retry_if_exception(is_transient_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

        start_time = time.time()
        async for attempt in retrying:
            with attempt:
                response = await self._get(
                    url, f"Title {number} XML", headers=headers, timeout=timeout
                )
        content = response.content

        elapsed = time.time() - start_time
        self.metrics["bytes_downloaded"] += len(content)
        self.metrics["download_time"] += elapsed
        logger.info(
            f"Downloaded title {number} XML: {len(content) / (1024 * 1024):.1f}MB "
            f"in {elapsed:.1f}s"
        )
        return content

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(is_transient_error),
        reraise=True,
    )
    async def fetch_versions(self, number: int) -> List[Dict[str, Any]]:
        """Raw ``content_versions`` entries of a title's version timeline."""
        url = self.config.versions_url_template.format(number=number)
        response = await self._get(url, f"Title {number} versions")
        try:
            versions = response.json().get("content_versions") or []
        except (ValueError, AttributeError) as e:
            raise UpstreamError(f"Malformed versions response for title {number}: {e}") from e
        return list(versions)

    def get_metrics(self) -> Dict[str, Any]:
        return dict(self.metrics)
