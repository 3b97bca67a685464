import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional

import aiohttp
from loguru import logger
from multidict import CIMultiDict
from etching_status_client.errors import NETWORK_ERRORS, RequestFailed, classify_failure
from etching_status_client.models import (
    ApiResponse,
    ClientConfig,
    FailedOutcome,
    HttpRequest,
)
from etching_status_client.retry import RetryScheduler


class _AttemptError(Exception):
    """A single attempt failed; carries what the classifier needs."""

    def __init__(
        self,
        status_code: Optional[int],
        headers: Optional[Mapping[str, str]],
        error: Optional[BaseException],
        raw_error: str,
        body: Any = None,
    ):
        super().__init__(raw_error)
        self.status_code = status_code
        self.headers = headers
        self.error = error
        self.raw_error = raw_error
        self.body = body


class RequestPipeline:
    """Outbound HTTP calls with header augmentation and retries.

    Each call runs augment -> dispatch -> classify -> retry, in that order.
    Retries of one logical request are strictly sequential and wait on
    ``sleep``, which only suspends the calling task.
    """

    def __init__(
        self,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.base_url = config.base_url.rstrip("/")
        self.scheduler = RetryScheduler(config.retry)
        self.logger = logger.bind(client=config.client_name)
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

    async def __aenter__(self) -> "RequestPipeline":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            if not self._session.closed:
                await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def url_for(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def augment(self, request: HttpRequest) -> HttpRequest:
        """Adds the default headers and, when configured, the API key"""
        headers = {"Accept": "application/json", **request.headers}
        if self.config.api_key:
            headers[self.config.api_key_header] = self.config.api_key
        return request.model_copy(update={"headers": headers})

    async def _read_body(self, response: aiohttp.ClientResponse) -> Any:
        if response.content_type == "application/json":
            return await response.json()
        text = await response.text()
        return text or None

    async def _dispatch(self, request: HttpRequest, url: str) -> ApiResponse:
        session = self._get_session()
        status_code = None
        headers = None
        try:
            async with session.request(
                request.method,
                url,
                headers=request.headers,
                params=request.params or None,
                json=request.body,
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            ) as response:
                status_code = response.status
                headers = CIMultiDict(response.headers)
                data = await self._read_body(response)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            if isinstance(e, NETWORK_ERRORS):
                # The body never arrived in full, so the status line does not count
                status_code = headers = None
            raise _AttemptError(
                status_code, headers, e, str(e) or type(e).__name__
            ) from e

        if status_code >= 400:
            raise _AttemptError(
                status_code, headers, None, f"HTTP {status_code}", body=data
            )
        return ApiResponse(
            status_code=status_code,
            headers=headers,
            data=data,
            retry_count=request.retry_count,
        )

    async def send(self, request: HttpRequest) -> ApiResponse:
        """Send ``request``, retrying transient failures per the retry policy.

        Raises:
            RequestFailed: the failure is permanent or retries are exhausted.
        """
        attempt = self.augment(request)
        url = self.url_for(attempt.path)

        while True:
            log = self.logger.bind(
                method=attempt.method, url=url, retry_count=attempt.retry_count
            )
            log.debug(f"{attempt.method} {url} (retry {attempt.retry_count})")
            try:
                response = await self._dispatch(attempt, url)
            except _AttemptError as failed:
                classification = classify_failure(
                    failed.status_code, failed.headers, failed.error, self.config.retry
                )
                log = log.bind(status=failed.status_code)
                if not self.scheduler.should_retry(attempt, classification):
                    log.error(
                        f"{attempt.method} {url} failed ({classification.reason}): "
                        f"{failed.raw_error}, giving up after {attempt.retry_count} retries"
                    )
                    outcome = FailedOutcome(
                        method=attempt.method,
                        url=url,
                        status_code=failed.status_code,
                        raw_error=failed.raw_error,
                        retryable=classification.retryable,
                        failure_class=classification.failure_class,
                        reason=classification.reason,
                        suggested_delay_ms=classification.delay_hint_ms,
                        body=failed.body,
                        retry_count=attempt.retry_count,
                    )
                    raise RequestFailed(outcome) from failed.error

                delay = self.scheduler.resolve_delay(classification)
                log.warning(
                    f"{attempt.method} {url} failed ({classification.reason}): "
                    f"{failed.raw_error}, retrying in {delay:.2f}s"
                )
                await self._sleep(delay)
                attempt = attempt.next_attempt()
                continue

            log.bind(status=response.status_code).info(
                f"{attempt.method} {url} -> {response.status_code}"
            )
            return response

    async def get(self, path: str, **params: str) -> ApiResponse:
        return await self.send(HttpRequest(method="GET", path=path, params=params))
