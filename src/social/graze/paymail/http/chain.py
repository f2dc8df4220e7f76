from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
import json
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Sequence,
    Tuple,
)
import logging
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy

from social.graze.paymail.errors import UnreachableError
from social.graze.paymail.model.trace import TraceTarget
from social.graze.paymail.trace import TraceCollector

RequestFunc = Callable[..., Awaitable[ClientResponse]]

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})

logger = logging.getLogger(__name__)


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    trace_request_ctx: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=request.headers,
            trace_request_ctx=request.trace_request_ctx,
            kwargs=request.kwargs,
        )

    @property
    def attempt(self) -> int:
        return (self.trace_request_ctx or {}).get("attempt", 0)


@dataclass
class ChainResponse:
    """
    A fully read response.

    The body is always kept as text: paymail servers frequently send JSON with a
    text/plain or text/html content type, so JSON decoding is left to `json()`
    where a decode failure can be reported against the raw body.
    """

    status: int
    headers: CIMultiDictProxy[str]
    body: str | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers
        return ChainResponse(
            status=status,
            headers=headers,
            body=await response.text(errors="replace"),
        )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        """Decode the body as JSON, raising ValueError when it isn't."""
        if self.body is None or not self.body.strip():
            raise ValueError("empty response body")
        return json.loads(self.body)


NextChainResponseCallbackType = (
    Tuple[ClientResponse, ChainResponse]
    | Tuple[ClientResponse, ChainResponse, ChainRequest]
)

NextChainCallbackType = Callable[
    [ChainRequest], Awaitable[NextChainResponseCallbackType]
]


class RequestMiddlewareBase(ABC):
    @abstractmethod
    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        pass

    def handle_gen(self, next: NextChainCallbackType) -> NextChainCallbackType:
        async def next_invoke(request: ChainRequest) -> NextChainResponseCallbackType:
            return await self.handle(next, request)

        return next_invoke


class UserAgentMiddleware(RequestMiddlewareBase):
    def __init__(self, user_agent: str) -> None:
        super().__init__()
        self._user_agent = user_agent

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        if request.headers is None:
            request.headers = {}
        request.headers.setdefault(hdrs.USER_AGENT, self._user_agent)
        request.headers.setdefault(hdrs.ACCEPT, "application/json")
        return await next(request)


class RetryMiddleware(RequestMiddlewareBase):
    """
    Re-issue requests answered with 429 or 5xx, with exponential backoff.

    The retry is expressed by returning a new ChainRequest, which the
    ChainMiddlewareContext loop picks up.
    """

    def __init__(
        self,
        retry_count: int,
        backoff: float = 0.25,
        statuses: frozenset[int] = RETRY_STATUSES,
    ) -> None:
        super().__init__()
        self._retry_count = retry_count
        self._backoff = backoff
        self._statuses = statuses

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        response = await next(request)
        client_response = response[0]
        chain_response = response[1]

        attempt = request.attempt
        if chain_response.status not in self._statuses or attempt >= self._retry_count:
            return response

        logger.debug(
            "Retrying %s %s after status %d (attempt %d of %d)",
            request.method,
            request.url,
            chain_response.status,
            attempt + 1,
            self._retry_count,
        )
        await asyncio.sleep(self._backoff * (2**attempt))

        new_request = ChainRequest.from_chain_request(request)
        new_request.trace_request_ctx = {
            **(request.trace_request_ctx or {}),
            "attempt": attempt + 1,
        }
        return client_response, chain_response, new_request


class TracingMiddleware(RequestMiddlewareBase):
    """Record every HTTPS round-trip, including failed ones, on a TraceCollector."""

    def __init__(self, collector: TraceCollector) -> None:
        super().__init__()
        self._collector = collector

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        description = f"{request.method} {request.url}"
        body = (request.kwargs or {}).get("json")
        if body is not None:
            description = f"{description} {json.dumps(body, sort_keys=True)}"

        async with self._collector.span(TraceTarget.https, description) as span:
            response = await next(request)
            chain_response = response[1]
            span.status = chain_response.status
            try:
                span.response = chain_response.json()
            except ValueError:
                span.response = chain_response.body
            return response


class EndOfLineChainMiddleware:
    def __init__(
        self,
        request_func: RequestFunc,
        logger: logging.Logger,
    ) -> None:
        super().__init__()
        self._request_func = request_func
        self._logger = logger

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:

        self._logger.debug(
            f"Making request: {request.method} {request.url} {request.headers} {request.kwargs}"
        )

        try:
            response: ClientResponse = await self._request_func(
                request.method.lower(),
                request.url,
                headers=request.headers,
                trace_request_ctx={
                    **(request.trace_request_ctx or {}),
                },
                **(request.kwargs or {}),
            )

            chain_response = await ChainResponse.from_aiohttp_response(response)
        except (ClientError, asyncio.TimeoutError) as e:
            raise UnreachableError(
                f"{request.method} {request.url} failed: {type(e).__name__}: {e}"
            ) from e

        response.release()
        return response, chain_response


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        logger: logging.Logger,
        attempt_max: int = 3,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request
        self._logger = logger

        self._chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            self._logger.debug(
                f"Attempt {current_attempt+1} out of {self._attempt_max}: {chain_request.method} {chain_request.url}"
            )

            current_attempt += 1

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self._chain_response = chain_response
            self.client_response = client_response

            if new_request is None or current_attempt >= self._attempt_max:
                return client_response, chain_response

            chain_request = new_request

    def __await__(self) -> Generator[Any, None, Tuple[ClientResponse, ChainResponse]]:
        return self.__aenter__().__await__()

    async def __aenter__(self) -> Tuple[ClientResponse, ChainResponse]:
        return await self._do_request()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self.client_response is not None and not self.client_response.closed:
            self.client_response.close()


class ChainMiddlewareClient:
    """
    aiohttp ClientSession wrapper that runs every request through a middleware chain.

    When no session is given the client owns one and closes it on exit. A session
    passed in by the caller is left open. `verify_ssl=False` turns certificate
    verification off per request, so a shared session stays untouched.
    """

    def __init__(
        self,
        client_session: ClientSession | None = None,
        logger: logging.Logger | None = None,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        timeout: float | None = None,
        verify_ssl: bool = True,
        attempt_max: int = 1,
    ) -> None:
        if client_session is not None:
            client = client_session
            closed = None
        else:
            client = ClientSession()
            closed = False

        self._middleware = middleware

        self._client = client
        self._closed = closed

        self._logger: logging.Logger = logger or logging.getLogger(__name__)
        self._timeout = ClientTimeout(total=timeout) if timeout is not None else None
        self._verify_ssl = verify_ssl
        self._attempt_max = attempt_max

    @property
    def verify_ssl(self) -> bool:
        return self._verify_ssl

    def request(
        self, method: str, url: StrOrURL, **kwargs: Any
    ) -> ChainMiddlewareContext:
        return self._make_request(method, url, **kwargs)

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(hdrs.METH_GET, url, **kwargs)

    async def close(self) -> None:
        if self._closed is None:
            return
        await self._client.close()
        self._closed = True

    def _make_request(
        self,
        method: str,
        url: StrOrURL,
        **kwargs: Any,
    ) -> ChainMiddlewareContext:
        if self._timeout is not None:
            kwargs.setdefault("timeout", self._timeout)
        if not self._verify_ssl:
            kwargs["ssl"] = False

        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            trace_request_ctx=kwargs.pop("trace_request_ctx", None),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request,
            logger=self._logger,
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        full_middleware_chain = reversed(self._middleware or [])

        for mw in full_middleware_chain:
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            logger=self._logger,
            attempt_max=self._attempt_max,
        )

    async def __aenter__(self) -> "ChainMiddlewareClient":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __del__(self) -> None:
        if getattr(self, "_closed", None) is None:
            # caller owned session, or __init__ raised an exception
            return

        if not self._closed:
            self._logger.warning("Paymail chain client was not closed")


def build_client(
    client_session: ClientSession | None,
    collector: TraceCollector,
    user_agent: str,
    timeout: float,
    retry_count: int,
    verify_ssl: bool = True,
) -> ChainMiddlewareClient:
    """
    Build the chain client a resolution session uses.

    Tracing sits innermost so every attempt, retries included, is its own
    trace entry.
    """
    return ChainMiddlewareClient(
        client_session=client_session,
        logger=logger,
        middleware=[
            UserAgentMiddleware(user_agent),
            RetryMiddleware(retry_count),
            TracingMiddleware(collector),
        ],
        timeout=timeout,
        verify_ssl=verify_ssl,
        attempt_max=retry_count + 1,
    )
