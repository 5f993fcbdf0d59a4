"""
Middleware chain for outbound OAuth requests.

A request passes through each middleware in order before reaching the end of the
line, which performs the HTTP call and reads the body. Any middleware may answer with
a replacement request, in which case the context sends it again. The context caps the
number of attempts, so a misbehaving server can never cause an unbounded loop.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
from time import time
from types import TracebackType
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Sequence,
    Tuple,
)
import logging
from aiohttp import web, ClientResponse, ClientSession, hdrs
from aiohttp.typedefs import StrOrURL
from multidict import CIMultiDictProxy
from jwcrypto import jwk

from earth.ma.portal.app.metrics import MetricsClient
from earth.ma.portal.atproto.jwt import create_dpop_proof

RequestFunc = Callable[..., Awaitable[ClientResponse]]

logger = logging.getLogger(__name__)

DPOP_NONCE_HEADER = "DPoP-Nonce"


class ChainAttemptsExceeded(Exception):
    pass


@dataclass
class ChainRequest:
    method: str
    url: StrOrURL
    headers: dict[str, Any] | None = None
    kwargs: dict[str, Any] | None = None
    attempt: int = 0
    dpop_nonce: str | None = None

    @staticmethod
    def from_chain_request(request: "ChainRequest") -> "ChainRequest":
        """Copy a request for another attempt. Headers are copied, not shared."""
        return ChainRequest(
            method=request.method,
            url=request.url,
            headers=dict(request.headers or {}),
            kwargs=request.kwargs,
            attempt=request.attempt + 1,
            dpop_nonce=request.dpop_nonce,
        )


@dataclass
class ChainResponse:
    status: int
    headers: CIMultiDictProxy[str]
    body: str | bytes | dict[str, Any] | None = None

    @staticmethod
    async def from_aiohttp_response(response: ClientResponse) -> "ChainResponse":
        status = response.status
        headers = response.headers

        content_type = response.headers.get(hdrs.CONTENT_TYPE, "")

        if content_type.startswith("application/json"):
            try:
                body = await response.json()
            except ValueError:
                body = await response.text()
            return ChainResponse(status=status, headers=headers, body=body)
        elif content_type.startswith("text/"):
            return ChainResponse(
                status=status, headers=headers, body=await response.text()
            )
        else:
            return ChainResponse(
                status=status, headers=headers, body=await response.read()
            )

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def body_matches_kv(self, key: str, value: Any) -> bool:
        if self.body is None:
            return False

        return (
            isinstance(self.body, dict) and key in self.body and self.body[key] == value
        )

    def body_text(self) -> str:
        if self.body is None:
            return ""
        if isinstance(self.body, dict):
            return json.dumps(self.body)
        if isinstance(self.body, bytes):
            return self.body.decode("utf-8", errors="replace")
        return self.body

    def to_web_response(self) -> web.Response:
        rargs = {
            "status": self.status,
            "headers": {"Content-Type": self.headers.get(hdrs.CONTENT_TYPE, "")},
        }
        if isinstance(self.body, str):
            rargs["text"] = self.body
        elif isinstance(self.body, bytes):
            rargs["body"] = self.body
        elif isinstance(self.body, dict):
            rargs["body"] = json.dumps(self.body)
        return web.Response(**rargs)


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


class GenerateDpopMiddleware(RequestMiddlewareBase):
    """
    Attaches a fresh DPoP proof to every attempt.

    When the server answers 400 with a ``DPoP-Nonce`` header on the first attempt, a
    replacement request carrying that nonce is returned so the context retries once.
    The retry is never repeated, whatever the second response is.
    """

    def __init__(
        self,
        dpop_key: jwk.JWK,
        dpop_jwk: dict[str, Any],
        access_token: Optional[str] = None,
    ) -> None:
        super().__init__()
        self._dpop_key = dpop_key
        self._dpop_jwk = dpop_jwk
        self._access_token = access_token

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        proof = create_dpop_proof(
            self._dpop_key,
            self._dpop_jwk,
            request.method,
            str(request.url),
            nonce=request.dpop_nonce,
            access_token=self._access_token,
        )

        if request.headers is None:
            request.headers = {}
        request.headers["DPoP"] = proof

        response = await next(request)
        client_response = response[0]
        chain_response = response[1]
        new_request = None
        if len(response) == 3:
            new_request = response[2]

        nonce = chain_response.headers.get(DPOP_NONCE_HEADER)
        if chain_response.status == 400 and nonce and request.attempt == 0:
            logger.info("Retrying %s with server-provided DPoP nonce", request.url)
            new_request = ChainRequest.from_chain_request(request)
            new_request.dpop_nonce = nonce

        if new_request is None:
            return client_response, chain_response
        return client_response, chain_response, new_request


class MetricsMiddleware(RequestMiddlewareBase):
    """Times each outbound attempt and counts them by status."""

    def __init__(self, metrics_client: MetricsClient, name: str) -> None:
        super().__init__()
        self._metrics_client = metrics_client
        self._name = name

    async def handle(
        self, next: NextChainCallbackType, request: ChainRequest
    ) -> NextChainResponseCallbackType:
        start_time = time()
        status = 0
        try:
            response = await next(request)
            status = response[1].status
            return response
        finally:
            self._metrics_client.timer(
                "client.request.time",
                time() - start_time,
                tag_dict={"name": self._name, "method": request.method},
            )
            self._metrics_client.increment(
                "client.request.count",
                1,
                tag_dict={"name": self._name, "status": status},
            )


class EndOfLineChainMiddleware:
    def __init__(self, request_func: RequestFunc) -> None:
        super().__init__()
        self._request_func = request_func

    async def handle(self, request: ChainRequest) -> NextChainResponseCallbackType:
        logger.debug(f"Making request: {request.method} {request.url}")

        response: ClientResponse = await self._request_func(
            request.method.lower(),
            request.url,
            headers=request.headers,
            **(request.kwargs or {}),
        )

        try:
            return response, await ChainResponse.from_aiohttp_response(response)
        finally:
            response.release()


class ChainMiddlewareContext:
    def __init__(
        self,
        chain_callback: NextChainCallbackType,
        chain_request: ChainRequest,
        attempt_max: int = 2,
    ) -> None:
        self._chain_callback = chain_callback
        self._chain_request = chain_request

        self.chain_response: ChainResponse | None = None
        self.client_response: ClientResponse | None = None

        self._attempt_max = attempt_max

    async def _do_request(self) -> Tuple[ClientResponse, ChainResponse]:
        current_attempt = 0

        chain_request = self._chain_request

        while True:
            current_attempt += 1

            if current_attempt > self._attempt_max:
                raise ChainAttemptsExceeded(
                    f"Gave up on {chain_request.url} after {self._attempt_max} attempts"
                )

            logger.debug(
                "Attempt %d out of %d for %s",
                current_attempt,
                self._attempt_max,
                chain_request.url,
            )

            response = await self._chain_callback(chain_request)
            client_response = response[0]
            chain_response = response[1]
            new_request = None
            if len(response) == 3:
                new_request = response[2]

            self.chain_response = chain_response
            self.client_response = client_response

            if new_request is None:
                return client_response, chain_response

            if current_attempt >= self._attempt_max:
                # Out of attempts: the last response is the answer.
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
    def __init__(
        self,
        client_session: ClientSession,
        middleware: Sequence[RequestMiddlewareBase] | None = None,
        attempt_max: int = 2,
    ) -> None:
        self._client = client_session
        self._middleware = middleware
        self._attempt_max = attempt_max

    def request(self, method: str, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=method, url=url, **kwargs)

    def get(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_GET, url=url, **kwargs)

    def post(self, url: StrOrURL, **kwargs: Any) -> ChainMiddlewareContext:
        return self._make_request(method=hdrs.METH_POST, url=url, **kwargs)

    def _make_request(
        self, method: str, url: StrOrURL, **kwargs: Any
    ) -> ChainMiddlewareContext:
        chain_request = ChainRequest(
            method=method,
            url=url,
            headers=kwargs.pop("headers", {}),
            kwargs=kwargs,
        )

        end_of_line_middleware = EndOfLineChainMiddleware(
            request_func=self._client.request
        )

        chain_callback: NextChainCallbackType = end_of_line_middleware.handle

        for mw in reversed(self._middleware or []):
            chain_callback = mw.handle_gen(chain_callback)

        return ChainMiddlewareContext(
            chain_callback=chain_callback,
            chain_request=chain_request,
            attempt_max=self._attempt_max,
        )
