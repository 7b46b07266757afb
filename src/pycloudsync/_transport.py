"""HTTP transport with bounded timeouts and error classification."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable, Mapping
from typing import Protocol
from urllib.parse import urlencode

import aiohttp

from pycloudsync._constants import AUTH_REJECTED_STATUSES, USER_AGENT
from pycloudsync._redact import redact_for_log
from pycloudsync.exceptions import ErrorKind, TransportError
from pycloudsync.models.http import ApiRequest, ApiResponse, RawResponse
from pycloudsync.session import Session

_logger = logging.getLogger(__name__)

StatusClassifier = Callable[[int], "ErrorKind | None"]


class HttpTransport(Protocol):
    """Structural HTTP capability consumed by :class:`TransportClient`.

    Implementations raise on network failure and return any HTTP status
    as a :class:`RawResponse`.  Test doubles only need this one method.
    """

    async def perform_request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: str | None,
        timeout: float,
    ) -> RawResponse:
        ...


class AiohttpTransport:
    """Production :class:`HttpTransport` backed by an ``aiohttp`` session."""

    def __init__(self, http_session: aiohttp.ClientSession) -> None:
        self._http = http_session

    async def perform_request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        body: str | None,
        timeout: float,
    ) -> RawResponse:
        async with self._http.request(
            method,
            url,
            headers=dict(headers),
            data=body,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            raw = await resp.read()
            return RawResponse(status=resp.status, body=raw.decode("utf-8", errors="replace"))


def classify_status(status: int) -> ErrorKind | None:
    """Default status mapping; ``None`` means success."""
    if 200 <= status < 300:
        return None
    if status in AUTH_REJECTED_STATUSES:
        return ErrorKind.AUTH_REJECTED
    if status == 408:
        return ErrorKind.TIMEOUT
    if status == 429:
        # Throttling is the server asking for backoff.
        return ErrorKind.HTTP_SERVER_ERROR
    if 400 <= status < 500:
        return ErrorKind.HTTP_CLIENT_ERROR
    if 500 <= status < 600:
        return ErrorKind.HTTP_SERVER_ERROR
    return ErrorKind.MALFORMED_RESPONSE


def encode_body(request: ApiRequest) -> tuple[dict[str, str], str | None]:
    """Serialise a request body and return the headers it implies."""
    if request.json_body is not None and request.form is not None:
        raise ValueError("ApiRequest may carry json_body or form, not both")
    if request.form is not None:
        return {"content-type": "application/x-www-form-urlencoded"}, urlencode(request.form)
    if request.json_body is not None:
        return {"content-type": "application/json; charset=UTF-8"}, json.dumps(
            request.json_body, separators=(",", ":")
        )
    return {}, None


class TransportClient:
    """Issues single HTTP attempts.  No retries happen here.

    Every attempt is wrapped in :func:`asyncio.wait_for`, so a stalled
    connection is cancelled after *timeout* seconds and surfaces as
    :attr:`ErrorKind.TIMEOUT`.
    """

    def __init__(
        self,
        http: HttpTransport,
        *,
        timeout: float,
        classifier: StatusClassifier = classify_status,
    ) -> None:
        self._http = http
        self._timeout = timeout
        self._classify = classifier

    @property
    def timeout(self) -> float:
        return self._timeout

    async def send(self, request: ApiRequest, session: Session | None = None) -> ApiResponse:
        """Send *request*, authenticated with *session* when given."""
        body_headers, body = encode_body(request)
        headers: dict[str, str] = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
            **body_headers,
            **request.headers,
        }
        if session is not None:
            headers["authorization"] = session.authorization

        url = request.url
        _logger.debug("%s %s headers=%s", request.method.value, url, redact_for_log(headers))

        try:
            raw = await asyncio.wait_for(
                self._http.perform_request(request.method.value, url, headers, body, self._timeout),
                self._timeout,
            )
        except TimeoutError as exc:
            raise TransportError(
                f"{request.method.value} {url} timed out after {self._timeout:.1f}s",
                kind=ErrorKind.TIMEOUT,
                url=url,
            ) from exc
        except (aiohttp.ClientError, OSError) as exc:
            raise TransportError(
                f"{request.method.value} {url} failed: {exc}",
                kind=ErrorKind.CONNECTION_FAILURE,
                url=url,
            ) from exc

        kind = self._classify(raw.status)
        if kind is not None:
            raise TransportError(
                f"HTTP {raw.status} from {url}: {raw.body[:200]}",
                kind=kind,
                status_code=raw.status,
                url=url,
            )

        if not request.expect_json or not raw.body.strip():
            return ApiResponse(status_code=raw.status, text=raw.body, data=None)

        try:
            data = json.loads(raw.body)
        except json.JSONDecodeError as exc:
            raise TransportError(
                f"Invalid JSON from {url}: {raw.body[:200]}",
                kind=ErrorKind.MALFORMED_RESPONSE,
                status_code=raw.status,
                url=url,
            ) from exc
        _logger.debug("HTTP %d from %s data=%s", raw.status, url, redact_for_log(data))
        return ApiResponse(status_code=raw.status, text=raw.body, data=data)
