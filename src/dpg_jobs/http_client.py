"""
Shared HTTP client for the external services the job service calls.

All requests go through ``ServiceClient.send`` so that transport failures
and non-success responses surface uniformly as ``RequestError`` and every
call is logged with its elapsed time.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

import httpx

from .errors import RequestError

logger = logging.getLogger(__name__)

USER_AGENT = "DPG_Jobs"
SUCCESS_CODES = (200, 201)


def _transport_error(url: str, exc: httpx.HTTPError) -> RequestError:
    if isinstance(exc, httpx.TimeoutException):
        return RequestError(408, f"{url} timed out")
    if isinstance(exc, httpx.ConnectError):
        return RequestError(503, f"{url} refused connection")
    return RequestError(400, str(exc))


class ServiceClient:
    """
    Thin wrapper around ``httpx.Client``.

    Args:
        timeout: Per-request timeout in seconds
        transport: Optional transport (tests pass ``httpx.MockTransport``)
    """

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )

    def close(self) -> None:
        self._client.close()

    def get(self, url: str, params: Optional[Dict[str, Any]] = None) -> bytes:
        return self.send("GET", url, params=params)

    def put(self, url: str) -> bytes:
        return self.send("PUT", url)

    def post_json(
        self,
        url: str,
        payload: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> bytes:
        return self.send("POST", url, json=payload, headers=headers)

    def send(self, method: str, url: str, **kwargs: Any) -> bytes:
        """
        Issue a request and return the response body.

        Raises:
            RequestError: 408 on timeout, 503 when the connection is refused,
                400 for other transport failures, or the response status and
                body for anything other than 200/201
        """
        logger.info(f"{method} request: {url}")
        start = time.monotonic()
        try:
            response = self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise self._failed(method, url, start, _transport_error(url, exc)) from exc

        if response.status_code not in SUCCESS_CODES:
            raise self._failed(method, url, start, RequestError(response.status_code, response.text))

        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.info(f"Successful response from {method} {url}. Elapsed Time: {elapsed_ms} (ms)")
        return response.content

    def download(self, url: str, dest: Path, params: Optional[Dict[str, Any]] = None) -> int:
        """
        Stream a response body into ``dest``.

        Returns:
            Number of bytes written
        """
        logger.info(f"Download {url} to {dest}")
        start = time.monotonic()
        try:
            with self._client.stream("GET", url, params=params) as response:
                if response.status_code not in SUCCESS_CODES:
                    response.read()
                    raise self._failed("GET", url, start, RequestError(response.status_code, response.text))
                written = 0
                with dest.open("wb") as handle:
                    for chunk in response.iter_bytes():
                        handle.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as exc:
            raise self._failed("GET", url, start, _transport_error(url, exc)) from exc
        return written

    def _failed(self, method: str, url: str, start: float, error: RequestError) -> RequestError:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"Failed response from {method} {url} - {error.status_code}:{error.message}. "
            f"Elapsed Time: {elapsed_ms} (ms)"
        )
        return error
