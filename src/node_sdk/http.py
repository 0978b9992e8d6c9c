"""
HTTP Client - Timeout-bounded HTTP requests for nodes.

All HTTP calls MUST use timeouts. The client owns a requests.Session
which the owning node closes in ``teardown``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Union

import requests
from requests.exceptions import RequestException, Timeout

from flowforge.errors import NodeTimeoutError

from .basenode import NodeApiError


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class HttpResponse:
    """
    Wrapper for HTTP response with convenient accessors.
    """

    def __init__(self, response: requests.Response):
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self._response.headers)

    @property
    def text(self) -> str:
        return self._response.text

    @property
    def ok(self) -> bool:
        """True if status code is 2xx."""
        return self._response.ok

    def body(self) -> Any:
        """JSON body when the response is JSON, text otherwise."""
        content_type = self._response.headers.get("Content-Type", "")
        if "json" in content_type:
            try:
                return self._response.json()
            except ValueError:
                return self.text
        return self.text

    def raise_for_status(self, node_id: Optional[str] = None) -> None:
        """Raise NodeApiError if status code indicates error."""
        if not self.ok:
            raise NodeApiError(
                f"HTTP {self.status_code}: {self._response.reason}",
                node_id=node_id,
                status_code=self.status_code,
                response_body=self.text[:1000] if self.text else None,
            )


class HttpClient:
    """
    HTTP client with timeout enforcement.

    Usage:
        client = HttpClient(timeout=10)
        try:
            response = client.request("GET", "https://api.example.com/users")
        finally:
            client.close()
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        default_headers: Optional[Dict[str, str]] = None,
        session: Optional[requests.Session] = None,
    ):
        self.timeout = timeout
        self.headers: Dict[str, str] = dict(default_headers or {})
        self._session = session or requests.Session()

    def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Any] = None,
        data: Optional[Union[Dict[str, Any], str, bytes]] = None,
        headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        """
        Make HTTP request with timeout enforcement.

        Raises:
            NodeTimeoutError: If request times out
            NodeApiError: If the request cannot be sent
        """
        request_timeout = timeout or self.timeout
        try:
            response = self._session.request(
                method=method.upper(),
                url=url,
                params=params,
                json=json,
                data=data,
                headers={**self.headers, **(headers or {})},
                timeout=request_timeout,
            )
        except Timeout as e:
            raise NodeTimeoutError(f"Request to {url} timed out after {request_timeout}s") from e
        except RequestException as e:
            raise NodeApiError(f"Request failed: {e}") from e
        logger.debug("HTTP %s %s -> %s", method.upper(), url, response.status_code)
        return HttpResponse(response)

    def close(self) -> None:
        """Close the underlying session."""
        self._session.close()


__all__ = ["DEFAULT_TIMEOUT", "HttpClient", "HttpResponse"]
