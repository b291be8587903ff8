"""Web service client for a learning-platform site.

This module provides a lightweight async HTTP client for the site's REST
web service endpoint.  It handles:

- Token injection (``wstoken``) and function routing (``wsfunction``)
- Encoding nested parameters in the bracketed form the endpoint expects
- Classifying every failure as either a :class:`TransportError`
  (the call never completed) or a :class:`ServerError` (the server
  answered and rejected the call)

Usage::

    async with SiteClient(url, token) as client:
        info = await client.call("core_webservice_get_site_info")
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class RemoteCallError(Exception):
    """Base class for failures of a remote web service call.

    Attributes:
        function: The web service function that was called, if known.
        message: A human-readable description of the failure.
    """

    def __init__(self, message: str, function: str | None = None) -> None:
        self.message = message
        self.function = function
        super().__init__(message)


class TransportError(RemoteCallError):
    """Raised when a call could not reach or complete against the server.

    Always retryable: writes that fail this way are queued for a later sync.
    """


class ServerError(RemoteCallError):
    """Raised when the server completed the call but rejected it.

    Never retried automatically; the message is the server-provided reason.

    Attributes:
        errorcode: The server's machine-readable error code, if any.
        details: The raw error payload returned by the server.
    """

    def __init__(
        self,
        message: str,
        errorcode: str | None = None,
        function: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.errorcode = errorcode
        self.details = details or {}
        super().__init__(message, function=function)


class RemoteCaller(Protocol):
    """Anything that can perform a web service call for one site."""

    async def call(
        self,
        function: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any: ...

    async def close(self) -> None: ...


def flatten_params(params: Mapping[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested params into ``name[0][field]`` form-field names.

    Booleans become ``0``/``1`` and ``None`` values are dropped.

    >>> flatten_params({"notes": [{"userid": 5, "text": "hi"}]})
    {'notes[0][userid]': 5, 'notes[0][text]': 'hi'}
    """
    flat: dict[str, Any] = {}
    for key, value in params.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_params(value, name))
        elif isinstance(value, Sequence) and not isinstance(value, (str, bytes)):
            flat.update(flatten_params(dict(enumerate(value)), name))
        elif isinstance(value, bool):
            flat[name] = int(value)
        elif value is not None:
            flat[name] = value
    return flat


class SiteClient:
    """Async client for a site's REST web service endpoint.

    Args:
        url: Base URL of the site (trailing slash is stripped).
        token: Web service token for the logged-in user.
        timeout: Default per-call timeout in seconds.
        verify: Whether to verify TLS certificates.
        transport: Optional httpx transport (used by tests).
    """

    REST_PATH = "/webservice/rest/server.php"

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 30.0,
        verify: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url: str = url.rstrip("/")
        self._token: str = token
        self._client: httpx.AsyncClient = httpx.AsyncClient(
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return self._url

    async def call(
        self,
        function: str,
        params: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Call a web service function and return its decoded JSON result.

        Args:
            function: Web service function name (e.g. ``core_notes_create_notes``).
            params: Function arguments; nested dicts/lists are flattened.
            timeout: Per-call timeout overriding the client default.

        Returns:
            The decoded JSON body (dict, list or scalar).

        Raises:
            TransportError: Connection failure, timeout, HTTP error status or
                an unparseable body.
            ServerError: The server returned a structured exception.
        """
        payload: dict[str, Any] = {
            "wstoken": self._token,
            "wsfunction": function,
            "moodlewsrestformat": "json",
            **flatten_params(params or {}),
        }
        extra: dict[str, Any] = {}
        if timeout is not None:
            extra["timeout"] = timeout

        try:
            response = await self._client.post(
                f"{self._url}{self.REST_PATH}",
                data=payload,
                **extra,
            )
        except httpx.TransportError as exc:
            logger.info("Web service %s unreachable: %s", function, exc)
            raise TransportError(f"Cannot connect to site: {exc}", function=function) from exc

        if response.status_code >= 400:
            raise TransportError(
                f"Unexpected HTTP status {response.status_code}",
                function=function,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Invalid response from site", function=function) from exc

        if isinstance(data, dict) and "exception" in data:
            errorcode = data.get("errorcode")
            logger.info("Web service %s rejected (errorcode=%s)", function, errorcode)
            raise ServerError(
                data.get("message") or f"Web service error ({errorcode})",
                errorcode=errorcode,
                function=function,
                details=data,
            )

        return data

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Dispose the underlying ``httpx.AsyncClient``."""
        await self._client.aclose()

    async def __aenter__(self) -> SiteClient:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
