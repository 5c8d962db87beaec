"""API client for the DECONFIG branch-versioned file store."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
from collections.abc import AsyncIterator
from typing import Any, Callable, Optional, Protocol

import httpx

from .auth import build_auth_headers
from .config import (
    DEFAULT_FROM_CTIME,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TIMEOUT,
    config,
)
from .exceptions import (
    DeconfigAuthenticationError,
    DeconfigConflictError,
    DeconfigConfigError,
    DeconfigError,
    DeconfigNotFoundError,
    DeconfigPermissionError,
    DeconfigProtocolError,
    DeconfigRateLimitError,
    DeconfigRemoteError,
    DeconfigTransportError,
)
from .models import ListFilesResult, WatchEvent, WriteAck

logger = logging.getLogger(__name__)

HeadersProvider = Callable[[], dict[str, str]]


class RemoteStore(Protocol):
    """The five remote operations the sync engines consume."""

    async def list_files(
        self, branch: str, prefix: Optional[str] = None
    ) -> ListFilesResult: ...

    async def read_file(self, branch: str, path: str) -> bytes: ...

    async def write_file(
        self,
        branch: str,
        path: str,
        content: bytes,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WriteAck: ...

    async def delete_file(self, branch: str, path: str) -> bool: ...

    def subscribe(
        self,
        branch: str,
        path_filter: Optional[str] = None,
        from_ctime: Optional[int] = None,
    ) -> AsyncIterator[WatchEvent]: ...


def _error_from_message(message: str) -> DeconfigRemoteError:
    """Classify a remote error message into the exception taxonomy."""
    lowered = message.lower()
    if "session not found" in lowered or "session expired" in lowered:
        return DeconfigAuthenticationError(message)
    if "unauthorized" in lowered:
        return DeconfigAuthenticationError(message)
    if "not found" in lowered:
        return DeconfigNotFoundError(message)
    return DeconfigRemoteError(message)


class DeconfigClient:
    """Async client for the DECONFIG tools and watch endpoint of a workspace."""

    def __init__(
        self,
        workspace: Optional[str] = None,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        headers_provider: Optional[HeadersProvider] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the DECONFIG client.

        Args:
            workspace: Workspace slug (uses config if not provided)
            api_key: Optional API key used by the default header provider
            api_url: Optional API base URL (uses config if not provided)
            headers_provider: Callable returning auth headers; may raise
                DeconfigAuthenticationError
            max_retries: Maximum number of retry attempts (default: 3)
            retry_delay: Initial delay between retries in seconds (default: 1.0)
            timeout: Request timeout in seconds (default: 30.0)
            transport: Optional httpx transport (used by tests)
        """
        self.workspace = (workspace or config.workspace or "").strip("/")
        self.api_url = (api_url or config.api_url).rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self._transport = transport

        if not self.workspace:
            raise DeconfigConfigError(
                "Workspace not configured. Pass --workspace or set DECONFIG_WORKSPACE."
            )

        self._headers_provider: HeadersProvider = headers_provider or (
            lambda: build_auth_headers(api_key)
        )
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return f"{self.api_url}/{self.workspace}"

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx client.

        Raises:
            DeconfigAuthenticationError: If the header provider has no credentials
        """
        if self._client is None or self._client.is_closed:
            headers = self._headers_provider()
            self._client = httpx.AsyncClient(
                headers=headers,
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the client and release connections."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> DeconfigClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================
    # Request handling
    # =========================

    def _calculate_retry_delay(self, attempt: int) -> float:
        """Exponential backoff with +/- 25% jitter."""
        base_delay = self.retry_delay * (2**attempt)
        jitter = base_delay * 0.25 * (2 * random.random() - 1)
        return base_delay + jitter

    def _handle_http_error(
        self, e: httpx.HTTPStatusError, attempt: int
    ) -> tuple[DeconfigError, bool]:
        """Map an HTTP status error and decide whether to retry.

        Returns:
            Tuple of (exception to raise, should_retry)
        """
        status_code = e.response.status_code
        detail = self._extract_error_detail(e.response)

        if status_code == 401:
            return (
                DeconfigAuthenticationError(
                    detail or "Invalid API key or unauthorized access"
                ),
                False,
            )
        elif status_code == 403:
            return (
                DeconfigPermissionError(
                    detail or "Access forbidden - check your permissions"
                ),
                False,
            )
        elif status_code == 404:
            return DeconfigNotFoundError(detail or "Resource not found"), False
        elif status_code == 429:
            error = DeconfigRateLimitError(
                "Rate limit exceeded - please try again later"
            )
            return error, attempt < self.max_retries
        elif 500 <= status_code < 600:
            message = f"Server error {status_code}"
            if detail:
                message = f"{message}: {detail}"
            return (
                DeconfigTransportError(message, status_code=status_code),
                attempt < self.max_retries,
            )

        message = f"API request failed with status {status_code}"
        if detail:
            message = f"{message}: {detail}"
        return DeconfigRemoteError(message, code=f"HTTP_{status_code}"), False

    @staticmethod
    def _extract_error_detail(response: httpx.Response) -> Optional[str]:
        try:
            if response.content:
                error_data = response.json()
                if isinstance(error_data, dict):
                    msg = (
                        error_data.get("message")
                        or error_data.get("error")
                        or error_data.get("detail")
                    )
                    if msg:
                        return str(msg)
        except ValueError:
            # Not JSON, fall back to the status-based message
            pass
        return None

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        """Make an API request with retry logic.

        Args:
            method: HTTP method
            endpoint: Path relative to the workspace base URL
            **kwargs: Additional arguments passed to httpx

        Returns:
            Decoded JSON body (empty dict for empty responses)
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        client = self._get_client()
        last_exception: DeconfigError | None = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await client.request(method, url, **kwargs)
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                error, should_retry = self._handle_http_error(e, attempt)
                last_exception = error
                if should_retry:
                    retry_after = e.response.headers.get("Retry-After")
                    if (
                        isinstance(error, DeconfigRateLimitError)
                        and retry_after
                        and retry_after.isdigit()
                    ):
                        delay = float(retry_after)
                    else:
                        delay = self._calculate_retry_delay(attempt)
                    logger.debug(
                        f"{method} {url} failed ({error}), retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise error from e
            except httpx.RequestError as e:
                last_exception = DeconfigTransportError(f"Network error: {e}")
                if attempt < self.max_retries:
                    delay = self._calculate_retry_delay(attempt)
                    logger.debug(
                        f"{method} {url} network error, retrying in {delay:.1f}s"
                    )
                    await asyncio.sleep(delay)
                    continue
                raise last_exception from e

            return self._decode_json(response)

        if last_exception:
            raise last_exception
        raise DeconfigTransportError("Request failed after all retry attempts")

    @staticmethod
    def _decode_json(response: httpx.Response) -> Any:
        if not response.content:
            return {}

        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type:
            # An HTML page here is almost always a login redirect
            if "text/html" in content_type:
                raise DeconfigAuthenticationError(
                    "Invalid API key - server returned HTML instead of JSON"
                )
            raise DeconfigProtocolError(f"Unexpected response type: {content_type}")

        try:
            return response.json()
        except ValueError as e:
            raise DeconfigProtocolError("Invalid JSON response from server") from e

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Call a DECONFIG tool and return its structured result.

        Raises:
            DeconfigRemoteError: If the tool reports an error
        """
        payload = {k: v for k, v in arguments.items() if v is not None}
        data = await self._request("POST", f"tools/call/{name}", json=payload)

        if not isinstance(data, dict):
            raise DeconfigProtocolError(f"{name} returned {type(data).__name__}")

        if data.get("isError"):
            content = data.get("content")
            message = f"{name} failed"
            if isinstance(content, list) and content and isinstance(content[0], dict):
                message = content[0].get("text") or message
            raise _error_from_message(message)

        result = data.get("structuredContent", data)
        if not isinstance(result, dict):
            raise DeconfigProtocolError(f"{name} returned no structured content")
        return result

    # =========================
    # File operations
    # =========================

    async def list_files(
        self, branch: str, prefix: Optional[str] = None
    ) -> ListFilesResult:
        """List files in a branch, optionally under a path prefix."""
        data = await self.call_tool("LIST_FILES", {"branch": branch, "prefix": prefix})
        return ListFilesResult.from_api(data)

    async def read_file(self, branch: str, path: str) -> bytes:
        """Read a file's content from a branch."""
        data = await self.call_tool("READ_FILE", {"branch": branch, "path": path})
        content = data.get("content")
        if not isinstance(content, str):
            raise DeconfigProtocolError(f"READ_FILE returned no content for {path}")
        try:
            return base64.b64decode(content, validate=True)
        except ValueError as e:
            raise DeconfigProtocolError(f"READ_FILE content is not base64: {e}") from e

    async def write_file(
        self,
        branch: str,
        path: str,
        content: bytes,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WriteAck:
        """Create or overwrite a file in a branch.

        Raises:
            DeconfigConflictError: If the remote reports a write conflict
        """
        data = await self.call_tool(
            "PUT_FILE",
            {
                "branch": branch,
                "path": path,
                "content": base64.b64encode(content).decode("ascii"),
                "metadata": metadata,
            },
        )
        ack = WriteAck(conflict=bool(data.get("conflict", False)))
        if ack.conflict:
            raise DeconfigConflictError(f"Write conflict on {path}")
        return ack

    async def delete_file(self, branch: str, path: str) -> bool:
        """Delete a file from a branch.

        Returns:
            True if a file was deleted
        """
        data = await self.call_tool("DELETE_FILE", {"branch": branch, "path": path})
        return bool(data.get("deleted", False))

    # =========================
    # Watch subscription
    # =========================

    async def subscribe(
        self,
        branch: str,
        path_filter: Optional[str] = None,
        from_ctime: Optional[int] = None,
    ) -> AsyncIterator[WatchEvent]:
        """Open a server-sent event stream of changes on a branch.

        Yields events in the order the server sends them. Closing the
        iterator closes the HTTP stream.

        Raises:
            DeconfigTransportError: On network failure or a dropped stream
            DeconfigProtocolError: On an event that cannot be decoded
        """
        params: dict[str, Any] = {
            "branchName": branch,
            "fromCtime": from_ctime if from_ctime is not None else DEFAULT_FROM_CTIME,
        }
        if path_filter:
            params["pathFilter"] = path_filter

        url = f"{self.base_url}/deconfig/watch"
        client = self._get_client()
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}

        try:
            async with client.stream(
                "GET",
                url,
                params=params,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, read=None),
            ) as response:
                if response.is_error:
                    await response.aread()
                    try:
                        response.raise_for_status()
                    except httpx.HTTPStatusError as e:
                        error, _ = self._handle_http_error(e, self.max_retries)
                        raise error from e

                logger.debug(f"Subscribed to {branch} from ctime {params['fromCtime']}")
                data_lines: list[str] = []
                async for line in response.aiter_lines():
                    if line == "":
                        if data_lines:
                            yield self._parse_event("\n".join(data_lines))
                            data_lines = []
                        continue
                    if line.startswith(":"):
                        continue
                    if line.startswith("data:"):
                        data_lines.append(line[5:].lstrip())
                    # "event:", "id:" and "retry:" fields carry nothing we use
                if data_lines:
                    yield self._parse_event("\n".join(data_lines))
        except httpx.RequestError as e:
            raise DeconfigTransportError(f"Watch stream failed: {e}") from e
        # A watch stream is open-ended, so the server hanging up is an
        # interruption rather than the end of the history.
        raise DeconfigTransportError("Watch stream closed by server")

    @staticmethod
    def _parse_event(raw: str) -> WatchEvent:
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise DeconfigProtocolError(f"Invalid event data: {raw!r}") from e
        return WatchEvent.from_api(data)
