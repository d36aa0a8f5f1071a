"""Single HTTP exchange: request formatting and response/error decoding.

The Transport performs exactly one exchange per call. Retrying and waiting
for asynchronous completion are layered on top by RetryPolicy and
AsyncRequestTracker.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .config import Config
from .context import RequestContext
from .errors import DecodeError, OperationTimeoutError, RequestError, TransportError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"
RATE_LIMIT_RESET_HEADER = "ratelimit-reset"
CONTENT_TYPE = "application/json"

# Bound on how much of an unparseable error body ends up in the description
MAX_ERROR_BODY_CHARS = 500


@dataclass(frozen=True)
class Operation:
    """One REST call.

    Attributes:
        method: HTTP method.
        path: Path relative to the API base URL, starting with "/".
        body: JSON-serializable body, or None for no body.
        skip_wait: Do not wait for async completion even in synchronous mode.
        expects_output: Decode the 2xx body as JSON and return it.
    """

    method: str
    path: str
    body: Any = None
    skip_wait: bool = False
    expects_output: bool = False

    @property
    def is_read(self) -> bool:
        return self.method.upper() == "GET"

    @property
    def is_mutation(self) -> bool:
        return not self.is_read


@dataclass(frozen=True)
class RawResponse:
    status_code: int
    request_id: str
    content: bytes


class Transport:
    """Formats and sends one REST call, normalizing error responses."""

    def __init__(self, config: Config, http_client: httpx.AsyncClient) -> None:
        self._config = config
        self._http = http_client

    def headers(self) -> dict[str, str]:
        """Headers for every request; configured extra headers win by key."""
        headers = {
            "User-Agent": self._config.user_agent,
            "X-Auth-UserID": self._config.user_id,
            "X-Auth-Token": self._config.api_token,
            "Content-Type": CONTENT_TYPE,
        }
        headers.update(self._config.http_headers)
        return headers

    def build_request(self, op: Operation) -> httpx.Request:
        content = None if op.body is None else json.dumps(op.body).encode("utf-8")
        return self._http.build_request(
            op.method.upper(),
            self._config.base_url + op.path,
            content=content,
            headers=self.headers(),
        )

    async def send(self, ctx: RequestContext, op: Operation) -> RawResponse:
        """Send `op` once.

        Raises:
            OperationCancelledError: Context already cancelled.
            OperationTimeoutError: Context deadline elapsed before or during the exchange.
            TransportError: Network-level failure.
            RequestError: Response status >= 300.
        """
        ctx.check()
        request = self.build_request(op)
        logger.debug("%s request sent to URL: %s", op.method, request.url)

        try:
            response = await asyncio.wait_for(self._http.send(request), timeout=ctx.remaining())
        except TimeoutError as e:
            # The caller's deadline elapsed before the network timeout did
            logger.warning(
                "Context deadline exceeded during request",
                extra={"method": op.method, "path": op.path},
            )
            raise OperationTimeoutError(
                f"context deadline exceeded during {op.method} {op.path}", subject=op.path
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(
                f"{op.method} {op.path} timed out: {e}", method=op.method, is_timeout=True
            ) from e
        except httpx.TransportError as e:
            raise TransportError(f"{op.method} {op.path} failed: {e}", method=op.method) from e

        try:
            content = response.content
        finally:
            await response.aclose()

        request_id = response.headers.get(REQUEST_ID_HEADER, "")
        ctx.last_request_id = request_id
        logger.debug(
            "Status code: %s. Request UUID: %s.",
            response.status_code,
            request_id,
            extra={"method": op.method, "path": op.path},
        )

        if response.status_code >= 300:
            raise self._request_error(response.status_code, content, request_id, response.headers)

        return RawResponse(status_code=response.status_code, request_id=request_id, content=content)

    @staticmethod
    def _request_error(
        status_code: int, content: bytes, request_id: str, headers: httpx.Headers
    ) -> RequestError:
        title = ""
        description = ""
        try:
            envelope = json.loads(content) if content else {}
        except ValueError:
            envelope = {}
            description = content.decode("utf-8", errors="replace")[:MAX_ERROR_BODY_CHARS]
        if isinstance(envelope, dict):
            title = str(envelope.get("title") or "")
            description = str(envelope.get("description") or description)
        return RequestError(
            status_code=status_code,
            title=title,
            description=description,
            request_id=request_id,
            rate_limit_reset=headers.get(RATE_LIMIT_RESET_HEADER),
        )

    @staticmethod
    def decode(op: Operation, raw: RawResponse) -> Any:
        """Decode a 2xx body; bodies of calls without expected output are discarded."""
        if not op.expects_output:
            return None
        try:
            return json.loads(raw.content)
        except ValueError as e:
            logger.error(
                "Error while decoding JSON response",
                extra={"path": op.path, "request_id": raw.request_id},
            )
            raise DecodeError(
                f"invalid JSON in response to {op.method} {op.path}", raw.request_id
            ) from e
