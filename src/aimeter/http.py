from __future__ import annotations

import logging
import re
import time
from typing import Any

import httpx

from aimeter import USER_AGENT
from aimeter.errors import NetworkError, RequestCancelledError, RequestTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT = 30.0
MAX_ERROR_BODY = 200

_TOKEN_REDACT = re.compile(r'(?i)("(?:access_token|refresh_token|id_token)"\s*:\s*")[^"]*(")')


class Deadline:
    """Run-wide time budget shared by every request of a report."""

    def __init__(self, seconds: float | None = None) -> None:
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - time.monotonic()

    @property
    def expired(self) -> bool:
        left = self.remaining()
        return left is not None and left <= 0


class QuotaHTTP:
    """Blocking HTTP session that honours a :class:`Deadline` on every call."""

    def __init__(
        self,
        client: httpx.Client | None = None,
        deadline: Deadline | None = None,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._owns_client = client is None
        self.client = client or httpx.Client()
        self.deadline = deadline or Deadline()
        self.request_timeout = request_timeout

    def __enter__(self) -> QuotaHTTP:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _timeout(self) -> float:
        left = self.deadline.remaining()
        if left is None:
            return self.request_timeout
        if left <= 0:
            raise RequestCancelledError("request cancelled: deadline exceeded")
        return min(left, self.request_timeout)

    def request(self, method: str, url: str, headers: dict[str, str] | None = None, **kwargs: Any) -> httpx.Response:
        merged = {"User-Agent": USER_AGENT}
        merged.update(headers or {})
        timeout = self._timeout()
        give_up_at = time.monotonic() + timeout
        try:
            with self.client.stream(method, url, headers=merged, timeout=httpx.Timeout(timeout), **kwargs) as resp:
                # httpx applies timeout per read; a trickling body is bounded here
                chunks: list[bytes] = []
                for chunk in resp.iter_bytes():
                    chunks.append(chunk)
                    if time.monotonic() > give_up_at:
                        raise httpx.ReadTimeout("response body not received in time", request=resp.request)
                headers = resp.headers.copy()
                headers.pop("content-encoding", None)
                return httpx.Response(
                    resp.status_code,
                    headers=headers,
                    content=b"".join(chunks),
                    request=resp.request,
                )
        except httpx.TimeoutException as exc:
            if self.deadline.expired:
                raise RequestCancelledError(f"request cancelled: deadline exceeded ({exc})") from exc
            raise RequestTimeoutError(f"request timed out: {exc}") from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise NetworkError(f"request failed: {exc}") from exc

    def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", url, **kwargs)


def truncate_body(body: bytes | str, max_len: int = MAX_ERROR_BODY) -> str:
    """Cap *body* at *max_len* bytes without splitting a UTF-8 sequence."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    if len(body) <= max_len:
        return body.decode("utf-8", errors="replace")
    cut = body[:max_len]
    # a multi-byte sequence is at most 4 bytes, so back off at most 3
    for drop in range(4):
        try:
            return cut[: len(cut) - drop].decode("utf-8") + "..."
        except UnicodeDecodeError:
            continue
    return cut.decode("utf-8", errors="replace") + "..."


def redact_tokens(value: str) -> str:
    if not value:
        return value
    return _TOKEN_REDACT.sub(r"\1<redacted>\2", value)


def debug_body(body: bytes | str) -> str:
    return redact_tokens(truncate_body(body))
