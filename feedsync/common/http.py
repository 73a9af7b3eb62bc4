"""HTTP client with retries and timeouts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any, Callable, TypeVar

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from feedsync.common.constants import USER_AGENT
from feedsync.common.errors import StageError
from feedsync.common.fs import ensure_dir

RETRYABLE_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}
DOWNLOAD_CHUNK_BYTES = 1024 * 128

T = TypeVar("T")


@dataclass(frozen=True)
class TimeoutConfig:
    connect: float = 20.0
    read: float = 120.0


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    multiplier: float = 1.0
    max_wait: float = 30.0


class HttpRequestError(StageError):
    error_code = "HTTP_ERROR"


class RetryableHttpError(HttpRequestError):
    pass


class DownloadTooLargeError(HttpRequestError):
    error_code = "DOWNLOAD_TOO_LARGE"


class HttpClient:
    def __init__(
        self,
        *,
        timeout: TimeoutConfig | None = None,
        retry: RetryConfig | None = None,
    ) -> None:
        self.timeout = timeout or TimeoutConfig()
        self.retry = retry or RetryConfig()
        self.session = requests.Session()

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def _headers(self, headers: dict[str, str] | None, accept: str) -> dict[str, str]:
        out = {"User-Agent": USER_AGENT, "Accept": accept}
        if headers:
            out.update(headers)
        return out

    def _raise_for_status_or_retry(self, response: requests.Response) -> None:
        status = response.status_code
        if status in RETRYABLE_STATUS_CODES:
            raise RetryableHttpError(f"Retryable HTTP status: {status}")
        if status >= 400:
            raise HttpRequestError(f"HTTP status: {status}")

    def _with_retry(self, func: Callable[[], T]) -> T:
        @retry(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential_jitter(
                initial=self.retry.multiplier,
                max=self.retry.max_wait,
                jitter=1.0,
            ),
            retry=retry_if_exception_type(RetryableHttpError),
            reraise=True,
        )
        def _wrapped() -> T:
            try:
                return func()
            except (requests.ConnectionError, requests.Timeout) as exc:
                raise RetryableHttpError(f"Transient network failure: {exc}") from exc

        return _wrapped()

    def _download_once(
        self,
        url: str,
        target: Path,
        auth: tuple[str, str] | None,
        max_bytes: int | None,
        timeout: TimeoutConfig,
    ) -> int:
        ensure_dir(target.parent)
        response = self.session.request(
            method="GET",
            url=url,
            auth=auth,
            headers=self._headers(None, "*/*"),
            timeout=(timeout.connect, timeout.read),
            stream=True,
        )
        try:
            self._raise_for_status_or_retry(response)
            written = 0
            with target.open("wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
                    if not chunk:
                        continue
                    written += len(chunk)
                    if max_bytes is not None and written > max_bytes:
                        raise DownloadTooLargeError(f"Download exceeds {max_bytes} bytes: {url}")
                    f.write(chunk)
        except HttpRequestError:
            target.unlink(missing_ok=True)
            raise
        finally:
            response.close()
        return written

    def download_to(
        self,
        url: str,
        target: Path,
        *,
        auth: tuple[str, str] | None = None,
        max_bytes: int | None = None,
        timeout: TimeoutConfig | None = None,
    ) -> int:
        req_timeout = timeout or self.timeout
        return self._with_retry(lambda: self._download_once(url, target, auth, max_bytes, req_timeout))

    def _post_json_once(self, url: str, payload: dict[str, Any], timeout: TimeoutConfig) -> int:
        response = self.session.request(
            method="POST",
            url=url,
            json=payload,
            headers=self._headers({"Content-Type": "application/json"}, "application/json"),
            timeout=(timeout.connect, timeout.read),
        )
        self._raise_for_status_or_retry(response)
        return response.status_code

    def post_json(self, url: str, payload: dict[str, Any], *, timeout: TimeoutConfig | None = None) -> int:
        req_timeout = timeout or self.timeout
        return self._with_retry(lambda: self._post_json_once(url, payload, req_timeout))
