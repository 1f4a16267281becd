from __future__ import annotations

import http.client
import logging
import socket
import ssl
import time
from dataclasses import dataclass
from email.message import Message
from typing import Any, Callable, Protocol
from urllib.error import URLError
from urllib.parse import urljoin
from urllib.request import HTTPErrorProcessor, HTTPSHandler, Request, build_opener

from .errors import ErrorKind, PipelineError
from .utils import log_event

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
_CHUNK_SIZE = 64 * 1024


class Opener(Protocol):
    def open(self, request: Request, data: Any = None, timeout: float = ...) -> Any: ...


@dataclass(frozen=True)
class HttpResponse:
    url: str
    status: int
    headers: Message | dict[str, str]
    body: bytes

    def header(self, name: str) -> str | None:
        value = self.headers.get(name)
        if value is None and isinstance(self.headers, dict):
            lowered = {key.lower(): val for key, val in self.headers.items()}
            value = lowered.get(name.lower())
        return value

    @property
    def ok(self) -> bool:
        return 200 <= self.status <= 299

    @property
    def is_redirect(self) -> bool:
        return self.status in REDIRECT_STATUSES

    def text(self) -> str:
        charset = "utf-8"
        content_type = self.header("Content-Type") or ""
        for part in content_type.split(";"):
            part = part.strip()
            if part.lower().startswith("charset="):
                charset = part.split("=", 1)[1].strip("\"' ") or "utf-8"
        try:
            return self.body.decode(charset, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")


class _PassthroughProcessor(HTTPErrorProcessor):
    """Return every response as-is: no raising on 4xx/5xx, no redirect following."""

    def http_response(self, request, response):
        return response

    https_response = http_response


def build_http_opener() -> Opener:
    context = ssl.create_default_context()
    return build_opener(HTTPSHandler(context=context), _PassthroughProcessor())


def retry_after_seconds(response: HttpResponse) -> float | None:
    value = response.header("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def send(
    opener: Opener,
    url: str,
    *,
    error_cls: type[PipelineError],
    headers: dict[str, str] | None = None,
    data: bytes | None = None,
    timeout: float,
    deadline: float | None = None,
    max_bytes: int | None = None,
) -> HttpResponse:
    """Issue one request and read the body, mapping transport failures to error_cls.

    ``deadline`` is a ``time.monotonic()`` value bounding the whole exchange.
    """
    socket_timeout = _remaining(timeout, deadline, error_cls)
    try:
        request = Request(url, data=data, headers=headers or {}, method="POST" if data else "GET")
        with opener.open(request, timeout=socket_timeout) as response:
            status = int(getattr(response, "status", None) or response.getcode())
            body = _read_body(response, deadline, max_bytes, error_cls)
            return HttpResponse(
                url=url,
                status=status,
                headers=response.headers,
                body=body,
            )
    except PipelineError:
        raise
    except (socket.timeout, TimeoutError) as exc:
        raise error_cls(f"timeout fetching {url}", kind=ErrorKind.TIMEOUT) from exc
    except URLError as exc:
        raise _from_url_error(exc, url, error_cls) from exc
    except ssl.SSLError as exc:
        raise error_cls(f"TLS error fetching {url}: {exc}", kind=ErrorKind.NETWORK) from exc
    except http.client.InvalidURL as exc:
        raise error_cls(f"invalid URL {url!r}: {exc}", kind=ErrorKind.INVALID_URL, retryable=False) from exc
    except http.client.HTTPException as exc:
        # IncompleteRead, BadStatusLine, RemoteDisconnected.
        raise error_cls(
            f"protocol error fetching {url}: {exc.__class__.__name__}", kind=ErrorKind.NETWORK
        ) from exc
    except (ConnectionError, OSError) as exc:
        raise error_cls(f"connection error fetching {url}: {exc}", kind=ErrorKind.NETWORK) from exc
    except ValueError as exc:
        raise error_cls(f"invalid URL {url!r}: {exc}", kind=ErrorKind.INVALID_URL, retryable=False) from exc


def _remaining(timeout: float, deadline: float | None, error_cls: type[PipelineError]) -> float:
    if deadline is None:
        return timeout
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise error_cls("total timeout exceeded", kind=ErrorKind.TIMEOUT)
    return min(timeout, remaining)


def _read_body(
    response: Any,
    deadline: float | None,
    max_bytes: int | None,
    error_cls: type[PipelineError],
) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while True:
        if deadline is not None and time.monotonic() > deadline:
            raise error_cls("total timeout exceeded while reading body", kind=ErrorKind.TIMEOUT)
        chunk = response.read(_CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if max_bytes is not None and total > max_bytes:
            raise error_cls(
                f"response larger than {max_bytes} bytes",
                kind=ErrorKind.INVALID_RESPONSE,
                retryable=False,
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _from_url_error(exc: URLError, url: str, error_cls: type[PipelineError]) -> PipelineError:
    reason = exc.reason
    if isinstance(reason, (socket.timeout, TimeoutError)):
        return error_cls(f"timeout fetching {url}", kind=ErrorKind.TIMEOUT)
    if isinstance(reason, ssl.SSLCertVerificationError):
        return error_cls(
            f"TLS verification failed for {url}", kind=ErrorKind.NETWORK, retryable=False
        )
    if isinstance(reason, socket.gaierror):
        return error_cls(f"DNS error fetching {url}: {reason}", kind=ErrorKind.NETWORK)
    return error_cls(f"network error fetching {url}: {reason}", kind=ErrorKind.NETWORK)


def get_following_redirects(
    opener: Opener,
    url: str,
    *,
    validate: Callable[[str], None],
    error_cls: type[PipelineError],
    headers: dict[str, str] | None = None,
    connect_timeout: float,
    total_timeout: float,
    max_redirects: int,
    max_bytes: int | None = None,
    logger: logging.Logger | None = None,
) -> HttpResponse:
    """GET ``url``, following redirects by hand.

    ``validate`` runs on the starting URL and on every redirect target before
    it is requested.  Exceeding ``max_redirects`` is a permanent failure.
    """
    deadline = time.monotonic() + total_timeout
    current = url
    redirects = 0
    while True:
        validate(current)
        response = send(
            opener,
            current,
            error_cls=error_cls,
            headers=headers,
            timeout=connect_timeout,
            deadline=deadline,
            max_bytes=max_bytes,
        )
        if not response.is_redirect:
            return response
        location = response.header("Location")
        if not location:
            raise error_cls(
                f"HTTP {response.status} redirect without Location",
                kind=ErrorKind.INVALID_RESPONSE,
                http_status=response.status,
            )
        redirects += 1
        if redirects > max_redirects:
            raise error_cls(
                f"too many redirects (max {max_redirects})",
                kind=ErrorKind.TOO_MANY_REDIRECTS,
                retryable=False,
            )
        target = urljoin(current, location.strip())
        if logger is not None:
            log_event(
                logger, logging.DEBUG, "fetch_redirect", status=response.status, source=current, target=target
            )
        current = target
