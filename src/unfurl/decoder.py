"""Resolve Google News article tokens through the batchexecute RPC.

The aggregator hides the destination of each feed item behind an opaque token
(``https://news.google.com/rss/articles/<token>``).  One ``Fbv4je`` call to the
``DotsSplashUi`` batchexecute endpoint exchanges that token for the article
URL.  The envelope parameters below are what the web client sends; they are
protocol constants, not settings.
"""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import urlencode, urlsplit

from .errors import DecodeError, ErrorKind
from .transport import Opener, build_http_opener, retry_after_seconds, send
from .utils import log_event

BATCHEXECUTE_URL = "https://news.google.com/_/DotsSplashUi/data/batchexecute?rpcids=Fbv4je"
RPC_ID = "Fbv4je"
RESULT_TAG = "garturlres"
REQUEST_TAG = "garturlreq"

_LOCALE_PARAMS: list[Any] = [
    [
        "en-US",
        "US",
        ["FINANCE_TOP_INDICES", "WEB_TEST_1_0_0"],
        None,
        None,
        1,
        1,
        "US:en",
        None,
        180,
        None,
        None,
        None,
        None,
        None,
        0,
        None,
        None,
        [1608992183, 723341000],
    ],
    "en-US",
    "US",
    1,
    [2, 3, 4, 8],
    1,
    0,
    "655000234",
    0,
    0,
    None,
    0,
]

_XSSI_PREFIX = ")]}'"
_DEFAULT_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded;charset=UTF-8",
    "Referer": "https://news.google.com/",
}


def extract_token(value: str) -> str:
    """Return the bare token from either a token or a full article link."""
    value = (value or "").strip()
    if not value:
        return ""
    if "://" not in value:
        return value.split("?", 1)[0].strip("/")
    path = urlsplit(value).path
    marker = "/articles/"
    if marker not in path:
        return ""
    return path.split(marker, 1)[1].split("/", 1)[0]


def build_envelope(token: str) -> str:
    payload = json.dumps([REQUEST_TAG, _LOCALE_PARAMS, token], separators=(",", ":"))
    return json.dumps([[[RPC_ID, payload, None, "generic"]]], separators=(",", ":"))


def parse_response(body: str) -> str:
    """Pull the resolved URL out of a batchexecute response body."""
    text = body.strip()
    if text.startswith(_XSSI_PREFIX):
        text = text[len(_XSSI_PREFIX):]
    for entry in _iter_rpc_entries(text):
        if len(entry) < 3 or entry[0] != "wrb.fr" or entry[1] != RPC_ID:
            continue
        if not isinstance(entry[2], str):
            raise DecodeError("RPC result is empty", kind=ErrorKind.INVALID_RESPONSE)
        try:
            inner = json.loads(entry[2])
        except json.JSONDecodeError as exc:
            raise DecodeError(
                "RPC result is not valid JSON", kind=ErrorKind.INVALID_RESPONSE
            ) from exc
        if not isinstance(inner, list) or len(inner) < 2 or inner[0] != RESULT_TAG:
            raise DecodeError(
                f"RPC result has no {RESULT_TAG} field", kind=ErrorKind.INVALID_RESPONSE
            )
        url = inner[1]
        if not isinstance(url, str) or not url.strip():
            raise DecodeError("decoded URL is empty", kind=ErrorKind.INVALID_RESPONSE)
        return url.strip()
    raise DecodeError(f"no {RPC_ID} entry in RPC response", kind=ErrorKind.INVALID_RESPONSE)


def _iter_rpc_entries(text: str):
    # Responses are length-prefixed chunks; every JSON array line is a candidate.
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("["):
            continue
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(chunk, list):
            continue
        for entry in chunk:
            if isinstance(entry, list):
                yield entry


class UrlDecoder:
    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        user_agent: str = "Mozilla/5.0 (compatible; Unfurl/1.0)",
        opener: Opener | None = None,
        endpoint: str = BATCHEXECUTE_URL,
        logger: logging.Logger | None = None,
    ) -> None:
        self._timeout = min(timeout_seconds, 10.0)
        self._user_agent = user_agent
        self._opener = opener or build_http_opener()
        self._endpoint = endpoint
        self._logger = logger or logging.getLogger("unfurl.decoder")

    def resolve(self, token_or_url: str) -> str:
        token = extract_token(token_or_url)
        if not token:
            raise DecodeError("no article token in URL", kind=ErrorKind.INVALID_URL)
        data = urlencode({"f.req": build_envelope(token)}).encode("utf-8")
        headers = dict(_DEFAULT_HEADERS)
        headers["User-Agent"] = self._user_agent
        response = send(
            self._opener,
            self._endpoint,
            error_cls=DecodeError,
            headers=headers,
            data=data,
            timeout=self._timeout,
        )
        if not response.ok:
            log_event(
                self._logger,
                logging.WARNING,
                "decode_http_error",
                status=response.status,
                token=token[:24],
            )
            raise DecodeError.from_status(
                response.status,
                f"HTTP {response.status} from decode RPC",
                retry_after=retry_after_seconds(response),
            )
        url = parse_response(response.text())
        log_event(self._logger, logging.DEBUG, "decode_ok", token=token[:24], url=url)
        return url
