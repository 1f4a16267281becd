from __future__ import annotations

import logging
from typing import Callable

from bs4 import BeautifulSoup
from bs4.element import Tag

from .errors import ErrorKind, FetchError
from .models import ArticleMetadata
from .ssrf import SsrfGuard
from .transport import Opener, build_http_opener, get_following_redirects, retry_after_seconds
from .utils import collapse_whitespace, word_count

MIN_CONTENT_LENGTH = 100

_NOISE_TAGS = ["script", "style", "noscript", "template", "nav", "aside", "footer", "header", "form"]

_CONTENT_CLASSES = (
    "article-body",
    "article-content",
    "article__body",
    "entry-content",
    "post-content",
    "story-body",
    "content-body",
    "content",
)

_KEYWORD_META_NAMES = ("keywords", "news_keywords")


def _find_article(soup: BeautifulSoup) -> list[Tag]:
    return soup.find_all("article")


def _find_article_body(soup: BeautifulSoup) -> list[Tag]:
    return soup.find_all(attrs={"itemprop": "articleBody"})


def _find_content_classes(soup: BeautifulSoup) -> list[Tag]:
    found: list[Tag] = []
    for class_name in _CONTENT_CLASSES:
        found.extend(soup.find_all(class_=class_name))
    return found


def _find_main(soup: BeautifulSoup) -> list[Tag]:
    return soup.find_all("main")


# First strategy yielding text over MIN_CONTENT_LENGTH wins.
CONTENT_STRATEGIES: tuple[Callable[[BeautifulSoup], list[Tag]], ...] = (
    _find_article,
    _find_article_body,
    _find_content_classes,
    _find_main,
)


def extract_article(html: str) -> ArticleMetadata:
    """Parse metadata and body text from an HTML document.

    Each field is extracted on its own; a missing tag leaves that field empty.
    Raises FetchError (no_content) when the page has neither a title nor body
    text worth keeping.
    """
    soup = BeautifulSoup(html or "", "html.parser")

    og_title = _meta_property(soup, "og:title")
    page_title = _page_title(soup)
    author = _meta_property(soup, "article:author") or _meta_name(soup, "author")

    for tag in soup(_NOISE_TAGS):
        tag.decompose()
    content = extract_body_text(soup)

    if not (og_title or page_title) and not content:
        raise FetchError("no parseable content", kind=ErrorKind.NO_CONTENT)

    return ArticleMetadata(
        page_title=page_title,
        og_title=og_title,
        og_description=_meta_property(soup, "og:description"),
        og_image=_meta_property(soup, "og:image"),
        og_url=_meta_property(soup, "og:url"),
        og_site_name=_meta_property(soup, "og:site_name"),
        twitter_image=_meta_name(soup, "twitter:image") or _meta_property(soup, "twitter:image"),
        author=author,
        published_time=_meta_property(soup, "article:published_time"),
        section=_meta_property(soup, "article:section"),
        article_content=content,
        word_count=word_count(content),
        categories=extract_categories(soup),
    )


def extract_body_text(soup: BeautifulSoup) -> str:
    for strategy in CONTENT_STRATEGIES:
        for candidate in strategy(soup):
            text = collapse_whitespace(candidate.get_text(" ", strip=True))
            if len(text) > MIN_CONTENT_LENGTH:
                return text
    return ""


def extract_categories(soup: BeautifulSoup) -> list[str]:
    categories: list[str] = []
    for tag in soup.find_all("meta", attrs={"property": "article:tag"}):
        _add_category(categories, tag.get("content"))
    for name in _KEYWORD_META_NAMES:
        for tag in soup.find_all("meta", attrs={"name": name}):
            for value in str(tag.get("content") or "").split(","):
                _add_category(categories, value)
    return categories


def _add_category(categories: list[str], value: object) -> None:
    cleaned = collapse_whitespace(str(value or ""))
    if cleaned and cleaned not in categories:
        categories.append(cleaned)


def _meta_property(soup: BeautifulSoup, prop: str) -> str | None:
    tag = soup.find("meta", attrs={"property": prop})
    return _meta_content(tag)


def _meta_name(soup: BeautifulSoup, name: str) -> str | None:
    tag = soup.find("meta", attrs={"name": name})
    return _meta_content(tag)


def _meta_content(tag: object) -> str | None:
    if not isinstance(tag, Tag):
        return None
    value = collapse_whitespace(str(tag.get("content") or ""))
    return value or None


def _page_title(soup: BeautifulSoup) -> str | None:
    if soup.title is None:
        return None
    value = collapse_whitespace(soup.title.get_text())
    return value or None


class ArticleExtractor:
    """Fetch an article page and extract its metadata.

    Redirects are never followed by the HTTP layer.  Each ``Location`` is
    resolved against the current URL and validated by the SSRF guard before
    the next request is made.
    """

    def __init__(
        self,
        guard: SsrfGuard,
        *,
        user_agent: str = "Mozilla/5.0 (compatible; Unfurl/1.0)",
        connect_timeout_seconds: float = 5.0,
        total_timeout_seconds: float = 30.0,
        max_redirects: int = 5,
        max_bytes: int = 5_000_000,
        opener: Opener | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._guard = guard
        self._user_agent = user_agent
        self._connect_timeout = min(connect_timeout_seconds, 5.0)
        self._total_timeout = min(total_timeout_seconds, 30.0)
        self._max_redirects = max_redirects
        self._max_bytes = max_bytes
        self._opener = opener or build_http_opener()
        self._logger = logger or logging.getLogger("unfurl.extractor")

    def fetch(self, url: str) -> ArticleMetadata:
        html = self.fetch_html(url)
        return extract_article(html)

    def fetch_html(self, url: str) -> str:
        response = get_following_redirects(
            self._opener,
            url,
            validate=self._guard.validate,
            error_cls=FetchError,
            headers={
                "User-Agent": self._user_agent,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
            },
            connect_timeout=self._connect_timeout,
            total_timeout=self._total_timeout,
            max_redirects=self._max_redirects,
            max_bytes=self._max_bytes,
            logger=self._logger,
        )
        if not response.ok:
            raise FetchError.from_status(
                response.status,
                f"HTTP {response.status} fetching article",
                retry_after=retry_after_seconds(response),
            )
        return response.text()
