import http.client

import pytest

from fakes import FakeOpener, article_html, resolver
from unfurl.errors import ErrorKind, FetchError, SecurityError
from unfurl.extractor import ArticleExtractor, extract_article
from unfurl.ssrf import SsrfGuard


def _extractor(routes, **kwargs):
    opener = FakeOpener(routes)
    guard = SsrfGuard(resolver=resolver({"internal.example.com": "10.0.0.8"}))
    return ArticleExtractor(guard, opener=opener, **kwargs), opener


def test_extract_article_reads_metadata_and_body():
    metadata = extract_article(article_html("Moon Landing", description="A &amp; B"))

    assert metadata.og_title == "Moon Landing"
    assert metadata.page_title == "Moon Landing | Example News"
    assert metadata.og_description == "A & B"
    assert metadata.og_image == "https://cdn.example.com/Moon-Landing.jpg"
    assert metadata.author == "Jane Reporter"
    assert metadata.categories == ["Science", "space"]
    assert metadata.word_count == 40
    assert metadata.article_content.startswith("word0 word1")
    assert "Home | World" not in metadata.article_content


def test_missing_tags_leave_fields_empty():
    html = "<html><head><title>Only a title</title></head><body><p>short</p></body></html>"
    metadata = extract_article(html)
    assert metadata.page_title == "Only a title"
    assert metadata.og_title is None
    assert metadata.og_image is None
    assert metadata.author is None
    assert metadata.article_content == ""
    assert metadata.word_count == 0
    assert metadata.categories == []


def test_author_falls_back_to_meta_name():
    html = """<html><head><title>T</title><meta name="author" content="By Line"></head>
    <body></body></html>"""
    assert extract_article(html).author == "By Line"


def test_body_strategies_in_order():
    long_text = "lorem ipsum " * 20
    html = f"""<html><head><title>T</title></head><body>
    <main>{"main text " * 20}</main>
    <div class="entry-content">{long_text}</div>
    </body></html>"""
    metadata = extract_article(html)
    assert metadata.article_content.startswith("lorem ipsum")

    html = f"""<html><head><title>T</title></head><body>
    <article>too short</article>
    <div itemprop="articleBody">{long_text}</div>
    </body></html>"""
    assert extract_article(html).article_content.startswith("lorem ipsum")


def test_scripts_and_whitespace_are_cleaned():
    html = f"""<html><head><title>T</title></head><body><article>
    <script>var tracking = 1;</script>
    {"alpha   beta" + chr(10) + chr(9) + "gamma " * 30}
    </article></body></html>"""
    content = extract_article(html).article_content
    assert "tracking" not in content
    assert "  " not in content
    assert content.startswith("alpha beta gamma")


def test_no_title_and_no_body_is_permanent_failure():
    with pytest.raises(FetchError) as excinfo:
        extract_article("<html><body><p>tiny</p></body></html>")
    assert excinfo.value.kind == ErrorKind.NO_CONTENT
    assert excinfo.value.retryable is False


def test_fetch_follows_relative_redirects():
    extractor, opener = _extractor(
        {
            "https://example.com/a": (301, b"", {"Location": "/b"}),
            "https://example.com/b": (302, b"", {"Location": "https://www.example.com/final"}),
            "https://www.example.com/final": (200, article_html("Redirected"), {"Content-Type": "text/html; charset=utf-8"}),
        }
    )
    metadata = extractor.fetch("https://example.com/a")
    assert metadata.og_title == "Redirected"
    assert opener.urls == [
        "https://example.com/a",
        "https://example.com/b",
        "https://www.example.com/final",
    ]


def test_redirect_to_private_address_blocked_before_request():
    extractor, opener = _extractor(
        {"https://example.com/a": (302, b"", {"Location": "http://internal.example.com/admin"})}
    )
    with pytest.raises(SecurityError):
        extractor.fetch("https://example.com/a")
    assert opener.urls == ["https://example.com/a"]


def test_too_many_redirects_is_permanent():
    routes = {
        f"https://example.com/{index}": (302, b"", {"Location": f"/{index + 1}"})
        for index in range(10)
    }
    extractor, opener = _extractor(routes, max_redirects=5)
    with pytest.raises(FetchError) as excinfo:
        extractor.fetch("https://example.com/0")
    assert excinfo.value.kind == ErrorKind.TOO_MANY_REDIRECTS
    assert excinfo.value.retryable is False
    assert len(opener.urls) == 6


@pytest.mark.parametrize(
    "status,retryable",
    [(404, False), (403, False), (410, False), (429, True), (500, True), (503, True)],
)
def test_http_status_classification(status, retryable):
    extractor, _ = _extractor({"https://example.com/a": (status, b"nope")})
    with pytest.raises(FetchError) as excinfo:
        extractor.fetch("https://example.com/a")
    assert excinfo.value.retryable is retryable
    assert excinfo.value.http_status == status


def test_response_size_cap():
    extractor, _ = _extractor(
        {"https://example.com/big": (200, b"x" * 2048)}, max_bytes=1024
    )
    with pytest.raises(FetchError) as excinfo:
        extractor.fetch("https://example.com/big")
    assert excinfo.value.retryable is False


def test_initial_url_is_validated():
    extractor, opener = _extractor({})
    with pytest.raises(SecurityError):
        extractor.fetch("http://127.0.0.1:8080/")
    assert opener.requests == []


def test_truncated_body_is_transient_network_error():
    extractor, _ = _extractor({"https://example.com/a": http.client.IncompleteRead(b"partial")})
    with pytest.raises(FetchError) as excinfo:
        extractor.fetch("https://example.com/a")
    assert excinfo.value.kind == ErrorKind.NETWORK
    assert excinfo.value.retryable is True


def test_bad_status_line_is_transient_network_error():
    extractor, _ = _extractor({"https://example.com/a": http.client.BadStatusLine("garbage")})
    with pytest.raises(FetchError) as excinfo:
        extractor.fetch("https://example.com/a")
    assert excinfo.value.kind == ErrorKind.NETWORK
    assert excinfo.value.retryable is True


def test_unsendable_url_is_permanent():
    routes = {"https://example.com/a": http.client.InvalidURL("URL can't contain control characters")}
    extractor, opener = _extractor(routes)
    with pytest.raises(FetchError) as excinfo:
        extractor.fetch("https://example.com/a")
    assert excinfo.value.kind == ErrorKind.INVALID_URL
    assert excinfo.value.retryable is False
    assert opener.urls == ["https://example.com/a"]
