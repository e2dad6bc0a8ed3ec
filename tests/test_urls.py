import pytest

from leadscope.urls import (
    canonicalize,
    is_crawlable_url,
    normalize_url,
    registrable_domain,
    resolve_url,
    same_registrable_domain,
    should_skip_url,
)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("example.gr", "https://example.gr/"),
        ("  https://Example.GR/Contact/  ", "https://example.gr/Contact"),
        ("http://example.gr:80/a//b/", "http://example.gr/a/b"),
        ("https://example.gr:443/#top", "https://example.gr/"),
        ("https://example.gr/?b=2&a=1", "https://example.gr/?a=1&b=2"),
        ("//cdn.example.gr/x", "https://cdn.example.gr/x"),
        ("https://example.gr:8443/", "https://example.gr:8443/"),
    ],
)
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "mailto:info@example.gr", "ftp://example.gr/", "not a url"])
def test_normalize_url_rejects(raw):
    assert normalize_url(raw) is None


def test_canonical_forms_collapse():
    assert canonicalize("https://EXAMPLE.gr/about/") == canonicalize("https://example.gr/about#team")


def test_resolve_url_skips_non_web_links():
    base = "https://example.gr/about"
    assert resolve_url(base, "contact") == "https://example.gr/contact"
    assert resolve_url(base, "/el/epikoinonia/") == "https://example.gr/el/epikoinonia"
    assert resolve_url(base, "#top") is None
    assert resolve_url(base, "mailto:info@example.gr") is None
    assert resolve_url(base, "javascript:void(0)") is None


def test_registrable_domain():
    assert registrable_domain("https://www.example.co.uk/path") == "example.co.uk"
    assert registrable_domain("shop.example.gr") == "example.gr"
    assert same_registrable_domain("https://example.gr/", "https://blog.example.gr/x")
    assert not same_registrable_domain("https://example.gr/", "https://example.com/")


@pytest.mark.parametrize(
    "url,skip",
    [
        ("https://example.gr/blog/post-1", True),
        ("https://example.gr/news", True),
        ("https://example.gr/tag/dentist", True),
        ("https://example.gr/sitemap.xml", True),
        ("https://example.gr/feed", True),
        ("https://example.gr/contact", False),
        ("https://example.gr/newsletter-signup", False),
        ("https://example.gr/blogger-team", False),
    ],
)
def test_should_skip_url(url, skip):
    assert should_skip_url(url) is skip


def test_is_crawlable_url():
    assert is_crawlable_url("https://example.gr/contact")
    assert not is_crawlable_url("https://example.gr/brochure.PDF")
    assert not is_crawlable_url("https://example.gr/logo.png")
