import pytest

from leadscope.extractor import (
    canonical_social_url,
    classify_page,
    extract_contacts,
    extract_social,
    normalize_phone,
    parse_page,
    score_confidence,
)
from leadscope.models import ContactType, PageType

CONTACT_HTML = """
<html><head><style>.x{color:red}</style></head>
<body>
  <p>Email us at Info@Dentist-Athens.gr or INFO@dentist-athens.gr</p>
  <p>Dr. Papadopoulos: nikos (at) dentist-athens (dot) gr</p>
  <a href="mailto:appointments@dentist-athens.gr?subject=Hi">Book</a>
  <a href="tel:+302103456789">Call</a>
  <p>Mobile: 694 123 4567</p>
  <p>Opening 09:00-17:00, since 1998</p>
  <img src="logo@2x.png">
  <script>var fake = "tracker@sentry.io";</script>
</body></html>
"""


def _values(candidates, contact_type=None):
    return [c.value for c in candidates if contact_type is None or c.contact_type is contact_type]


def test_extracts_and_deduplicates_emails():
    candidates = extract_contacts(CONTACT_HTML, "https://dentist-athens.gr/contact")
    emails = _values(candidates, ContactType.EMAIL)

    assert emails.count("info@dentist-athens.gr") == 1
    assert "appointments@dentist-athens.gr" in emails
    assert "nikos@dentist-athens.gr" in emails
    assert "tracker@sentry.io" not in emails
    assert not any(e.endswith(".png") for e in emails)


def test_email_confidence_and_generic_flag():
    candidates = extract_contacts(CONTACT_HTML, "https://dentist-athens.gr/contact")
    by_value = {c.value: c for c in candidates}

    assert by_value["info@dentist-athens.gr"].is_generic
    assert by_value["info@dentist-athens.gr"].confidence == 0.9
    assert not by_value["nikos@dentist-athens.gr"].is_generic
    assert by_value["nikos@dentist-athens.gr"].obfuscated
    assert by_value["nikos@dentist-athens.gr"].confidence == 1.0


def test_phones_are_normalized_and_typed():
    candidates = extract_contacts(CONTACT_HTML, "https://dentist-athens.gr/")

    assert "+302103456789" in _values(candidates, ContactType.PHONE)
    assert "+306941234567" in _values(candidates, ContactType.MOBILE)
    assert "+302103456789" not in _values(candidates, ContactType.MOBILE)


@pytest.mark.parametrize("raw", ["1998", "09:00-17:00", "12 34 56", "0000000000"])
def test_short_or_invalid_numbers_are_discarded(raw):
    assert normalize_phone(raw, "GR") is None


@pytest.mark.parametrize(
    "url,obfuscated,score",
    [
        ("https://example.gr/", False, 0.5),
        ("https://example.gr/contact-us", False, 0.9),
        ("https://example.gr/%CE%B5%CF%80%CE%B9%CE%BA%CE%BF%CE%B9%CE%BD%CF%89%CE%BD%CE%AF%CE%B1", False, 0.9),
        ("https://example.gr/privacy-policy", False, 0.3),
        ("https://example.gr/", True, 0.6),
    ],
)
def test_score_confidence(url, obfuscated, score):
    assert score_confidence(url, obfuscated) == score


def test_classify_page():
    assert classify_page("https://example.gr/anything", depth=0) is PageType.HOMEPAGE
    assert classify_page("https://example.gr/contact", depth=1) is PageType.CONTACT
    assert classify_page("https://example.gr/about-us", depth=1) is PageType.ABOUT
    assert classify_page("https://example.gr/company", depth=2) is PageType.COMPANY
    assert classify_page("https://example.gr/services", depth=1) is PageType.OTHER


@pytest.mark.parametrize(
    "href,url",
    [
        ("https://www.facebook.com/DentistAthens/?ref=page", "https://www.facebook.com/DentistAthens"),
        ("https://m.facebook.com/profile.php?id=123", "https://www.facebook.com/profile.php?id=123"),
        ("https://instagram.com/dentist.athens/", "https://www.instagram.com/dentist.athens"),
        ("https://www.linkedin.com/company/dentist-athens/", "https://www.linkedin.com/company/dentist-athens"),
        ("https://x.com/dentathens", "https://twitter.com/dentathens"),
        ("https://www.youtube.com/@dentistathens", "https://www.youtube.com/@dentistathens"),
        ("https://youtu.be/abc123", "https://www.youtube.com/watch?v=abc123"),
        ("https://www.facebook.com/sharer/sharer.php?u=x", None),
        ("https://twitter.com/intent/tweet?text=hi", None),
    ],
)
def test_canonical_social_url(href, url):
    link = canonical_social_url(href)
    assert (link.url if link else None) == url


def test_extract_social_keeps_first_per_platform():
    html = """
    <a href="https://facebook.com/first">fb</a>
    <a href="https://facebook.com/second">fb2</a>
    <a href="https://www.instagram.com/insta">ig</a>
    """
    social = extract_social(html)

    assert social.facebook == "https://www.facebook.com/first"
    assert social.instagram == "https://www.instagram.com/insta"
    assert social.youtube is None


def test_parse_page_links_and_contact_pages():
    html = """
    <a href="/about/">About</a>
    <a href="services">Services</a>
    <a href="/%CE%B5%CF%80%CE%B9%CE%BA%CE%BF%CE%B9%CE%BD%CF%89%CE%BD%CE%B9%CE%B1">x</a>
    <a href="/page">Επικοινωνία</a>
    <a href="https://other.com/contact">other</a>
    <a href="/files/menu.pdf">Menu</a>
    <a href="#top">top</a>
    <a href="/about">dup</a>
    """
    parsed = parse_page(html, "https://example.gr/el/")

    assert parsed.links == [
        "https://example.gr/about",
        "https://example.gr/el/services",
        "https://example.gr/%CE%B5%CF%80%CE%B9%CE%BA%CE%BF%CE%B9%CE%BD%CF%89%CE%BD%CE%B9%CE%B1",
        "https://example.gr/page",
    ]
    assert parsed.contact_page_urls == [
        "https://example.gr/about",
        "https://example.gr/%CE%B5%CF%80%CE%B9%CE%BA%CE%BF%CE%B9%CE%BD%CF%89%CE%BD%CE%B9%CE%B1",
        "https://example.gr/page",
    ]


def test_parse_page_honours_base_tag():
    html = '<head><base href="https://example.gr/shop/"></head><a href="item">x</a>'

    assert parse_page(html, "https://example.gr/").links == ["https://example.gr/shop/item"]
