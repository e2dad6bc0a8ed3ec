"""Contact, social and link extraction from fetched HTML."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import unquote, urljoin, urlsplit

import phonenumbers
from bs4 import BeautifulSoup

from .config import extraction_settings
from .models import ContactCandidate, ContactType, PageType, SocialLink, SocialLinks
from .urls import is_crawlable_url, resolve_url, same_registrable_domain

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")

# "name (at) domain (dot) gr", "name [at] domain [dot] gr", "name at domain dot gr"
OBFUSCATED_EMAIL_PATTERNS = (
    re.compile(
        r"([a-zA-Z0-9._%+-]+)\s*[\(\[\{]\s*at\s*[\)\]\}]\s*([a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*)"
        r"\s*(?:\.|[\(\[\{]\s*dot\s*[\)\]\}])\s*([a-zA-Z]{2,})\b",
        re.I,
    ),
    re.compile(
        r"([a-zA-Z0-9._%+-]+)\s+at\s+([a-zA-Z0-9-]+(?:\.[a-zA-Z0-9-]+)*)\s+dot\s+([a-zA-Z]{2,})\b",
        re.I,
    ),
)

PHONE_PATTERN = re.compile(r"(?:\+|00)?\d[\d\s().-]{5,18}\d")
MIN_PHONE_DIGITS = 7

GENERIC_EMAIL_PREFIXES = frozenset(
    {
        "info", "contact", "sales", "hello", "support", "help", "admin", "webmaster",
        "noreply", "no-reply", "mail", "office", "general", "enquiries", "inquiry",
        "service", "services", "team", "marketing", "press", "media", "pr", "hr",
        "careers", "jobs", "billing", "accounts", "finance", "legal", "abuse", "postmaster",
    }
)

JUNK_EMAIL_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".css", ".js")
JUNK_EMAIL_DOMAINS = frozenset(
    {"example.com", "example.org", "domain.com", "email.com", "yourdomain.com", "sentry.io", "wixpress.com"}
)

CONTACT_URL_PATTERN = re.compile(r"(contact|about|επικοινων|σχετικ)", re.I)
PRIVACY_URL_PATTERN = re.compile(r"(privacy|terms|gdpr|cookies|πολιτικη απορρητου|πολιτική απορρήτου)", re.I)

CONTACT_PAGE_PATHS = (
    "/contact", "/contact-us", "/contactus", "/about", "/about-us", "/team", "/staff",
    "/support", "/help", "/impressum",
    "/επικοινωνια", "/επικοινωνία", "/συνεργασια", "/συνεργασία", "/εταιρεια", "/εταιρεία",
    "/ποιοι-ειμαστε", "/σχετικα", "/σχετικά", "/ομαδα", "/ομάδα",
)
CONTACT_ANCHOR_KEYWORDS = (
    "contact", "about", "team", "impressum", "επικοινωνία", "επικοινωνια", "σχετικά",
    "ποιοι είμαστε", "εταιρεία", "ομάδα",
)

_PAGE_TYPE_PATTERNS: Tuple[Tuple[PageType, re.Pattern], ...] = (
    (PageType.CONTACT, re.compile(r"(contact|επικοινων|impressum)", re.I)),
    (PageType.ABOUT, re.compile(r"(about|σχετικ|ποιοι|team|staff|ομαδα|ομάδα)", re.I)),
    (PageType.COMPANY, re.compile(r"(company|εταιρ|συνεργασ)", re.I)),
)

SOCIAL_DOMAINS = {
    "facebook.com": "facebook",
    "fb.com": "facebook",
    "instagram.com": "instagram",
    "linkedin.com": "linkedin",
    "twitter.com": "twitter",
    "x.com": "twitter",
    "youtube.com": "youtube",
    "youtu.be": "youtube",
}
_SOCIAL_IGNORED_SEGMENTS = frozenset({"sharer", "sharer.php", "share", "intent", "dialog", "plugins", "tr", "home"})


@dataclass
class ParsedPage:
    links: List[str] = field(default_factory=list)
    contact_page_urls: List[str] = field(default_factory=list)


def content_hash(html: str) -> str:
    return hashlib.sha256(html.encode("utf-8", errors="replace")).hexdigest()


def classify_page(url: str, depth: int = 0) -> PageType:
    if depth == 0:
        return PageType.HOMEPAGE
    path = unquote(urlsplit(url).path or "/")
    if path in ("", "/"):
        return PageType.HOMEPAGE
    for page_type, pattern in _PAGE_TYPE_PATTERNS:
        if pattern.search(path):
            return page_type
    return PageType.OTHER


def score_confidence(source_url: str, obfuscated: bool = False) -> float:
    """0.9 on contact/about pages, 0.3 on privacy/terms pages, 0.5 otherwise; +0.1 when obfuscated."""

    target = unquote(source_url).lower()
    score = 0.5
    if CONTACT_URL_PATTERN.search(target):
        score = 0.9
    elif PRIVACY_URL_PATTERN.search(target):
        score = 0.3
    if obfuscated:
        score = min(1.0, score + 0.1)
    return round(score, 2)


def is_generic_email(email: str) -> bool:
    local = email.split("@", 1)[0].lower()
    return local in GENERIC_EMAIL_PREFIXES


def _clean_email(raw: str) -> Optional[str]:
    email = unquote(raw).strip().strip(".").lower()
    if email.count("@") != 1:
        return None
    local, domain = email.split("@")
    if not local or "." not in domain:
        return None
    if email.endswith(JUNK_EMAIL_SUFFIXES) or domain in JUNK_EMAIL_DOMAINS:
        return None
    if not EMAIL_PATTERN.fullmatch(email):
        return None
    return email


def normalize_phone(raw: str, region: Optional[str] = None) -> Optional[Tuple[str, ContactType]]:
    """E.164 form and phone/mobile type, or ``None`` for anything implausible."""

    digits = re.sub(r"\D", "", raw)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    try:
        parsed = phonenumbers.parse(raw, region or extraction_settings.default_phone_region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(parsed):
        return None
    if len(str(parsed.national_number)) < MIN_PHONE_DIGITS:
        return None
    number_type = phonenumbers.number_type(parsed)
    contact_type = ContactType.MOBILE if number_type == phonenumbers.PhoneNumberType.MOBILE else ContactType.PHONE
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164), contact_type


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _visible_text(soup: BeautifulSoup) -> str:
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    return soup.get_text(" ", strip=True)


def extract_contacts(html: str, source_url: str, region: Optional[str] = None) -> List[ContactCandidate]:
    """Emails (plain, ``mailto:``, obfuscated) and phones found on one page, deduplicated."""

    soup = _soup(html)
    mailtos: List[str] = []
    tels: List[str] = []
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        lowered = href.lower()
        if lowered.startswith("mailto:"):
            mailtos.append(href[7:].split("?", 1)[0])
        elif lowered.startswith("tel:"):
            tels.append(href[4:])
    text = _visible_text(soup)

    candidates: List[ContactCandidate] = []
    seen_emails: Set[str] = set()

    def add_email(raw: str, obfuscated: bool = False) -> None:
        email = _clean_email(raw)
        if email is None or email in seen_emails:
            return
        seen_emails.add(email)
        candidates.append(
            ContactCandidate(
                contact_type=ContactType.EMAIL,
                value=email,
                source_url=source_url,
                confidence=score_confidence(source_url, obfuscated),
                is_generic=is_generic_email(email),
                obfuscated=obfuscated,
            )
        )

    for raw in mailtos:
        for address in raw.split(","):
            add_email(address)
    for match in EMAIL_PATTERN.finditer(text):
        add_email(match.group(0))
    for pattern in OBFUSCATED_EMAIL_PATTERNS:
        for match in pattern.finditer(text):
            add_email(f"{match.group(1)}@{match.group(2)}.{match.group(3)}", obfuscated=True)

    seen_phones: Set[str] = set()
    raw_phones: Iterable[str] = tels + [m.group(0) for m in PHONE_PATTERN.finditer(text)]
    for raw in raw_phones:
        normalized = normalize_phone(raw, region)
        if normalized is None:
            continue
        number, contact_type = normalized
        if number in seen_phones:
            continue
        seen_phones.add(number)
        candidates.append(
            ContactCandidate(
                contact_type=contact_type,
                value=number,
                source_url=source_url,
                confidence=score_confidence(source_url),
            )
        )
    return candidates


def canonical_social_url(href: str) -> Optional[SocialLink]:
    """Map a profile link to ``(platform, canonical URL)``; share widgets are ignored."""

    try:
        parts = urlsplit(href.strip())
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if host.startswith(("www.", "m.", "mobile.")):
        host = host.split(".", 1)[1]
    platform = SOCIAL_DOMAINS.get(host)
    if platform is None:
        return None
    segments = [seg for seg in parts.path.split("/") if seg]
    if not segments and platform != "youtube":
        return None
    if segments and segments[0].lower() in _SOCIAL_IGNORED_SEGMENTS:
        return None

    if platform in ("facebook", "instagram"):
        first = segments[0]
        if first.lower() == "profile.php" and parts.query:
            first = f"{first}?{parts.query}"
        return SocialLink(platform=platform, url=f"https://www.{platform}.com/{first}")
    if platform == "linkedin":
        return SocialLink(platform=platform, url=f"https://www.linkedin.com/{'/'.join(segments)}")
    if platform == "twitter":
        return SocialLink(platform=platform, url=f"https://twitter.com/{segments[0]}")
    # youtube
    if host == "youtu.be":
        return SocialLink(platform=platform, url=f"https://www.youtube.com/watch?v={segments[0]}") if segments else None
    if not segments:
        return None
    if segments[0] in ("channel", "user", "c") and len(segments) > 1:
        return SocialLink(platform=platform, url=f"https://www.youtube.com/{segments[0]}/{segments[1]}")
    if segments[0].startswith("@"):
        return SocialLink(platform=platform, url=f"https://www.youtube.com/{segments[0]}")
    if segments[0] == "watch" and parts.query:
        return SocialLink(platform=platform, url=f"https://www.youtube.com/watch?{parts.query}")
    return None


def extract_social_links(html: str) -> List[SocialLink]:
    soup = _soup(html)
    links: List[SocialLink] = []
    seen: Set[SocialLink] = set()
    for anchor in soup.find_all("a", href=True):
        link = canonical_social_url(anchor["href"])
        if link is None or link in seen:
            continue
        seen.add(link)
        links.append(link)
    return links


def extract_social(html: str) -> SocialLinks:
    """First profile link per platform."""

    by_platform: Dict[str, str] = {}
    for link in extract_social_links(html):
        by_platform.setdefault(link.platform, link.url)
    return SocialLinks(**by_platform)


def _is_contact_link(url: str, anchor_text: str) -> bool:
    path = unquote(urlsplit(url).path or "").lower().rstrip("/")
    if any(path == p or path.endswith(p) for p in CONTACT_PAGE_PATHS):
        return True
    text = anchor_text.lower()
    return any(keyword in text for keyword in CONTACT_ANCHOR_KEYWORDS)


def parse_page(html: str, base_url: str) -> ParsedPage:
    """Same-site crawlable links in document order, plus the subset that look like contact pages."""

    soup = _soup(html)
    base_tag = soup.find("base", href=True)
    # relative links resolve against the raw base; canonical forms drop the trailing slash
    effective_base = urljoin(base_url, base_tag["href"].strip()) if base_tag else base_url

    parsed = ParsedPage()
    seen: Set[str] = set()
    for anchor in soup.find_all("a", href=True):
        url = resolve_url(effective_base, anchor["href"])
        if url is None or url in seen:
            continue
        if not same_registrable_domain(url, base_url) or not is_crawlable_url(url):
            continue
        seen.add(url)
        parsed.links.append(url)
        if _is_contact_link(url, anchor.get_text(" ", strip=True)):
            parsed.contact_page_urls.append(url)
    return parsed
