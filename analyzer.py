from __future__ import annotations

import re
from typing import List, Optional, Set, Tuple, Union
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup, Doctype
from bs4.builder import ParserRejectedMarkup

from models import AnalysisFacts, CrawlerError


UNKNOWN_VERSION = "Unknown"
LINK_TAGS = ("a", "area")
BAD_SCHEMES = ("javascript:", "mailto:", "tel:", "data:", "#")
SAMPLE_SIZE = 4096
MAX_CONTROL_RATIO = 0.3
TEXT_CONTROL_BYTES = {9, 10, 12, 13, 27}
UTF16_BOMS = (b"\xff\xfe", b"\xfe\xff")

# most specific first: "html 4.01" must win over "html 4.0"
DOCTYPE_PATTERNS: List[Tuple[re.Pattern[str], str]] = [
    (re.compile(r"xhtml\s+basic"), "XHTML Basic"),
    (re.compile(r"xhtml\s+1\.1"), "XHTML 1.1"),
    (re.compile(r"xhtml\s+1\.0"), "XHTML 1.0"),
    (re.compile(r"html\s+4\.01"), "HTML 4.01"),
    (re.compile(r"html\s+4\.0"), "HTML 4.0"),
    (re.compile(r"html\s+3\.2"), "HTML 3.2"),
    (re.compile(r"html\s+2\.0"), "HTML 2.0"),
]
HTML5_DOCTYPE_RE = re.compile(r'^html(\s+system\s+["\']about:legacy-compat["\'])?$')


class ParseError(CrawlerError):
    pass


def analyze(html_bytes: Union[bytes, str], base_url: str) -> AnalysisFacts:
    """Extract structural facts from one fetched document.

    ``base_url`` is the URL the document was served from (after redirects);
    its host decides whether a link is internal. Raises ``ParseError`` when the
    payload is not HTML at all.
    """
    text = html_bytes if isinstance(html_bytes, str) else _decode_html(html_bytes)
    try:
        soup = BeautifulSoup(text, "html.parser")
    except ParserRejectedMarkup as exc:
        raise ParseError(f"Failed to parse HTML: {exc}") from exc

    page_host = _host_of(base_url)
    resolve_base = _document_base(soup, base_url)

    internal: Set[str] = set()
    external: Set[str] = set()
    for tag in soup.find_all(LINK_TAGS, href=True):
        resolved = resolve_link(resolve_base, tag.get("href"))
        if resolved is None:
            continue
        if _host_of(resolved) == page_host:
            internal.add(resolved)
        else:
            external.add(resolved)

    headings = tuple(len(soup.find_all(f"h{level}")) for level in range(1, 7))

    return AnalysisFacts(
        html_version=detect_html_version(soup),
        title=_extract_title(soup),
        headings=headings,
        internal_links=tuple(sorted(internal)),
        external_links=tuple(sorted(external)),
        has_login_form=_has_login_form(soup),
    )


def detect_html_version(soup: BeautifulSoup) -> str:
    for item in soup.contents:
        if not isinstance(item, Doctype):
            continue
        declaration = " ".join(str(item).split()).lower()
        if declaration.startswith("doctype "):
            declaration = declaration[len("doctype "):]
        if HTML5_DOCTYPE_RE.match(declaration):
            return "HTML5"
        for pattern, version in DOCTYPE_PATTERNS:
            if pattern.search(declaration):
                return version
        return UNKNOWN_VERSION
    return UNKNOWN_VERSION


def resolve_link(base_url: str, value: Optional[str]) -> Optional[str]:
    candidate = (value or "").strip()
    if not candidate:
        return None
    if candidate.lower().startswith(BAD_SCHEMES):
        return None
    try:
        resolved = urljoin(base_url, candidate)
        parsed = urlparse(resolved)
        parsed.port  # raises ValueError for a malformed port
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    return urlunparse((parsed.scheme, parsed.netloc, parsed.path or "/", parsed.params, parsed.query, ""))


def _host_of(url: str) -> str:
    try:
        return (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""


def _document_base(soup: BeautifulSoup, base_url: str) -> str:
    base = soup.find("base", href=True)
    if base is None:
        return base_url
    resolved = resolve_link(base_url, base.get("href"))
    return resolved or base_url


def _extract_title(soup: BeautifulSoup) -> str:
    title = soup.head.find("title") if soup.head is not None else None
    if title is None:
        title = soup.find("title")
    if title is None:
        return ""
    return title.get_text().strip()


def _has_login_form(soup: BeautifulSoup) -> bool:
    for form in soup.find_all("form"):
        for field in form.find_all("input"):
            if str(field.get("type") or "").strip().lower() == "password":
                return True
    return False


def _decode_html(body: bytes) -> str:
    if body.startswith(UTF16_BOMS):
        try:
            return body.decode("utf-16")
        except UnicodeDecodeError as exc:
            raise ParseError("Failed to parse HTML: undecodable UTF-16 payload") from exc
    if _looks_binary(body):
        raise ParseError("Failed to parse HTML: payload is binary, not HTML")
    try:
        return body.decode("utf-8-sig")
    except UnicodeDecodeError:
        # every byte sequence is valid latin-1
        return body.decode("latin-1")


def _looks_binary(body: bytes) -> bool:
    sample = body[:SAMPLE_SIZE]
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    control = sum(1 for byte in sample if (byte < 32 and byte not in TEXT_CONTROL_BYTES) or byte == 127)
    return (control / len(sample)) > MAX_CONTROL_RATIO
