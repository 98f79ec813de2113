from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterator, Optional, Tuple
from urllib.parse import unquote, urljoin, urlparse

import requests
from bs4 import BeautifulSoup, NavigableString

from bbs_ingest.errors import CatalogUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {"User-Agent": "bbs-ingest/0.3 (+route-level survey retrieval)"}

_SIZE_SUFFIX = {"": 1, "B": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}
_SIZE_TOKEN = re.compile(r"^(\d+(?:\.\d+)?)([KMGT]?)B?$", re.IGNORECASE)

# (pattern, strptime format) pairs for the listing styles we have seen in the wild.
_DATE_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"(\d{4}-\d{2}-\d{2})\s+(\d{1,2}:\d{2})(?::\d{2})?"), "%Y-%m-%d %H:%M"),
    (re.compile(r"(\d{1,2}-[A-Za-z]{3}-\d{4})\s+(\d{1,2}:\d{2})"), "%d-%b-%Y %H:%M"),
    (re.compile(r"(\d{1,2}/\d{1,2}/\d{4})\s+(\d{1,2}:\d{2}\s*[AP]M)", re.IGNORECASE), "%m/%d/%Y %I:%M %p"),
)

_FTP_LINE = re.compile(
    r"^(?P<perms>[-dlbcps][rwxsStT-]{9})[+@.]?\s+\d+\s+\S+\s+\S+\s+(?P<size>\d+)\s+"
    r"(?P<month>[A-Za-z]{3})\s+(?P<day>\d{1,2})\s+(?P<yt>\d{4}|\d{1,2}:\d{2})\s+(?P<name>.+?)\s*$"
)

_SKIP_NAMES = {"", ".", "..", "parent directory", "[to parent directory]"}


@dataclass(frozen=True)
class RemoteArtifact:
    name: str
    size: Optional[int] = None
    last_modified: Optional[datetime] = None


def parse_size(token: str | None) -> Optional[int]:
    if not token:
        return None
    match = _SIZE_TOKEN.match(token.strip().replace(",", ""))
    if not match:
        return None
    number = float(match.group(1))
    return int(number * _SIZE_SUFFIX[match.group(2).upper()])


def _pop_date(text: str) -> Tuple[Optional[datetime], str]:
    for pattern, fmt in _DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        raw = f"{match.group(1)} {' '.join(match.group(2).split())}"
        try:
            parsed = datetime.strptime(raw, fmt)
        except ValueError:
            continue
        return parsed, text[: match.start()] + " " + text[match.end():]
    return None, text


def _size_from_context(text: str) -> Optional[int]:
    for token in text.split():
        size = parse_size(token)
        if size is not None:
            return size
    return None


def _ftp_date(month: str, day: str, year_or_time: str) -> Optional[datetime]:
    try:
        if ":" in year_or_time:
            now = datetime.now()
            parsed = datetime.strptime(f"{month} {day} {now.year} {year_or_time}", "%b %d %Y %H:%M")
            # ls prints HH:MM only for entries from the last six months
            if parsed > now:
                parsed = parsed.replace(year=now.year - 1)
            return parsed
        return datetime.strptime(f"{month} {day} {year_or_time}", "%b %d %Y")
    except ValueError:
        return None


def _name_from_href(href: str) -> str:
    path = urlparse(href).path
    return unquote(path.rstrip("/").rsplit("/", 1)[-1])


def _anchor_context(anchor) -> str:
    row = anchor.find_parent("tr")
    if row is not None:
        return row.get_text(" ").replace(anchor.get_text(), " ", 1)

    before = anchor.previous_sibling
    after = anchor.next_sibling
    left = str(before).rsplit("\n", 1)[-1] if isinstance(before, NavigableString) else ""
    right = str(after).split("\n", 1)[0] if isinstance(after, NavigableString) else ""
    return f"{left} {right}"


def _iter_html_entries(text: str) -> Iterator[RemoteArtifact]:
    soup = BeautifulSoup(text, "html.parser")
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("?", "#", "mailto:")) or href.endswith("/"):
            continue
        label = " ".join((anchor.get_text() or "").split())
        if label.lower() in _SKIP_NAMES:
            continue
        context = _anchor_context(anchor)
        if "<dir>" in context.lower():
            continue
        name = _name_from_href(href) or label
        last_modified, remainder = _pop_date(context)
        yield RemoteArtifact(name=name.strip(), size=_size_from_context(remainder), last_modified=last_modified)


def _iter_text_entries(text: str) -> Iterator[RemoteArtifact]:
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.lower().startswith("total "):
            continue
        match = _FTP_LINE.match(line)
        if match:
            if match.group("perms").startswith("d"):
                continue
            name = match.group("name")
            if match.group("perms").startswith("l") and " -> " in name:
                name = name.split(" -> ", 1)[0]
            yield RemoteArtifact(
                name=name.strip(),
                size=int(match.group("size")),
                last_modified=_ftp_date(match.group("month"), match.group("day"), match.group("yt")),
            )
            continue
        # Bare name listings (NLST) carry no metadata.
        if " " not in line and not line.endswith("/"):
            yield RemoteArtifact(name=line)


def parse_listing(text: str) -> Dict[str, RemoteArtifact]:
    """Parse an HTML or plain-text directory index into ``{file name: artifact}``.

    Unknown markup is ignored rather than rejected; an index without any
    recognizable file entries simply yields an empty mapping.
    """
    looks_like_html = re.search(r"<\s*(a|html|pre|table)\b", text, re.IGNORECASE) is not None
    entries = _iter_html_entries(text) if looks_like_html else _iter_text_entries(text)

    listing: Dict[str, RemoteArtifact] = {}
    for entry in entries:
        if entry.name.lower() in _SKIP_NAMES:
            continue
        listing.setdefault(entry.name, entry)
    return listing


class RemoteCatalog:
    """Directory listing of one remote folder, fetched at most once per instance."""

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = 60,
        headers: Dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        self.session = session or requests.Session()
        self.timeout = timeout
        self.headers = headers or dict(DEFAULT_HEADERS)
        self._listing: Dict[str, RemoteArtifact] | None = None
        self._lock = threading.Lock()

    def url_for(self, name: str) -> str:
        return urljoin(self.base_url, name)

    def list_remote_artifacts(self) -> Dict[str, RemoteArtifact]:
        with self._lock:
            if self._listing is None:
                self._listing = self._fetch_listing()
        return dict(self._listing)

    def lookup(self, name: str) -> RemoteArtifact | None:
        listing = self.list_remote_artifacts()
        if name in listing:
            return listing[name]
        folded = name.strip().casefold()
        for key, artifact in listing.items():
            if key.casefold() == folded:
                return artifact
        return None

    def _fetch_listing(self) -> Dict[str, RemoteArtifact]:
        try:
            response = self.session.get(self.base_url, headers=self.headers, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise CatalogUnavailableError(self.base_url, exc) from exc

        listing = parse_listing(response.text)
        logger.info("Listed %d remote artifacts at %s", len(listing), self.base_url)
        return listing
