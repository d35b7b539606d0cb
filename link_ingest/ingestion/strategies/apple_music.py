from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup

from link_ingest.core.urls import is_unsafe_url
from link_ingest.ingestion.platforms import normalize_url
from link_ingest.ingestion.strategies.base import ExtractionStrategy, json_ld_items

_ARTIST_PATH_RE = re.compile(r"^/([a-z]{2,3})/artist/([^/?#]+)/(\d+)", re.IGNORECASE)
_ARTIST_TYPES = {"MusicGroup", "MusicArtist", "Person", "ProfilePage"}
_DATA_LINK_ATTRS = ("data-href", "data-url", "data-link")


class AppleMusicStrategy(ExtractionStrategy):
    """Artist pages on music.apple.com.

    Structured links (JSON-LD ``sameAs`` and ``data-*`` link attributes) come
    first; anchors are always scanned as well since artist pages carry few
    structured links.
    """

    platform_id = "apple_music"
    platform_name = "Apple Music"
    job_type = "import_apple_music"
    canonical_host = "music.apple.com"
    valid_hosts = frozenset({"music.apple.com", "www.music.apple.com"})
    skip_hosts = frozenset(
        {
            "music.apple.com",
            "mzstatic.com",
            "apple.com",
            "support.apple.com",
            "itunes.apple.com",
            "apps.apple.com",
        }
    )
    branding_patterns = (
        re.compile(r"\s*[-–]\s*Apple\s*Music$", re.IGNORECASE),
        re.compile(r"\s*\|\s*Apple\s*Music$", re.IGNORECASE),
        re.compile(r"\s+on\s+Apple\s*Music$", re.IGNORECASE),
        re.compile(r"\s+Apple\s*Music$", re.IGNORECASE),
    )
    placeholder_patterns = (
        re.compile(r"apple[-_]?music[-_]?logo", re.IGNORECASE),
        re.compile(r"default[-_]?artist", re.IGNORECASE),
        re.compile(r"generic[-_]?artist", re.IGNORECASE),
    )
    anchor_mode = "always"

    def extract_handle(self, url: str) -> str | None:
        match = self._artist_match(url)
        return match.group(3) if match else None

    def validate_url(self, url: str) -> str | None:
        match = self._artist_match(url)
        if match is None:
            return None
        region, slug, artist_id = match.groups()
        return f"https://{self.canonical_host}/{region.lower()}/artist/{slug.lower()}/{artist_id}"

    def _artist_match(self, url: str) -> re.Match[str] | None:
        candidate = (url or "").strip()
        if not candidate or candidate.startswith("//") or is_unsafe_url(candidate):
            return None
        if "://" in candidate and not candidate.lower().startswith("https://"):
            return None
        try:
            normalized = normalize_url(candidate)
        except ValueError:
            return None
        parts = urlsplit(normalized)
        if (parts.hostname or "") not in self.valid_hosts:
            return None
        return _ARTIST_PATH_RE.match(parts.path)

    def structured_links(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for item in _artist_items(soup):
            same_as = item.get("sameAs")
            if isinstance(same_as, str):
                same_as = [same_as]
            if isinstance(same_as, list):
                entries.extend({"url": url} for url in same_as if isinstance(url, str))
        for attr in _DATA_LINK_ATTRS:
            entries.extend({"url": tag.get(attr)} for tag in soup.find_all(attrs={attr: True}))
        return entries

    def structured_identity(self, soup: BeautifulSoup) -> tuple[str | None, str | None]:
        for item in _artist_items(soup):
            name = item.get("name")
            image = item.get("image")
            if isinstance(image, dict):
                image = image.get("url")
            name = name.strip() if isinstance(name, str) and name.strip() else None
            image = image.strip() if isinstance(image, str) and image.strip() else None
            if name or image:
                return name, image
        return None, None


def _artist_items(soup: BeautifulSoup) -> list[dict[str, Any]]:
    items = []
    for item in json_ld_items(soup):
        kind = item.get("@type")
        kinds = set(kind) if isinstance(kind, list) else {kind}
        if kinds & _ARTIST_TYPES:
            items.append(item)
    return items
