from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterator
from urllib.parse import parse_qs, urlsplit

from bs4 import BeautifulSoup

from link_ingest.core.urls import is_unsafe_url
from link_ingest.ingestion.platforms import normalize_url
from link_ingest.ingestion.strategies.base import ExtractionStrategy, dig, first_text

logger = logging.getLogger(__name__)

OFFICIAL_ARTIST_SIGNAL = "youtube_official_artist"

_CHANNEL_PATH_RE = re.compile(
    r"^/(?:@(?P<handle>[A-Za-z0-9._-]{1,100})|channel/(?P<channel>[A-Za-z0-9_-]{6,})|c/(?P<custom>[A-Za-z0-9._-]{1,100}))"
    r"(?:/[A-Za-z]*)?$"
)
_INITIAL_DATA_RE = re.compile(r"ytInitialData\s*=\s*")
_VERIFIED_ARTIST_STYLE = "BADGE_STYLE_TYPE_VERIFIED_ARTIST"


class YouTubeStrategy(ExtractionStrategy):
    """Channel "About" pages; links come from the serialized ``ytInitialData`` blob only."""

    platform_id = "youtube"
    platform_name = "YouTube"
    job_type = "import_youtube"
    canonical_host = "www.youtube.com"
    valid_hosts = frozenset({"youtube.com", "www.youtube.com", "m.youtube.com"})
    skip_hosts = frozenset({"youtube.com", "youtu.be", "googleusercontent.com", "ggpht.com", "ytimg.com"})
    branding_patterns = (re.compile(r"\s*-\s*YouTube$", re.IGNORECASE),)
    placeholder_patterns = (re.compile(r"default[-_]?user", re.IGNORECASE),)
    anchor_mode = "never"

    def extract_handle(self, url: str) -> str | None:
        channel = self._channel_path(url)
        return channel.rsplit("/", 1)[-1].lstrip("@") if channel else None

    def validate_url(self, url: str) -> str | None:
        channel = self._channel_path(url)
        return f"https://{self.canonical_host}{channel}" if channel else None

    def fetch_url(self, validated_url: str) -> str:
        return f"{validated_url}/about"

    def _channel_path(self, url: str) -> str | None:
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
        match = _CHANNEL_PATH_RE.match(parts.path)
        if match is None:
            return None
        if match.group("handle"):
            return f"/@{match.group('handle').lower()}"
        if match.group("channel"):
            # channel ids are case-sensitive
            return f"/channel/{match.group('channel')}"
        return f"/c/{match.group('custom').lower()}"

    def structured_links(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        data = initial_data(soup)
        if data is None:
            return []
        extra = [OFFICIAL_ARTIST_SIGNAL] if _is_official_artist(data) else []
        entries: list[dict[str, Any]] = []
        for key, value in _walk(data):
            if key == "channelExternalLinkViewModel" and isinstance(value, dict):
                entries.append({"url": _view_model_url(value), "title": _title(value.get("title")), "signals": extra})
            elif key in ("channelExternalLinkRenderer", "primaryLinks"):
                for item in value if isinstance(value, list) else [value]:
                    if not isinstance(item, dict):
                        continue
                    url = _unwrap_redirect(dig(item, "navigationEndpoint", "urlEndpoint", "url"))
                    entries.append({"url": url, "title": _title(item.get("title")), "signals": extra})
        return entries

    def structured_identity(self, soup: BeautifulSoup) -> tuple[str | None, str | None]:
        data = initial_data(soup)
        if data is None:
            return None, None
        metadata = dig(data, "metadata", "channelMetadataRenderer")
        name = _title(dig(metadata, "title"))
        avatar = _last_thumbnail(dig(metadata, "avatar", "thumbnails"))
        if avatar is None:
            avatar = _last_thumbnail(dig(data, "header", "c4TabbedHeaderRenderer", "avatar", "thumbnails"))
        return name, avatar


def initial_data(soup: BeautifulSoup) -> dict[str, Any] | None:
    """Read ``ytInitialData`` from a ``<script id=...>`` JSON body or a ``var ytInitialData = {...};`` assignment."""
    script = soup.find("script", id="ytInitialData")
    if script is not None:
        try:
            data = json.loads(script.string or script.get_text() or "")
        except json.JSONDecodeError:
            logger.info("unparseable ytInitialData payload")
            return None
        return data if isinstance(data, dict) else None

    decoder = json.JSONDecoder()
    for script in soup.find_all("script"):
        text = script.string or ""
        match = _INITIAL_DATA_RE.search(text)
        if match is None:
            continue
        try:
            data, _ = decoder.raw_decode(text, match.end())
        except json.JSONDecodeError:
            logger.info("unparseable ytInitialData assignment")
            return None
        return data if isinstance(data, dict) else None
    return None


def _walk(node: Any) -> Iterator[tuple[str, Any]]:
    if isinstance(node, dict):
        for key, value in node.items():
            yield key, value
            yield from _walk(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk(item)


def _view_model_url(model: Any) -> str | None:
    link = model.get("link") if isinstance(model, dict) else None
    if not isinstance(link, dict):
        return None
    href = first_text(link, ("href",))
    if href:
        return href
    for key, value in _walk(link.get("commandRuns") or []):
        if key == "urlEndpoint" and isinstance(value, dict):
            unwrapped = _unwrap_redirect(value.get("url"))
            if unwrapped:
                return unwrapped
    content = first_text(link, ("content",))
    if content and "://" not in content:
        return f"https://{content}"
    return content


def _unwrap_redirect(url: Any) -> str | None:
    if not isinstance(url, str) or not url.strip():
        return None
    parts = urlsplit(url.strip())
    if (parts.hostname or "").endswith("youtube.com") and parts.path == "/redirect":
        target = parse_qs(parts.query).get("q")
        return target[0] if target else None
    return url.strip()


def _is_official_artist(data: dict[str, Any]) -> bool:
    return any(
        key == "metadataBadgeRenderer" and isinstance(value, dict) and value.get("style") == _VERIFIED_ARTIST_STYLE
        for key, value in _walk(data.get("header"))
    )


def _last_thumbnail(thumbnails: Any) -> str | None:
    if not isinstance(thumbnails, list):
        return None
    urls = [item.get("url") for item in thumbnails if isinstance(item, dict) and isinstance(item.get("url"), str)]
    return urls[-1] if urls else None


def _title(value: Any) -> str | None:
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, dict):
        return first_text(value, ("content", "simpleText"))
    return None
