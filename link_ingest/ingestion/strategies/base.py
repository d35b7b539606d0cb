from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Literal
from urllib.parse import urlsplit

import httpx
from bs4 import BeautifulSoup

from link_ingest.core.urls import is_unsafe_url, strip_host_prefixes
from link_ingest.ingestion.errors import ErrorCode, ExtractionError
from link_ingest.ingestion.platforms import canonical_identity, detect_platform, normalize_url

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

URL_SHORTENERS = (
    "bit.ly",
    "t.co",
    "goo.gl",
    "ow.ly",
    "tinyurl.com",
    "buff.ly",
    "lnkd.in",
    "fb.me",
    "click.linksynergy.com",
    "redirect.viglink.com",
)
PLACEHOLDER_IMAGE_PATTERNS = (
    re.compile(r"default[-_]?avatar", re.IGNORECASE),
    re.compile(r"placeholder", re.IGNORECASE),
    re.compile(r"og[-_]?default", re.IGNORECASE),
    re.compile(r"share[-_]?default", re.IGNORECASE),
)
DEFAULT_HANDLE_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{0,28}[a-z0-9]$|^[a-z0-9]$")


@dataclass(slots=True)
class FetchOptions:
    timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_delay_seconds: float = 1.0
    max_bytes: int = 2_000_000
    user_agent: str = "link-ingest/1.0"
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Any, *, timeout_seconds: float | None = None) -> "FetchOptions":
        return cls(
            timeout_seconds=timeout_seconds or settings.fetch_timeout_seconds,
            max_retries=settings.fetch_max_retries,
            retry_delay_seconds=settings.fetch_retry_delay_seconds,
            max_bytes=settings.fetch_max_bytes,
            user_agent=settings.fetch_user_agent,
        )


@dataclass(slots=True)
class RawDocument:
    html: str
    status_code: int
    final_url: str
    content_type: str | None = None


@dataclass(slots=True)
class ExtractedLink:
    url: str
    source_platform: str
    title: str | None = None
    sources: list[str] = field(default_factory=list)
    signals: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExtractionResult:
    source_platform: str
    links: list[ExtractedLink] = field(default_factory=list)
    display_name: str | None = None
    avatar_url: str | None = None


async def fetch_document(
    url: str,
    options: FetchOptions,
    *,
    allowed_hosts: Iterable[str],
    client: httpx.AsyncClient | None = None,
    sleep: Sleep = asyncio.sleep,
) -> RawDocument:
    """GET ``url`` with a timeout, a byte cap and a few retries on transient failures.

    The host allow-list is checked before any request is made and again on the
    final URL after redirects. ``NOT_FOUND``, ``RATE_LIMITED`` and other fatal
    errors are raised immediately without retrying.
    """
    hosts = {host.lower() for host in allowed_hosts}
    host = (urlsplit(url).hostname or "").lower()
    if host not in hosts:
        raise ExtractionError(ErrorCode.INVALID_URL, f"host not allowed: {host or url}")

    http = client or httpx.AsyncClient(follow_redirects=True, timeout=options.timeout_seconds)
    try:
        last_error: ExtractionError | None = None
        for attempt in range(options.max_retries + 1):
            try:
                return await _fetch_once(http, url, options, hosts)
            except ExtractionError as exc:
                if not exc.retryable or exc.is_rate_limited:
                    raise
                last_error = exc

            if attempt < options.max_retries:
                logger.warning(
                    "fetch attempt failed url=%s attempt=%s max_retries=%s error=%s",
                    url,
                    attempt + 1,
                    options.max_retries,
                    last_error,
                )
                await sleep(options.retry_delay_seconds * (attempt + 1))

        raise last_error or ExtractionError(ErrorCode.FETCH_FAILED, "fetch failed after retries")
    finally:
        if client is None:
            await http.aclose()


async def _fetch_once(
    http: httpx.AsyncClient,
    url: str,
    options: FetchOptions,
    allowed_hosts: set[str],
) -> RawDocument:
    headers = {
        "User-Agent": options.user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
        **options.headers,
    }
    try:
        async with http.stream("GET", url, headers=headers, timeout=options.timeout_seconds) as response:
            final_host = (response.url.host or "").lower()
            if final_host not in allowed_hosts:
                raise ExtractionError(ErrorCode.INVALID_URL, f"redirected to host outside allow-list: {final_host}")
            if response.status_code == 404:
                raise ExtractionError(ErrorCode.NOT_FOUND, "profile not found", status_code=404)
            if response.status_code == 429:
                raise ExtractionError(ErrorCode.RATE_LIMITED, "rate limited by platform", status_code=429)
            if not response.is_success:
                raise ExtractionError(
                    ErrorCode.FETCH_FAILED,
                    f"HTTP {response.status_code}",
                    status_code=response.status_code,
                )

            declared = response.headers.get("content-length")
            if declared and declared.isdigit() and int(declared) > options.max_bytes:
                raise ExtractionError(ErrorCode.RESPONSE_TOO_LARGE, f"response exceeds {options.max_bytes} bytes")

            chunks: list[bytes] = []
            total = 0
            async for chunk in response.aiter_bytes():
                total += len(chunk)
                if total > options.max_bytes:
                    raise ExtractionError(ErrorCode.RESPONSE_TOO_LARGE, f"response exceeds {options.max_bytes} bytes")
                chunks.append(chunk)

            content_type = response.headers.get("content-type")
            html = b"".join(chunks).decode(response.charset_encoding or "utf-8", errors="replace")
            status_code = response.status_code
            final_url = str(response.url)
    except httpx.TimeoutException as exc:
        raise ExtractionError(
            ErrorCode.FETCH_TIMEOUT, f"request timed out after {options.timeout_seconds}s"
        ) from exc
    except httpx.HTTPError as exc:
        raise ExtractionError(ErrorCode.FETCH_FAILED, str(exc) or exc.__class__.__name__) from exc

    if not html.strip():
        raise ExtractionError(ErrorCode.EMPTY_RESPONSE, "empty response from server")
    if content_type and "html" not in content_type:
        logger.warning("non-html content type url=%s content_type=%s", url, content_type)
    return RawDocument(html=html, status_code=status_code, final_url=final_url, content_type=content_type)


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def meta_content(soup: BeautifulSoup, *names: str) -> str | None:
    for name in names:
        tag = soup.find("meta", attrs={"property": name}) or soup.find("meta", attrs={"name": name})
        if tag is None:
            continue
        content = _as_text(tag.get("content"))
        if content:
            return content
    return None


def next_data(soup: BeautifulSoup) -> dict[str, Any] | None:
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None:
        return None
    try:
        data = json.loads(script.string or script.get_text() or "")
    except json.JSONDecodeError:
        logger.info("unparseable __NEXT_DATA__ payload")
        return None
    return data if isinstance(data, dict) else None


def json_ld_items(soup: BeautifulSoup) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.string or script.get_text() or "")
        except json.JSONDecodeError:
            continue
        candidates = data if isinstance(data, list) else [data]
        for item in candidates:
            if not isinstance(item, dict):
                continue
            graph = item.get("@graph")
            if isinstance(graph, list):
                items.extend(node for node in graph if isinstance(node, dict))
            else:
                items.append(item)
    return items


def dig(data: Any, *path: str) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def is_placeholder_image(url: str, extra_patterns: Iterable[re.Pattern[str]] = ()) -> bool:
    return any(pattern.search(url) for pattern in (*PLACEHOLDER_IMAGE_PATTERNS, *extra_patterns))


def is_shortener_host(host: str) -> bool:
    lowered = host.lower()
    return any(lowered == shortener or lowered.endswith("." + shortener) for shortener in URL_SHORTENERS)


def is_candidate_href(href: str) -> bool:
    candidate = href.strip()
    if not candidate or candidate.startswith("#") or is_unsafe_url(candidate):
        return False
    if candidate.lower().startswith("tel:"):
        return False
    return bool(re.match(r"^(https?://|//)", candidate, re.IGNORECASE))


class ExtractionStrategy:
    """Fetch and extract one link-in-bio platform.

    Subclasses declare their hosts and override :meth:`structured_links` and
    :meth:`structured_identity` to read the platform's embedded data; the
    anchor fallback, identity fallbacks and deduplication live here.
    """

    platform_id: str = ""
    platform_name: str = ""
    job_type: str = ""
    canonical_host: str = ""
    valid_hosts: frozenset[str] = frozenset()
    skip_hosts: frozenset[str] = frozenset()
    reserved_handles: frozenset[str] = frozenset()
    handle_pattern: re.Pattern[str] = DEFAULT_HANDLE_RE
    branding_patterns: tuple[re.Pattern[str], ...] = ()
    placeholder_patterns: tuple[re.Pattern[str], ...] = ()
    # when anchor tags are scanned relative to structured data
    anchor_mode: Literal["fallback", "always", "never"] = "fallback"

    @property
    def signal(self) -> str:
        return f"{self.platform_id}_profile_link"

    def supports(self, url: str) -> bool:
        return self.validate_url(url) is not None

    def extract_handle(self, url: str) -> str | None:
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
        segments = [segment for segment in parts.path.split("/") if segment]
        if not segments:
            return None
        handle = segments[0].lstrip("@").lower()
        if handle in self.reserved_handles or not self.handle_pattern.match(handle):
            return None
        return handle

    def validate_url(self, url: str) -> str | None:
        handle = self.extract_handle(url)
        if handle is None:
            return None
        return f"https://{self.canonical_host}/{handle}"

    async def fetch(
        self,
        url: str,
        options: FetchOptions,
        *,
        client: httpx.AsyncClient | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> RawDocument:
        validated = self.validate_url(url)
        if validated is None:
            raise ExtractionError(ErrorCode.INVALID_URL, f"invalid {self.platform_name} url: {url}")
        return await fetch_document(
            self.fetch_url(validated), options, allowed_hosts=self.valid_hosts, client=client, sleep=sleep
        )

    def fetch_url(self, validated_url: str) -> str:
        return validated_url

    def extract(self, document: RawDocument) -> ExtractionResult:
        soup = parse_html(document.html)
        entries = self.structured_links(soup)
        visible = [entry for entry in entries if not entry.get("hidden")]
        hidden = {self.identity_key(link.url) for link in self.build_links(e for e in entries if e.get("hidden"))}

        seen: set[str] = set()
        links = self.build_links(visible, seen=seen)
        if self.anchor_mode == "always" or (self.anchor_mode == "fallback" and not links):
            # Entries the page marks hidden stay out even when rendered as anchors.
            seen |= hidden
            links.extend(self.build_links(self.anchor_entries(soup), seen=seen))

        name, avatar = self.structured_identity(soup)
        name = name or meta_content(soup, "og:title", "twitter:title")
        avatar = avatar or meta_content(soup, "og:image", "twitter:image")
        if avatar and is_placeholder_image(avatar, self.placeholder_patterns):
            avatar = None

        return ExtractionResult(
            source_platform=self.platform_id,
            links=links,
            display_name=self.clean_display_name(name),
            avatar_url=_as_text(avatar),
        )

    def structured_links(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        """Raw ``{url, title, hidden, signals}`` entries from the platform's embedded data."""
        return []

    def structured_identity(self, soup: BeautifulSoup) -> tuple[str | None, str | None]:
        return None, None

    def clean_display_name(self, name: str | None) -> str | None:
        cleaned = _as_text(name)
        if cleaned is None:
            return None
        for pattern in self.branding_patterns:
            cleaned = pattern.sub("", cleaned).strip()
        return cleaned or None

    def identity_key(self, url: str) -> str:
        detected = detect_platform(url)
        return canonical_identity(detected.platform, detected.normalized_url)

    def build_links(
        self,
        entries: Iterable[dict[str, Any]],
        *,
        seen: set[str] | None = None,
    ) -> list[ExtractedLink]:
        """Normalize raw entries in order; first occurrence of an identity wins.

        ``seen`` is updated in place so several passes can share one dedup set.
        """
        seen = set() if seen is None else seen
        links: list[ExtractedLink] = []
        for entry in entries:
            raw_url = _as_text(entry.get("url"))
            if not raw_url or not is_candidate_href(raw_url):
                continue
            detected = detect_platform(raw_url)
            if not detected.is_valid:
                continue
            host = urlsplit(detected.normalized_url).hostname or ""
            if self._is_skipped_host(host) or is_shortener_host(host):
                continue
            key = canonical_identity(detected.platform, detected.normalized_url)
            if key in seen:
                continue
            seen.add(key)
            extra_signals = [signal for signal in entry.get("signals") or () if isinstance(signal, str)]
            links.append(
                ExtractedLink(
                    url=detected.normalized_url,
                    source_platform=self.platform_id,
                    title=_as_text(entry.get("title")) or detected.suggested_title,
                    sources=[self.platform_id],
                    signals=[self.signal, *extra_signals],
                )
            )
        return links

    def anchor_entries(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        return [
            {"url": anchor.get("href"), "title": anchor.get_text(" ", strip=True)}
            for anchor in soup.find_all("a", href=True)
        ]

    def _is_skipped_host(self, host: str) -> bool:
        lowered = host.lower()
        bare = strip_host_prefixes(lowered)
        for skipped in (*self.valid_hosts, *self.skip_hosts):
            if lowered == skipped or bare == skipped or lowered.endswith("." + skipped):
                return True
        return False


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return None


def first_text(container: dict[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        value = _as_text(container.get(key))
        if value:
            return value
    return None


class NextDataProfileStrategy(ExtractionStrategy):
    """Strategy for Next.js profile pages that embed a creator and its links in ``pageProps``.

    Links may sit on ``pageProps`` itself or on one of the ``profile_keys``
    containers, either as a list of entries or as a ``{network: url}`` map.
    """

    profile_keys: tuple[str, ...] = ("user", "creator", "profile")
    link_keys: tuple[str, ...] = ("links", "socialLinks", "socials", "social_links")
    url_keys: tuple[str, ...] = ("url", "link", "href")
    title_keys: tuple[str, ...] = ("title", "label", "name", "platform")
    name_keys: tuple[str, ...] = ("displayName", "display_name", "fullName", "name")
    avatar_keys: tuple[str, ...] = ("avatar", "avatarUrl", "profileImage", "image")

    def page_props(self, soup: BeautifulSoup) -> dict[str, Any] | None:
        props = dig(next_data(soup), "props", "pageProps")
        return props if isinstance(props, dict) else None

    def structured_links(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        props = self.page_props(soup)
        if props is None:
            return []

        containers = [props] + [props[key] for key in self.profile_keys if isinstance(props.get(key), dict)]
        entries: list[dict[str, Any]] = []
        for container in containers:
            for key in self.link_keys:
                raw_links = container.get(key)
                if isinstance(raw_links, list):
                    entries.extend(self._entry(item) for item in raw_links if isinstance(item, dict))
                elif isinstance(raw_links, dict):
                    # {"instagram": "https://instagram.com/foo", ...}
                    entries.extend(
                        {"url": value, "title": name}
                        for name, value in raw_links.items()
                        if isinstance(value, str)
                    )
        return entries

    def structured_identity(self, soup: BeautifulSoup) -> tuple[str | None, str | None]:
        props = self.page_props(soup)
        profile = next(
            (props[key] for key in self.profile_keys if props and isinstance(props.get(key), dict)),
            None,
        )
        if profile is None:
            return None, None
        return first_text(profile, self.name_keys), first_text(profile, self.avatar_keys)

    def _entry(self, item: dict[str, Any]) -> dict[str, Any]:
        return {
            "url": first_text(item, self.url_keys),
            "title": first_text(item, self.title_keys),
            "hidden": bool(item.get("hidden") or item.get("isHidden") or item.get("archived")),
        }
