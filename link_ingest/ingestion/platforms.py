"""Platform detection, URL normalization and canonical link identity.

Every link that enters the pipeline goes through :func:`detect_platform`; the
pair ``(platform, normalized_url)`` is then reduced to a deterministic key by
:func:`canonical_identity`. Two links are "the same link" for deduplication and
merging exactly when their canonical identities are equal.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal
from urllib.parse import urlsplit, urlunsplit

from link_ingest.core.urls import clean_query, is_unsafe_url, strip_host_prefixes

PlatformCategory = Literal["dsp", "social", "earnings", "websites", "custom"]

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_BARE_HANDLE_RE = re.compile(r"^@[A-Za-z0-9._]+$")
_HOST_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]*[a-z0-9])?(?:\.[a-z0-9](?:[a-z0-9-]*[a-z0-9])?)+$")
_SPOTIFY_LOCALE_RE = re.compile(r"^/intl-[a-z]{2}(?=/)", re.IGNORECASE)
_TIKTOK_RESERVED = {"for", "following", "live", "upload", "search", "discover", "trending", "tag", "music"}
_YOUTUBE_RESERVED = {
    "watch",
    "results",
    "shorts",
    "live",
    "playlist",
    "feed",
    "gaming",
    "music",
    "premium",
    "embed",
    "c",
    "channel",
    "user",
}


@dataclass(frozen=True, slots=True)
class PlatformInfo:
    id: str
    name: str
    category: PlatformCategory
    hosts: tuple[str, ...] = ()
    case_insensitive_path: bool = True
    # None keeps every non-tracking param in the identity; an empty set drops the query.
    identity_query_params: frozenset[str] | None = frozenset()


@dataclass(slots=True)
class DetectedLink:
    platform: PlatformInfo
    normalized_url: str
    original_url: str
    suggested_title: str
    is_valid: bool
    error: str | None = None


WEBSITE = PlatformInfo(
    id="website",
    name="Website",
    category="websites",
    case_insensitive_path=False,
    identity_query_params=None,
)

# Matching walks this list in order, so more specific hosts come first.
PLATFORMS: tuple[PlatformInfo, ...] = (
    PlatformInfo("spotify", "Spotify", "dsp", ("open.spotify.com", "spotify.com"), case_insensitive_path=False),
    PlatformInfo("apple_music", "Apple Music", "dsp", ("music.apple.com",), case_insensitive_path=False),
    PlatformInfo("youtube_music", "YouTube Music", "dsp", ("music.youtube.com",), case_insensitive_path=False),
    PlatformInfo("amazon_music", "Amazon Music", "dsp", ("music.amazon.com",), case_insensitive_path=False),
    PlatformInfo("soundcloud", "SoundCloud", "dsp", ("soundcloud.com",)),
    PlatformInfo("bandcamp", "Bandcamp", "dsp", ("bandcamp.com",)),
    PlatformInfo("deezer", "Deezer", "dsp", ("deezer.com",), case_insensitive_path=False),
    PlatformInfo("tidal", "Tidal", "dsp", ("tidal.com",), case_insensitive_path=False),
    PlatformInfo(
        "youtube",
        "YouTube",
        "social",
        ("youtube.com", "youtu.be"),
        case_insensitive_path=False,
        identity_query_params=frozenset({"v", "list"}),
    ),
    PlatformInfo("instagram", "Instagram", "social", ("instagram.com",)),
    PlatformInfo("tiktok", "TikTok", "social", ("tiktok.com",)),
    PlatformInfo("twitter", "X (Twitter)", "social", ("x.com", "twitter.com")),
    PlatformInfo("threads", "Threads", "social", ("threads.net", "threads.com")),
    PlatformInfo("facebook", "Facebook", "social", ("facebook.com", "fb.com")),
    PlatformInfo("twitch", "Twitch", "social", ("twitch.tv",)),
    PlatformInfo("snapchat", "Snapchat", "social", ("snapchat.com",)),
    PlatformInfo("linkedin", "LinkedIn", "social", ("linkedin.com",)),
    PlatformInfo("pinterest", "Pinterest", "social", ("pinterest.com",)),
    PlatformInfo("reddit", "Reddit", "social", ("reddit.com",)),
    PlatformInfo("discord", "Discord", "social", ("discord.gg", "discord.com"), case_insensitive_path=False),
    PlatformInfo("telegram", "Telegram", "social", ("t.me", "telegram.me")),
    PlatformInfo("patreon", "Patreon", "earnings", ("patreon.com",)),
    PlatformInfo("venmo", "Venmo", "earnings", ("venmo.com",)),
    PlatformInfo("paypal", "PayPal", "earnings", ("paypal.me", "paypal.com")),
    PlatformInfo("cashapp", "Cash App", "earnings", ("cash.app",)),
    PlatformInfo("ko_fi", "Ko-fi", "earnings", ("ko-fi.com",)),
    PlatformInfo("linktree", "Linktree", "websites", ("linktr.ee", "linktree.com")),
    PlatformInfo("stan", "Stan", "websites", ("stan.store", "stanwith.me")),
    PlatformInfo("beacons", "Beacons", "websites", ("beacons.ai", "beacons.page")),
    PlatformInfo("laylo", "Laylo", "websites", ("laylo.com",)),
)

_PLATFORMS_BY_ID = {platform.id: platform for platform in PLATFORMS} | {WEBSITE.id: WEBSITE}

_PATH_RULES: dict[str, re.Pattern[str]] = {
    "spotify": re.compile(
        r"^(?:/intl-[a-z]{2})?/(artist|album|track|playlist|show|episode)/[A-Za-z0-9]+$",
        re.IGNORECASE,
    ),
    "instagram": re.compile(r"^/[A-Za-z0-9._]+$"),
    "twitter": re.compile(r"^/[A-Za-z0-9_]+$"),
    "tiktok": re.compile(r"^/@[A-Za-z0-9._]+$"),
    "threads": re.compile(r"^/@[A-Za-z0-9._]+$"),
    "linktree": re.compile(r"^/@?[A-Za-z0-9_.]+$"),
}


def get_platform(platform_id: str) -> PlatformInfo | None:
    return _PLATFORMS_BY_ID.get(platform_id)


def match_platform(host: str) -> PlatformInfo:
    lowered = host.lower()
    for platform in PLATFORMS:
        for candidate in platform.hosts:
            if lowered == candidate or lowered.endswith("." + candidate):
                return platform
    return WEBSITE


def normalize_url(raw_url: str) -> str:
    """Return the canonical https form of a link or raise ``ValueError``."""
    candidate = (raw_url or "").strip()
    if not candidate:
        raise ValueError("empty url")
    if is_unsafe_url(candidate):
        raise ValueError("unsafe url scheme")
    if _BARE_HANDLE_RE.match(candidate):
        return f"https://x.com/{candidate[1:]}"

    if candidate.startswith("//"):
        candidate = "https:" + candidate
    elif not _SCHEME_RE.match(candidate):
        candidate = "https://" + candidate

    parts = urlsplit(candidate)
    if parts.scheme.lower() not in {"http", "https"}:
        raise ValueError(f"unsupported scheme: {parts.scheme}")

    host = (parts.hostname or "").lower().rstrip(".")
    if not host or not _HOST_RE.match(host):
        raise ValueError("invalid host")
    if host in {"twitter.com", "www.twitter.com", "mobile.twitter.com"}:
        host = "x.com"

    port = parts.port
    netloc = host if port in (None, 80, 443) else f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path).rstrip("/")
    if match_platform(host).id == "tiktok":
        path = _with_tiktok_at(path)

    return urlunsplit(("https", netloc, path, clean_query(parts.query), ""))


def detect_platform(url: str) -> DetectedLink:
    try:
        normalized = normalize_url(url)
        host = urlsplit(normalized).hostname or ""
    except ValueError as exc:
        return DetectedLink(
            platform=WEBSITE,
            normalized_url=(url or "").strip(),
            original_url=url,
            suggested_title="Invalid URL",
            is_valid=False,
            error=str(exc),
        )

    platform = match_platform(host)
    is_valid = _validate(normalized, platform)
    return DetectedLink(
        platform=platform,
        normalized_url=normalized,
        original_url=url,
        suggested_title=_suggested_title(normalized, platform),
        is_valid=is_valid,
        error=None if is_valid else "Invalid URL format",
    )


def canonical_identity(platform: PlatformInfo | str, normalized_url: str) -> str:
    info = platform if isinstance(platform, PlatformInfo) else (get_platform(platform) or WEBSITE)
    parts = urlsplit(normalized_url)
    host = strip_host_prefixes((parts.hostname or "").lower())
    path = parts.path.rstrip("/")
    query = parts.query
    if info.id == "youtube" and host == "youtu.be" and path:
        path, query = "/watch", f"v={path.lstrip('/')}"
    if host in info.hosts:
        host = info.hosts[0]
    if info.id == "spotify":
        path = _SPOTIFY_LOCALE_RE.sub("", path)
    if info.case_insensitive_path:
        path = path.lower()

    if info.identity_query_params is None:
        query = clean_query(query)
    elif info.identity_query_params:
        query = clean_query(query, keep=set(info.identity_query_params))
    else:
        query = ""

    key = f"{info.id}:{host}{path}"
    return f"{key}?{query}" if query else key


def identity_for_url(url: str) -> tuple[DetectedLink, str | None]:
    detected = detect_platform(url)
    if not detected.is_valid:
        return detected, None
    return detected, canonical_identity(detected.platform, detected.normalized_url)


def _with_tiktok_at(path: str) -> str:
    segments = path.split("/")
    if len(segments) > 1:
        head = segments[1]
        if (
            head
            and not head.startswith("@")
            and head.lower() not in _TIKTOK_RESERVED
            and re.fullmatch(r"[A-Za-z0-9._]+", head)
        ):
            segments[1] = "@" + head
    return "/".join(segments)


def _validate(normalized_url: str, platform: PlatformInfo) -> bool:
    parts = urlsplit(normalized_url)
    path = parts.path
    if platform.id == "youtube":
        return _validate_youtube(parts.hostname or "", path, parts.query)
    rule = _PATH_RULES.get(platform.id)
    if rule is None:
        return True
    return bool(rule.match(path))


def _validate_youtube(host: str, path: str, query: str) -> bool:
    host = strip_host_prefixes(host)
    if host == "youtu.be":
        return bool(re.match(r"^/[A-Za-z0-9_-]{6,}$", path))
    if re.match(r"^/(c|channel|user)/[A-Za-z0-9_-]+$", path):
        return True
    if re.match(r"^/@[A-Za-z0-9._-]+$", path):
        return True
    if re.match(r"^/shorts/[A-Za-z0-9_-]+$", path):
        return True
    if path == "/watch" and re.search(r"(?:^|&)v=[A-Za-z0-9_-]+", query):
        return True
    segments = [segment for segment in path.split("/") if segment]
    return len(segments) == 1 and segments[0].lower() not in _YOUTUBE_RESERVED


def _suggested_title(normalized_url: str, platform: PlatformInfo) -> str:
    path = urlsplit(normalized_url).path
    if platform.id == "spotify":
        for kind in ("artist", "album", "track", "playlist"):
            if f"/{kind}/" in path:
                return f"{platform.name} {kind.capitalize()}"
        return platform.name
    if platform.id in {"instagram", "twitter", "tiktok", "threads"}:
        segments = [segment for segment in path.split("/") if segment]
        if segments:
            return f"{platform.name} (@{segments[0].lstrip('@')})"
        return platform.name
    if platform.id == "youtube" and re.match(r"^/(c/|channel/|@)", path):
        return f"{platform.name} Channel"
    if platform is WEBSITE:
        host = urlsplit(normalized_url).hostname or ""
        return strip_host_prefixes(host) or platform.name
    return platform.name
