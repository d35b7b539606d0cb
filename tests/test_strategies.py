from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from link_ingest.ingestion.errors import ErrorCode, ErrorKind, ExtractionError, InvalidJobPayloadError
from link_ingest.ingestion.strategies.apple_music import AppleMusicStrategy
from link_ingest.ingestion.strategies.base import FetchOptions, RawDocument, fetch_document
from link_ingest.ingestion.strategies.beacons import BeaconsStrategy
from link_ingest.ingestion.strategies.laylo import LayloStrategy
from link_ingest.ingestion.strategies.linktree import LinktreeStrategy
from link_ingest.ingestion.strategies.registry import (
    MAX_DEPTH_BY_JOB_TYPE,
    network_for_job_type,
    strategy_for_job_type,
    strategy_for_platform,
    strategy_for_url,
)
from link_ingest.ingestion.strategies.stan import StanStrategy
from link_ingest.ingestion.strategies.youtube import OFFICIAL_ARTIST_SIGNAL, YouTubeStrategy


def _next_data_page(page_props: dict, *, title: str = "") -> str:
    return (
        "<html><head>"
        f"<title>{title}</title>"
        '<meta property="og:title" content="Fallback Name | Linktree">'
        '<meta property="og:image" content="https://ugc.production.linktr.ee/og-image.png">'
        "</head><body>"
        f'<script id="__NEXT_DATA__" type="application/json">{json.dumps({"props": {"pageProps": page_props}})}</script>'
        "</body></html>"
    )


def _document(html: str, url: str) -> RawDocument:
    return RawDocument(html=html, status_code=200, final_url=url, content_type="text/html")


async def _no_sleep(_: float) -> None:
    return None


def test_linktree_extracts_visible_links_in_position_order() -> None:
    html = _next_data_page(
        {
            "account": {
                "displayName": "Some Artist",
                "profilePictureUrl": "https://ugc.production.linktr.ee/avatar.jpg",
            },
            "links": [
                {"url": "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb", "title": "Spotify", "position": 2},
                {"url": "https://instagram.com/someartist", "title": "IG", "position": 0},
                {"url": "https://instagram.com/someartist/", "title": "IG again", "position": 1},
                {"url": "https://secret.example.com", "title": "Hidden", "position": 3, "hidden": True},
                {"url": "https://locked.example.com", "title": "Locked", "position": 4, "locked": True},
                {"url": "https://linktr.ee/someone-else", "title": "Other tree", "position": 5},
                {"url": "https://bit.ly/abc", "title": "Short", "position": 6},
                {"url": "javascript:alert(1)", "title": "Bad", "position": 7},
            ],
        }
    )
    result = LinktreeStrategy().extract(_document(html, "https://linktr.ee/someartist"))

    assert result.source_platform == "linktree"
    assert [link.url for link in result.links] == [
        "https://instagram.com/someartist",
        "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb",
    ]
    assert result.links[0].title == "IG"
    assert result.links[0].sources == ["linktree"]
    assert result.links[0].signals == ["linktree_profile_link"]
    assert result.display_name == "Some Artist"
    assert result.avatar_url == "https://ugc.production.linktr.ee/avatar.jpg"


def test_linktree_falls_back_to_anchors_and_meta() -> None:
    html = (
        "<html><head>"
        '<meta property="og:title" content="Some Artist | Linktree">'
        '<meta property="og:image" content="https://cdn.example.com/default-avatar.png">'
        "</head><body>"
        '<a href="https://www.youtube.com/@someartist">YouTube</a>'
        '<a href="#top">Top</a>'
        '<a href="https://linktr.ee/s/about">About</a>'
        '<a href="tel:+15555555">Call</a>'
        "</body></html>"
    )
    result = LinktreeStrategy().extract(_document(html, "https://linktr.ee/someartist"))

    assert [link.url for link in result.links] == ["https://www.youtube.com/@someartist"]
    assert result.links[0].title == "YouTube"
    assert result.display_name == "Some Artist"
    assert result.avatar_url is None


def test_stan_reads_nested_profile_and_dict_links() -> None:
    html = _next_data_page(
        {
            "user": {
                "displayName": "Stan Creator",
                "avatarUrl": "https://images.stan.store/avatar.png",
                "socialLinks": {"instagram": "https://instagram.com/stancreator", "tiktok": "https://tiktok.com/stancreator"},
                "links": [
                    {"link": "https://patreon.com/stancreator", "label": "Support"},
                    {"href": "https://stan.store/stancreator/p/course", "label": "Course"},
                    {"url": "https://example.com/hidden", "isHidden": True},
                ],
            }
        }
    )
    result = StanStrategy().extract(_document(html, "https://stan.store/stancreator"))

    urls = [link.url for link in result.links]
    assert "https://instagram.com/stancreator" in urls
    assert "https://tiktok.com/@stancreator" in urls
    assert "https://patreon.com/stancreator" in urls
    assert all("stan.store" not in url for url in urls)
    assert all("hidden" not in url for url in urls)
    assert result.display_name == "Stan Creator"
    assert result.avatar_url == "https://images.stan.store/avatar.png"


def test_stan_cleans_branding_from_title() -> None:
    strategy = StanStrategy()
    assert strategy.clean_display_name("Jane Doe | Stan") == "Jane Doe"
    assert strategy.clean_display_name("Jane Doe - Stan.store") == "Jane Doe"
    assert strategy.clean_display_name("   ") is None


def test_beacons_reads_json_ld() -> None:
    ld = {
        "@context": "https://schema.org",
        "@type": "ProfilePage",
        "name": "Beacon Person on Beacons",
        "image": {"url": "https://cdn.beacons.ai/images/me.jpg"},
        "sameAs": ["https://x.com/beaconperson", "https://beacons.ai/beaconperson/store", "https://soundcloud.com/bp"],
    }
    html = (
        "<html><head>"
        f'<script type="application/ld+json">{json.dumps(ld)}</script>'
        "</head><body></body></html>"
    )
    result = BeaconsStrategy().extract(_document(html, "https://beacons.ai/beaconperson"))

    assert [link.url for link in result.links] == ["https://x.com/beaconperson", "https://soundcloud.com/bp"]
    assert result.display_name == "Beacon Person"
    assert result.avatar_url == "https://cdn.beacons.ai/images/me.jpg"


def test_structured_data_without_visible_links_falls_back_to_anchors() -> None:
    html = _next_data_page({"links": []}).replace(
        "</body>", '<a href="https://soundcloud.com/someartist">SoundCloud</a></body>'
    )
    result = LinktreeStrategy().extract(_document(html, "https://linktr.ee/someartist"))

    assert [link.url for link in result.links] == ["https://soundcloud.com/someartist"]


def test_hidden_structured_entries_stay_hidden_in_anchor_fallback() -> None:
    html = _next_data_page(
        {"user": {"displayName": "Jane", "links": [{"url": "https://instagram.com/jane", "hidden": True}]}}
    ).replace(
        "</body>",
        '<a href="https://instagram.com/jane/">Instagram</a><a href="https://tiktok.com/@jane">TikTok</a></body>',
    )
    result = StanStrategy().extract(_document(html, "https://stan.store/jane"))

    assert [link.url for link in result.links] == ["https://tiktok.com/@jane"]
    assert result.display_name == "Jane"


def test_laylo_reads_profile_links() -> None:
    html = _next_data_page(
        {
            "profile": {
                "displayName": "Laylo Artist",
                "imageUrl": "https://images.laylo.com/avatar.jpg",
                "links": [
                    {"url": "https://instagram.com/layloartist", "title": "IG"},
                    {"url": "https://laylo.com/layloartist/drop", "title": "Drop"},
                    {"url": "https://tiktok.com/@layloartist", "hidden": True},
                ],
            }
        }
    )
    result = LayloStrategy().extract(_document(html, "https://laylo.com/layloartist"))

    assert [link.url for link in result.links] == ["https://instagram.com/layloartist"]
    assert result.links[0].signals == ["laylo_profile_link"]
    assert result.display_name == "Laylo Artist"
    assert result.avatar_url == "https://images.laylo.com/avatar.jpg"


def _youtube_page(initial_data: dict, *, assignment: bool = False) -> str:
    payload = json.dumps(initial_data)
    script = (
        f"<script>var ytInitialData = {payload};</script>"
        if assignment
        else f'<script id="ytInitialData">{payload}</script>'
    )
    return (
        "<html><head>"
        '<meta property="og:title" content="Meta Name - YouTube">'
        "</head><body>"
        f"{script}"
        '<a href="https://soundcloud.com/not-from-about">SoundCloud</a>'
        "</body></html>"
    )


def test_youtube_reads_about_links_from_initial_data() -> None:
    redirect = (
        "https://www.youtube.com/redirect?event=channel_description"
        "&q=https%3A%2F%2Fopen.spotify.com%2Fartist%2F4Z8W4fKeB5YxbusRsdQVPb"
    )
    data = {
        "header": {
            "c4TabbedHeaderRenderer": {
                "avatar": {
                    "thumbnails": [
                        {"url": "https://yt3.googleusercontent.com/avatar=s48"},
                        {"url": "https://yt3.googleusercontent.com/avatar=s176"},
                    ]
                },
                "badges": [{"metadataBadgeRenderer": {"style": "BADGE_STYLE_TYPE_VERIFIED_ARTIST"}}],
            }
        },
        "metadata": {"channelMetadataRenderer": {"title": "Artist Name"}},
        "contents": {
            "channelAboutFullMetadataRenderer": {
                "links": [
                    {
                        "channelExternalLinkViewModel": {
                            "title": {"content": "Instagram"},
                            "link": {"href": "https://instagram.com/artistname"},
                        }
                    },
                    {
                        "channelExternalLinkViewModel": {
                            "title": {"content": "Spotify"},
                            "link": {
                                "content": "open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb",
                                "commandRuns": [{"onTap": {"innertubeCommand": {"urlEndpoint": {"url": redirect}}}}],
                            },
                        }
                    },
                    {"channelExternalLinkViewModel": {"title": "X", "link": {"content": "x.com/artistname"}}},
                    {"channelExternalLinkViewModel": {"link": {"href": "https://www.youtube.com/@artistname/videos"}}},
                ]
            }
        },
    }
    result = YouTubeStrategy().extract(_document(_youtube_page(data), "https://www.youtube.com/@artistname/about"))

    assert [link.url for link in result.links] == [
        "https://instagram.com/artistname",
        "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb",
        "https://x.com/artistname",
    ]
    assert result.links[0].title == "Instagram"
    assert result.links[0].signals == ["youtube_profile_link", OFFICIAL_ARTIST_SIGNAL]
    assert result.display_name == "Artist Name"
    assert result.avatar_url == "https://yt3.googleusercontent.com/avatar=s176"


def test_youtube_reads_script_assignment_and_ignores_page_anchors() -> None:
    data = {
        "contents": {
            "channelAboutFullMetadataRenderer": {
                "primaryLinks": [
                    {
                        "title": {"simpleText": "TikTok"},
                        "navigationEndpoint": {"urlEndpoint": {"url": "https://tiktok.com/@minimal"}},
                    }
                ]
            }
        }
    }
    result = YouTubeStrategy().extract(
        _document(_youtube_page(data, assignment=True), "https://www.youtube.com/@minimal/about")
    )

    assert [link.url for link in result.links] == ["https://tiktok.com/@minimal"]
    assert result.links[0].signals == ["youtube_profile_link"]
    assert result.display_name == "Meta Name"

    empty = YouTubeStrategy().extract(_document("<html><body>No data</body></html>", "https://www.youtube.com/@x"))
    assert empty.links == []
    assert empty.display_name is None


def test_youtube_fetches_channel_about_page() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, text="<html><body>about</body></html>", headers={"content-type": "text/html"})

    async def run() -> RawDocument:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await YouTubeStrategy().fetch("https://youtube.com/@Artist", FetchOptions(), client=client)

    document = asyncio.run(run())
    assert seen == ["https://www.youtube.com/@artist/about"]
    assert "about" in document.html


def test_apple_music_merges_structured_and_anchor_links() -> None:
    ld = {
        "@context": "https://schema.org",
        "@type": "MusicGroup",
        "name": "Some Artist",
        "image": "https://is1-ssl.mzstatic.com/image/thumb/artist.jpg",
        "sameAs": ["https://instagram.com/someartist", "https://music.apple.com/us/artist/some-artist/123456"],
    }
    html = (
        "<html><head>"
        '<meta property="og:title" content="Some Artist on Apple Music">'
        f'<script type="application/ld+json">{json.dumps(ld)}</script>'
        "</head><body>"
        '<div data-href="https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb"></div>'
        '<a href="https://instagram.com/someartist/">Instagram</a>'
        '<a href="https://soundcloud.com/someartist">SoundCloud</a>'
        '<a href="https://apps.apple.com/us/app/apple-music/id1108187390">Get the app</a>'
        '<a href="https://music.apple.com/us/album/first-record/999">Album</a>'
        "</body></html>"
    )
    result = AppleMusicStrategy().extract(
        _document(html, "https://music.apple.com/us/artist/some-artist/123456")
    )

    assert [link.url for link in result.links] == [
        "https://instagram.com/someartist",
        "https://open.spotify.com/artist/4Z8W4fKeB5YxbusRsdQVPb",
        "https://soundcloud.com/someartist",
    ]
    assert result.links[2].signals == ["apple_music_profile_link"]
    assert result.display_name == "Some Artist"
    assert result.avatar_url == "https://is1-ssl.mzstatic.com/image/thumb/artist.jpg"
    assert AppleMusicStrategy().clean_display_name("Some Artist - Apple Music") == "Some Artist"


@pytest.mark.parametrize(
    ("strategy", "url", "expected"),
    [
        (LinktreeStrategy(), "linktr.ee/SomeArtist", "https://linktr.ee/someartist"),
        (LinktreeStrategy(), "https://www.linktree.com/@someartist/", "https://linktr.ee/someartist"),
        (LinktreeStrategy(), "http://linktr.ee/someartist", None),
        (LinktreeStrategy(), "https://linktr.ee/login", None),
        (LinktreeStrategy(), "https://example.com/someartist", None),
        (StanStrategy(), "https://stanwith.me/creator", "https://stan.store/creator"),
        (StanStrategy(), "https://stan.store/dashboard", None),
        (BeaconsStrategy(), "beacons.page/some.one", "https://beacons.ai/some.one"),
        (BeaconsStrategy(), "https://beacons.ai/pricing", None),
        (BeaconsStrategy(), "https://beacons.ai", None),
        (LayloStrategy(), "laylo.com/Some_Artist", "https://laylo.com/some_artist"),
        (LayloStrategy(), "https://laylo.com/some.artist", None),
        (LayloStrategy(), "https://laylo.com/drops", None),
        (YouTubeStrategy(), "https://youtube.com/@ArtistName", "https://www.youtube.com/@artistname"),
        (YouTubeStrategy(), "https://m.youtube.com/@artist/about", "https://www.youtube.com/@artist"),
        (
            YouTubeStrategy(),
            "https://youtube.com/channel/UC1234567890abcdef",
            "https://www.youtube.com/channel/UC1234567890abcdef",
        ),
        (YouTubeStrategy(), "https://www.youtube.com/c/ChannelName", "https://www.youtube.com/c/channelname"),
        (YouTubeStrategy(), "https://youtube.com/watch?v=abc123", None),
        (YouTubeStrategy(), "https://youtu.be/@artist", None),
        (YouTubeStrategy(), "https://youtube.com.fake.com/@artist", None),
        (YouTubeStrategy(), "http://youtube.com/@artist", None),
        (
            AppleMusicStrategy(),
            "https://music.apple.com/US/artist/Some-Artist/123456",
            "https://music.apple.com/us/artist/some-artist/123456",
        ),
        (AppleMusicStrategy(), "https://music.apple.com/us/album/first-record/999", None),
        (AppleMusicStrategy(), "https://itunes.apple.com/us/artist/some-artist/123456", None),
        (AppleMusicStrategy(), "http://music.apple.com/us/artist/some-artist/123456", None),
    ],
)
def test_validate_url(strategy, url: str, expected: str | None) -> None:
    assert strategy.validate_url(url) == expected


def test_registry_dispatch() -> None:
    assert isinstance(strategy_for_url("https://linktr.ee/someone"), LinktreeStrategy)
    assert isinstance(strategy_for_url("https://stan.store/someone"), StanStrategy)
    assert isinstance(strategy_for_url("https://beacons.ai/someone"), BeaconsStrategy)
    assert strategy_for_url("https://instagram.com/someone") is None
    assert isinstance(strategy_for_job_type("import_stan"), StanStrategy)
    assert isinstance(strategy_for_platform("beacons"), BeaconsStrategy)
    assert network_for_job_type("import_linktree") == "linktree"
    assert network_for_job_type("unknown_type") == "unknown_type"
    assert isinstance(strategy_for_url("https://laylo.com/someone"), LayloStrategy)
    assert isinstance(strategy_for_url("https://youtube.com/@someone"), YouTubeStrategy)
    assert isinstance(strategy_for_url("https://music.apple.com/gb/artist/someone/42"), AppleMusicStrategy)
    assert strategy_for_url("https://youtube.com/watch?v=abc123") is None
    assert isinstance(strategy_for_job_type("import_youtube"), YouTubeStrategy)
    assert network_for_job_type("import_apple_music") == "apple_music"
    assert MAX_DEPTH_BY_JOB_TYPE["import_youtube"] == 1
    assert MAX_DEPTH_BY_JOB_TYPE["import_apple_music"] == 1
    assert MAX_DEPTH_BY_JOB_TYPE["import_laylo"] == 3


def test_invalid_url_fails_before_any_request() -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, text="<html></html>")

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await LinktreeStrategy().fetch("https://example.com/not-linktree", FetchOptions(), client=client)

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.code is ErrorCode.INVALID_URL
    assert exc_info.value.kind is ErrorKind.FATAL
    assert calls == []


def test_fetch_returns_document_and_sends_user_agent() -> None:
    seen: dict[str, str] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["user_agent"] = request.headers["user-agent"]
        return httpx.Response(200, text="<html><body>ok</body></html>", headers={"content-type": "text/html"})

    async def run() -> RawDocument:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await LinktreeStrategy().fetch(
                "linktr.ee/SomeArtist",
                FetchOptions(user_agent="test-agent"),
                client=client,
            )

    document = asyncio.run(run())
    assert seen == {"url": "https://linktr.ee/someartist", "user_agent": "test-agent"}
    assert document.status_code == 200
    assert "ok" in document.html


@pytest.mark.parametrize(
    ("status_code", "code", "kind"),
    [
        (404, ErrorCode.NOT_FOUND, ErrorKind.FATAL),
        (429, ErrorCode.RATE_LIMITED, ErrorKind.TRANSIENT),
    ],
)
def test_fetch_does_not_retry_not_found_or_rate_limited(status_code: int, code: ErrorCode, kind: ErrorKind) -> None:
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(status_code)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await fetch_document(
                "https://linktr.ee/someone",
                FetchOptions(max_retries=3),
                allowed_hosts={"linktr.ee"},
                client=client,
                sleep=_no_sleep,
            )

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.code is code
    assert exc_info.value.kind is kind
    assert exc_info.value.status_code == status_code
    assert len(calls) == 1


def test_fetch_retries_transient_failures_with_growing_delay() -> None:
    sleeps: list[float] = []
    calls: list[httpx.Request] = []

    async def record_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ReadTimeout("timed out", request=request)
        if len(calls) == 2:
            return httpx.Response(503)
        return httpx.Response(200, text="<html>third time</html>")

    async def run() -> RawDocument:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await fetch_document(
                "https://linktr.ee/someone",
                FetchOptions(max_retries=2, retry_delay_seconds=0.5),
                allowed_hosts={"linktr.ee"},
                client=client,
                sleep=record_sleep,
            )

    document = asyncio.run(run())
    assert "third time" in document.html
    assert sleeps == [0.5, 1.0]


def test_fetch_timeout_is_transient() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await fetch_document(
                "https://linktr.ee/someone",
                FetchOptions(max_retries=0),
                allowed_hosts={"linktr.ee"},
                client=client,
            )

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.code is ErrorCode.FETCH_TIMEOUT
    assert exc_info.value.retryable is True


def test_fetch_enforces_byte_cap() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"x" * 2048)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await fetch_document(
                "https://linktr.ee/someone",
                FetchOptions(max_bytes=1024),
                allowed_hosts={"linktr.ee"},
                client=client,
            )

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.code is ErrorCode.RESPONSE_TOO_LARGE
    assert exc_info.value.kind is ErrorKind.FATAL


def test_fetch_rejects_redirect_outside_allow_list() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "linktr.ee":
            return httpx.Response(302, headers={"location": "https://evil.example.com/landing"})
        return httpx.Response(200, text="<html>elsewhere</html>")

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=True) as client:
            await fetch_document(
                "https://linktr.ee/someone",
                FetchOptions(),
                allowed_hosts={"linktr.ee"},
                client=client,
            )

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.code is ErrorCode.INVALID_URL


def test_empty_body_is_reported() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="   ")

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await fetch_document(
                "https://linktr.ee/someone",
                FetchOptions(max_retries=0),
                allowed_hosts={"linktr.ee"},
                client=client,
            )

    with pytest.raises(ExtractionError) as exc_info:
        asyncio.run(run())

    assert exc_info.value.code is ErrorCode.EMPTY_RESPONSE


def test_error_kinds() -> None:
    assert ExtractionError(ErrorCode.FETCH_FAILED, "boom").retryable is True
    assert ExtractionError(ErrorCode.INVALID_HOST, "bad").retryable is False
    assert str(ExtractionError(ErrorCode.NOT_FOUND, "gone")) == "NOT_FOUND: gone"
    payload_error = InvalidJobPayloadError("missing profile")
    assert payload_error.code is ErrorCode.INVALID_PAYLOAD
    assert payload_error.kind is ErrorKind.FATAL
