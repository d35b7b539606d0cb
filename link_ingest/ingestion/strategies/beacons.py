from __future__ import annotations

import re
from typing import Any

from bs4 import BeautifulSoup

from link_ingest.ingestion.strategies.base import ExtractionStrategy, json_ld_items

_PROFILE_TYPES = {"Person", "ProfilePage", "WebPage", "Organization"}


class BeaconsStrategy(ExtractionStrategy):
    platform_id = "beacons"
    platform_name = "Beacons"
    job_type = "import_beacons"
    canonical_host = "beacons.ai"
    valid_hosts = frozenset({"beacons.ai", "www.beacons.ai", "beacons.page", "www.beacons.page"})
    skip_hosts = frozenset(
        {
            "beacons.ai",
            "beacons.page",
            "cdn.beacons.ai",
            "assets.beacons.ai",
            "images.beacons.ai",
            "static.beacons.ai",
            "app.beacons.ai",
            "dashboard.beacons.ai",
        }
    )
    reserved_handles = frozenset(
        {
            "login",
            "signup",
            "register",
            "dashboard",
            "settings",
            "admin",
            "api",
            "app",
            "help",
            "support",
            "about",
            "pricing",
            "features",
            "blog",
            "terms",
            "privacy",
            "contact",
            "faq",
            "creators",
            "explore",
            "search",
        }
    )
    handle_pattern = re.compile(r"^[a-z0-9][a-z0-9_.]{0,28}[a-z0-9]$|^[a-z0-9]{1,2}$")
    branding_patterns = (
        re.compile(r"\s*\|\s*Beacons(?:\.ai)?$", re.IGNORECASE),
        re.compile(r"\s*-\s*Beacons(?:\.ai)?$", re.IGNORECASE),
        re.compile(r"\s+on\s+Beacons(?:\.ai)?$", re.IGNORECASE),
        re.compile(r"['’]s\s+Beacons(?:\.ai)?$", re.IGNORECASE),
        re.compile(r"\s+Beacons(?:\.ai)?$", re.IGNORECASE),
    )
    placeholder_patterns = (re.compile(r"beacons[-_]?logo", re.IGNORECASE),)

    def structured_links(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        for item in _profile_items(soup):
            same_as = item.get("sameAs")
            if isinstance(same_as, str):
                same_as = [same_as]
            if isinstance(same_as, list):
                entries.extend({"url": url} for url in same_as if isinstance(url, str))
        return entries

    def structured_identity(self, soup: BeautifulSoup) -> tuple[str | None, str | None]:
        for item in _profile_items(soup):
            name = item.get("name")
            image = item.get("image")
            if isinstance(image, dict):
                image = image.get("url")
            elif isinstance(image, list):
                image = next((value for value in image if isinstance(value, str)), None)
            name = name.strip() if isinstance(name, str) and name.strip() else None
            image = image.strip() if isinstance(image, str) and image.strip() else None
            if name or image:
                return name, image
        return None, None


def _profile_items(soup: BeautifulSoup) -> list[dict[str, Any]]:
    items = []
    for item in json_ld_items(soup):
        kind = item.get("@type")
        kinds = set(kind) if isinstance(kind, list) else {kind}
        if kinds & _PROFILE_TYPES:
            items.append(item)
    return items
