from __future__ import annotations

import re
from typing import Any

from bs4 import BeautifulSoup

from link_ingest.ingestion.strategies.base import ExtractionStrategy, dig, next_data


class LinktreeStrategy(ExtractionStrategy):
    platform_id = "linktree"
    platform_name = "Linktree"
    job_type = "import_linktree"
    canonical_host = "linktr.ee"
    valid_hosts = frozenset({"linktr.ee", "www.linktr.ee", "linktree.com", "www.linktree.com"})
    skip_hosts = frozenset({"linktr.ee", "linktree.com", "assets.production.linktr.ee", "ugc.production.linktr.ee"})
    reserved_handles = frozenset({"s", "login", "register", "admin", "help", "blog", "marketplace", "discover"})
    branding_patterns = (
        re.compile(r"\s*\|\s*Linktree$", re.IGNORECASE),
        re.compile(r"\s*-\s*Linktree$", re.IGNORECASE),
        re.compile(r"\s+on\s+Linktree$", re.IGNORECASE),
    )
    placeholder_patterns = (re.compile(r"linktree[-_]?logo", re.IGNORECASE), re.compile(r"blank[-_]?avatar", re.IGNORECASE))

    def structured_links(self, soup: BeautifulSoup) -> list[dict[str, Any]]:
        props = dig(next_data(soup), "props", "pageProps")
        raw_links = dig(props, "links")
        if not isinstance(raw_links, list):
            raw_links = dig(props, "account", "links")
        if not isinstance(raw_links, list):
            return []

        entries = [entry for entry in raw_links if isinstance(entry, dict)]
        # sorted() is stable, so entries without a position keep page order
        entries = sorted(entries, key=lambda entry: _position(entry.get("position")))
        return [
            {
                "url": entry.get("url"),
                "title": entry.get("title"),
                "hidden": bool(entry.get("hidden") or entry.get("locked")),
            }
            for entry in entries
        ]

    def structured_identity(self, soup: BeautifulSoup) -> tuple[str | None, str | None]:
        account = dig(next_data(soup), "props", "pageProps", "account")
        if not isinstance(account, dict):
            return None, None
        name = account.get("displayName") or account.get("pageTitle")
        avatar = account.get("profilePictureUrl")
        return (
            name if isinstance(name, str) and name.strip() else None,
            avatar if isinstance(avatar, str) and avatar.strip() else None,
        )


def _position(value: Any) -> float:
    if isinstance(value, bool):
        return float("inf")
    if isinstance(value, (int, float)):
        return float(value)
    return float("inf")
