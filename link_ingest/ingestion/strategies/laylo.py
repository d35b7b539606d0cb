from __future__ import annotations

import re

from link_ingest.ingestion.strategies.base import NextDataProfileStrategy


class LayloStrategy(NextDataProfileStrategy):
    platform_id = "laylo"
    platform_name = "Laylo"
    job_type = "import_laylo"
    canonical_host = "laylo.com"
    valid_hosts = frozenset({"laylo.com", "www.laylo.com"})
    skip_hosts = frozenset({"laylo.com", "app.laylo.com", "cdn.laylo.com", "images.laylo.com"})
    reserved_handles = frozenset(
        {"login", "signup", "dashboard", "settings", "admin", "api", "app", "drops", "blog", "terms", "privacy"}
    )
    # Laylo usernames allow underscores but not dots or dashes.
    handle_pattern = re.compile(r"^[a-z0-9_]{1,30}$")
    branding_patterns = (
        re.compile(r"\s*\|\s*Laylo$", re.IGNORECASE),
        re.compile(r"\s*-\s*Laylo$", re.IGNORECASE),
        re.compile(r"\s+on\s+Laylo$", re.IGNORECASE),
    )
    placeholder_patterns = (re.compile(r"laylo[-_]?logo", re.IGNORECASE),)
    profile_keys = ("profile", "user", "creator", "artist")
    link_keys = ("links", "socialLinks", "socials")
    name_keys = ("displayName", "name", "username")
    avatar_keys = ("imageUrl", "avatarUrl", "profileImage", "image")
