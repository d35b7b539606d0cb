from __future__ import annotations

import re

from link_ingest.ingestion.strategies.base import NextDataProfileStrategy


class StanStrategy(NextDataProfileStrategy):
    platform_id = "stan"
    platform_name = "Stan"
    job_type = "import_stan"
    canonical_host = "stan.store"
    valid_hosts = frozenset({"stan.store", "www.stan.store", "stanwith.me", "www.stanwith.me"})
    skip_hosts = frozenset({"stan.store", "stanwith.me", "stan.me", "assets.stan.store", "images.stan.store"})
    reserved_handles = frozenset({"login", "signup", "dashboard", "settings", "admin", "api", "checkout", "blog"})
    branding_patterns = (
        re.compile(r"\s*\|\s*Stan(?:\.store|\.me)?$", re.IGNORECASE),
        re.compile(r"\s*-\s*Stan(?:\.store|\.me)?$", re.IGNORECASE),
        re.compile(r"\s+on\s+Stan(?:\.store|\.me)?$", re.IGNORECASE),
    )
    profile_keys = ("user", "creator", "store", "profile")
