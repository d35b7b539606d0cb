from __future__ import annotations

import re
from urllib.parse import parse_qsl, urlencode

TRACKING_KEYS = {"fbclid", "gclid", "igshid", "_ga", "ref", "source", "si", "nd"}
UNSAFE_SCHEMES = ("javascript:", "data:", "vbscript:", "file:", "mailto:")
ENCODED_CONTROL_RE = re.compile(r"%(0a|0d|09|00)", re.IGNORECASE)


def is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith("utm_") or lowered in TRACKING_KEYS


def is_unsafe_url(raw_url: str) -> bool:
    lowered = raw_url.strip().lower()
    if any(lowered.startswith(scheme) for scheme in UNSAFE_SCHEMES):
        return True
    return bool(ENCODED_CONTROL_RE.search(lowered))


def clean_query(query: str, *, keep: set[str] | None = None) -> str:
    """Drop tracking params and sort what remains so equal links compare equal."""
    pairs = [
        (key, value)
        for key, value in parse_qsl(query, keep_blank_values=True)
        if not is_tracking_param(key) and (keep is None or key.lower() in keep)
    ]
    pairs.sort(key=lambda pair: pair[0])
    return urlencode(pairs, doseq=True)


def strip_host_prefixes(host: str, prefixes: tuple[str, ...] = ("www.", "m.", "mobile.")) -> str:
    for prefix in prefixes:
        if host.startswith(prefix) and host.count(".") > 1:
            return host[len(prefix):]
    return host
