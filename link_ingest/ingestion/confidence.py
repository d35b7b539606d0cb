from __future__ import annotations

from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Any, Literal
from urllib.parse import urlsplit

RecommendedState = Literal["active", "suggested"]

MANUAL_SIGNAL = "manual_add"
ADMIN_SIGNAL = "admin_add"
PROFILE_LINK_SUFFIX = "_profile_link"

SIGNAL_WEIGHTS = {
    MANUAL_SIGNAL: 0.6,
    ADMIN_SIGNAL: 0.55,
    # verified-artist badge on a YouTube source channel
    "youtube_official_artist": 0.1,
}
PROFILE_LINK_WEIGHT = 0.3
UNKNOWN_SIGNAL_WEIGHT = 0.2

_IMPLIED_SIGNALS = {"manual": MANUAL_SIGNAL, "admin": ADMIN_SIGNAL}
_IGNORED_SEGMENTS = {"c", "user", "channel", "in", "add", "artist", "u"}


@dataclass(frozen=True, slots=True)
class ConfidencePolicy:
    suggest_threshold: float = 0.30
    activate_threshold: float = 0.70
    additional_source_bonus: float = 0.15
    handle_match_bonus: float = 0.2
    handle_similarity_threshold: float = 0.85

    @classmethod
    def from_settings(cls, settings: Any) -> "ConfidencePolicy":
        return cls(
            suggest_threshold=settings.confidence_suggest_threshold,
            activate_threshold=settings.confidence_activate_threshold,
        )


DEFAULT_POLICY = ConfidencePolicy()


@dataclass(slots=True)
class ConfidenceInput:
    source_type: str
    url: str
    signals: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    username_normalized: str | None = None
    existing_confidence: float | None = None


@dataclass(slots=True)
class ConfidenceResult:
    confidence: float
    state: RecommendedState
    surfaced: bool
    components: dict[str, float] = field(default_factory=dict)


def signal_weight(signal: str) -> float:
    if signal in SIGNAL_WEIGHTS:
        return SIGNAL_WEIGHTS[signal]
    if signal.endswith(PROFILE_LINK_SUFFIX):
        return PROFILE_LINK_WEIGHT
    return UNKNOWN_SIGNAL_WEIGHT


def compute_link_confidence(data: ConfidenceInput, policy: ConfidencePolicy = DEFAULT_POLICY) -> ConfidenceResult:
    """Score a candidate link from its evidence.

    The score is additive: signal weights, a bonus for every distinct source
    beyond the first, and a bonus when a URL segment resembles the profile's
    username. It is capped at 1.0, never drops below ``existing_confidence``
    and is rounded to two decimals. Nothing is persisted here; the caller
    decides whether the recommended state is applied.
    """
    signals = ordered_union(data.signals)
    implied = _IMPLIED_SIGNALS.get(data.source_type)
    if implied and implied not in signals:
        signals.insert(0, implied)

    signal_score = sum(signal_weight(signal) for signal in signals)
    distinct_sources = len(ordered_union(data.sources))
    source_bonus = policy.additional_source_bonus * max(0, distinct_sources - 1)
    handle_bonus = (
        policy.handle_match_bonus
        if handle_matches(data.url, data.username_normalized, threshold=policy.handle_similarity_threshold)
        else 0.0
    )

    raw = signal_score + source_bonus + handle_bonus
    floor = data.existing_confidence if data.existing_confidence is not None else 0.0
    confidence = round(min(1.0, max(raw, floor, 0.0)), 2)

    state: RecommendedState = "active" if confidence >= policy.activate_threshold else "suggested"
    return ConfidenceResult(
        confidence=confidence,
        state=state,
        surfaced=confidence >= policy.suggest_threshold,
        components={
            "signals": round(signal_score, 4),
            "sources": round(source_bonus, 4),
            "handle": handle_bonus,
            "floor": floor,
        },
    )


def handle_matches(url: str, username_normalized: str | None, *, threshold: float = 0.85) -> bool:
    username = _normalize_handle(username_normalized)
    if not username:
        return False
    for candidate in _handle_candidates(url):
        if candidate == username:
            return True
        if SequenceMatcher(None, candidate, username).ratio() >= threshold:
            return True
    return False


def ordered_union(*groups: list[str]) -> list[str]:
    seen: set[str] = set()
    merged: list[str] = []
    for group in groups:
        for item in group:
            if item and item not in seen:
                seen.add(item)
                merged.append(item)
    return merged


def _handle_candidates(url: str) -> list[str]:
    try:
        parts = urlsplit(url)
    except ValueError:
        return []
    candidates = [
        _normalize_handle(segment)
        for segment in parts.path.split("/")
        if segment and segment.lower() not in _IGNORED_SEGMENTS
    ]
    labels = (parts.hostname or "").split(".")
    if len(labels) > 2:
        candidates.append(_normalize_handle(labels[0]))
    return [candidate for candidate in candidates if candidate]


def _normalize_handle(value: str | None) -> str:
    if not value:
        return ""
    return "".join(char for char in value.lower().lstrip("@") if char.isalnum())
