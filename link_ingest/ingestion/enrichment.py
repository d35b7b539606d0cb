from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from link_ingest.ingestion.strategies.base import ExtractionResult
from link_ingest.services.store import Profile, StoreSession

logger = logging.getLogger(__name__)

# Earlier entries win when several sources offer a value.
SOURCE_PRECEDENCE = ("spotify", "apple_music", "youtube_music", "youtube", "linktree", "beacons", "stan", "laylo")


@dataclass(slots=True)
class EnrichmentCandidate:
    source_platform: str
    display_name: str | None = None
    avatar_url: str | None = None


@dataclass(slots=True)
class EnrichmentDecision:
    display_name: str | None = None
    avatar_url: str | None = None

    @property
    def has_changes(self) -> bool:
        return self.display_name is not None or self.avatar_url is not None


def resolve_enrichment(profile: Profile, candidates: Iterable[EnrichmentCandidate]) -> EnrichmentDecision:
    """Pick display name and avatar values to write onto ``profile``.

    A field is only filled when the profile has not locked it and currently has
    no value. Avatars must be https URLs.
    """
    ranked = sorted(candidates, key=_rank)
    decision = EnrichmentDecision()

    if not profile.display_name_locked and not (profile.display_name or "").strip():
        decision.display_name = next(
            (candidate.display_name.strip() for candidate in ranked if (candidate.display_name or "").strip()),
            None,
        )

    if not profile.avatar_locked_by_user and not (profile.avatar_url or "").strip():
        decision.avatar_url = next(
            (
                candidate.avatar_url.strip()
                for candidate in ranked
                if candidate.avatar_url and candidate.avatar_url.strip().lower().startswith("https://")
            ),
            None,
        )
    return decision


async def apply_enrichment(
    session: StoreSession,
    profile: Profile,
    extraction: ExtractionResult,
) -> EnrichmentDecision:
    decision = resolve_enrichment(
        profile,
        [
            EnrichmentCandidate(
                source_platform=extraction.source_platform,
                display_name=extraction.display_name,
                avatar_url=extraction.avatar_url,
            )
        ],
    )
    if decision.has_changes:
        await session.update_profile_enrichment(
            profile.id,
            display_name=decision.display_name,
            avatar_url=decision.avatar_url,
        )
        logger.info(
            "profile enriched profile_id=%s display_name=%s avatar=%s",
            profile.id,
            decision.display_name is not None,
            decision.avatar_url is not None,
        )
    return decision


def _rank(candidate: EnrichmentCandidate) -> int:
    try:
        return SOURCE_PRECEDENCE.index(candidate.source_platform)
    except ValueError:
        return len(SOURCE_PRECEDENCE)
