from __future__ import annotations

import logging
from dataclasses import dataclass, field
from uuid import uuid4

from link_ingest.ingestion.confidence import (
    DEFAULT_POLICY,
    ConfidenceInput,
    ConfidencePolicy,
    compute_link_confidence,
    ordered_union,
)
from link_ingest.ingestion.enrichment import EnrichmentDecision, apply_enrichment
from link_ingest.ingestion.platforms import DetectedLink, identity_for_url
from link_ingest.ingestion.strategies.base import ExtractedLink, ExtractionResult
from link_ingest.services.store import (
    Evidence,
    Link,
    Profile,
    RepositoryConflictError,
    RepositoryNotFoundError,
    StoreSession,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MergeResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    enrichment: EnrichmentDecision = field(default_factory=EnrichmentDecision)


async def merge_extraction(
    session: StoreSession,
    profile: Profile,
    extraction: ExtractionResult,
    policy: ConfidencePolicy = DEFAULT_POLICY,
    *,
    resurface_rejected: bool = False,
) -> MergeResult:
    """Fold extracted links into the profile's link set.

    Candidates are matched to existing rows by canonical identity and handled
    in extraction order; new rows are appended after every existing row.
    Running the same extraction twice inserts nothing the second time.
    Failures to score a single candidate are logged and skipped, store
    errors propagate.
    """
    existing = await session.list_links(profile.id)
    by_identity: dict[str, Link] = {}
    for row in existing:
        identity = row.canonical_identity or _identity_for_row(row)
        if identity is None:
            continue
        by_identity.setdefault(identity, row)

    next_sort_order = max((row.sort_order for row in existing), default=-1) + 1
    seen: set[str] = set()
    result = MergeResult()

    for candidate in extraction.links:
        try:
            detected, identity = identity_for_url(candidate.url)
            if identity is None or identity in seen:
                result.skipped += 1
                continue
            seen.add(identity)

            row = by_identity.get(identity)
            if row is None:
                planned = _new_link(profile, candidate, detected, identity, next_sort_order, policy)
            else:
                planned = _reinforced_link(profile, row, candidate, detected, identity, policy, resurface_rejected)
        except Exception:  # noqa: BLE001
            logger.exception(
                "merge candidate skipped profile_id=%s url=%s",
                profile.id,
                candidate.url,
            )
            result.skipped += 1
            continue

        if row is None:
            await session.insert_link(planned)
            by_identity[identity] = planned
            next_sort_order += 1
            result.inserted += 1
        else:
            by_identity[identity] = await session.update_link(planned)
            result.updated += 1

    result.enrichment = await apply_enrichment(session, profile, extraction)
    logger.info(
        "merge completed profile_id=%s source=%s inserted=%s updated=%s skipped=%s",
        profile.id,
        extraction.source_platform,
        result.inserted,
        result.updated,
        result.skipped,
    )
    return result


async def accept_link(session: StoreSession, link_id: str) -> Link:
    link = await _require_link(session, link_id)
    if link.state != "suggested":
        raise RepositoryConflictError(f"link is {link.state}; only suggested links can be accepted")
    link.state = "active"
    return await session.update_link(link)


async def dismiss_link(session: StoreSession, link_id: str) -> Link:
    link = await _require_link(session, link_id)
    if link.state != "suggested":
        raise RepositoryConflictError(f"link is {link.state}; only suggested links can be dismissed")
    link.state = "rejected"
    link.confidence = 0.0
    return await session.update_link(link)


def _new_link(
    profile: Profile,
    candidate: ExtractedLink,
    detected: DetectedLink,
    identity: str,
    sort_order: int,
    policy: ConfidencePolicy,
) -> Link:
    sources = ordered_union(candidate.sources or [candidate.source_platform])
    signals = ordered_union(candidate.signals or [f"{candidate.source_platform}_profile_link"])
    score = compute_link_confidence(
        ConfidenceInput(
            source_type="ingested",
            url=detected.normalized_url,
            signals=signals,
            sources=sources,
            username_normalized=profile.username_normalized,
        ),
        policy,
    )
    if not score.surfaced:
        logger.debug("low confidence link stored unsurfaced profile_id=%s identity=%s", profile.id, identity)

    return Link(
        id=str(uuid4()),
        profile_id=profile.id,
        platform=detected.platform.id,
        url=detected.normalized_url,
        canonical_identity=identity,
        display_text=candidate.title or detected.suggested_title,
        sort_order=sort_order,
        state="active" if score.state == "active" and profile.allow_auto_promotion else "suggested",
        confidence=score.confidence,
        source_type="ingested",
        source_platform=candidate.source_platform,
        evidence=Evidence(sources=sources, signals=signals),
    )


def _reinforced_link(
    profile: Profile,
    row: Link,
    candidate: ExtractedLink,
    detected: DetectedLink,
    identity: str,
    policy: ConfidencePolicy,
    resurface_rejected: bool,
) -> Link:
    incoming_sources = candidate.sources or [candidate.source_platform]
    incoming_signals = candidate.signals or [f"{candidate.source_platform}_profile_link"]
    has_new_source = any(source not in row.evidence.sources for source in incoming_sources)

    evidence = Evidence(
        sources=ordered_union(row.evidence.sources, incoming_sources),
        signals=ordered_union(row.evidence.signals, incoming_signals),
    )
    row.evidence = evidence
    row.canonical_identity = identity

    if row.state == "rejected":
        # dismissed rows stay suppressed unless a new source corroborates them
        if resurface_rejected and has_new_source and row.source_type == "ingested":
            score = compute_link_confidence(_score_input(profile, row, detected, existing=None), policy)
            row.state = "suggested"
            row.confidence = score.confidence
        return row

    score = compute_link_confidence(_score_input(profile, row, detected, existing=row.confidence), policy)
    row.confidence = score.confidence

    if row.source_type != "ingested":
        return row

    row.url = detected.normalized_url
    row.platform = detected.platform.id
    row.display_text = candidate.title or row.display_text
    if row.state == "suggested" and score.state == "active" and profile.allow_auto_promotion:
        row.state = "active"
    return row


def _score_input(profile: Profile, row: Link, detected: DetectedLink, *, existing: float | None) -> ConfidenceInput:
    return ConfidenceInput(
        source_type=row.source_type,
        url=detected.normalized_url,
        signals=list(row.evidence.signals),
        sources=list(row.evidence.sources),
        username_normalized=profile.username_normalized,
        existing_confidence=existing,
    )


def _identity_for_row(row: Link) -> str | None:
    _, identity = identity_for_url(row.url)
    return identity


async def _require_link(session: StoreSession, link_id: str) -> Link:
    link = await session.get_link(link_id)
    if link is None:
        raise RepositoryNotFoundError("link not found")
    return link
