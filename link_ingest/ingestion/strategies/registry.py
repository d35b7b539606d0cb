from __future__ import annotations

from link_ingest.ingestion.strategies.apple_music import AppleMusicStrategy
from link_ingest.ingestion.strategies.base import ExtractionStrategy
from link_ingest.ingestion.strategies.beacons import BeaconsStrategy
from link_ingest.ingestion.strategies.laylo import LayloStrategy
from link_ingest.ingestion.strategies.linktree import LinktreeStrategy
from link_ingest.ingestion.strategies.stan import StanStrategy
from link_ingest.ingestion.strategies.youtube import YouTubeStrategy

STRATEGIES: tuple[ExtractionStrategy, ...] = (
    LinktreeStrategy(),
    StanStrategy(),
    BeaconsStrategy(),
    LayloStrategy(),
    YouTubeStrategy(),
    AppleMusicStrategy(),
)

_BY_PLATFORM = {strategy.platform_id: strategy for strategy in STRATEGIES}
_BY_JOB_TYPE = {strategy.job_type: strategy for strategy in STRATEGIES}

# Deepest follow-up chain allowed for jobs of each type.
MAX_DEPTH_BY_JOB_TYPE = {
    "import_linktree": 3,
    "import_stan": 3,
    "import_beacons": 3,
    "import_laylo": 3,
    "import_youtube": 1,
    "import_apple_music": 1,
}


def strategy_for_platform(platform_id: str) -> ExtractionStrategy | None:
    return _BY_PLATFORM.get(platform_id)


def strategy_for_job_type(job_type: str) -> ExtractionStrategy | None:
    return _BY_JOB_TYPE.get(job_type)


def strategy_for_url(url: str) -> ExtractionStrategy | None:
    for strategy in STRATEGIES:
        if strategy.supports(url):
            return strategy
    return None


def network_for_job_type(job_type: str) -> str:
    strategy = strategy_for_job_type(job_type)
    return strategy.platform_id if strategy is not None else job_type
