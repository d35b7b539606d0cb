from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

LinkState = Literal["active", "suggested", "rejected"]


class EvidenceOut(BaseModel):
    sources: list[str] = Field(default_factory=list)
    signals: list[str] = Field(default_factory=list)


class LinkOut(BaseModel):
    id: str
    profile_id: str
    platform: str
    url: str
    display_text: str | None = None
    sort_order: int
    state: str
    confidence: float
    source_type: str
    source_platform: str | None = None
    evidence: EvidenceOut
    created_at: datetime
    updated_at: datetime
