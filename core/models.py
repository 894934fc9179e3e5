from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Origin(str, Enum):
    FRESH = "fresh"
    HISTORICAL = "historical"


@dataclass
class Document:
    identity: str
    title: str
    body: str
    summary: Optional[str] = None
    origin: Origin = Origin.FRESH
    group_id: Optional[int] = None
    group_name: Optional[str] = None

    @property
    def best_text(self) -> str:
        return self.summary or self.body


@dataclass
class RejectionRecord:
    identity: str
    reason: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class SourceRef:
    """Handle for one source as enumerated by a content source."""

    ref: Any
    identity: str
    title: str = ""
    stale: bool = False


@dataclass
class FetchedContent:
    identity: str
    title: str
    body: str


@dataclass
class Group:
    id: int
    name: str


@dataclass
class Membership:
    identity: str
    group_id: int
    title: str
    summary: str
    updated_at: str = ""


@dataclass
class ClassificationItem:
    identity: str
    group_name: str
    summary: str
    existing_group_id: Optional[int] = None


@dataclass
class SearchHit:
    identity: str
    score: float
    title: str = ""


@dataclass
class SessionMatch:
    group_id: int
    group_name: str
    count: int
    best_score: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "group_id": self.group_id,
            "group_name": self.group_name,
            "count": self.count,
            "best_score": self.best_score,
        }
