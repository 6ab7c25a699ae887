"""Identity-keyed analysis items produced by stages and merged across batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class AnalysisItem:
    """One identified finding (a character, an event, a theme, ...).

    Attributes:
        id: Stable identity used for cross-batch deduplication
        confidence: Provider-reported or derived score (0.0-1.0)
        data: Parsed payload for the item
        batch_index: Batch that produced the item
        stage_id: Stage that produced the item
    """

    id: str
    confidence: float
    data: dict[str, Any] = field(default_factory=dict)
    batch_index: int = 0
    stage_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "confidence": self.confidence,
            "data": self.data,
            "batch_index": self.batch_index,
            "stage_id": self.stage_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisItem:
        return cls(
            id=str(data["id"]),
            confidence=float(data.get("confidence", 0.0)),
            data=dict(data.get("data", {})),
            batch_index=int(data.get("batch_index", 0)),
            stage_id=data.get("stage_id"),
        )


@dataclass(frozen=True)
class PageItem:
    """One input page of a job.

    Attributes:
        id: Stable page identifier (usually the file name)
        image: Encoded image bytes
        size_kb: Payload size used for batch planning
    """

    id: str
    image: bytes
    size_kb: float = 0.0

    @classmethod
    def from_bytes(cls, page_id: str, image: bytes) -> PageItem:
        return cls(id=page_id, image=image, size_kb=len(image) / 1024)
