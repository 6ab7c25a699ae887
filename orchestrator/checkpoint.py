"""Checkpoint and resume for analysis jobs.

Completed stage payloads are written per batch to ``_checkpoint.json`` after
each batch. On resume they are handed back to the stage pipeline through
``StagePipeline.mark_completed`` so that completed stages are skipped; the
overlap merge still sees their payloads.

Usage:
    >>> checkpoint = JobCheckpoint(Path("results/volume-1"), job_key="a1b2c3")
    >>> checkpoint.record_stage(0, "overview", items)
    >>> checkpoint.save()
    >>>
    >>> # On resume:
    >>> for stage_id, payload in checkpoint.completed_stages(0).items():
    ...     pipeline.mark_completed(stage_id, payload)
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from orchestrator.misc import tz_now
from orchestrator.types.items import AnalysisItem

logger = logging.getLogger(__name__)

__all__ = ["JobCheckpoint", "job_fingerprint"]


def job_fingerprint(page_ids: Iterable[str], stage_ids: Iterable[str], thorough: bool = False) -> str:
    """Stable key of a job's inputs; a checkpoint is only reused for the same key."""
    digest = hashlib.sha256()
    for value in (*page_ids, "|", *stage_ids, "|", str(thorough)):
        digest.update(value.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()[:16]


def _serialize_payload(payload: Any) -> dict[str, Any]:
    if isinstance(payload, list) and all(isinstance(item, AnalysisItem) for item in payload):
        return {"type": "items", "items": [item.to_dict() for item in payload]}
    return {"type": "json", "value": payload}


def _deserialize_payload(data: dict[str, Any]) -> Any:
    if data.get("type") == "items":
        return [AnalysisItem.from_dict(item) for item in data.get("items", [])]
    return data.get("value")


class JobCheckpoint:
    """Persist completed stage payloads of a job.

    Attributes:
        directory: Directory holding the checkpoint file
        job_key: Fingerprint of the job inputs
    """

    CHECKPOINT_FILE = "_checkpoint.json"
    VERSION = "1.0"

    def __init__(self, directory: Path, job_key: str | None = None):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / self.CHECKPOINT_FILE
        self.job_key = job_key
        self.data = self._load_or_init()

    def _new_data(self) -> dict[str, Any]:
        now = tz_now().isoformat()
        return {
            "version": self.VERSION,
            "job_key": self.job_key,
            "start_time": now,
            "last_updated": now,
            "status": "in_progress",
            "batches": {},
        }

    def _load_or_init(self) -> dict[str, Any]:
        if self.path.exists():
            try:
                with open(self.path, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load checkpoint %s, starting fresh: %s", self.path, e)
                return self._new_data()

            if self.job_key is not None and data.get("job_key") not in (None, self.job_key):
                logger.warning(
                    "Checkpoint %s belongs to a different job (%s != %s), starting fresh",
                    self.path,
                    data.get("job_key"),
                    self.job_key,
                )
                return self._new_data()

            logger.info("Loaded checkpoint from %s", self.path)
            return data

        return self._new_data()

    @property
    def is_complete(self) -> bool:
        return self.data.get("status") == "completed"

    def completed_stages(self, batch_index: int) -> dict[str, Any]:
        """Stage id -> payload of the stages completed for a batch."""
        batch = self.data["batches"].get(str(batch_index), {})
        return {stage_id: _deserialize_payload(entry) for stage_id, entry in batch.get("stages", {}).items()}

    def completed_batches(self) -> list[int]:
        return sorted(int(index) for index in self.data["batches"])

    def record_stage(self, batch_index: int, stage_id: str, payload: Any) -> None:
        batch = self.data["batches"].setdefault(str(batch_index), {"stages": {}})
        batch["stages"][stage_id] = _serialize_payload(payload)

    def save(self) -> None:
        """Write the checkpoint file.

        Raises:
            OSError: If the file cannot be written
        """
        self.data["last_updated"] = tz_now().isoformat()
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self.data, f, indent=2, ensure_ascii=False)
        tmp_path.replace(self.path)
        logger.debug("Saved checkpoint to %s", self.path)

    def mark_complete(self) -> None:
        self.data["status"] = "completed"
        self.save()
        logger.info("Checkpoint marked complete: %s", self.path)

    def clear(self) -> None:
        self.data = self._new_data()
        if self.path.exists():
            self.path.unlink()
