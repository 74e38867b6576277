"""JSON persistence for processed reviews keyed by place."""
from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from backend.app.contracts import ProcessedReview

LOGGER = logging.getLogger(__name__)


class StoredReviews(BaseModel):
    """Processed reviews persisted for a single place."""

    model_config = ConfigDict(frozen=True)

    place_id: str = Field(..., min_length=1)
    hash: str = Field(..., min_length=64, max_length=64)
    processed_at: datetime
    reviews: List[ProcessedReview] = Field(default_factory=list)


def hash_place_id(place_id: str) -> str:
    """Return the SHA-256 hex digest used as the storage key for ``place_id``."""

    return hashlib.sha256(place_id.encode("utf-8")).hexdigest()


class ProcessedReviewStore:
    """Store processed reviews as one JSON document per place."""

    def __init__(self, data_dir: Path) -> None:
        self._data_dir = Path(data_dir)
        self._lock = threading.Lock()

    @property
    def data_dir(self) -> Path:
        """Return the directory holding the JSON documents."""

        return self._data_dir

    def path_for(self, place_id: str) -> Path:
        """Return the document path for ``place_id``."""

        return self._data_dir / f"{hash_place_id(place_id)}.json"

    def save(self, place_id: str, reviews: Sequence[ProcessedReview]) -> Path:
        """Persist ``reviews`` for ``place_id``, replacing any earlier record.

        Args:
            place_id: External identifier of the place.
            reviews: Processed reviews to store.

        Returns:
            Path: Location of the written document.
        """

        record = StoredReviews(
            place_id=place_id,
            hash=hash_place_id(place_id),
            processed_at=datetime.now(timezone.utc),
            reviews=list(reviews),
        )
        path = self.path_for(place_id)
        payload = record.model_dump(mode="json")
        with self._lock:
            self._data_dir.mkdir(parents=True, exist_ok=True)
            tmp_path = path.parent / f"{path.name}.tmp"
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            tmp_path.replace(path)
        LOGGER.info("Stored %d processed reviews for place %s at %s", len(record.reviews), place_id, path)
        return path

    def load(self, place_id: str) -> Optional[StoredReviews]:
        """Return the stored record for ``place_id`` or ``None`` when absent.

        Raises:
            ValueError: If the stored document is corrupt.
        """

        path = self.path_for(place_id)
        if not path.exists():
            return None
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload: Dict[str, Any] = json.load(handle)
            return StoredReviews.model_validate(payload)
        except (json.JSONDecodeError, ValidationError) as exc:
            LOGGER.error("Stored reviews at %s are corrupt: %s", path, exc)
            raise ValueError(f"Stored reviews for {place_id} are corrupt") from exc
