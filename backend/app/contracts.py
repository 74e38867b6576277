"""Immutable data contracts for the menu insights backend."""
from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _FrozenBaseModel(BaseModel):
    """Base model enforcing immutability after creation."""

    model_config = ConfigDict(frozen=True)


class ItemMention(_FrozenBaseModel):
    """A food item mention paired with its sentiment rating.

    Mentions are produced upstream by review extraction and may be incomplete;
    rows without a usable item or a finite rating are dropped by the pipeline
    rather than rejected here.
    """

    item: Optional[str] = Field(None, description="Free-text item name as written by the reviewer.")
    rating: Optional[float] = Field(None, description="Sentiment rating, nominally 1-5.")


class MenuItem(_FrozenBaseModel):
    """Canonical menu entry with aggregated sentiment."""

    name: str = Field(..., min_length=1)
    rating: float = Field(..., description="Mean member rating rounded to one decimal place.")
    review_count: int = Field(..., ge=1)


class MenuCategory(_FrozenBaseModel):
    """Group of menu items returned to callers."""

    category: str = Field(..., min_length=1)
    items: List[MenuItem] = Field(default_factory=list)


class ReviewInput(_FrozenBaseModel):
    """Raw customer review submitted for extraction."""

    text: str = Field(..., min_length=1)
    rating: Optional[float] = Field(None, description="Star rating supplied by the reviewer, if any.")

    @field_validator("text")
    @classmethod
    def _reject_blank_text(cls, value: str) -> str:
        """Validate that the review contains non-whitespace text.

        Args:
            value: The provided review text.

        Returns:
            str: The validated review text.

        Raises:
            ValueError: If the text is blank.
        """
        if not value.strip():
            raise ValueError("review text must not be blank")
        return value


class ProcessedReview(_FrozenBaseModel):
    """Item and sentiment extracted from a single review."""

    item: str = Field(..., min_length=1)
    rating: float = Field(..., ge=1.0, le=5.0)

    def to_mention(self) -> ItemMention:
        """Return the review as an :class:`ItemMention` for clustering."""

        return ItemMention(item=self.item, rating=self.rating)
