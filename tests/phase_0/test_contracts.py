from __future__ import annotations

import pytest
from pydantic import ValidationError

from backend.app.contracts import (
    ItemMention,
    MenuCategory,
    MenuItem,
    ProcessedReview,
    ReviewInput,
)


def test_item_mention_allows_missing_fields() -> None:
    mention = ItemMention()
    assert mention.item is None
    assert mention.rating is None


def test_menu_item_is_frozen() -> None:
    item = MenuItem(name="Tacos", rating=4.5, review_count=2)
    with pytest.raises(ValidationError):
        item.rating = 1.0  # type: ignore[misc]


def test_menu_item_requires_positive_count() -> None:
    with pytest.raises(ValidationError):
        MenuItem(name="Tacos", rating=4.5, review_count=0)


def test_menu_category_serializes_items() -> None:
    category = MenuCategory(category="Items", items=[MenuItem(name="Nachos", rating=3.0, review_count=1)])
    assert category.model_dump() == {
        "category": "Items",
        "items": [{"name": "Nachos", "rating": 3.0, "review_count": 1}],
    }


def test_review_input_rejects_blank_text() -> None:
    with pytest.raises(ValidationError):
        ReviewInput(text="   ")


def test_processed_review_bounds_and_mention() -> None:
    with pytest.raises(ValidationError):
        ProcessedReview(item="Burrito", rating=5.5)
    review = ProcessedReview(item="Burrito", rating=4.0)
    assert review.to_mention() == ItemMention(item="Burrito", rating=4.0)
