"""Aggregate merged groups into ranked menu items."""
from __future__ import annotations

import math
from typing import List, Sequence

from backend.app.contracts import MenuItem

from .merge import MergedGroup
from .text_normalization import title_case


def round_rating(value: float) -> float:
    """Round to one decimal place with halves rounded up."""

    return math.floor(value * 10 + 0.5) / 10


def display_name(representative_texts: Sequence[str]) -> str:
    """Return the title-cased shortest representative; ties keep the first."""

    shortest = min(representative_texts, key=len)
    return title_case(shortest)


def aggregate_groups(groups: Sequence[MergedGroup], ratings: Sequence[float]) -> List[MenuItem]:
    """Build menu items for merged groups, best rated first.

    Args:
        groups: Merged groups whose member indices address ``ratings``.
        ratings: Rating per input row.

    Returns:
        List[MenuItem]: Items sorted by rating descending, then by name.
    """

    items: List[MenuItem] = []
    for group in groups:
        if not group.member_indices:
            continue
        member_ratings = [ratings[index] for index in group.member_indices]
        average = sum(member_ratings) / len(member_ratings)
        # Rounding must not leave the range spanned by the member ratings.
        rating = min(max(round_rating(average), min(member_ratings)), max(member_ratings))
        items.append(
            MenuItem(
                name=display_name(group.representative_texts),
                rating=rating,
                review_count=len(member_ratings),
            )
        )
    items.sort(key=lambda item: (-item.rating, item.name))
    return items
