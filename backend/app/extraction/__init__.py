"""Review extraction utilities for the menu insights backend."""

from backend.app.extraction.review_extraction import (
    OpenAIReviewExtractor,
    ReviewBatchResult,
    ReviewExtractionError,
    ReviewExtractionFailure,
)

__all__ = [
    "OpenAIReviewExtractor",
    "ReviewBatchResult",
    "ReviewExtractionError",
    "ReviewExtractionFailure",
]
