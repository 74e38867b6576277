"""Extract a food item and a sentiment rating from customer reviews."""
from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from backend.app.config import ExtractionConfig
from backend.app.contracts import ProcessedReview, ReviewInput
from backend.app.menu.aggregation import round_rating
from backend.app.utils.openai_http import OpenAIHTTPClient, OpenAIRequestError, _HTTPClient

LOGGER = logging.getLogger(__name__)

_MIN_RATING = 1.0
_MAX_RATING = 5.0


class ReviewExtractionError(RuntimeError):
    """Raised when the model response cannot be turned into an extraction."""


@dataclass(frozen=True)
class ReviewExtractionFailure:
    """Error recorded for a single review in a batch."""

    index: int
    error: str


@dataclass
class ReviewBatchResult:
    """Outcome of extracting a batch of reviews."""

    results: List[Optional[ProcessedReview]] = field(default_factory=list)
    errors: List[ReviewExtractionFailure] = field(default_factory=list)

    @property
    def processed(self) -> List[ProcessedReview]:
        """Return the reviews that yielded a food item, in input order."""

        return [result for result in self.results if result is not None]


def _clamp_rating(value: float) -> float:
    return max(_MIN_RATING, min(_MAX_RATING, value))


class OpenAIReviewExtractor:
    """Adapter that calls the OpenAI chat completions API for review analysis."""

    _ENDPOINT = "/chat/completions"
    _SYSTEM_PROMPT = (
        "You analyze restaurant reviews. Follow prompt version {prompt_version}.\n"
        "Extract:\n"
        "1. The specific food item mentioned (for example pizza, burger, pasta). "
        "Return null when no specific food item is mentioned.\n"
        "2. The perceived sentiment toward that item as a number from 1 to 5 "
        "(1 = very negative, 5 = very positive).\n"
        "Use only the review text. Output must strictly adhere to the requested JSON schema."
    )
    _RESPONSE_SCHEMA = {
        "type": "json_schema",
        "json_schema": {
            "name": "review_item_sentiment",
            "schema": {
                "type": "object",
                "properties": {
                    "item": {"type": ["string", "null"]},
                    "rating": {"type": "number", "minimum": 1, "maximum": 5},
                },
                "required": ["item", "rating"],
                "additionalProperties": False,
            },
        },
    }

    def __init__(
        self,
        settings: ExtractionConfig,
        *,
        api_key: Optional[str] = None,
        client: Optional[_HTTPClient] = None,
        http_client: Optional[OpenAIHTTPClient] = None,
    ) -> None:
        if http_client is not None and client is not None:
            raise ValueError("Provide either a client or http_client, not both")
        self._settings = settings
        self._http = http_client or OpenAIHTTPClient(settings.openai, api_key=api_key, client=client)

    def close(self) -> None:
        """Release the underlying HTTP client."""

        self._http.close()

    def extract(self, review: ReviewInput, *, weighted: bool = False) -> Optional[ProcessedReview]:
        """Extract the item and sentiment from one review.

        Args:
            review: Review to analyze.
            weighted: When true and the review carries a star rating, average
                the star rating with the model's sentiment.

        Returns:
            Optional[ProcessedReview]: The extraction, or ``None`` when the
                review does not mention a food item.

        Raises:
            OpenAIRequestError: If the API request fails.
            ReviewExtractionError: If the response cannot be parsed.
        """

        body = self._http.post_json(self._ENDPOINT, self._build_payload(review))
        item, sentiment = self._parse_response(body)
        if item is None:
            LOGGER.debug("No food item found in review")
            return None
        rating = sentiment
        if weighted and review.rating is not None:
            rating = round_rating((float(review.rating) + sentiment) / 2)
        return ProcessedReview(item=item, rating=_clamp_rating(rating))

    def extract_many(
        self,
        reviews: Sequence[ReviewInput],
        weighted: bool = False,
        *,
        max_workers: int = 1,
    ) -> ReviewBatchResult:
        """Extract every review, recording per-review failures instead of raising.

        Args:
            reviews: Reviews to analyze.
            weighted: Forwarded to :meth:`extract`.
            max_workers: Number of concurrent requests.

        Returns:
            ReviewBatchResult: One result slot per review plus recorded errors.
        """

        def _run(index: int) -> Tuple[Optional[ProcessedReview], Optional[ReviewExtractionFailure]]:
            try:
                return self.extract(reviews[index], weighted=weighted), None
            except (OpenAIRequestError, ReviewExtractionError) as exc:
                LOGGER.warning("Review %d could not be processed: %s", index, exc)
                return None, ReviewExtractionFailure(index=index, error=str(exc))

        indices = range(len(reviews))
        if max_workers > 1 and len(reviews) > 1:
            with ThreadPoolExecutor(
                max_workers=min(max_workers, len(reviews)),
                thread_name_prefix="review-extraction",
            ) as executor:
                outcomes = list(executor.map(_run, indices))
        else:
            outcomes = [_run(index) for index in indices]

        batch = ReviewBatchResult()
        for result, failure in outcomes:
            batch.results.append(result)
            if failure is not None:
                batch.errors.append(failure)
        LOGGER.info(
            "Processed %d reviews: %d items found, %d errors",
            len(reviews),
            len(batch.processed),
            len(batch.errors),
        )
        return batch

    def _build_payload(self, review: ReviewInput) -> Dict[str, Any]:
        text = review.text.strip()[: self._settings.max_review_chars]
        return {
            "model": self._settings.model,
            "temperature": self._settings.temperature,
            "response_format": self._RESPONSE_SCHEMA,
            "messages": [
                {
                    "role": "system",
                    "content": self._SYSTEM_PROMPT.format(prompt_version=self._settings.prompt_version),
                },
                {"role": "user", "content": f'Review text: "{text}"'},
            ],
        }

    @staticmethod
    def _parse_response(payload: Dict[str, Any]) -> Tuple[Optional[str], float]:
        """Parse the chat completion into an ``(item, rating)`` pair."""

        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            LOGGER.error("OpenAI response missing choices: %s", payload)
            raise ReviewExtractionError("OpenAI response missing choices")
        choice = choices[0]
        if not isinstance(choice, dict):
            LOGGER.error("OpenAI response choice was not an object: %s", payload)
            raise ReviewExtractionError("OpenAI response choice was not an object")
        if choice.get("finish_reason") == "length":
            raise ReviewExtractionError("OpenAI response truncated by token limit")
        message = choice.get("message")
        if not isinstance(message, dict) or not isinstance(message.get("content"), str):
            LOGGER.error("OpenAI response missing message content: %s", payload)
            raise ReviewExtractionError("OpenAI response missing message content")
        try:
            parsed = json.loads(message["content"])
        except json.JSONDecodeError as exc:
            LOGGER.error("OpenAI returned non-JSON content: %s", message["content"])
            raise ReviewExtractionError("OpenAI returned non-JSON content") from exc
        if not isinstance(parsed, dict):
            raise ReviewExtractionError("OpenAI response content was not an object")
        raw_item = parsed.get("item")
        item = str(raw_item).strip() if raw_item is not None else ""
        try:
            rating = float(parsed.get("rating"))
        except (TypeError, ValueError) as exc:
            if not item:
                return None, _MIN_RATING
            raise ReviewExtractionError("OpenAI response rating was not numeric") from exc
        return (item or None), _clamp_rating(rating)
