"""FastAPI application factory for the menu insights backend."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from backend.app.config import AppConfig, ConfigurationError, load_config
from backend.app.contracts import ItemMention, MenuCategory, ProcessedReview, ReviewInput
from backend.app.extraction import OpenAIReviewExtractor
from backend.app.menu import EmbeddingError, MenuClusteringPipeline
from backend.app.storage import ProcessedReviewStore, StoredReviews

LOGGER = logging.getLogger(__name__)


class MenuItemsRequest(BaseModel):
    """Request payload for clustering raw item mentions."""

    mentions: List[ItemMention] = Field(default_factory=list)


class ProcessReviewsRequest(BaseModel):
    """Request payload for extracting and clustering a place's reviews."""

    place_id: str = Field(..., min_length=1, description="External identifier of the place")
    reviews: List[ReviewInput] = Field(default_factory=list)
    weighted: bool = Field(
        default=False,
        description="Average the reviewer's star rating with the extracted sentiment.",
    )


class ReviewErrorPayload(BaseModel):
    """Failure recorded for one review in a batch."""

    index: int
    error: str


class ProcessReviewsResponse(BaseModel):
    """Result of processing a batch of reviews."""

    place_id: str
    processed: List[ProcessedReview] = Field(default_factory=list)
    errors: List[ReviewErrorPayload] = Field(default_factory=list)
    menu: List[MenuCategory] = Field(default_factory=list)


def create_app(
    config: AppConfig | None = None,
    *,
    pipeline: Optional[MenuClusteringPipeline] = None,
    extractor: Optional[OpenAIReviewExtractor] = None,
    store: Optional[ProcessedReviewStore] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Optional pre-loaded configuration. If omitted, the default
            configuration defined in config.yaml is used.
        pipeline: Optional clustering pipeline. When omitted the factory
            builds one from the configuration; if that fails, menu endpoints
            return ``503``.
        extractor: Optional review extractor, built the same way when omitted.
        store: Optional processed review store. Defaults to the configured
            data directory.

    Returns:
        FastAPI: Configured FastAPI application.
    """

    resolved_config = config or load_config()
    app = FastAPI(title="Menu Insights API", version=resolved_config.pipeline.version)
    app.state.app_config = resolved_config

    allowed_origins = resolved_config.api.allowed_origins
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.pipeline = pipeline if pipeline is not None else _build_default_pipeline(resolved_config)
    app.state.extractor = extractor if extractor is not None else _build_default_extractor(resolved_config)
    if store is None:
        root_dir = Path(__file__).resolve().parents[2]
        store = ProcessedReviewStore((root_dir / resolved_config.storage.data_dir).resolve())
    app.state.review_store = store

    def _require_pipeline() -> MenuClusteringPipeline:
        pipeline_obj = getattr(app.state, "pipeline", None)
        if pipeline_obj is None:
            raise HTTPException(status_code=503, detail="Menu clustering pipeline unavailable")
        return pipeline_obj

    def _build_menu(mentions: List[ItemMention]) -> List[MenuCategory]:
        pipeline_obj = _require_pipeline()
        try:
            return pipeline_obj.build_menu(mentions)
        except ConfigurationError as exc:
            LOGGER.error("Menu clustering misconfigured: %s", exc)
            raise HTTPException(status_code=503, detail="Embedding provider not configured") from exc
        except EmbeddingError as exc:
            LOGGER.error("Menu clustering failed: %s", exc)
            raise HTTPException(status_code=502, detail="Embedding provider failed") from exc

    def _load_reviews(place_id: str) -> StoredReviews:
        try:
            record = app.state.review_store.load(place_id)
        except ValueError as exc:
            raise HTTPException(status_code=500, detail="Stored reviews are unreadable") from exc
        if record is None:
            raise HTTPException(status_code=404, detail="No processed reviews for place")
        return record

    @app.get("/health", tags=["system"], summary="Service health probe")
    def health() -> dict[str, str]:
        """Return service health information."""

        return {"status": "ok", "pipeline_version": resolved_config.pipeline.version}

    @app.post(
        "/api/menu/items",
        tags=["menu"],
        summary="Cluster item mentions into a ranked menu",
        response_model=List[MenuCategory],
    )
    def menu_items(request: MenuItemsRequest) -> List[MenuCategory]:
        """Group the supplied mentions into canonical menu items."""

        return _build_menu(list(request.mentions))

    @app.post(
        "/api/reviews/process",
        tags=["reviews"],
        summary="Extract, store and cluster reviews for a place",
        response_model=ProcessReviewsResponse,
    )
    def process_reviews(request: ProcessReviewsRequest) -> ProcessReviewsResponse:
        """Extract items from reviews, persist them and return the resulting menu."""

        if not request.reviews:
            raise HTTPException(status_code=400, detail="No reviews supplied")
        extractor_obj = getattr(app.state, "extractor", None)
        if extractor_obj is None:
            raise HTTPException(status_code=503, detail="Review extractor unavailable")
        _require_pipeline()

        batch = extractor_obj.extract_many(
            request.reviews,
            weighted=request.weighted,
            max_workers=resolved_config.api.extraction_workers,
        )
        processed = batch.processed
        app.state.review_store.save(request.place_id, processed)
        menu = _build_menu([review.to_mention() for review in processed])
        LOGGER.info(
            "Processed %d reviews for place %s (%d items, %d errors)",
            len(request.reviews),
            request.place_id,
            len(processed),
            len(batch.errors),
        )
        return ProcessReviewsResponse(
            place_id=request.place_id,
            processed=processed,
            errors=[ReviewErrorPayload(index=failure.index, error=failure.error) for failure in batch.errors],
            menu=menu,
        )

    @app.get("/api/reviews/{place_id}", tags=["reviews"], summary="Fetch stored reviews for a place")
    def get_reviews(place_id: str) -> Dict[str, object]:
        """Return the stored processed reviews for ``place_id``."""

        record = _load_reviews(place_id)
        return record.model_dump(mode="json")

    @app.get(
        "/api/reviews/{place_id}/menu",
        tags=["reviews"],
        summary="Rebuild the menu from stored reviews",
        response_model=List[MenuCategory],
    )
    def get_menu(place_id: str) -> List[MenuCategory]:
        """Recompute the menu for ``place_id`` from its stored reviews."""

        record = _load_reviews(place_id)
        return _build_menu([review.to_mention() for review in record.reviews])

    return app


def _build_default_pipeline(config: AppConfig) -> Optional[MenuClusteringPipeline]:
    """Construct the clustering pipeline if its provider can be configured."""

    try:
        return MenuClusteringPipeline(config)
    except ConfigurationError:
        LOGGER.exception("Failed to initialize menu clustering pipeline")
        return None


def _build_default_extractor(config: AppConfig) -> Optional[OpenAIReviewExtractor]:
    """Construct the review extractor if an OpenAI key is configured."""

    try:
        return OpenAIReviewExtractor(config.extraction)
    except ConfigurationError:
        LOGGER.warning("OpenAI API key missing; review processing disabled")
        return None

