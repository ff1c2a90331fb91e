"""Detection pipeline orchestrator.

One upload is one unit of work:

  submit:  validate -> credit pre-check -> normalize + assess -> store image
           -> debit credit and create the `processing` row (one transaction)
  process: provider call (primary/fallback) -> calibrate + enrich -> partition
           -> `completed`; any failure, cancellation included, -> `failed` + refund

`process` never runs under the user's row lock. Terminal transitions are
conditional on the row still being `processing`, so a refund is applied at
most once whatever path the failure took.

Image work and database writes run on worker threads (`asyncio.to_thread`) so
polling requests stay responsive while analyses are in flight.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Set

from parasitepro.services import config
from parasitepro.services.persistence import AnalysisStore
from parasitepro.services.providers import DetectionProviderAdapter, provider_error_meta
from parasitepro.services.storage import ImageStore, LocalImageStore, StoredImage
from parasitepro.shared.calibration import (
    calibrate_detection,
    overall_urgency,
    partition_detections,
)
from parasitepro.shared.detection_contract import (
    DISCLAIMER,
    SAMPLE_TYPES,
    AnalysisOutcome,
    InvalidImageError,
    InvalidRequestError,
    ProviderUnavailableError,
    SampleMetadata,
)
from parasitepro.shared.image_quality import (
    NormalizedImage,
    image_to_base64,
    normalize_image,
    quality_summary,
)
from parasitepro.shared.reference_data import ReferenceCatalog, load_catalog

LOGGER = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/webp")
MAX_LOCATION_LENGTH = 255
MAX_NOTES_LENGTH = 2000


def _invalid_image(message: str, status_code: int = 400) -> InvalidImageError:
    err = InvalidImageError(message)
    err.status_code = status_code
    return err


@dataclass
class AnalysisRequest:
    image_bytes: bytes
    content_type: Optional[str] = None
    sample_type: Optional[str] = None
    collection_date: Optional[str] = None
    location: Optional[str] = None
    notes: Optional[str] = None

    def validate(self, max_upload_bytes: int = config.Settings.max_upload_bytes) -> SampleMetadata:
        """Reject bad input before anything is mutated; returns the sample metadata."""

        if not self.image_bytes:
            raise _invalid_image("No image file uploaded")
        if len(self.image_bytes) > max_upload_bytes:
            raise _invalid_image(
                f"Image exceeds the {max_upload_bytes // (1024 * 1024)}MB upload limit", 413
            )
        if self.content_type and self.content_type.lower() not in ALLOWED_CONTENT_TYPES:
            raise _invalid_image("Only JPEG, PNG and WebP images are accepted", 415)

        sample_type = (self.sample_type or "other").strip().lower()
        if sample_type not in SAMPLE_TYPES:
            raise InvalidRequestError(
                f"sampleType must be one of {', '.join(SAMPLE_TYPES)}"
            )

        collection_date = (self.collection_date or "").strip() or None
        if collection_date is not None:
            try:
                date.fromisoformat(collection_date[:10])
            except ValueError:
                raise InvalidRequestError("collectionDate must be an ISO date (YYYY-MM-DD)") from None

        location = (self.location or "").strip() or None
        if location is not None and len(location) > MAX_LOCATION_LENGTH:
            raise InvalidRequestError(f"location must be at most {MAX_LOCATION_LENGTH} characters")

        notes = (self.notes or "").strip() or None
        if notes is not None and len(notes) > MAX_NOTES_LENGTH:
            raise InvalidRequestError(f"notes must be at most {MAX_NOTES_LENGTH} characters")

        return {
            "sampleType": sample_type,
            "collectionDate": collection_date,
            "location": location,
            "notes": notes,
        }


@dataclass
class SubmittedAnalysis:
    analysis_id: str
    user_id: str
    credits_remaining: int
    metadata: SampleMetadata
    normalized: NormalizedImage = field(repr=False)
    stored: Optional[StoredImage] = None

    def as_response(self) -> Dict[str, Any]:
        return {
            "analysisId": self.analysis_id,
            "status": "processing",
            "creditsRemaining": self.credits_remaining,
        }


def failure_reason(exc: BaseException) -> str:
    """Short, non-secret reason stored on a failed analysis."""

    if isinstance(exc, asyncio.CancelledError):
        return "analysis was cancelled"
    if isinstance(exc, ProviderUnavailableError):
        details = "; ".join(f"{e.get('provider')}: {e.get('code')}" for e in exc.errors)
        return f"the AI providers were unavailable ({details})" if details else "the AI providers were unavailable"
    meta = provider_error_meta(exc)
    return f"{meta['code']}: {meta['message']}"


class DetectionPipeline:
    def __init__(
        self,
        store: AnalysisStore,
        adapter: DetectionProviderAdapter,
        catalog: ReferenceCatalog,
        image_store: Optional[ImageStore] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.catalog = catalog
        self.image_store = image_store
        self.settings = settings or config.Settings()
        self._tasks: Set[asyncio.Task] = set()

    # -- pure analysis ---------------------------------------------------

    async def analyze(self, image_bytes: bytes, metadata: SampleMetadata) -> AnalysisOutcome:
        """Normalize, call the provider and calibrate. Touches no persistent state."""

        normalized = await asyncio.to_thread(normalize_image, image_bytes)
        return await self._analyze_normalized(normalized, metadata)

    async def _analyze_normalized(
        self, normalized: NormalizedImage, metadata: SampleMetadata
    ) -> AnalysisOutcome:
        started = time.perf_counter()
        quality = normalized["quality"]

        result, provider_name = await self.adapter.analyse(
            image_to_base64(normalized["buffer"]), metadata
        )

        calibrated = [
            calibrate_detection(det, quality, self.catalog.match(det))
            for det in result["detections"]
        ]
        reliable, unreliable = partition_detections(calibrated)
        urgency = overall_urgency(reliable)

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        LOGGER.info(
            "Analysis via %s | quality=%s | %d reliable, %d low-confidence | urgency=%s | %dms",
            provider_name,
            quality_summary(dict(quality)),
            len(reliable),
            len(unreliable),
            urgency,
            elapsed_ms,
        )

        return {
            "provider": provider_name,
            "processingTimeMs": elapsed_ms,
            "analysedAt": datetime.now(timezone.utc).isoformat(),
            "imageQuality": {**dict(quality), **dict(result.get("imageQualityAssessment") or {})},
            "analysisSteps": list(result.get("analysisSteps") or []),
            "detections": reliable,
            "lowConfidenceDetections": unreliable,
            "overallUrgency": urgency,  # type: ignore[typeddict-item]
            "overallConclusion": result["overallConclusion"],
            "recommendedActions": list(result.get("recommendedActions") or []),
            "recommendedTests": list(result.get("recommendedTests") or []),
            "naturalTreatmentNotes": result.get("naturalTreatmentNotes"),
            "disclaimer": result.get("disclaimer") or DISCLAIMER,
        }

    # -- credit-gated workflow -------------------------------------------

    def submit(self, user_id: str, request: AnalysisRequest) -> SubmittedAnalysis:
        metadata = request.validate(self.settings.max_upload_bytes)

        # Cheap rejection before the image is processed or any row is locked.
        self.store.check_credits(user_id)

        normalized = normalize_image(request.image_bytes)
        stored = self.image_store.put(user_id, normalized["buffer"]) if self.image_store else None

        try:
            analysis_id, balance = self.store.debit_and_create(
                user_id,
                image_url=stored.url if stored else None,
                thumbnail_url=stored.thumbnail_url if stored else None,
                metadata=metadata,
            )
        except Exception:
            # Lost the last credit to a concurrent upload, or the write failed.
            if stored is not None:
                self.image_store.discard(stored)
            raise
        LOGGER.info("Analysis %s submitted for user %s", analysis_id, user_id)
        return SubmittedAnalysis(
            analysis_id=analysis_id,
            user_id=user_id,
            credits_remaining=balance,
            metadata=metadata,
            normalized=normalized,
            stored=stored,
        )

    async def submit_async(self, user_id: str, request: AnalysisRequest) -> SubmittedAnalysis:
        """`submit` on a worker thread; image work and the debit block."""

        return await asyncio.to_thread(self.submit, user_id, request)

    async def process(self, submitted: SubmittedAnalysis) -> Dict[str, Any]:
        """Run the analysis for a submitted row and move it to its terminal state."""

        try:
            outcome = await self._analyze_normalized(submitted.normalized, submitted.metadata)
            await asyncio.to_thread(self.store.complete, submitted.analysis_id, outcome)
        except (Exception, asyncio.CancelledError) as exc:
            reason = failure_reason(exc)
            LOGGER.error("Analysis %s failed: %s", submitted.analysis_id, reason)
            # Synchronous so a second cancellation cannot skip the refund.
            try:
                self.store.fail_and_refund(submitted.analysis_id, reason)
            except Exception:  # noqa: BLE001 - keep the original failure
                LOGGER.exception("Refund for analysis %s could not be recorded", submitted.analysis_id)
            raise

        return await asyncio.to_thread(self.store.get_analysis, submitted.analysis_id)

    async def _run_detached(self, submitted: SubmittedAnalysis) -> None:
        try:
            await self.process(submitted)
        except asyncio.CancelledError:
            LOGGER.warning("Detached analysis %s was cancelled", submitted.analysis_id)
            raise
        except Exception:  # noqa: BLE001 - already recorded as failed + refunded
            LOGGER.exception("Detached analysis %s failed", submitted.analysis_id)

    def spawn(self, submitted: SubmittedAnalysis) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run_detached(submitted))
        # Keep a reference so the task is not garbage collected mid-flight.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every detached analysis still running."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def run(
        self,
        user_id: str,
        request: AnalysisRequest,
        detached: Optional[bool] = None,
    ) -> Dict[str, Any]:
        """Submit, then either process inline (final state) or detach (immediate response)."""

        submitted = await self.submit_async(user_id, request)
        if self.settings.run_detached if detached is None else detached:
            self.spawn(submitted)
            return submitted.as_response()
        return await self.process(submitted)


def build_default_pipeline(settings: Optional[config.Settings] = None) -> DetectionPipeline:
    settings = settings or config.load_settings()
    store = AnalysisStore.from_url(settings.database_url)
    return DetectionPipeline(
        store=store,
        adapter=DetectionProviderAdapter.from_settings(settings),
        catalog=load_catalog(settings.reference_catalog_path),
        image_store=LocalImageStore(settings.storage_dir, settings.storage_base_url),
        settings=settings,
    )
