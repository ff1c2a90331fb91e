"""Detection pipeline contract helpers.

This module documents the shapes that flow through the pipeline:
- the provider response schema (validated on receipt, see `ProviderResponse`),
- the calibrated detection / quality report dicts stored in the analysis result,
- the typed failures the service maps to its error envelope.

Everything after provider validation is a plain dict (TypedDicts below) so it
can be stored in a JSON column and returned by the API without conversion.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict

from pydantic import BaseModel, ConfigDict, Field


QualityLabel = Literal["excellent", "good", "fair", "poor"]
ConfidenceLabel = Literal["high", "moderate", "low", "insufficient"]
UrgencyLevel = Literal["low", "moderate", "high", "emergency"]
ParasiteType = Literal["protozoa", "helminth", "ectoparasite"]
AnalysisStatus = Literal["pending", "processing", "completed", "failed"]

SAMPLE_TYPES = ("stool", "blood", "skin", "other")
ANALYSIS_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_STATUSES = ("completed", "failed")

# Total order used for overall urgency (higher wins).
URGENCY_RANK: Dict[str, int] = {
    "emergency": 4,
    "high": 3,
    "moderate": 2,
    "low": 1,
}

DISCLAIMER = (
    "This analysis is for educational and informational purposes only. It does not "
    "constitute medical advice, diagnosis, or treatment. Always consult a qualified "
    "healthcare professional."
)

FAILURE_MESSAGE = (
    "Analysis failed: {reason}. Your credit has been refunded and it is safe to retry."
)


# ---------------------------------------------------------------------------
# Provider response schema
# ---------------------------------------------------------------------------


class _Wire(BaseModel):
    """Base for provider payload models: camelCase on the wire, snake_case in code."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class BoundingBox(_Wire):
    x: float
    y: float
    width: float = Field(ge=0)
    height: float = Field(ge=0)


class DifferentialDiagnosis(_Wire):
    name: str
    reason: str = ""
    confidence_score: Optional[float] = Field(None, ge=0.0, le=1.0, alias="confidenceScore")
    ruled_out_because: str = Field("", alias="ruledOutBecause")


class RawDetectionModel(_Wire):
    parasite_id: str = Field("", alias="parasiteId")
    common_name: str = Field(min_length=1, alias="commonName")
    scientific_name: str = Field("", alias="scientificName")
    parasite_type: Optional[ParasiteType] = Field(None, alias="parasiteType")
    urgency_level: UrgencyLevel = Field(alias="urgencyLevel")
    # Providers occasionally omit the score; 0.5 is the neutral prior.
    confidence_score: float = Field(0.5, ge=0.0, le=1.0, alias="confidenceScore")
    life_stage: Optional[str] = Field(None, alias="lifeStage")
    visual_evidence: str = Field("", alias="visualEvidence")
    differential_diagnoses: List[DifferentialDiagnosis] = Field(
        default_factory=list, alias="differentialDiagnoses"
    )
    bounding_box: Optional[BoundingBox] = Field(None, alias="boundingBox")


class ImageQualityAssessment(_Wire):
    suitable_for_analysis: bool = Field(alias="suitableForAnalysis")
    quality_notes: str = Field("", alias="qualityNotes")
    limitations: List[str] = Field(default_factory=list)


class AnalysisStep(_Wire):
    step: int
    title: str
    observation: str
    significance: str = ""


class ProviderResponse(_Wire):
    """Explicit schema for what a vision provider must return."""

    image_quality_assessment: Optional[ImageQualityAssessment] = Field(
        None, alias="imageQualityAssessment"
    )
    analysis_steps: List[AnalysisStep] = Field(default_factory=list, alias="analysisSteps")
    detections: List[RawDetectionModel]
    overall_conclusion: str = Field(min_length=1, alias="overallConclusion")
    recommended_actions: List[str] = Field(default_factory=list, alias="recommendedActions")
    recommended_tests: List[str] = Field(default_factory=list, alias="recommendedTests")
    natural_treatment_notes: Optional[str] = Field(None, alias="naturalTreatmentNotes")
    disclaimer: Optional[str] = None


def provider_json_schema() -> dict[str, Any]:
    """JSON schema handed to providers that accept one (wire/camelCase names)."""

    return ProviderResponse.model_json_schema(by_alias=True)


# ---------------------------------------------------------------------------
# Pipeline dicts
# ---------------------------------------------------------------------------


class QualityReport(TypedDict):
    width: int
    height: int
    format: str
    hasAlpha: bool
    resolutionScore: float
    sharpnessScore: float
    lightingScore: float
    overallQuality: float
    qualityLabel: QualityLabel


class SampleMetadata(TypedDict, total=False):
    sampleType: str
    collectionDate: Optional[str]
    location: Optional[str]
    notes: Optional[str]


class ProviderResult(TypedDict):
    """Validated provider output, dumped to wire (camelCase) dicts."""

    imageQualityAssessment: Optional[Dict[str, Any]]
    analysisSteps: List[Dict[str, Any]]
    detections: List[Dict[str, Any]]
    overallConclusion: str
    recommendedActions: List[str]
    recommendedTests: List[str]
    naturalTreatmentNotes: Optional[str]
    disclaimer: Optional[str]


class ReferenceSummary(TypedDict):
    regionalPrevalence: Optional[str]
    transmission: List[str]
    prevention: List[str]
    resources: List[str]
    microscopyAppearance: Optional[str]


class CalibratedDetection(TypedDict, total=False):
    parasiteId: str
    commonName: str
    scientificName: str
    parasiteType: Optional[str]
    urgencyLevel: str
    lifeStage: Optional[str]
    visualEvidence: str
    differentialDiagnoses: List[Dict[str, Any]]
    boundingBox: Optional[Dict[str, float]]
    confidenceScore: float
    confidenceRaw: float
    confidenceCalibrated: float
    confidenceLabel: ConfidenceLabel
    isReliable: bool
    conventionalTreatment: Optional[str]
    holisticTreatment: Optional[Dict[str, Any]]
    referenceEntry: Optional[ReferenceSummary]


class AnalysisOutcome(TypedDict):
    provider: str
    processingTimeMs: int
    analysedAt: str
    imageQuality: Dict[str, Any]
    analysisSteps: List[Dict[str, Any]]
    detections: List[CalibratedDetection]
    lowConfidenceDetections: List[CalibratedDetection]
    overallUrgency: UrgencyLevel
    overallConclusion: str
    recommendedActions: List[str]
    recommendedTests: List[str]
    naturalTreatmentNotes: Optional[str]
    disclaimer: str


class ServiceResponse(TypedDict, total=False):
    """HTTP envelope: {status, request_id, data} or {status, request_id, code, message, data}."""

    status: Literal["success", "error"]
    request_id: str
    code: str
    message: str
    data: Optional[Dict[str, Any]]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class PipelineError(Exception):
    """Base for failures the service reports with a stable code."""

    code = "PIPELINE_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidImageError(PipelineError):
    code = "INVALID_IMAGE"
    status_code = 400


class InvalidRequestError(PipelineError):
    code = "INVALID_REQUEST"
    status_code = 400


class InsufficientCreditsError(PipelineError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402

    def __init__(self, balance: int) -> None:
        super().__init__(f"Insufficient credits: 1 required, {balance} available")
        self.balance = balance


class UserNotFoundError(PipelineError):
    code = "USER_NOT_FOUND"
    status_code = 404


class AnalysisNotFoundError(PipelineError):
    code = "ANALYSIS_NOT_FOUND"
    status_code = 404


class ShareLinkNotFoundError(PipelineError):
    code = "SHARE_NOT_FOUND"
    status_code = 404


class ShareLinkExpiredError(PipelineError):
    code = "SHARE_EXPIRED"
    status_code = 410

    def __init__(self, message: str, expired_at: Optional[str] = None) -> None:
        super().__init__(message)
        self.expired_at = expired_at


class ProviderError(PipelineError):
    """A single vision provider failed (network, HTTP status, missing key...)."""

    code = "PROVIDER_ERROR"
    status_code = 502


class ProviderResponseError(ProviderError, ValueError):
    """Provider answered, but the payload broke the response contract."""

    code = "PROVIDER_RESPONSE_INVALID"


class ProviderUnavailableError(ProviderError):
    """Both primary and fallback providers failed."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, message: str, errors: List[Dict[str, str]]) -> None:
        super().__init__(message)
        self.errors = errors


def failure_message(reason: str) -> str:
    return FAILURE_MESSAGE.format(reason=reason.rstrip("."))
