"""Confidence calibration for provider detections.

Provider-reported confidence is discounted by how much we trust the input the
provider saw. Worse images also raise the bar a detection must clear before it
is shown as confirmed, which is why the threshold table rises as quality falls.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from parasitepro.shared.detection_contract import URGENCY_RANK, CalibratedDetection
from parasitepro.shared.reference_data import ReferenceCatalog

QUALITY_PENALTY: Dict[str, float] = {
    "excellent": 0.0,
    "good": 0.02,
    "fair": 0.08,
    "poor": 0.18,
}
DEFAULT_PENALTY = 0.05

RELIABILITY_THRESHOLD: Dict[str, float] = {
    "excellent": 0.45,
    "good": 0.50,
    "fair": 0.60,
    "poor": 0.72,
}
DEFAULT_THRESHOLD = 0.55

CONFIDENCE_FLOOR = 0.35
CONFIDENCE_CEILING = 0.99
# Stored precision (DECIMAL(5,4)); also keeps 0.70 - 0.18 == 0.52.
CONFIDENCE_DECIMALS = 4

CONFIDENCE_LABEL_STEPS = ((0.85, "high"), (0.65, "moderate"), (0.45, "low"))

RAW_DETECTION_FIELDS = (
    "parasiteId",
    "commonName",
    "scientificName",
    "parasiteType",
    "urgencyLevel",
    "lifeStage",
    "visualEvidence",
    "differentialDiagnoses",
    "boundingBox",
)


def _label_of(quality: Optional[Mapping[str, Any]]) -> str:
    if not quality:
        return ""
    return str(quality.get("qualityLabel", "") or "")


def quality_penalty(quality_label: str) -> float:
    return QUALITY_PENALTY.get(quality_label, DEFAULT_PENALTY)


def reliability_threshold(quality_label: str) -> float:
    return RELIABILITY_THRESHOLD.get(quality_label, DEFAULT_THRESHOLD)


def calibrate_confidence(raw_confidence: float, quality_label: str) -> float:
    calibrated = float(raw_confidence) - quality_penalty(quality_label)
    calibrated = max(CONFIDENCE_FLOOR, min(CONFIDENCE_CEILING, calibrated))
    return round(calibrated, CONFIDENCE_DECIMALS)


def is_reliable(calibrated_confidence: float, quality_label: str) -> bool:
    return float(calibrated_confidence) >= reliability_threshold(quality_label)


def confidence_label(calibrated_confidence: float) -> str:
    for minimum, label in CONFIDENCE_LABEL_STEPS:
        if calibrated_confidence >= minimum:
            return label
    return "insufficient"


def reference_summary(entry: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not entry:
        return None
    return {
        "regionalPrevalence": entry.get("regionalPrevalence"),
        "transmission": list(entry.get("transmission", []) or []),
        "prevention": list(entry.get("prevention", []) or []),
        "resources": list(entry.get("resources", []) or []),
        "microscopyAppearance": entry.get("microscopyAppearance"),
    }


def calibrate_detection(
    raw: Mapping[str, Any],
    quality: Optional[Mapping[str, Any]],
    reference: Optional[Mapping[str, Any]] = None,
) -> CalibratedDetection:
    """Calibrate one raw detection and attach reference enrichment (if matched)."""

    label = _label_of(quality)
    # Recalibration passes stored detections, which keep the raw score separately.
    raw_conf = raw.get("confidenceRaw", raw.get("confidenceScore"))
    raw_conf = 0.5 if raw_conf is None else float(raw_conf)
    calibrated = calibrate_confidence(raw_conf, label)

    out: Dict[str, Any] = {key: raw.get(key) for key in RAW_DETECTION_FIELDS}
    out["differentialDiagnoses"] = list(out.get("differentialDiagnoses") or [])
    if reference:
        out["parasiteId"] = reference.get("id") or out.get("parasiteId")
    out.update(
        {
            "confidenceScore": calibrated,
            "confidenceRaw": raw_conf,
            "confidenceCalibrated": calibrated,
            "confidenceLabel": confidence_label(calibrated),
            "isReliable": is_reliable(calibrated, label),
            "conventionalTreatment": (
                (reference or {}).get("conventionalTreatment")
                or raw.get("conventionalTreatment")
            ),
            "holisticTreatment": (
                reference.get("holistic") if reference else raw.get("holisticTreatment")
            ),
            "referenceEntry": (
                reference_summary(reference) if reference else raw.get("referenceEntry")
            ),
        }
    )
    return out  # type: ignore[return-value]


def partition_detections(
    detections: Iterable[CalibratedDetection],
) -> Tuple[List[CalibratedDetection], List[CalibratedDetection]]:
    """Split into (reliable, unreliable); nothing is dropped."""

    reliable: List[CalibratedDetection] = []
    unreliable: List[CalibratedDetection] = []
    for det in detections:
        (reliable if det.get("isReliable") else unreliable).append(det)
    return reliable, unreliable


def overall_urgency(reliable: Sequence[Mapping[str, Any]]) -> str:
    highest = "low"
    for det in reliable:
        level = str(det.get("urgencyLevel", "") or "")
        if URGENCY_RANK.get(level, 0) > URGENCY_RANK[highest]:
            highest = level
    return highest


def recalibrate_result(
    result: Mapping[str, Any],
    quality: Mapping[str, Any],
    matcher: Optional[ReferenceCatalog] = None,
) -> Dict[str, Any]:
    """Re-apply calibration to a stored result without a new provider call.

    Both confirmed and low-confidence detections are re-scored from their
    `confidenceRaw`, then re-partitioned and the overall urgency recomputed.
    """

    stored = list(result.get("detections", []) or []) + list(
        result.get("lowConfidenceDetections", []) or []
    )
    recalibrated = [
        calibrate_detection(det, quality, matcher.match(det) if matcher is not None else None)
        for det in stored
    ]
    reliable, unreliable = partition_detections(recalibrated)

    out = dict(result)
    out["imageQuality"] = {**dict(result.get("imageQuality", {}) or {}), **dict(quality)}
    out["detections"] = reliable
    out["lowConfidenceDetections"] = unreliable
    out["overallUrgency"] = overall_urgency(reliable)
    return out
