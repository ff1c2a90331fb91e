from __future__ import annotations

import pytest

from parasitepro.shared import calibration as cal
from parasitepro.shared.reference_data import load_catalog


def _quality(label: str) -> dict:
    return {"qualityLabel": label, "overallQuality": 0.5}


def _raw(name: str = "Giardia", confidence=0.8, urgency: str = "moderate", **extra) -> dict:
    det = {
        "parasiteId": "",
        "commonName": name,
        "scientificName": "",
        "parasiteType": "protozoa",
        "urgencyLevel": urgency,
        "lifeStage": "cyst",
        "visualEvidence": "oval cysts",
        "differentialDiagnoses": [],
        "boundingBox": None,
    }
    if confidence is not None:
        det["confidenceScore"] = confidence
    det.update(extra)
    return det


def test_poor_quality_penalty_and_threshold() -> None:
    calibrated = cal.calibrate_confidence(0.70, "poor")

    assert calibrated == 0.52
    assert cal.is_reliable(calibrated, "poor") is False


def test_excellent_quality_has_no_penalty() -> None:
    calibrated = cal.calibrate_confidence(0.50, "excellent")

    assert calibrated == 0.50
    assert cal.is_reliable(calibrated, "excellent") is True


def test_unknown_label_uses_defaults() -> None:
    assert cal.quality_penalty("blurry") == cal.DEFAULT_PENALTY
    assert cal.reliability_threshold("") == cal.DEFAULT_THRESHOLD
    assert cal.calibrate_confidence(0.60, "") == 0.55


def test_calibrated_confidence_is_clamped() -> None:
    assert cal.calibrate_confidence(1.0, "excellent") == 0.99
    assert cal.calibrate_confidence(0.10, "poor") == 0.35


@pytest.mark.parametrize("label", ["excellent", "good", "fair", "poor", "unknown"])
def test_calibration_never_boosts_above_floor(label: str) -> None:
    for step in range(35, 101):
        raw = step / 100.0
        calibrated = cal.calibrate_confidence(raw, label)
        assert cal.CONFIDENCE_FLOOR <= calibrated <= cal.CONFIDENCE_CEILING
        assert calibrated <= raw


def test_floor_is_never_reliable() -> None:
    for label in ["excellent", "good", "fair", "poor", "unknown"]:
        assert cal.is_reliable(cal.CONFIDENCE_FLOOR, label) is False


def test_confidence_label_steps() -> None:
    assert cal.confidence_label(0.85) == "high"
    assert cal.confidence_label(0.8499) == "moderate"
    assert cal.confidence_label(0.65) == "moderate"
    assert cal.confidence_label(0.45) == "low"
    assert cal.confidence_label(0.44) == "insufficient"


def test_calibrate_detection_attaches_reference() -> None:
    catalog = load_catalog()
    raw = _raw("Giardia", 0.9)

    det = cal.calibrate_detection(raw, _quality("good"), catalog.match(raw))

    assert det["parasiteId"] == "giardia-001"
    assert det["confidenceRaw"] == 0.9
    assert det["confidenceCalibrated"] == 0.88
    assert det["confidenceScore"] == det["confidenceCalibrated"]
    assert det["confidenceLabel"] == "high"
    assert det["isReliable"] is True
    assert det["holisticTreatment"] is not None
    assert det["referenceEntry"]["regionalPrevalence"]
    assert isinstance(det["referenceEntry"]["transmission"], list)


def test_calibrate_detection_without_reference_or_score() -> None:
    det = cal.calibrate_detection(_raw("Mystery organism", None), _quality("excellent"))

    assert det["confidenceRaw"] == 0.5
    assert det["confidenceCalibrated"] == 0.5
    assert det["referenceEntry"] is None
    assert det["holisticTreatment"] is None
    assert det["commonName"] == "Mystery organism"


def test_partition_keeps_every_detection() -> None:
    quality = _quality("fair")
    dets = [
        cal.calibrate_detection(_raw("A", 0.9), quality),
        cal.calibrate_detection(_raw("B", 0.62), quality),
        cal.calibrate_detection(_raw("C", 0.3), quality),
    ]

    reliable, unreliable = cal.partition_detections(dets)

    assert [d["commonName"] for d in reliable] == ["A"]
    assert [d["commonName"] for d in unreliable] == ["B", "C"]


def test_overall_urgency_uses_reliable_only() -> None:
    assert cal.overall_urgency([]) == "low"
    assert cal.overall_urgency([{"urgencyLevel": "moderate"}, {"urgencyLevel": "high"}]) == "high"
    assert cal.overall_urgency([{"urgencyLevel": "emergency"}, {"urgencyLevel": "high"}]) == "emergency"
    assert cal.overall_urgency([{"urgencyLevel": "bogus"}]) == "low"
    mixed = [{"urgencyLevel": "moderate"}, {"urgencyLevel": "emergency"}, {"urgencyLevel": "low"}]
    assert cal.overall_urgency(mixed) == "emergency"

    quality = _quality("poor")
    dets = [
        cal.calibrate_detection(_raw("Pork Tapeworm", 0.70, "emergency"), quality),
        cal.calibrate_detection(_raw("Pinworm", 0.95, "low"), quality),
    ]
    reliable, _ = cal.partition_detections(dets)
    assert cal.overall_urgency(reliable) == "low"


def test_recalibrate_result_moves_detection_between_groups() -> None:
    catalog = load_catalog()
    raw = _raw("Giardia", 0.70, "moderate")
    first = cal.calibrate_detection(raw, _quality("excellent"), catalog.match(raw))
    stored = {
        "detections": [first],
        "lowConfidenceDetections": [],
        "overallUrgency": "moderate",
        "imageQuality": {"qualityLabel": "excellent", "suitableForAnalysis": True},
        "overallConclusion": "Cysts seen.",
    }

    out = cal.recalibrate_result(stored, _quality("poor"), catalog)

    assert out["detections"] == []
    assert len(out["lowConfidenceDetections"]) == 1
    moved = out["lowConfidenceDetections"][0]
    assert moved["confidenceRaw"] == 0.70
    assert moved["confidenceCalibrated"] == 0.52
    assert moved["parasiteId"] == "giardia-001"
    assert out["overallUrgency"] == "low"
    assert out["imageQuality"]["qualityLabel"] == "poor"
    assert out["imageQuality"]["suitableForAnalysis"] is True
    assert out["overallConclusion"] == "Cysts seen."


def test_recalibrate_without_matcher_keeps_enrichment() -> None:
    catalog = load_catalog()
    raw = _raw("Giardia", 0.9)
    first = cal.calibrate_detection(raw, _quality("good"), catalog.match(raw))

    out = cal.recalibrate_result({"detections": [first]}, _quality("excellent"))

    det = out["detections"][0]
    assert det["confidenceCalibrated"] == 0.9
    assert det["referenceEntry"] == first["referenceEntry"]
