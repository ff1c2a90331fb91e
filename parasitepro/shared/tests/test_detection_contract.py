import pytest
from pydantic import ValidationError

from parasitepro.shared import detection_contract as contract


def _payload(**overrides):
    payload = {
        "imageQualityAssessment": {"suitableForAnalysis": True, "qualityNotes": "sharp"},
        "analysisSteps": [{"step": 1, "title": "Scan", "observation": "Oval cysts"}],
        "detections": [
            {
                "commonName": "Giardia",
                "urgencyLevel": "moderate",
                "confidenceScore": 0.8,
                "parasiteType": "protozoa",
                "boundingBox": {"x": 0.1, "y": 0.2, "width": 0.3, "height": 0.3},
            }
        ],
        "overallConclusion": "Likely Giardia cysts.",
    }
    payload.update(overrides)
    return payload


def test_provider_response_accepts_wire_names_and_defaults():
    parsed = contract.ProviderResponse.model_validate(_payload())

    det = parsed.detections[0]
    assert det.common_name == "Giardia"
    assert det.bounding_box.width == 0.3
    assert parsed.recommended_actions == []

    dumped = parsed.model_dump(by_alias=True)
    assert dumped["detections"][0]["commonName"] == "Giardia"
    assert dumped["overallConclusion"] == "Likely Giardia cysts."


def test_missing_confidence_defaults_to_half():
    payload = _payload(detections=[{"commonName": "Blastocystis", "urgencyLevel": "low"}])

    parsed = contract.ProviderResponse.model_validate(payload)

    assert parsed.detections[0].confidence_score == 0.5


@pytest.mark.parametrize(
    "detection",
    [
        {"commonName": "Giardia", "urgencyLevel": "moderate", "confidenceScore": 1.5},
        {"commonName": "Giardia", "urgencyLevel": "critical"},
        {"commonName": "", "urgencyLevel": "low"},
        {"urgencyLevel": "low"},
    ],
)
def test_invalid_detection_rejected(detection):
    with pytest.raises(ValidationError):
        contract.ProviderResponse.model_validate(_payload(detections=[detection]))


def test_missing_top_level_fields_rejected():
    payload = _payload()
    del payload["detections"]
    with pytest.raises(ValidationError):
        contract.ProviderResponse.model_validate(payload)

    with pytest.raises(ValidationError):
        contract.ProviderResponse.model_validate(_payload(overallConclusion=""))


def test_provider_json_schema_uses_wire_names():
    schema = contract.provider_json_schema()

    assert "detections" in schema["required"]
    assert "overallConclusion" in schema["properties"]


def test_error_codes_and_messages():
    err = contract.InsufficientCreditsError(0)
    assert err.code == "INSUFFICIENT_CREDITS"
    assert err.status_code == 402
    assert "0 available" in str(err)

    assert contract.ProviderResponseError("bad").code == "PROVIDER_RESPONSE_INVALID"
    assert isinstance(contract.ProviderResponseError("bad"), ValueError)
    assert contract.InvalidImageError("x", code="FILE_TOO_LARGE").code == "FILE_TOO_LARGE"

    msg = contract.failure_message("the AI providers were unavailable.")
    assert msg.startswith("Analysis failed: the AI providers were unavailable.")
    assert "refunded" in msg
    assert "retry" in msg
