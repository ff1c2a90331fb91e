"""Vision provider adapter: primary + fallback behind one interface.

Both providers share one prompt contract and one response schema
(`ProviderResponse`). A payload that is not JSON, or JSON of the wrong shape,
is a provider failure exactly like a network error; it is never read as
"zero detections".

Failover protocol: primary once, then fallback once with identical input.
There is no retry loop beyond that.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx
from pydantic import ValidationError

from parasitepro.services import config
from parasitepro.shared.detection_contract import (
    ProviderResponse,
    ProviderResponseError,
    ProviderResult,
    ProviderUnavailableError,
    SampleMetadata,
    provider_json_schema,
)

LOGGER = logging.getLogger(__name__)

ANTHROPIC_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
OPENAI_URL = "https://api.openai.com/v1/responses"

SYSTEM_PROMPT = (
    "You are ParasitePro AI, an expert medical imaging assistant specialising in "
    "parasitology. You analyse microscope images, gross stool images, skin images and "
    "blood smears to identify potential parasitic infections.\n\n"
    "Your role is EDUCATIONAL and INFORMATIONAL: you help users seek appropriate medical "
    "care, you do not replace it.\n\n"
    "Guidelines:\n"
    "- Be scientifically accurate but accessible.\n"
    "- Never provide a definitive medical diagnosis; always recommend professional evaluation.\n"
    "- Flag high-urgency findings clearly.\n"
    "- Be honest about image quality limitations.\n"
    "- Consider Australian epidemiology (common: Giardia, Blastocystis, Cryptosporidium, "
    "Dientamoeba, Enterobius, Strongyloides, scabies).\n\n"
    "Approach: assess image quality, identify morphological features systematically, match "
    "them against known parasite characteristics, give confidence levels based on the visual "
    "evidence, explain your reasoning step by step, and recommend next steps.\n\n"
    "Always respond with valid JSON only. No markdown, no preamble."
)

ANALYSIS_PROMPT = """Analyse this medical sample image for potential parasitic organisms.

Sample metadata:
- Type: {sample_type}
- Collection date: {collection_date}
- Location: {location}
- Patient notes: {notes}

Return ONLY a valid JSON object with this exact structure:
{{
  "imageQualityAssessment": {{
    "suitableForAnalysis": true,
    "qualityNotes": "Brief description of image quality",
    "limitations": ["any limitations affecting analysis"]
  }},
  "analysisSteps": [
    {{"step": 1, "title": "Step title", "observation": "What you observe", "significance": "What this means diagnostically"}}
  ],
  "detections": [
    {{
      "parasiteId": "exact catalog id if known (e.g. giardia-001) or best-match string",
      "commonName": "Common name",
      "scientificName": "Scientific name",
      "parasiteType": "protozoa|helminth|ectoparasite",
      "urgencyLevel": "low|moderate|high|emergency",
      "confidenceScore": 0.0,
      "lifeStage": "cyst|trophozoite|egg|larva|adult|proglottid|other",
      "visualEvidence": "Morphological features that support this identification",
      "differentialDiagnoses": [
        {{"name": "Alternative organism", "reason": "Why considered", "confidenceScore": 0.0, "ruledOutBecause": "Why less likely"}}
      ],
      "boundingBox": null
    }}
  ],
  "overallConclusion": "Summary of findings in plain language",
  "recommendedActions": ["Specific, prioritised action items"],
  "recommendedTests": ["Pathology tests that would confirm findings"],
  "naturalTreatmentNotes": "Supportive approaches (1-2 sentences)",
  "disclaimer": "This analysis is educational only and does not constitute medical diagnosis."
}}

confidenceScore values are numbers between 0 and 1.
If no parasites are detected, return an empty detections array and explain what WAS observed.
If image quality is insufficient, set suitableForAnalysis to false and explain why."""

_FENCE_RE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


def build_analysis_prompt(metadata: SampleMetadata) -> str:
    return ANALYSIS_PROMPT.format(
        sample_type=metadata.get("sampleType") or "not specified",
        collection_date=metadata.get("collectionDate") or "not specified",
        location=metadata.get("location") or "not specified",
        notes=metadata.get("notes") or "none",
    )


def strip_markdown_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).replace("```", "").strip()


def parse_provider_text(text: str) -> ProviderResult:
    """Decode + validate provider output against `ProviderResponse`."""

    clean = strip_markdown_fences(str(text or ""))
    if not clean:
        raise ProviderResponseError("Provider returned an empty response")
    try:
        raw = json.loads(clean)
    except json.JSONDecodeError as exc:
        raise ProviderResponseError(f"Provider response is not JSON: {exc}") from exc
    return validate_provider_payload(raw)


def validate_provider_payload(raw: Any) -> ProviderResult:
    if not isinstance(raw, dict):
        raise ProviderResponseError("Provider response must be a JSON object")
    try:
        parsed = ProviderResponse.model_validate(raw)
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        where = ".".join(str(p) for p in first.get("loc", ()))
        raise ProviderResponseError(
            f"Provider response failed schema validation at '{where}': {first.get('msg', exc)}"
        ) from exc
    return parsed.model_dump(by_alias=True)  # type: ignore[return-value]


def _extract_anthropic_text(resp_json: dict[str, Any]) -> str:
    texts: list[str] = []
    for block in resp_json.get("content", []) or []:
        if isinstance(block, dict) and block.get("type") == "text":
            texts.append(str(block.get("text", "")))
    text = "".join(texts).strip()
    if not text:
        raise ProviderResponseError("Anthropic response did not contain a text block")
    return text


def _extract_responses_output_text(resp_json: dict[str, Any]) -> str:
    output = resp_json.get("output", [])
    texts: list[str] = []
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict):
                continue
            if item.get("type") != "message":
                continue
            for content in item.get("content", []) or []:
                if isinstance(content, dict) and content.get("type") == "output_text":
                    texts.append(str(content.get("text", "")))
    text = "".join(texts).strip()
    if not text:
        raise ProviderResponseError("OpenAI response did not contain output_text")
    return text


class VisionProvider(Protocol):
    name: str

    async def analyse(self, image_b64: str, metadata: SampleMetadata) -> ProviderResult:
        ...


class AnthropicVisionProvider:
    """Primary provider (Messages API, base64 image block)."""

    name = "claude"

    def __init__(
        self,
        model: str = config.Settings.anthropic_model,
        *,
        timeout_s: float = config.Settings.provider_timeout_s,
        max_tokens: int = config.Settings.provider_max_tokens,
    ) -> None:
        self.model = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    def build_payload(self, image_b64: str, metadata: SampleMetadata) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": "image/jpeg",
                                "data": image_b64,
                            },
                        },
                        {"type": "text", "text": build_analysis_prompt(metadata)},
                    ],
                }
            ],
        }

    async def analyse(self, image_b64: str, metadata: SampleMetadata) -> ProviderResult:
        headers = {
            "x-api-key": config.get_anthropic_api_key(),
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        payload = self.build_payload(image_b64, metadata)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s)) as client:
            resp = await client.post(ANTHROPIC_URL, headers=headers, json=payload)
            resp.raise_for_status()
            text = _extract_anthropic_text(resp.json())
        return parse_provider_text(text)


class OpenAIVisionProvider:
    """Fallback provider (Responses API, JSON schema attached)."""

    name = "gpt-4o"

    def __init__(
        self,
        model: str = config.Settings.openai_model,
        *,
        timeout_s: float = config.Settings.provider_timeout_s,
        max_tokens: int = config.Settings.provider_max_tokens,
    ) -> None:
        self.model = model
        self.name = model
        self.timeout_s = timeout_s
        self.max_tokens = max_tokens

    def build_payload(self, image_b64: str, metadata: SampleMetadata) -> dict[str, Any]:
        return {
            "model": self.model,
            "max_output_tokens": self.max_tokens,
            "input": [
                {
                    "role": "developer",
                    "content": [{"type": "input_text", "text": SYSTEM_PROMPT}],
                },
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "input_image",
                            "image_url": f"data:image/jpeg;base64,{image_b64}",
                            "detail": "high",
                        },
                        {"type": "input_text", "text": build_analysis_prompt(metadata)},
                    ],
                },
            ],
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "sample_analysis",
                    # Non-strict: strict mode would force every optional field to be required.
                    "strict": False,
                    "schema": provider_json_schema(),
                }
            },
        }

    async def analyse(self, image_b64: str, metadata: SampleMetadata) -> ProviderResult:
        headers = {
            "Authorization": f"Bearer {config.get_openai_api_key()}",
            "Content-Type": "application/json",
        }
        payload = self.build_payload(image_b64, metadata)
        async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_s)) as client:
            resp = await client.post(OPENAI_URL, headers=headers, json=payload)
            resp.raise_for_status()
            text = _extract_responses_output_text(resp.json())
        return parse_provider_text(text)


def _extract_error_json(resp: httpx.Response) -> dict[str, Any]:
    try:
        payload = resp.json()
    except Exception:  # noqa: BLE001 - best effort only
        return {}
    return payload if isinstance(payload, dict) else {}


def provider_error_meta(exc: BaseException, provider: str = "") -> Dict[str, str]:
    """Return compact, non-secret error info for logs and the stored failure reason.

    Contract:
      {"provider": "...", "http_status": "...", "code": "...", "message": "..."}
    """

    meta = {"provider": provider, "http_status": "", "code": "unknown", "message": exc.__class__.__name__}

    msg_l = str(exc).lower()
    if isinstance(exc, RuntimeError) and "missing" in msg_l and "api_key" in msg_l:
        meta.update(code="missing_api_key", message=str(exc))
        return meta
    if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
        meta.update(code="timeout", message="Provider request timed out")
        return meta

    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        payload = _extract_error_json(exc.response)
        err = payload.get("error", {})
        if not isinstance(err, dict):
            err = {}
        err_type = str(err.get("type", "")).strip()
        err_code = str(err.get("code", "") or "").strip()
        err_msg = str(err.get("message", "")).strip()
        if err_msg:
            message = err_msg
        else:
            # Best-effort snippet for non-JSON errors (e.g. proxies returning HTML).
            snippet = (exc.response.text or "").strip().replace("\n", " ")
            message = snippet[:200] if snippet else "Provider request failed"
        meta.update(http_status=str(status), code=err_code or err_type or f"http_{status}", message=message)
        return meta

    if isinstance(exc, httpx.RequestError):
        meta.update(code="network", message=exc.__class__.__name__)
        return meta
    if isinstance(exc, (ProviderResponseError, ValueError)):
        msg = str(exc).strip() or exc.__class__.__name__
        meta.update(code="schema", message=msg[:200])
        return meta
    return meta


class DetectionProviderAdapter:
    """Primary/fallback failover over two `VisionProvider`s."""

    def __init__(self, primary: VisionProvider, fallback: Optional[VisionProvider] = None) -> None:
        self.primary = primary
        self.fallback = fallback

    @classmethod
    def from_settings(cls, settings: config.Settings) -> "DetectionProviderAdapter":
        return cls(
            AnthropicVisionProvider(
                settings.anthropic_model,
                timeout_s=settings.provider_timeout_s,
                max_tokens=settings.provider_max_tokens,
            ),
            OpenAIVisionProvider(
                settings.openai_model,
                timeout_s=settings.provider_timeout_s,
                max_tokens=settings.provider_max_tokens,
            ),
        )

    def _providers(self) -> List[VisionProvider]:
        return [p for p in (self.primary, self.fallback) if p is not None]

    async def analyse(
        self,
        image_b64: str,
        metadata: SampleMetadata,
    ) -> Tuple[ProviderResult, str]:
        """Return (validated result, name of the provider that produced it)."""

        errors: List[Dict[str, str]] = []
        for idx, provider in enumerate(self._providers()):
            try:
                result = await provider.analyse(image_b64, dict(metadata))  # type: ignore[arg-type]
            except Exception as exc:  # noqa: BLE001 - any failure triggers failover
                meta = provider_error_meta(exc, provider.name)
                errors.append(meta)
                if idx == 0 and self.fallback is not None:
                    LOGGER.warning(
                        "Primary provider %s failed (%s: %s); trying fallback %s",
                        provider.name,
                        meta["code"],
                        meta["message"],
                        self.fallback.name,
                    )
                else:
                    LOGGER.error(
                        "Provider %s failed (%s: %s)",
                        provider.name,
                        meta["code"],
                        meta["message"],
                    )
                continue
            return result, provider.name

        raise ProviderUnavailableError(
            "AI analysis service temporarily unavailable", errors
        )

