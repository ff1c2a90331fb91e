"""ParasitePro analysis service (HTTP surface over `DetectionPipeline`).

Every response uses one envelope:
  success: {status: "success", request_id, data}
  error:   {status: "error", request_id, code, message, data}

The caller is identified by the `X-User-Id` header (set by the auth proxy in
front of this service).

Run (from repo root):
  uvicorn parasitepro.services.analysis_service:app --host 0.0.0.0 --port 8000

Quick curl:
  curl -X POST http://127.0.0.1:8000/api/v1/analysis/upload \
       -H "X-User-Id: <uuid>" -F "image=@sample.jpg" -F "sampleType=stool"
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse

from parasitepro.services.pipeline import (
    AnalysisRequest,
    DetectionPipeline,
    build_default_pipeline,
)
from parasitepro.shared.detection_contract import (
    ANALYSIS_STATUSES,
    PipelineError,
    ServiceResponse,
    ShareLinkExpiredError,
)

LOGGER = logging.getLogger(__name__)

API_VERSION = "1.0"
MAX_HISTORY_LIMIT = 100
REFERENCE_TYPES = ("protozoa", "helminth", "ectoparasite")


def _error(
    code: str,
    message: str,
    status_code: int,
    data: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload: ServiceResponse = {
        "status": "error",
        "request_id": str(uuid4()),
        "code": code,
        "message": message,
        "data": data,
    }
    return JSONResponse(status_code=status_code, content=payload)


def _success(data: Dict[str, Any], status_code: int = 200) -> JSONResponse:
    payload: ServiceResponse = {
        "status": "success",
        "request_id": str(uuid4()),
        "data": data,
    }
    return JSONResponse(status_code=status_code, content=payload)


def _pipeline_error(exc: PipelineError) -> JSONResponse:
    return _error(exc.code, str(exc), status_code=exc.status_code)


def _unauthenticated() -> JSONResponse:
    return _error("UNAUTHENTICATED", "Missing X-User-Id header", status_code=401)


def _parse_int(value: Optional[str], default: int) -> int:
    if value is None or str(value).strip() == "":
        return default
    return int(str(value).strip())


def _parse_optional_bool(value: Optional[str]) -> Optional[bool]:
    if value is None or value.strip() == "":
        return None
    v = value.strip().lower()
    if v in {"true", "1", "yes", "y", "t"}:
        return True
    if v in {"false", "0", "no", "n", "f"}:
        return False
    raise ValueError(f"not a boolean: {value}")


def _share_payload(share: Dict[str, Any], base_url: str) -> Dict[str, Any]:
    return {"shareUrl": f"{base_url}/shared/{share['shareToken']}", **share}


def _reference_list_item(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": entry.get("id"),
        "commonName": entry.get("commonName"),
        "scientificName": entry.get("scientificName"),
        "type": entry.get("type"),
        "urgencyLevel": entry.get("urgencyLevel"),
        "regionalPrevalence": entry.get("regionalPrevalence"),
        "regions": list(entry.get("regions", []) or []),
        "aliases": list(entry.get("aliases", []) or []),
        "symptomCount": len(entry.get("symptoms", []) or []),
        "sampleTypes": list(entry.get("sampleTypes", []) or []),
    }


@lru_cache(maxsize=1)
def _default_pipeline() -> DetectionPipeline:
    pipeline = build_default_pipeline()
    pipeline.store.create_schema()
    return pipeline


def _get_pipeline(app: FastAPI) -> DetectionPipeline:
    if app.state.pipeline is None:
        app.state.pipeline = _default_pipeline()
    return app.state.pipeline


def create_app(pipeline: Optional[DetectionPipeline] = None) -> FastAPI:
    """Build the app; tests pass their own pipeline (fake providers, in-memory DB)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _get_pipeline(app)
        yield
        await _get_pipeline(app).drain()

    app = FastAPI(title="ParasitePro Analysis Service", version=API_VERSION, lifespan=lifespan)
    app.state.pipeline = pipeline

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.post("/api/v1/analysis/upload")
    async def upload(
        request: Request,
        image: Optional[UploadFile] = File(default=None),
        sampleType: Optional[str] = Form(default=None),
        collectionDate: Optional[str] = Form(default=None),
        location: Optional[str] = Form(default=None),
        notes: Optional[str] = Form(default=None),
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        if image is None:
            return _error("INVALID_IMAGE", "No image file uploaded", status_code=400)

        pipeline = _get_pipeline(request.app)
        analysis_request = AnalysisRequest(
            image_bytes=await image.read(),
            content_type=image.content_type,
            sample_type=sampleType,
            collection_date=collectionDate,
            location=location,
            notes=notes,
        )

        # 1) Validation, credit check, storage and debit. Nothing is charged on failure.
        try:
            submitted = await pipeline.submit_async(x_user_id, analysis_request)
        except PipelineError as exc:
            return _pipeline_error(exc)

        if pipeline.settings.run_detached:
            pipeline.spawn(submitted)
            return _success(submitted.as_response(), status_code=202)

        # 2) Inline mode: the caller waits for the final state.
        try:
            record = await pipeline.process(submitted)
        except Exception as exc:  # noqa: BLE001 - already failed + refunded by the pipeline
            record = await asyncio.to_thread(pipeline.store.get_analysis, submitted.analysis_id, x_user_id)
            record["creditsRemaining"] = await asyncio.to_thread(pipeline.store.get_credits, x_user_id)
            code = getattr(exc, "code", "ANALYSIS_FAILED")
            return _error(code, record.get("message") or str(exc), status_code=502, data=record)

        record["creditsRemaining"] = submitted.credits_remaining
        return _success(record, status_code=201)

    @app.get("/api/v1/analysis/user/history")
    def history(
        request: Request,
        limit: Optional[str] = None,
        offset: Optional[str] = None,
        status: Optional[str] = None,
        sampleType: Optional[str] = None,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        try:
            limit_n = _parse_int(limit, 20)
            offset_n = _parse_int(offset, 0)
        except ValueError:
            return _error("INVALID_REQUEST", "limit and offset must be integers", status_code=400)
        if not 1 <= limit_n <= MAX_HISTORY_LIMIT:
            return _error(
                "INVALID_REQUEST", f"limit must be between 1 and {MAX_HISTORY_LIMIT}", status_code=400
            )
        if offset_n < 0:
            return _error("INVALID_REQUEST", "offset must be >= 0", status_code=400)
        if status and status not in ANALYSIS_STATUSES:
            return _error(
                "INVALID_REQUEST",
                f"status must be one of {', '.join(ANALYSIS_STATUSES)}",
                status_code=400,
            )

        pipeline = _get_pipeline(request.app)
        page = pipeline.store.list_history(
            x_user_id,
            limit=limit_n,
            offset=offset_n,
            status=status or None,
            sample_type=sampleType or None,
        )
        return _success(page)

    @app.get("/api/v1/analysis/{analysis_id}")
    def get_analysis(
        analysis_id: str,
        request: Request,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        try:
            record = _get_pipeline(request.app).store.get_analysis(analysis_id, x_user_id)
        except PipelineError as exc:
            return _pipeline_error(exc)
        return _success(record)

    @app.delete("/api/v1/analysis/{analysis_id}")
    def delete_analysis(
        analysis_id: str,
        request: Request,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        try:
            _get_pipeline(request.app).store.delete_analysis(analysis_id, x_user_id)
        except PipelineError as exc:
            return _pipeline_error(exc)
        except ValueError as exc:
            return _error("ANALYSIS_IN_PROGRESS", str(exc), status_code=409)
        return _success({"analysisId": analysis_id, "deleted": True})

    @app.post("/api/v1/analysis/{analysis_id}/feedback")
    def submit_feedback(
        analysis_id: str,
        request: Request,
        wasHelpful: Optional[str] = Form(default=None),
        comment: Optional[str] = Form(default=None),
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        try:
            was_helpful = _parse_optional_bool(wasHelpful)
        except ValueError:
            return _error("INVALID_REQUEST", "wasHelpful must be true or false", status_code=400)
        try:
            feedback = _get_pipeline(request.app).store.submit_feedback(
                analysis_id, x_user_id, was_helpful=was_helpful, comment=comment
            )
        except PipelineError as exc:
            return _pipeline_error(exc)
        return _success(feedback)

    @app.get("/api/v1/share/view/{token}")
    def view_shared(token: str, request: Request) -> JSONResponse:
        # Public: the token is the credential.
        try:
            shared = _get_pipeline(request.app).store.view_shared(token)
        except ShareLinkExpiredError as exc:
            return _error(exc.code, str(exc), status_code=exc.status_code, data={"expiredAt": exc.expired_at})
        except PipelineError as exc:
            return _pipeline_error(exc)
        return _success(shared)

    @app.post("/api/v1/share/{analysis_id}")
    def create_share(
        analysis_id: str,
        request: Request,
        expiryDays: Optional[str] = None,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        pipeline = _get_pipeline(request.app)
        try:
            days = _parse_int(expiryDays, pipeline.settings.share_expiry_days)
        except ValueError:
            return _error("INVALID_REQUEST", "expiryDays must be an integer", status_code=400)
        try:
            share, created = pipeline.store.create_share_link(analysis_id, x_user_id, expiry_days=days)
        except PipelineError as exc:
            return _pipeline_error(exc)
        payload = _share_payload(share, pipeline.settings.share_base_url)
        payload["created"] = created
        return _success(payload, status_code=201 if created else 200)

    @app.delete("/api/v1/share/{analysis_id}")
    def revoke_share(
        analysis_id: str,
        request: Request,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        try:
            revoked = _get_pipeline(request.app).store.revoke_share_links(analysis_id, x_user_id)
        except PipelineError as exc:
            return _pipeline_error(exc)
        return _success({"analysisId": analysis_id, "revoked": revoked})

    @app.get("/api/v1/share/{analysis_id}/status")
    def share_status(
        analysis_id: str,
        request: Request,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        pipeline = _get_pipeline(request.app)
        try:
            status = pipeline.store.share_status(analysis_id, x_user_id)
        except PipelineError as exc:
            return _pipeline_error(exc)
        if status["hasActiveShare"]:
            status = _share_payload(status, pipeline.settings.share_base_url)
        return _success(status)

    @app.get("/api/v1/credits")
    def credits(
        request: Request,
        x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    ) -> JSONResponse:
        if not x_user_id:
            return _unauthenticated()
        try:
            balance = _get_pipeline(request.app).store.get_credits(x_user_id)
        except PipelineError as exc:
            return _pipeline_error(exc)
        return _success({"creditsRemaining": balance})

    @app.get("/api/v1/reference")
    def reference_list(
        request: Request,
        q: Optional[str] = None,
        type: Optional[str] = None,
        urgency: Optional[str] = None,
    ) -> JSONResponse:
        if type and type not in REFERENCE_TYPES:
            return _error(
                "INVALID_REQUEST",
                f"type must be one of {', '.join(REFERENCE_TYPES)}",
                status_code=400,
            )

        catalog = _get_pipeline(request.app).catalog
        entries = catalog.search(q)
        if type:
            of_type = {e["id"] for e in catalog.by_type(type)}
            entries = [e for e in entries if e["id"] in of_type]
        if urgency:
            of_urgency = {e["id"] for e in catalog.by_urgency(urgency)}
            entries = [e for e in entries if e["id"] in of_urgency]

        return _success(
            {"entries": [_reference_list_item(e) for e in entries], "total": len(entries)}
        )

    @app.get("/api/v1/reference/{entry_id}")
    def reference_entry(entry_id: str, request: Request) -> JSONResponse:
        entry = _get_pipeline(request.app).catalog.get(entry_id)
        if entry is None:
            return _error("REFERENCE_NOT_FOUND", f"Reference entry {entry_id} not found", status_code=404)
        return _success(entry)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
