from __future__ import annotations

import json
from typing import Any, Dict, Optional

import uvicorn
from fastapi import Depends, FastAPI, File, Form, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from common.config import load_config
from common.errors import AlignmentError, ConfigError
from common.logging_setup import get_logger
from common.types import AlignmentConfig, RasterImage
from aligner.batch import describe_failure
from aligner.classify import PerspectiveClassifier
from aligner.engine import AlignmentEngine, AlignmentResult, CvRuntime, EngineSettings


log = get_logger("service")


def _error(status: int, error: str, detail: str, hint: Optional[str] = None) -> JSONResponse:
    return JSONResponse({"error": error, "detail": detail, "hint": hint}, status_code=status)


def config_form(
    mode: Optional[str] = Form(None),
    refinement_enabled: Optional[bool] = Form(None),
    perspective_enabled: Optional[bool] = Form(None),
    simple_match_forced: Optional[bool] = Form(None),
    aspect_ratio: Optional[str] = Form(None),
    border_policy: Optional[str] = Form(None),
    center_weighted: Optional[bool] = Form(None),
) -> Dict[str, Any]:
    """AlignmentConfig overrides sent as multipart form fields; unset fields keep the server defaults."""
    return {
        "mode": mode,
        "refinement_enabled": refinement_enabled,
        "perspective_enabled": perspective_enabled,
        "simple_match_forced": simple_match_forced,
        "aspect_ratio": aspect_ratio,
        "border_policy": border_policy,
        "center_weighted": center_weighted,
    }


def create_app(P: Optional[Dict[str, Any]] = None, engine: Optional[AlignmentEngine] = None) -> FastAPI:
    P = P or load_config()
    settings = EngineSettings.from_config(P)
    engine = engine or AlignmentEngine(CvRuntime.initialize(), settings)
    classifier = PerspectiveClassifier.from_config(P.get("classifier"), extractor=engine.extractor)
    max_bytes = int(float(P.get("service", {}).get("max_upload_mb", 25)) * 1024 * 1024)

    app = FastAPI(title="FrameLock Alignment API", version="1.0.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def read_image(upload: UploadFile, fallback_id: str) -> RasterImage:
        data = upload.file.read(max_bytes + 1)
        if len(data) > max_bytes:
            raise OverflowError(f"{upload.filename or fallback_id} exceeds {max_bytes} bytes")
        return RasterImage.from_bytes(data, image_id=upload.filename or fallback_id)

    def align(
        master: UploadFile,
        target: UploadFile,
        fields: Dict[str, Any],
    ):
        try:
            m = read_image(master, "master")
            t = read_image(target, "target")
        except OverflowError as e:
            return _error(413, "upload_too_large", str(e))
        except ValueError as e:
            return _error(400, "bad_image", str(e))

        overrides = {k: v for k, v in fields.items() if v is not None}
        try:
            config = AlignmentConfig.from_dict({**settings.alignment.to_dict(), **overrides})
        except ConfigError as e:
            return _error(422, "invalid_config", str(e))

        try:
            return engine.process_image(m, t, config)
        except AlignmentError as e:
            f = describe_failure(e, t.image_id)
            log.warning("align failed", extra={"extra": f.to_dict()})
            return _error(422, f.error_type, f.reason, f.hint)

    def png(pixels, result: AlignmentResult) -> Response:
        headers = {
            "X-Alignment-Metadata": json.dumps(result.to_meta()),
            "Cache-Control": "no-store",
        }
        return Response(content=RasterImage(pixels, image_id=result.image_id).to_png_bytes(),
                        media_type="image/png", headers=headers)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "opencv": {"version": engine.runtime.version, "threads": engine.runtime.num_threads},
            "defaults": settings.alignment.to_dict(),
        }

    @app.post("/align")
    def align_endpoint(
        master: UploadFile = File(...),
        target: UploadFile = File(...),
        fields: Dict[str, Any] = Depends(config_form),
    ):
        """
        Return the aligned PNG with an `X-Alignment-Metadata` header (JSON:
        kind, rms_px, matches, matrix, canvas size, padding).
        """
        res = align(master, target, fields)
        if isinstance(res, Response):
            return res
        return png(res.processed_image, res)

    @app.post("/align/debug")
    def align_debug_endpoint(
        master: UploadFile = File(...),
        target: UploadFile = File(...),
        fields: Dict[str, Any] = Depends(config_form),
    ):
        res = align(master, target, fields)
        if isinstance(res, Response):
            return res
        return png(res.debug_image, res)

    @app.post("/classify")
    def classify_endpoint(image: UploadFile = File(...)):
        try:
            img = read_image(image, "image")
        except OverflowError as e:
            return _error(413, "upload_too_large", str(e))
        except ValueError as e:
            return _error(400, "bad_image", str(e))
        needs = classifier.needs_perspective_correction(img.pixels, image_id=img.image_id)
        return {"image_id": img.image_id, "needs_perspective_correction": needs}

    return app


P = load_config()
app = create_app(P)


# -------- local dev entrypoint --------
if __name__ == "__main__":
    svc = P.get("service", {})
    uvicorn.run(app, host=str(svc.get("host", "0.0.0.0")), port=int(svc.get("port", 8000)))
