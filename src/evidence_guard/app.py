"""This module contains the FastAPI application for the evidence guard service.

It exposes the filtering pipeline over HTTP: image and text filtering, a
status report, and control of background directory scans. The pipeline and
scanner are created at startup unless they were already placed on
``app.state``.
"""
from __future__ import annotations
import os
from collections import defaultdict
from threading import Lock
from time import time
from typing import List, Optional

from fastapi import FastAPI, HTTPException, File, UploadFile, Depends, Request, status
from prometheus_client import make_asgi_app
from pydantic import BaseModel

from .config import config_from_env
from .errors import InputValidationError, ScanInProgressError
from .imaging import ALLOWED_IMAGE_CT
from .metrics import PROMETHEUS_ENABLED
from .pipeline import build_evidence_filter
from .scanner import BackgroundScanner, DirectoryFileSource

__version__ = "1.0.0"

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", "10000000"))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "60"))
RATE_LIMIT_WINDOW = int(os.getenv("RATE_LIMIT_WINDOW", "60"))


class RateLimiter:
    """A thread-safe in-memory rate limiter."""

    def __init__(self, max_requests: int, window: int):
        """Initializes the RateLimiter.

        Args:
            max_requests: The maximum number of requests allowed in the window.
            window: The time window in seconds.
        """
        self.requests = defaultdict(list)
        self.max_requests = max_requests
        self.window = window
        self.lock = Lock()

    def check(self, client_id: str) -> bool:
        """Records a request from ``client_id``.

        Returns:
            True if the request is allowed, False otherwise.
        """
        with self.lock:
            now = time()
            self.requests[client_id] = [
                t for t in self.requests[client_id] if now - t < self.window
            ]
            if len(self.requests[client_id]) >= self.max_requests:
                return False
            self.requests[client_id].append(now)
            if len(self.requests) > 10000:
                self._cleanup_old_entries(now)
            return True

    def _cleanup_old_entries(self, now: float):
        """Drops clients that have been idle for two windows."""
        to_remove = [
            cid
            for cid, times in self.requests.items()
            if not times or now - times[-1] > self.window * 2
        ]
        for cid in to_remove:
            del self.requests[cid]


app = FastAPI(title="Evidence Guard API")
app.state.limiter = RateLimiter(RATE_LIMIT_MAX, RATE_LIMIT_WINDOW)
app.state.max_upload_size = MAX_UPLOAD_BYTES

if PROMETHEUS_ENABLED:
    app.mount("/metrics", make_asgi_app())


@app.on_event("startup")
async def startup_event():
    """Builds the evidence filter and scanner unless tests injected them."""
    if getattr(app.state, "evidence_filter", None) is None:
        app.state.evidence_filter = build_evidence_filter(config_from_env())
    if getattr(app.state, "scanner", None) is None:
        app.state.scanner = BackgroundScanner(app.state.evidence_filter)


@app.on_event("shutdown")
async def shutdown_event():
    """Stops scanning and releases models and OCR workers."""
    await app.state.scanner.close()
    await app.state.evidence_filter.close()


def check_rate_limit(request: Request):
    """Checks if the client has exceeded the rate limit.

    Raises:
        HTTPException: If the rate limit is exceeded.
    """
    trust_proxy = os.getenv("TRUST_XFF", "0") == "1"
    client_id = request.client.host if request.client else "unknown"
    if trust_proxy:
        fwd = request.headers.get("x-forwarded-for")
        if fwd:
            client_id = fwd.split(",")[0].strip()
    if not app.state.limiter.check(client_id):
        raise HTTPException(status_code=429, detail="Rate limit exceeded")


@app.get("/health")
def health():
    """Returns the health status of the service."""
    return {"status": "ok"}


@app.get("/version")
def version():
    """Returns the service version and the configured model names."""
    conf = app.state.evidence_filter.config
    return {
        "version": __version__,
        "nsfw_model": conf["nsfw_model_name"],
        "text_model": conf["text_model_name"],
    }


@app.get("/status")
def status_report():
    """Returns model statuses, settings, statistics and the scan summary."""
    report = app.state.evidence_filter.get_status()
    report["scan"] = app.state.scanner.get_session().summary()
    return report


class TextFilterRequest(BaseModel):
    """The request model for the /filter/text endpoint."""
    messages: List[str]


class ScanRequest(BaseModel):
    """The request model for the /scan endpoint."""
    directory: str
    batch_size: Optional[int] = None


@app.post("/filter/image", dependencies=[Depends(check_rate_limit)])
async def filter_image_endpoint(request: Request, file: UploadFile = File(...)):
    """Filters an uploaded image."""
    if file.content_type not in ALLOWED_IMAGE_CT:
        raise HTTPException(status_code=415, detail="Unsupported media type")
    cl = request.headers.get("content-length")
    if cl is not None and int(cl) > app.state.max_upload_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")
    cap = app.state.max_upload_size + 1
    content = await file.read(cap)
    if len(content) > app.state.max_upload_size:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File too large")
    try:
        decision = await app.state.evidence_filter.filter_image(
            content, metadata={"filename": file.filename}
        )
    except InputValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return decision.to_dict()


@app.post("/filter/text", dependencies=[Depends(check_rate_limit)])
async def filter_text_endpoint(req: TextFilterRequest):
    """Filters a batch of messages as one item."""
    decision = await app.state.evidence_filter.filter_text(req.messages)
    return decision.to_dict()


@app.post("/scan", status_code=202, dependencies=[Depends(check_rate_limit)])
async def start_scan(req: ScanRequest):
    """Starts a background scan of a local directory."""
    conf = app.state.evidence_filter.config
    if not os.path.isdir(req.directory):
        raise HTTPException(status_code=400, detail="Directory not found")
    if req.batch_size is not None and req.batch_size < 1:
        raise HTTPException(status_code=422, detail="batch_size must be >= 1")
    source = DirectoryFileSource(
        req.directory,
        image_extensions=conf["scan_extensions"],
        text_extensions=conf["text_extensions"],
        max_depth=conf["scan_max_depth"],
        max_files=conf["max_scan_files"],
    )
    try:
        app.state.scanner.launch(source, req.batch_size)
    except ScanInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return app.state.scanner.get_session().summary()


@app.get("/scan")
def scan_session():
    """Returns the current scan session with per-file outcomes."""
    session = app.state.scanner.get_session()
    report = session.summary()
    report["approved_files"] = [e.file.file_id for e in session.approved]
    report["rejected_files"] = [
        {"file_id": e.file.file_id, "reasoning": e.decision.reasoning}
        for e in session.rejected
    ]
    return report


@app.post("/scan/cancel")
def cancel_scan():
    """Requests cancellation of the running scan."""
    return {"cancelled": app.state.scanner.cancel()}
