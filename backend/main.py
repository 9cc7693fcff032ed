"""FastAPI backend that wraps the dupdb duplicate index with NDJSON logging."""
from __future__ import annotations

import hashlib
import json
import logging
import os
import sys
import time
import uuid
from dataclasses import asdict
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from dupdb import errors  # noqa: E402
from dupdb.detector import DuplicateDetector  # noqa: E402
from dupdb.logs import LOGGER_NAME  # noqa: E402

API_VERSION = "1.0.0"
API_ENV = os.getenv("DUPDB_ENV", "dev")
API_COMPONENT = "api"

KIND_STATUS = {
    errors.NOT_FOUND: 404,
    errors.LOCKED: 423,
    errors.INVALID_INPUT: 400,
    errors.CORRUPT: 500,
    errors.UNSUPPORTED: 415,
    errors.IO: 500,
}

app = FastAPI(
    title="Duplicate Index API",
    description="REST API over the persistent duplicate file index.",
    version=API_VERSION,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_api_logger = logging.getLogger(LOGGER_NAME)


@lru_cache(maxsize=1)
def get_detector() -> DuplicateDetector:
    return DuplicateDetector()


def _hash_payload(payload: Dict[str, Any]) -> str:
    try:
        encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    except TypeError:
        encoded = repr(payload)
    return hashlib.md5(encoded.encode("utf-8")).hexdigest()[:12]


def _log_api_event(event: str, message: str, *, level: int = logging.INFO, **fields: Any) -> None:
    log_payload = {
        "event": event,
        "message": message,
        "component": API_COMPONENT,
        "version": API_VERSION,
        "env": API_ENV,
    }
    log_payload.update(fields)
    _api_logger.log(level, message, extra={"log_payload": log_payload})


def _handle(request: Request, label: str, params: Dict[str, Any], action: Callable[[], Any]) -> Any:
    """Run ``action`` between request and response log events.

    Index errors become HTTP errors with the status of their kind.
    """
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    client_ip = request.client.host if request.client else "unknown"
    route = str(request.url.path)
    start = time.perf_counter()

    _log_api_event(
        "api_request",
        f"{label} request received",
        request_id=request_id,
        route=route,
        method=request.method,
        client_ip=client_ip,
        params_hash=_hash_payload(params),
    )

    def failed(status_code: int, exc: Exception) -> None:
        _log_api_event(
            "api_response",
            f"{label} request failed",
            level=logging.ERROR,
            request_id=request_id,
            route=route,
            method=request.method,
            status_code=status_code,
            duration_ms=int((time.perf_counter() - start) * 1000),
            exception_type=exc.__class__.__name__,
            exception_msg=str(exc),
        )

    try:
        result = action()
    except errors.DupdbError as exc:
        status_code = KIND_STATUS.get(exc.kind, 500)
        failed(status_code, exc)
        raise HTTPException(
            status_code=status_code, detail={"kind": exc.kind, "error": str(exc)}
        ) from exc
    except Exception as exc:
        failed(500, exc)
        raise

    _log_api_event(
        "api_response",
        f"{label} request completed",
        request_id=request_id,
        route=route,
        method=request.method,
        status_code=200,
        duration_ms=int((time.perf_counter() - start) * 1000),
    )
    return result


class BucketRequest(BaseModel):
    bucket: str


class BucketsRequest(BaseModel):
    buckets: List[str] = []
    rescan: bool = False


class ArchiveScanRequest(BaseModel):
    bucket: str
    rescan: bool = False


class RenameRequest(BaseModel):
    old: str
    new: str


class ExportRequest(BaseModel):
    bucket: str
    dest_dir: Optional[str] = None


class ImportRequest(BaseModel):
    path: str
    bucket: Optional[str] = None


class CompareRequest(BaseModel):
    sources: List[str]
    buckets: List[str] = []
    update: bool = True
    rescan: bool = False


class BackupRequest(BaseModel):
    dest_dir: Optional[str] = None


def _stats_payload(detector: DuplicateDetector) -> Dict[str, Any]:
    stats = detector.stats()
    payload = asdict(stats)
    payload["path"] = str(stats.path)
    payload["bucket_count"] = stats.bucket_count
    payload["item_count"] = stats.item_count
    return payload


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/stats")
def get_stats(request: Request, detector: DuplicateDetector = Depends(get_detector)) -> Dict[str, Any]:
    return _handle(request, "Stats", {}, lambda: _stats_payload(detector))


@app.post("/buckets/scan")
def scan_buckets(
    payload: BucketsRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, Any]:
    def action() -> Dict[str, Any]:
        reports = detector.scan_buckets(payload.buckets, rescan=payload.rescan)
        return {"buckets": [asdict(report) for report in reports.values()]}

    return _handle(request, "Scan", payload.model_dump(), action)


@app.post("/buckets/archives")
def scan_archives(
    payload: ArchiveScanRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, Any]:
    return _handle(
        request,
        "Archive scan",
        payload.model_dump(),
        lambda: asdict(detector.scan_archives(payload.bucket, rescan=payload.rescan)),
    )


@app.post("/buckets/add")
def add_bucket(
    payload: BucketRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, str]:
    return _handle(
        request, "Add bucket", payload.model_dump(), lambda: {"bucket": str(detector.add_bucket(payload.bucket))}
    )


@app.post("/buckets/rename")
def rename_bucket(
    payload: RenameRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, str]:
    return _handle(
        request,
        "Rename bucket",
        payload.model_dump(),
        lambda: {"bucket": str(detector.rename_bucket(payload.old, payload.new))},
    )


@app.post("/buckets/remove")
def remove_bucket(
    payload: BucketRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, str]:
    return _handle(
        request,
        "Remove bucket",
        payload.model_dump(),
        lambda: {"bucket": str(detector.remove_bucket(payload.bucket))},
    )


@app.get("/buckets/list")
def list_bucket(
    request: Request,
    bucket: str = Query(..., min_length=1),
    detector: DuplicateDetector = Depends(get_detector),
) -> Dict[str, Any]:
    def action() -> Dict[str, Any]:
        entries = detector.list_bucket(bucket)
        return {
            "bucket": bucket,
            "items": [{"path": path, "sha256": digest} for path, digest in entries],
        }

    return _handle(request, "List bucket", {"bucket": bucket}, action)


@app.post("/buckets/export")
def export_bucket(
    payload: ExportRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> FileResponse:
    target, _ = _handle(
        request,
        "Export",
        payload.model_dump(),
        lambda: detector.export_bucket(payload.bucket, payload.dest_dir),
    )
    return FileResponse(path=target, media_type="text/csv", filename=target.name)


@app.post("/buckets/import")
def import_bucket(
    payload: ImportRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, Any]:
    return _handle(
        request,
        "Import",
        payload.model_dump(),
        lambda: asdict(detector.import_bucket(payload.path, payload.bucket)),
    )


@app.post("/compare")
def compare(
    payload: CompareRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, Any]:
    def action() -> Dict[str, Any]:
        matches = detector.find_duplicates(
            payload.sources, payload.buckets, update=payload.update, rescan=payload.rescan
        )
        return {"matches": [asdict(match) for match in matches], "total": len(matches)}

    return _handle(request, "Compare", payload.model_dump(), action)


@app.get("/search")
def search(
    request: Request,
    term: str = Query(...),
    bucket: List[str] = Query(default=[]),
    exact: bool = False,
    filename_only: bool = False,
    detector: DuplicateDetector = Depends(get_detector),
) -> Dict[str, Any]:
    params = {"term": term, "bucket": bucket, "exact": exact, "filename_only": filename_only}

    def action() -> Dict[str, Any]:
        hits = detector.search(term, bucket, exact=exact, filename_only=filename_only)
        return {"results": [asdict(hit) for hit in hits], "total": len(hits)}

    return _handle(request, "Search", params, action)


@app.post("/maintenance/clean")
def clean(
    payload: BucketsRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, Any]:
    return _handle(request, "Clean", payload.model_dump(), lambda: asdict(detector.clean(*payload.buckets)))


@app.post("/maintenance/compact")
def compact(request: Request, detector: DuplicateDetector = Depends(get_detector)) -> Dict[str, int]:
    def action() -> Dict[str, int]:
        before, after = detector.compact()
        return {"size_before": before, "size_after": after}

    return _handle(request, "Compact", {}, action)


@app.post("/maintenance/backup")
def backup(
    payload: BackupRequest, request: Request, detector: DuplicateDetector = Depends(get_detector)
) -> Dict[str, Any]:
    def action() -> Dict[str, Any]:
        target, written = detector.backup(payload.dest_dir)
        return {"path": str(target), "bytes_written": written}

    return _handle(request, "Backup", payload.model_dump(), action)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("backend.main:app", host="0.0.0.0", port=8000, reload=True)
