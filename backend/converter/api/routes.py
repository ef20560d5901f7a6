"""API routes for upload and conversion."""
import asyncio
import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, HTTPException, Query, Request
from starlette.datastructures import UploadFile

from converter.batch import BatchOrchestrator, get_batch_orchestrator
from converter.config import (
    MAX_FILES_PER_UPLOAD,
    MAX_IMAGE_SIZE_BYTES,
    UPLOAD_FIELD,
)
from converter.conversion.models import BatchStatus
from converter.conversion.naming import resolve_display_name
from converter.conversion.options import normalize_options
from converter.db import get_batch_from_db, list_recent_batches

logger = logging.getLogger("converter.api")
router = APIRouter(prefix="/api", tags=["converter"])


class ConversionError(Exception):
    """Request-level failure rendered as a plain-text response."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


async def _stage_upload(file: UploadFile, dest: Path, max_bytes: int) -> None:
    """Copy an upload to dest in 1 MiB chunks, enforcing the size limit."""
    max_mb = max_bytes // (1024 * 1024)
    total = 0
    with open(dest, "wb") as f:
        while chunk := await file.read(1024 * 1024):
            total += len(chunk)
            if total > max_bytes:
                raise ConversionError(413, f"File too large: {file.filename} (max {max_mb} MB)")
            f.write(chunk)


@router.get("/health")
def health(orchestrator: BatchOrchestrator = Depends(get_batch_orchestrator)):
    return {"status": "ok", "encoder": orchestrator.encoder.name}


@router.get("/limits")
def get_limits():
    """Return upload limits for the client."""
    return {
        "field": UPLOAD_FIELD,
        "max_files_per_upload": MAX_FILES_PER_UPLOAD,
        "max_image_size_mb": MAX_IMAGE_SIZE_BYTES // (1024 * 1024),
        "max_image_size_bytes": MAX_IMAGE_SIZE_BYTES,
    }


@router.post("/convert")
async def convert_images(
    request: Request,
    quality: Optional[str] = Form(None),
    lossless: Optional[str] = Form(None),
    effort: Optional[str] = Form(None),
    max_width: Optional[str] = Form(None, alias="maxWidth"),
    max_height: Optional[str] = Form(None, alias="maxHeight"),
    filename: Optional[str] = Form(None),
    orchestrator: BatchOrchestrator = Depends(get_batch_orchestrator),
):
    """Convert uploaded images to WebP. One file is returned as-is, several as a zip."""
    form = await request.form()
    # Browsers send an empty part (no filename) for an untouched file input
    uploads = [
        part for part in form.getlist(UPLOAD_FIELD)
        if isinstance(part, UploadFile) and part.filename
    ]
    if not uploads:
        raise ConversionError(400, "No file uploaded.")
    if len(uploads) > MAX_FILES_PER_UPLOAD:
        raise ConversionError(400, f"Max {MAX_FILES_PER_UPLOAD} files per upload")

    options = normalize_options(
        quality=quality,
        lossless=lossless,
        effort=effort,
        max_width=max_width,
        max_height=max_height,
    )
    batch = orchestrator.open_batch()
    try:
        for upload in uploads:
            display_name = resolve_display_name(upload.filename, filename, len(uploads))
            job = batch.add_job(upload.filename or "", display_name)
            await _stage_upload(upload, job.input_path, MAX_IMAGE_SIZE_BYTES)
        await orchestrator.run(batch, options)
        return orchestrator.build_response(batch)
    except ConversionError as e:
        orchestrator.abort(batch, e.message)
        raise
    except asyncio.CancelledError:
        if batch.status == BatchStatus.COLLECTING:
            orchestrator.abort(batch, "Request cancelled during upload")
        raise
    except Exception as e:
        logger.exception("Batch %s failed: %s", batch.batch_id, e)
        orchestrator.abort(batch, str(e))
        raise ConversionError(500, "Conversion failed.")


@router.get("/batches")
def recent_batches(limit: int = Query(50, ge=1, le=200)):
    """Recent batches, newest first."""
    return {"batches": list_recent_batches(limit=limit)}


@router.get("/batches/{batch_id}")
def batch_status(batch_id: str):
    """Outcome of one batch with its per-file results."""
    record = get_batch_from_db(batch_id)
    if not record:
        raise HTTPException(404, "Batch not found")
    return record
