"""Batch orchestration: fan out one job per upload, join on all of them, answer with
the single file, a streamed zip or an error, and release every temp artifact."""
import asyncio
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import AsyncIterator, Iterator, Optional
from urllib.parse import quote

from fastapi.responses import PlainTextResponse, Response, StreamingResponse
from starlette.concurrency import iterate_in_threadpool

from converter import db
from converter.archive import iter_file, iter_zip
from converter.cleanup import BatchWorkspace, CleanupManager
from converter.config import (
    ARCHIVE_FILENAME,
    BATCH_FAILURE_POLICY,
    MAX_WORKERS,
    OUTPUT_EXTENSION,
    WORK_DIR,
)
from converter.conversion.encoder import Encoder, get_encoder
from converter.conversion.models import BatchStatus, ConversionJob, EncodeOptions
from converter.conversion.naming import unique_display_name
from converter.conversion.runner import JobRunner

logger = logging.getLogger("converter.batch")

POLICY_ALL_OR_NOTHING = "all_or_nothing"
POLICY_PARTIAL = "partial"
FAILURE_MANIFEST = "FAILED.txt"

_SAFE_SUFFIX = re.compile(r"^\.[A-Za-z0-9]{1,10}$")


def _input_suffix(filename: str) -> str:
    suffix = Path(filename or "").suffix.lower()
    return suffix if _SAFE_SUFFIX.match(suffix) else ".bin"


class Batch:
    """Jobs of one request plus the workspace that owns their files."""

    def __init__(self, workspace: BatchWorkspace):
        self.workspace = workspace
        self.batch_id = workspace.batch_id
        self.status = BatchStatus.COLLECTING
        self.jobs: list[ConversionJob] = []
        self._display_names: set[str] = set()

    def add_job(self, original_filename: str, display_name: str) -> ConversionJob:
        if self.status != BatchStatus.COLLECTING:
            raise RuntimeError(f"Batch {self.batch_id} is {self.status.value}, cannot add jobs")
        input_path, output_path = self.workspace.plan_artifacts(_input_suffix(original_filename), OUTPUT_EXTENSION)
        name = unique_display_name(display_name, self._display_names)
        self._display_names.add(name)
        job = ConversionJob(
            job_id=input_path.name.split("-", 1)[0],
            original_filename=original_filename,
            input_path=input_path,
            output_path=output_path,
            display_name=name,
        )
        self.jobs.append(job)
        return job

    @property
    def succeeded_jobs(self) -> list[ConversionJob]:
        return [j for j in self.jobs if j.succeeded]

    @property
    def failed_jobs(self) -> list[ConversionJob]:
        return [j for j in self.jobs if j.failed]

    def release(self) -> None:
        self.workspace.release()


class BatchOrchestrator:
    """Runs batches: collecting -> running -> succeeded | partial | failed."""

    def __init__(
        self,
        encoder: Encoder,
        work_dir: Path = WORK_DIR,
        max_workers: int = MAX_WORKERS,
        failure_policy: str = BATCH_FAILURE_POLICY,
        cleanup: Optional[CleanupManager] = None,
        archive_filename: str = ARCHIVE_FILENAME,
    ):
        if failure_policy not in (POLICY_ALL_OR_NOTHING, POLICY_PARTIAL):
            logger.warning("Unknown batch failure policy %s, using %s", failure_policy, POLICY_ALL_OR_NOTHING)
            failure_policy = POLICY_ALL_OR_NOTHING
        self.work_dir = work_dir
        self.failure_policy = failure_policy
        self.archive_filename = archive_filename
        self.cleanup = cleanup or CleanupManager()
        self._executor = ThreadPoolExecutor(max_workers=max_workers)
        self.runner = JobRunner(encoder, self._executor)
        logger.info(
            "BatchOrchestrator initialized (encoder=%s, max_workers=%s, policy=%s)",
            encoder.name, max_workers, failure_policy,
        )

    @property
    def encoder(self) -> Encoder:
        return self.runner.encoder

    def open_batch(self) -> Batch:
        batch = Batch(BatchWorkspace(self.work_dir, self.cleanup))
        self._record(db.save_batch, batch.batch_id, batch.status.value)
        return batch

    async def run(self, batch: Batch, options: EncodeOptions) -> Batch:
        """Run every job concurrently and wait until all have settled."""
        batch.status = BatchStatus.RUNNING
        self._record(db.update_batch_status, batch.batch_id, batch.status.value, file_count=len(batch.jobs))
        logger.info("Batch %s: converting %s files", batch.batch_id, len(batch.jobs))

        pending = asyncio.gather(*(self.runner.run(job, options) for job in batch.jobs))
        try:
            await asyncio.shield(pending)
        except asyncio.CancelledError:
            # Jobs keep running; their files go once the last one settles
            logger.warning("Batch %s cancelled while running; cleanup deferred until jobs settle", batch.batch_id)
            pending.add_done_callback(lambda _f: batch.release())
            raise

        failed = batch.failed_jobs
        if not failed:
            batch.status = BatchStatus.SUCCEEDED
        elif self._partial_allowed(batch):
            batch.status = BatchStatus.PARTIAL
        else:
            batch.status = BatchStatus.FAILED
        error = "; ".join(j.error for j in failed if j.error) or None
        self._record(
            db.update_batch_status,
            batch.batch_id,
            batch.status.value,
            failed_count=len(failed),
            error=error,
        )
        self._record(db.record_jobs, batch.batch_id, [_job_to_dict(j) for j in batch.jobs])
        logger.info("Batch %s %s (%s/%s failed)", batch.batch_id, batch.status.value, len(failed), len(batch.jobs))
        return batch

    def abort(self, batch: Batch, reason: str) -> None:
        """Fail a batch outside the normal run path (bad upload, unexpected error)."""
        logger.warning("Batch %s aborted: %s", batch.batch_id, reason)
        batch.status = BatchStatus.FAILED
        self._record(db.update_batch_status, batch.batch_id, batch.status.value, error=reason)
        batch.release()

    def _partial_allowed(self, batch: Batch) -> bool:
        return (
            self.failure_policy == POLICY_PARTIAL
            and len(batch.jobs) > 1
            and bool(batch.succeeded_jobs)
        )

    def build_response(self, batch: Batch) -> Response:
        """Response for a settled batch. The workspace is released once the body is sent
        or the client goes away, whichever comes first."""
        headers = {"X-Batch-ID": batch.batch_id}
        if batch.status == BatchStatus.SUCCEEDED and len(batch.jobs) == 1:
            job = batch.jobs[0]
            headers["Content-Disposition"] = _content_disposition(job.display_name)
            headers["Content-Length"] = str(job.output_path.stat().st_size)
            return StreamingResponse(
                self._stream_then_release(batch, iter_file(job.output_path)),
                media_type="image/webp",
                headers=headers,
            )
        if batch.status in (BatchStatus.SUCCEEDED, BatchStatus.PARTIAL):
            extra = None
            if batch.failed_jobs:
                extra = {FAILURE_MANIFEST: _failure_manifest(batch.failed_jobs)}
            entries = [(j.output_path, j.display_name) for j in batch.succeeded_jobs]
            headers["Content-Disposition"] = _content_disposition(self.archive_filename)
            return StreamingResponse(
                self._stream_then_release(batch, iter_zip(entries, extra)),
                media_type="application/zip",
                headers=headers,
            )
        batch.release()
        failed = batch.failed_jobs
        lines = ["Conversion failed."] + [j.error or f"Conversion failed for {j.original_filename}" for j in failed]
        return PlainTextResponse("\n".join(lines), status_code=500, headers=headers)

    async def _stream_then_release(self, batch: Batch, chunks: Iterator[bytes]) -> AsyncIterator[bytes]:
        """Read chunks off the event loop; release on completion, error or aclose()."""
        try:
            async for chunk in iterate_in_threadpool(chunks):
                yield chunk
        finally:
            try:
                chunks.close()
            except ValueError:
                # still running on a worker thread after a cancel; GC closes it
                logger.debug("Batch %s stream still executing at close", batch.batch_id)
            batch.release()

    @staticmethod
    def _record(fn, *args, **kwargs) -> None:
        """Ledger writes never decide the outcome of a batch."""
        try:
            fn(*args, **kwargs)
        except Exception as e:
            logger.exception("Could not record batch state (%s): %s", fn.__name__, e)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


def _content_disposition(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def _failure_manifest(jobs: list[ConversionJob]) -> bytes:
    lines = [f"{j.original_filename}: {j.error or 'failed'}" for j in jobs]
    return ("\n".join(lines) + "\n").encode("utf-8")


def _job_to_dict(job: ConversionJob) -> dict:
    return {
        "filename": job.original_filename,
        "display_name": job.display_name,
        "status": job.status.value,
        "error": job.error,
        "input_bytes": job.input_size,
        "output_bytes": job.output_size,
    }


# Singleton
_batch_orchestrator: Optional[BatchOrchestrator] = None


def get_batch_orchestrator() -> BatchOrchestrator:
    global _batch_orchestrator
    if _batch_orchestrator is None:
        _batch_orchestrator = BatchOrchestrator(get_encoder())
    return _batch_orchestrator


def shutdown_batch_orchestrator() -> None:
    global _batch_orchestrator
    if _batch_orchestrator is not None:
        _batch_orchestrator.close()
        _batch_orchestrator = None
