"""Runs one conversion job on a worker thread and records its outcome on the job."""
import asyncio
import logging
from concurrent.futures import Executor

from converter.conversion.encoder import EncodeError, Encoder
from converter.conversion.models import ConversionJob, EncodeOptions, JobStatus

logger = logging.getLogger("converter.runner")


class JobRunner:
    """Wraps an Encoder so each call settles into a succeeded or failed job.

    Failures are recorded on the job, never raised, and no file is deleted here.
    """

    def __init__(self, encoder: Encoder, executor: Executor):
        self.encoder = encoder
        self._executor = executor

    async def run(self, job: ConversionJob, options: EncodeOptions) -> ConversionJob:
        job.status = JobStatus.RUNNING
        loop = asyncio.get_running_loop()
        try:
            if job.input_path.is_file():
                job.input_size = job.input_path.stat().st_size
            await loop.run_in_executor(
                self._executor,
                self.encoder.encode,
                job.input_path,
                job.output_path,
                options,
            )
        except EncodeError as e:
            job.status = JobStatus.FAILED
            job.error = f"Conversion failed for {job.original_filename}: {e.reason}"
            logger.error("%s encode failed for %s: %s", self.encoder.name, job.original_filename, e.reason)
            return job
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = f"Conversion failed for {job.original_filename}: {e}"
            logger.exception("Unexpected error converting %s: %s", job.original_filename, e)
            return job
        job.status = JobStatus.SUCCEEDED
        if job.output_path.is_file():
            job.output_size = job.output_path.stat().st_size
        logger.info("Converted %s -> %s", job.original_filename, job.display_name)
        return job
