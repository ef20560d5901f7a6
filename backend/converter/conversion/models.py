"""Conversion job models."""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class BatchStatus(str, Enum):
    COLLECTING = "collecting"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class EncodeOptions:
    """Validated encoder parameters shared by every job of a batch."""

    quality: int = 80
    lossless: bool = False
    effort: Optional[int] = None
    max_width: Optional[int] = None
    max_height: Optional[int] = None

    @property
    def resize(self) -> Optional[tuple[int, int]]:
        """(width, height) with 0 meaning "auto" on that axis, or None."""
        if self.max_width is None and self.max_height is None:
            return None
        return (self.max_width or 0, self.max_height or 0)


class ConversionJob:
    """One upload, one encoder invocation, one output."""

    def __init__(
        self,
        job_id: str,
        original_filename: str,
        input_path: Path,
        output_path: Path,
        display_name: str,
    ):
        self.job_id = job_id
        self.original_filename = original_filename
        self.input_path = input_path
        self.output_path = output_path
        self.display_name = display_name
        self.status = JobStatus.PENDING
        self.error: Optional[str] = None
        self.input_size: Optional[int] = None  # bytes
        self.output_size: Optional[int] = None  # bytes

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == JobStatus.FAILED

    def __repr__(self) -> str:
        return f"ConversionJob({self.original_filename!r} -> {self.display_name!r}, {self.status.value})"
