"""WebP encoders: the cwebp command-line tool, or Pillow in-process."""
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from PIL import Image

from converter.config import CWEBP_PATH, ENCODER_BACKEND, ENCODER_TIMEOUT
from converter.conversion.models import EncodeOptions
from converter.conversion.options import encoder_arguments
from converter.conversion.resize import apply_resize

logger = logging.getLogger("converter.encoder")


class EncodeError(Exception):
    """An encoder run did not produce an output file."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class Encoder(ABC):
    """Converts one input file to a WebP file at output_path."""

    name = "encoder"

    @abstractmethod
    def encode(self, input_path: Path, output_path: Path, options: EncodeOptions) -> Path:
        """Write output_path and return it, or raise EncodeError."""


class CwebpEncoder(Encoder):
    name = "cwebp"

    def __init__(self, binary: str = CWEBP_PATH, timeout: Optional[float] = ENCODER_TIMEOUT):
        self.binary = binary
        self.timeout = timeout or None

    def build_command(self, input_path: Path, output_path: Path, options: EncodeOptions) -> list[str]:
        return [self.binary, *encoder_arguments(options), str(input_path), "-o", str(output_path)]

    def encode(self, input_path: Path, output_path: Path, options: EncodeOptions) -> Path:
        cmd = self.build_command(input_path, output_path, options)
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.error("cwebp not found at %s. Install the WebP tools or set CWEBP_PATH.", self.binary)
            raise EncodeError("cwebp not installed")
        except subprocess.TimeoutExpired:
            # subprocess.run kills the child before re-raising
            raise EncodeError(f"cwebp timed out after {self.timeout}s")
        except OSError as e:
            raise EncodeError(f"could not start cwebp: {e}")
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise EncodeError(detail or f"cwebp exited with status {result.returncode}")
        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise EncodeError("cwebp reported success but wrote no output")
        return output_path


class PillowEncoder(Encoder):
    name = "pillow"

    def encode(self, input_path: Path, output_path: Path, options: EncodeOptions) -> Path:
        save_kw: dict = {"format": "WEBP"}
        if options.lossless:
            save_kw["lossless"] = True
        else:
            save_kw["quality"] = options.quality
        if options.effort is not None:
            save_kw["method"] = options.effort
        try:
            with Image.open(input_path) as img:
                if img.mode not in ("RGB", "RGBA"):
                    has_alpha = "A" in img.getbands() or "transparency" in img.info
                    img = img.convert("RGBA" if has_alpha else "RGB")
                work = apply_resize(img, options.resize)
                work.save(str(output_path), **save_kw)
        except (OSError, ValueError) as e:
            raise EncodeError(str(e) or e.__class__.__name__)
        return output_path


def get_encoder(backend: str = ENCODER_BACKEND) -> Encoder:
    if backend == "pillow":
        return PillowEncoder()
    if backend != "cwebp":
        logger.warning("Unknown ENCODER_BACKEND %s, using cwebp", backend)
    return CwebpEncoder()
