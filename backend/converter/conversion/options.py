"""Normalize user-supplied encode parameters into a bounded EncodeOptions."""
import re
from typing import Optional

from converter.config import DEFAULT_QUALITY
from converter.conversion.models import EncodeOptions

_LEADING_INT = re.compile(r"^\s*([+-]?[0-9]+)")

EFFORT_LEVELS = range(0, 4)


def parse_int(raw: Optional[str]) -> Optional[int]:
    """Leading-integer parse: "85" and "85px" give 85, "3.7" gives 3, "abc" gives None."""
    if raw is None:
        return None
    m = _LEADING_INT.match(str(raw))
    if not m:
        return None
    return int(m.group(1))


def _positive(raw: Optional[str]) -> Optional[int]:
    value = parse_int(raw)
    if value is None or value <= 0:
        return None
    return value


def normalize_options(
    quality: Optional[str] = None,
    lossless: Optional[str] = None,
    effort: Optional[str] = None,
    max_width: Optional[str] = None,
    max_height: Optional[str] = None,
) -> EncodeOptions:
    q = parse_int(quality)
    if q is None or not 0 <= q <= 100:
        q = DEFAULT_QUALITY
    m = parse_int(effort)
    if m not in EFFORT_LEVELS:
        m = None
    return EncodeOptions(
        quality=q,
        lossless=lossless == "true",
        effort=m,
        max_width=_positive(max_width),
        max_height=_positive(max_height),
    )


def encoder_arguments(options: EncodeOptions) -> list[str]:
    """cwebp flags for the options, without the input/output paths."""
    if options.lossless:
        args = ["-lossless"]
    else:
        args = ["-q", str(options.quality)]
    if options.effort is not None:
        args += ["-m", str(options.effort)]
    resize = options.resize
    if resize is not None:
        args += ["-resize", str(resize[0]), str(resize[1])]
    return args
