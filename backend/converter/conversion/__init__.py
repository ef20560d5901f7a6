from .encoder import CwebpEncoder, EncodeError, Encoder, PillowEncoder, get_encoder
from .models import ConversionJob, EncodeOptions, JobStatus

__all__ = [
    "ConversionJob",
    "CwebpEncoder",
    "EncodeError",
    "EncodeOptions",
    "Encoder",
    "JobStatus",
    "PillowEncoder",
    "get_encoder",
]
