"""Library scanning: folder walk, ffprobe metadata and deep verification."""

from .scan import ScanContext, ScanOptions, ScanProgress, ScanResult, scan_library
from .verify import VerifyContext, VerifyOptions, VerifySummary, run_verify_queue
from .walker import LibraryRootError, walk_library

__all__ = [
    "LibraryRootError",
    "ScanContext",
    "ScanOptions",
    "ScanProgress",
    "ScanResult",
    "VerifyContext",
    "VerifyOptions",
    "VerifySummary",
    "run_verify_queue",
    "scan_library",
    "walk_library",
]
