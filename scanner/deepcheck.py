"""Full-decode verification of a video file.

Runs ``ffmpeg -v error -threads 2 -i <file> -map 0 -f null -`` and sorts the
diagnostics it prints into errors, warnings and timestamp-disorder lines. A
short ffprobe packet pass over the first minute adds a keyframe-interval
warning. Timestamp disorder and large GOPs become quality flags; they never
fail a file on their own.
"""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from robust import CancellationToken

LOGGER = logging.getLogger("curatarr.verify")

DECODE_TIMEOUT_S = 300.0
GOP_TIMEOUT_S = 30.0
GOP_SAMPLE_S = 60
LARGE_GOP_S = 4.0
POLL_INTERVAL_S = 0.1

TIMEOUT_MESSAGE = "timeout: file check exceeded 5 minutes"
SPAWN_ERROR_PREFIX = "spawn error"

_BENIGN = (
    re.compile(r"pts has no value", re.IGNORECASE),
    re.compile(r"application provided invalid", re.IGNORECASE),
)
_DTS_DISORDER = re.compile(
    r"non monoton|DTS .{0,60}, next:.{0,60}invalid|out of order packet", re.IGNORECASE
)
_DTS_MAGNITUDE = re.compile(r"DTS\s+([-\d.]+),\s*next:([-\d.]+)", re.IGNORECASE)
_ERROR_WORD = re.compile(r"\berror\b", re.IGNORECASE)
_WARNING_WORD = re.compile(r"\bwarning\b", re.IGNORECASE)

_BACKWARD_PTS_DETAIL = (
    "Timestamp disorder causes decoders to produce out-of-order frames, which "
    "manifests as freezes or stuttering during playback. The file may be a "
    "flawed encode or a Blu-ray disc with non-standard timestamps."
)
_LARGE_GOP_DETAIL = (
    "Long keyframe intervals slow chapter seeking and bitrate adaptation. "
    "Normal: 2-4 s for streaming; Blu-ray encodes may reach 10 s."
)


@dataclass(slots=True)
class QualityFlag:
    severity: str  # FLAG affects playback, WARN is a quality concern
    code: str
    message: str
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        if payload["detail"] is None:
            payload.pop("detail")
        return payload


@dataclass(slots=True)
class DiagnosticBuckets:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    timestamp_lines: List[str] = field(default_factory=list)


@dataclass(slots=True)
class DeepCheckResult:
    file_path: str
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    quality_flags: List[QualityFlag] = field(default_factory=list)
    duration_ms: int = 0
    cancelled: bool = False


@dataclass(slots=True)
class DecodeOutput:
    lines: List[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False
    spawn_error: Optional[str] = None
    returncode: Optional[int] = None


def is_tool_failure(message: str) -> bool:
    """True for errors raised by the harness rather than by the file itself."""

    return message.startswith(SPAWN_ERROR_PREFIX) or message.startswith("timeout")


def classify_diagnostics(lines: Iterable[str]) -> DiagnosticBuckets:
    buckets = DiagnosticBuckets()
    for raw in lines:
        line = raw.strip()
        if not line:
            continue
        if any(pattern.search(line) for pattern in _BENIGN):
            continue
        if _DTS_DISORDER.search(line):
            buckets.timestamp_lines.append(line)
        elif _ERROR_WORD.search(line):
            buckets.errors.append(line)
        elif _WARNING_WORD.search(line):
            buckets.warnings.append(line)
        else:
            buckets.errors.append(line)
    return buckets


def _dts_magnitude(line: str) -> Optional[float]:
    match = _DTS_MAGNITUDE.search(line)
    if not match:
        return None
    try:
        current = float(match.group(1))
        following = float(match.group(2))
    except ValueError:
        return None
    return abs(following - current)


def backward_pts_flag(lines: List[str]) -> Optional[QualityFlag]:
    if not lines:
        return None
    magnitudes = [value for value in (_dts_magnitude(line) for line in lines) if value is not None]
    suffix = ""
    if magnitudes:
        repeated = len(magnitudes) > 1 and len({f"{value:.3f}" for value in magnitudes}) == 1
        suffix = f" ({magnitudes[0]:.3f}s{' repeated' if repeated else ''})"
    return QualityFlag(
        severity="FLAG",
        code="backward_pts",
        message=f"backward PTS jumps{suffix} → timestamp disorder",
        detail=f"{len(lines)} occurrence(s) detected. {_BACKWARD_PTS_DETAIL}",
    )


def decode_error_flag(errors: List[str]) -> Optional[QualityFlag]:
    if not errors or all(is_tool_failure(message) for message in errors):
        return None
    return QualityFlag(
        severity="FLAG",
        code="decode_error",
        message=f"{len(errors)} decode error(s) detected",
        detail=" | ".join(errors[:3]),
    )


def parse_keyframe_times(output: str) -> List[float]:
    """Read ``flags,pts_time`` CSV rows and keep keyframe timestamps."""

    times: List[float] = []
    for line in output.splitlines():
        parts = line.strip().split(",")
        if len(parts) < 2 or not parts[0].startswith("K"):
            continue
        try:
            times.append(float(parts[1]))
        except ValueError:
            continue
    return times


def gop_flags(keyframe_times: List[float]) -> List[QualityFlag]:
    if len(keyframe_times) < 2:
        return []
    gaps = [
        later - earlier
        for earlier, later in zip(keyframe_times, keyframe_times[1:])
        if later - earlier > 0
    ]
    if not gaps:
        return []
    max_gap = max(gaps)
    avg_gap = sum(gaps) / len(gaps)
    if max_gap <= LARGE_GOP_S:
        return []
    return [
        QualityFlag(
            severity="WARN",
            code="large_gop",
            message=f"large GOP (max {max_gap:.1f}s, avg {avg_gap:.1f}s)",
            detail=_LARGE_GOP_DETAIL,
        )
    ]


def _kill(proc: subprocess.Popen) -> None:
    try:
        proc.kill()
        proc.wait(timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        LOGGER.warning("pid %s did not exit after kill", proc.pid)


def run_supervised(
    cmd: List[str],
    *,
    timeout: float,
    cancellation: Optional[CancellationToken] = None,
    stream: str = "stderr",
) -> DecodeOutput:
    """Run *cmd*, collecting one output stream line by line.

    The child is killed once *timeout* elapses or *cancellation* is set;
    ``stream`` selects which pipe ("stdout" or "stderr") is captured.
    """

    output = DecodeOutput()
    pipe = subprocess.PIPE
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=pipe if stream == "stdout" else subprocess.DEVNULL,
            stderr=pipe if stream == "stderr" else subprocess.DEVNULL,
            text=True,
            errors="replace",
            shell=False,
        )
    except OSError as exc:
        output.spawn_error = f"{SPAWN_ERROR_PREFIX}: {exc}"
        return output

    source = proc.stdout if stream == "stdout" else proc.stderr

    def _drain() -> None:
        assert source is not None
        for line in source:
            output.lines.append(line.rstrip("\n"))

    reader = threading.Thread(target=_drain, name=f"{os.path.basename(cmd[0])}-{stream}", daemon=True)
    reader.start()
    deadline = time.monotonic() + max(1.0, float(timeout))
    while proc.poll() is None:
        if cancellation is not None and cancellation.is_set():
            output.cancelled = True
            _kill(proc)
            break
        if time.monotonic() >= deadline:
            output.timed_out = True
            _kill(proc)
            break
        if cancellation is not None:
            cancellation.wait(POLL_INTERVAL_S)
        else:
            time.sleep(POLL_INTERVAL_S)
    # A killed child may leave a grandchild holding the pipe open.
    reader.join(timeout=1 if output.cancelled or output.timed_out else 5)
    output.returncode = proc.returncode
    return output


def analyze_gop(
    path: str,
    *,
    timeout: float = GOP_TIMEOUT_S,
    cancellation: Optional[CancellationToken] = None,
    ffprobe_path: Optional[str] = None,
) -> List[QualityFlag]:
    """Sample keyframe intervals over the first minute; failures yield no flags."""

    if cancellation is not None and cancellation.is_set():
        return []
    cmd = [
        ffprobe_path or shutil.which("ffprobe") or "ffprobe",
        "-v",
        "quiet",
        "-select_streams",
        "v:0",
        "-show_packets",
        "-show_entries",
        "packet=flags,pts_time",
        "-of",
        "csv=p=0",
        "-read_intervals",
        f"%+{GOP_SAMPLE_S}",
        path,
    ]
    sampled = run_supervised(cmd, timeout=timeout, cancellation=cancellation, stream="stdout")
    if sampled.spawn_error or sampled.timed_out or sampled.cancelled:
        LOGGER.debug(
            "GOP analysis skipped for %s: %s",
            path,
            sampled.spawn_error or ("timeout" if sampled.timed_out else "cancelled"),
        )
        return []
    return gop_flags(parse_keyframe_times("\n".join(sampled.lines)))


def run_decode(
    path: str,
    *,
    timeout: float = DECODE_TIMEOUT_S,
    cancellation: Optional[CancellationToken] = None,
    ffmpeg_path: Optional[str] = None,
) -> DecodeOutput:
    """Decode every stream to the null muxer and collect stderr lines."""

    cmd = [
        ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg",
        "-v",
        "error",
        "-threads",
        "2",
        "-i",
        path,
        "-map",
        "0",
        "-f",
        "null",
        "-",
    ]
    return run_supervised(cmd, timeout=timeout, cancellation=cancellation, stream="stderr")


def deep_check(
    path: str,
    *,
    timeout: float = DECODE_TIMEOUT_S,
    cancellation: Optional[CancellationToken] = None,
    ffmpeg_path: Optional[str] = None,
    ffprobe_path: Optional[str] = None,
    gop_timeout: float = GOP_TIMEOUT_S,
) -> DeepCheckResult:
    start = time.monotonic()
    decoded = run_decode(path, timeout=timeout, cancellation=cancellation, ffmpeg_path=ffmpeg_path)
    if decoded.spawn_error:
        buckets = DiagnosticBuckets(errors=[decoded.spawn_error])
    else:
        buckets = classify_diagnostics(decoded.lines)
        if decoded.timed_out:
            buckets.errors.append(TIMEOUT_MESSAGE)

    flags: List[QualityFlag] = []
    pts_flag = backward_pts_flag(buckets.timestamp_lines)
    if pts_flag is not None:
        flags.append(pts_flag)
    cancelled = decoded.cancelled or (cancellation is not None and cancellation.is_set())
    if not cancelled:
        flags.extend(
            analyze_gop(path, timeout=gop_timeout, cancellation=cancellation, ffprobe_path=ffprobe_path)
        )
    error_flag = decode_error_flag(buckets.errors)
    if error_flag is not None:
        flags.append(error_flag)

    return DeepCheckResult(
        file_path=path,
        ok=not buckets.errors,
        errors=buckets.errors,
        warnings=buckets.warnings,
        quality_flags=flags,
        duration_ms=int((time.monotonic() - start) * 1000),
        cancelled=cancelled,
    )


__all__ = [
    "DeepCheckResult",
    "DecodeOutput",
    "DiagnosticBuckets",
    "QualityFlag",
    "TIMEOUT_MESSAGE",
    "analyze_gop",
    "backward_pts_flag",
    "classify_diagnostics",
    "decode_error_flag",
    "deep_check",
    "gop_flags",
    "is_tool_failure",
    "parse_keyframe_times",
    "run_decode",
    "run_supervised",
]
