"""ffprobe runner and stream parser for the library scanner."""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from catalog.store import FileRecord

from .release import extract_release_group

LOGGER = logging.getLogger("curatarr.ffprobe")

DEFAULT_PROBE_TIMEOUT = 60.0
MAX_ERROR_CHARS = 500

_DOVI = "DOVI configuration record"
_HDR10_SIDE_DATA = ("Mastering display metadata", "Content light level metadata")


class ProbeParseError(ValueError):
    """Raised when ffprobe output is not a JSON object."""


@dataclass(slots=True)
class AudioTrack:
    index: int
    codec: str
    profile: Optional[str]
    channels: int
    channel_layout: str
    language: str
    is_default: bool
    bitrate: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ProbeResult:
    container: Optional[str] = None
    file_size: Optional[int] = None
    duration: Optional[float] = None
    resolution: Optional[str] = None
    resolution_cat: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    video_codec: Optional[str] = None
    video_bitrate: Optional[int] = None
    bit_depth: Optional[int] = None
    frame_rate: Optional[float] = None
    color_transfer: Optional[str] = None
    color_primaries: Optional[str] = None
    hdr_formats: List[str] = field(default_factory=list)
    dv_profile: Optional[int] = None
    audio_codec: Optional[str] = None
    audio_profile: Optional[str] = None
    audio_channels: Optional[int] = None
    audio_layout: Optional[str] = None
    audio_bitrate: Optional[int] = None
    audio_tracks: List[AudioTrack] = field(default_factory=list)
    subtitle_langs: List[str] = field(default_factory=list)
    mb_per_minute: Optional[float] = None
    raw: str = ""


@dataclass(slots=True)
class ProbeOutcome:
    ok: bool
    probe: Optional[ProbeResult] = None
    error: Optional[str] = None
    reason: Optional[str] = None


def ffprobe_available(executable: Optional[str] = None) -> bool:
    """Return True when ffprobe is available on PATH."""

    return shutil.which(executable or "ffprobe") is not None


def _safe_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _safe_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _side_data(stream: Dict[str, Any]) -> List[Dict[str, Any]]:
    items = stream.get("side_data_list")
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


def detect_hdr_formats(stream: Dict[str, Any]) -> List[str]:
    formats: List[str] = []

    def _add(name: str) -> None:
        if name not in formats:
            formats.append(name)

    for item in _side_data(stream):
        kind = str(item.get("side_data_type") or "")
        if kind == _DOVI:
            _add("DolbyVision")
        if kind in _HDR10_SIDE_DATA:
            _add("HDR10")
        if "HDR10+" in kind:
            _add("HDR10+")
    transfer = stream.get("color_transfer")
    if transfer == "arib-std-b67":
        _add("HLG")
    # Some encoders write PQ/BT.2020 without any side data.
    if (
        transfer == "smpte2084"
        and stream.get("color_primaries") == "bt2020"
        and "DolbyVision" not in formats
        and "HDR10" not in formats
    ):
        _add("HDR10")
    return formats


def detect_bit_depth(stream: Dict[str, Any]) -> int:
    raw_bits = _safe_int(stream.get("bits_per_raw_sample"))
    if raw_bits:
        return raw_bits
    pix_fmt = str(stream.get("pix_fmt") or "")
    if "10le" in pix_fmt or "10be" in pix_fmt or pix_fmt.endswith("p10"):
        return 10
    if "12le" in pix_fmt or "12be" in pix_fmt or pix_fmt.endswith("p12"):
        return 12
    return 8


def categorise_resolution(width: int, height: int) -> str:
    # Width thresholds carry ~2% slack so scope encodes (1916x796) land in 1080p.
    if height >= 2160 or width >= 3800:
        return "2160p"
    if height >= 1080 or width >= 1880:
        return "1080p"
    if height >= 720 or width >= 1240:
        return "720p"
    if height > 0:
        return "480p"
    return "other"


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    if not value or value == "0/0":
        return None
    parts = str(value).split("/")
    if len(parts) != 2:
        return None
    num = _safe_float(parts[0])
    den = _safe_float(parts[1])
    if num is None or not den:
        return None
    return round(num / den, 3)


def normalise_container(format_name: str) -> str:
    if "matroska" in format_name:
        return "mkv"
    if "mp4" in format_name:
        return "mp4"
    if "avi" in format_name:
        return "avi"
    if "m2ts" in format_name or "mpegts" in format_name:
        return "m2ts"
    if "mov" in format_name:
        return "mov"
    return format_name.split(",")[0]


def _language(stream: Dict[str, Any]) -> Optional[str]:
    tags = _as_dict(stream.get("tags"))
    return tags.get("language") or tags.get("LANGUAGE")


def _is_default(stream: Dict[str, Any]) -> bool:
    return _safe_int(_as_dict(stream.get("disposition")).get("default")) == 1


def _kbps(value: Any) -> int:
    bits = _safe_int(value)
    return int(round(bits / 1000)) if bits else 0


def parse_probe_output(raw: str) -> ProbeResult:
    """Parse ``ffprobe -print_format json`` output; missing fields stay ``None``."""

    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise ProbeParseError(f"invalid ffprobe output: {exc}") from exc
    if not isinstance(data, dict):
        raise ProbeParseError("invalid ffprobe output: expected a JSON object")

    result = ProbeResult(raw=raw)
    fmt = _as_dict(data.get("format"))
    format_name = fmt.get("format_name")
    if format_name:
        result.container = normalise_container(str(format_name))
    result.file_size = _safe_int(fmt.get("size"))
    result.duration = _safe_float(fmt.get("duration"))

    streams = [item for item in data.get("streams") or [] if isinstance(item, dict)]

    video = next(
        (
            stream
            for stream in streams
            if stream.get("codec_type") == "video" and stream.get("codec_name") != "mjpeg"
        ),
        None,
    )
    if video is not None:
        result.video_codec = video.get("codec_name")
        result.color_transfer = video.get("color_transfer")
        result.color_primaries = video.get("color_primaries")
        result.hdr_formats = detect_hdr_formats(video)
        result.bit_depth = detect_bit_depth(video)
        result.frame_rate = parse_frame_rate(video.get("avg_frame_rate") or video.get("r_frame_rate"))
        for item in _side_data(video):
            if item.get("side_data_type") == _DOVI and item.get("dv_profile") is not None:
                result.dv_profile = _safe_int(item.get("dv_profile"))
                break
        width = _safe_int(video.get("width"))
        height = _safe_int(video.get("height"))
        if width and height:
            result.width = width
            result.height = height
            result.resolution = f"{width}x{height}"
            result.resolution_cat = categorise_resolution(width, height)
        bitrate = _safe_int(video.get("bit_rate"))
        if not bitrate or bitrate <= 0:
            bitrate = _safe_int(fmt.get("bit_rate"))
        if bitrate and bitrate > 0:
            result.video_bitrate = int(round(bitrate / 1000))

    audio_streams = [stream for stream in streams if stream.get("codec_type") == "audio"]
    primary = next((stream for stream in audio_streams if _is_default(stream)), None)
    if primary is None and audio_streams:
        primary = audio_streams[0]
    if primary is not None:
        result.audio_codec = primary.get("codec_name")
        result.audio_profile = primary.get("profile")
        result.audio_channels = _safe_int(primary.get("channels"))
        result.audio_layout = primary.get("channel_layout")
        result.audio_bitrate = _kbps(primary.get("bit_rate"))

    result.audio_tracks = [
        AudioTrack(
            index=_safe_int(stream.get("index")) or 0,
            codec=stream.get("codec_name") or "unknown",
            profile=stream.get("profile"),
            channels=_safe_int(stream.get("channels")) or 0,
            channel_layout=stream.get("channel_layout") or "",
            language=_language(stream) or "und",
            is_default=_is_default(stream),
            bitrate=_kbps(stream.get("bit_rate")),
        )
        for stream in audio_streams
    ]

    langs: List[str] = []
    for stream in streams:
        if stream.get("codec_type") != "subtitle":
            continue
        lang = _language(stream)
        if lang and lang != "und" and lang not in langs:
            langs.append(lang)
    result.subtitle_langs = langs

    if result.file_size and result.duration and result.duration > 0:
        size_mb = result.file_size / (1024 * 1024)
        result.mb_per_minute = round(size_mb / (result.duration / 60), 2)

    return result


def _truncate(message: str) -> str:
    return message[:MAX_ERROR_CHARS]


def run_ffprobe(
    path: str,
    *,
    timeout: float = DEFAULT_PROBE_TIMEOUT,
    executable: Optional[str] = None,
) -> ProbeOutcome:
    """Execute ffprobe for *path*; failures come back as ``ok=False``."""

    binary = executable or shutil.which("ffprobe") or "ffprobe"
    cmd = [
        binary,
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        path,
    ]
    try:
        proc = subprocess.run(
            cmd,
            check=False,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            timeout=max(1.0, float(timeout)),
        )
    except subprocess.TimeoutExpired:
        return ProbeOutcome(
            ok=False, error=_truncate(f"ffprobe timed out after {timeout:.0f}s"), reason="probe_timeout"
        )
    except FileNotFoundError:
        return ProbeOutcome(ok=False, error="ffprobe not found", reason="missing_tool")
    except OSError as exc:
        return ProbeOutcome(ok=False, error=_truncate(f"ffprobe failed: {exc}"), reason="probe_error")

    if proc.returncode != 0:
        message = (proc.stderr or "").strip() or f"ffprobe exited with code {proc.returncode}"
        return ProbeOutcome(ok=False, error=_truncate(message), reason="probe_error")

    try:
        probe = parse_probe_output(proc.stdout or "")
    except ProbeParseError as exc:
        return ProbeOutcome(ok=False, error=_truncate(str(exc)), reason="probe_error")
    return ProbeOutcome(ok=True, probe=probe)


def probe_to_file_record(probe: ProbeResult, movie_id: int, file_path: str) -> FileRecord:
    filename = os.path.basename(file_path)
    return FileRecord(
        movie_id=movie_id,
        file_path=file_path,
        filename=filename,
        resolution=probe.resolution,
        resolution_cat=probe.resolution_cat,
        width=probe.width,
        height=probe.height,
        video_codec=probe.video_codec,
        video_bitrate=probe.video_bitrate,
        bit_depth=probe.bit_depth,
        frame_rate=probe.frame_rate,
        color_transfer=probe.color_transfer,
        color_primaries=probe.color_primaries,
        hdr_formats=list(probe.hdr_formats),
        dv_profile=probe.dv_profile,
        audio_codec=probe.audio_codec,
        audio_profile=probe.audio_profile,
        audio_channels=probe.audio_channels,
        audio_layout=probe.audio_layout,
        audio_bitrate=probe.audio_bitrate,
        audio_tracks=[track.to_dict() for track in probe.audio_tracks],
        subtitle_langs=list(probe.subtitle_langs),
        file_size=probe.file_size,
        duration=probe.duration,
        container=probe.container,
        mb_per_minute=probe.mb_per_minute,
        release_group=extract_release_group(filename),
        ffprobe_raw=probe.raw,
    )


__all__ = [
    "AudioTrack",
    "DEFAULT_PROBE_TIMEOUT",
    "ProbeOutcome",
    "ProbeParseError",
    "ProbeResult",
    "categorise_resolution",
    "detect_bit_depth",
    "detect_hdr_formats",
    "ffprobe_available",
    "normalise_container",
    "parse_frame_rate",
    "parse_probe_output",
    "probe_to_file_record",
    "run_ffprobe",
]
