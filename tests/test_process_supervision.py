"""Exercise the ffmpeg/ffprobe process handling against stand-in executables."""
from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

from robust import CancellationToken
from scanner.deepcheck import TIMEOUT_MESSAGE, analyze_gop, deep_check, run_decode
from scanner.ffprobe import MAX_ERROR_CHARS, run_ffprobe
from probe_samples import probe_json

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell scripts")


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(0o755)
    return str(path)


def _sleeper(tmp_path: Path) -> str:
    return _script(tmp_path, "slow-tool", "exec sleep 5")


def _cancel_after(token: CancellationToken, delay: float) -> threading.Timer:
    timer = threading.Timer(delay, token.set, args=("test cancel",))
    timer.start()
    return timer


def test_gop_analysis_is_killed_on_cancellation(tmp_path: Path) -> None:
    token = CancellationToken()
    timer = _cancel_after(token, 0.3)
    start = time.monotonic()
    try:
        flags = analyze_gop("/lib/a.mkv", timeout=30, cancellation=token, ffprobe_path=_sleeper(tmp_path))
    finally:
        timer.cancel()
    assert flags == []
    assert time.monotonic() - start < 2.0


def test_gop_analysis_reads_keyframes_from_stdout(tmp_path: Path) -> None:
    tool = _script(tmp_path, "gop-tool", "printf 'K_,0.000\\n__,0.041\\nK_,6.000\\n'")
    flags = analyze_gop("/lib/a.mkv", timeout=5, ffprobe_path=tool)
    assert [flag.code for flag in flags] == ["large_gop"]


def test_decode_is_killed_on_cancellation(tmp_path: Path) -> None:
    token = CancellationToken()
    timer = _cancel_after(token, 0.3)
    start = time.monotonic()
    try:
        output = run_decode("/lib/a.mkv", timeout=30, cancellation=token, ffmpeg_path=_sleeper(tmp_path))
    finally:
        timer.cancel()
    assert output.cancelled is True
    assert output.timed_out is False
    assert time.monotonic() - start < 2.0


def test_deep_check_reports_timeout_after_kill(tmp_path: Path) -> None:
    quiet = _script(tmp_path, "quiet-tool", "exit 0")
    start = time.monotonic()
    result = deep_check(
        "/lib/a.mkv", timeout=1, ffmpeg_path=_sleeper(tmp_path), ffprobe_path=quiet, gop_timeout=1
    )
    assert result.ok is False
    assert result.errors == [TIMEOUT_MESSAGE]
    assert result.quality_flags == []
    assert time.monotonic() - start < 4.0


def test_deep_check_reports_spawn_error(tmp_path: Path) -> None:
    quiet = _script(tmp_path, "quiet-tool", "exit 0")
    result = deep_check("/lib/a.mkv", ffmpeg_path=str(tmp_path / "no-such-ffmpeg"), ffprobe_path=quiet)
    assert result.ok is False
    assert len(result.errors) == 1
    assert result.errors[0].startswith("spawn error")
    assert result.quality_flags == []


def test_deep_check_collects_decoder_stderr(tmp_path: Path) -> None:
    ffmpeg = _script(
        tmp_path,
        "noisy-ffmpeg",
        "echo '[h264 @ 0x1] error while decoding MB 3 4' >&2\n"
        "echo '[aac @ 0x2] Warning: clipping' >&2\n"
        "exit 1",
    )
    ffprobe = _script(tmp_path, "gop-tool", "printf 'K_,0.000\\nK_,6.000\\n'")
    result = deep_check("/lib/a.mkv", timeout=5, ffmpeg_path=ffmpeg, ffprobe_path=ffprobe, gop_timeout=5)
    assert result.ok is False
    assert result.errors == ["[h264 @ 0x1] error while decoding MB 3 4"]
    assert result.warnings == ["[aac @ 0x2] Warning: clipping"]
    assert [flag.code for flag in result.quality_flags] == ["large_gop", "decode_error"]


def test_ffprobe_success_is_parsed(tmp_path: Path) -> None:
    payload = tmp_path / "payload.json"
    payload.write_text(probe_json(width=3840, height=2160, codec="hevc"), encoding="utf-8")
    tool = _script(tmp_path, "ffprobe", f"cat '{payload}'")
    outcome = run_ffprobe("/lib/a.mkv", timeout=5, executable=tool)
    assert outcome.ok is True
    assert outcome.probe.width == 3840
    assert outcome.probe.video_codec == "hevc"


def test_ffprobe_nonzero_exit_is_truncated(tmp_path: Path) -> None:
    tool = _script(tmp_path, "ffprobe", "head -c 600 /dev/zero | tr '\\000' 'x' >&2\nexit 3")
    outcome = run_ffprobe("/lib/a.mkv", timeout=5, executable=tool)
    assert outcome.ok is False
    assert outcome.reason == "probe_error"
    assert outcome.error == "x" * MAX_ERROR_CHARS
    assert MAX_ERROR_CHARS == 500


def test_ffprobe_silent_failure_reports_exit_code(tmp_path: Path) -> None:
    tool = _script(tmp_path, "ffprobe", "exit 2")
    outcome = run_ffprobe("/lib/a.mkv", timeout=5, executable=tool)
    assert outcome.error == "ffprobe exited with code 2"


def test_ffprobe_timeout_kills_the_process(tmp_path: Path) -> None:
    start = time.monotonic()
    outcome = run_ffprobe("/lib/a.mkv", timeout=1, executable=_sleeper(tmp_path))
    assert outcome.ok is False
    assert outcome.reason == "probe_timeout"
    assert outcome.error == "ffprobe timed out after 1s"
    assert time.monotonic() - start < 4.0


def test_ffprobe_missing_executable(tmp_path: Path) -> None:
    outcome = run_ffprobe("/lib/a.mkv", timeout=5, executable=str(tmp_path / "no-such-ffprobe"))
    assert outcome.ok is False
    assert outcome.reason == "missing_tool"
    assert outcome.error == "ffprobe not found"
