"""Release-group extraction from scene-style filenames."""
from __future__ import annotations

import os
import re
from typing import Optional

_BRACKET_RE = re.compile(r"\[([A-Za-z0-9._-]{2,20})\]\s*$")
_DASH_RE = re.compile(r"-([A-Za-z0-9]{3,20})$")

# Trailing dash tokens that describe the encode, not who made it.
NON_GROUP_TOKENS = frozenset(
    {
        "DL",
        "HD",
        "UHD",
        "SD",
        "SDR",
        "WEB",
        "BD",
        "BR",
        "RIP",
        "WEBRIP",
        "BDRIP",
        "DVDRIP",
        "HDTV",
        "PDTV",
        "X264",
        "X265",
        "H264",
        "H265",
        "HEVC",
        "AVC",
        "AV1",
        "AAC",
        "AC3",
        "DTS",
        "EAC3",
        "FLAC",
        "MP3",
        "OPUS",
        "PROPER",
        "REPACK",
        "REMUX",
        "EXTENDED",
        "INTERNAL",
        "HDR",
        "HDR10",
        "HLG",
        "10BIT",
        "8BIT",
    }
)


def extract_release_group(filename: str) -> Optional[str]:
    stem = os.path.splitext(os.path.basename(filename))[0]
    bracket = _BRACKET_RE.search(stem)
    if bracket:
        return bracket.group(1)
    dash = _DASH_RE.search(stem)
    if dash and dash.group(1).upper() not in NON_GROUP_TOKENS:
        return dash.group(1)
    return None


__all__ = ["NON_GROUP_TOKENS", "extract_release_group"]
