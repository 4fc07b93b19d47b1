"""Enumerate movie folders one level below a library root."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, List, Optional, Tuple

LOGGER = logging.getLogger("curatarr.scan")

VIDEO_EXTS = {
    ".mkv",
    ".mp4",
    ".avi",
    ".m4v",
    ".mov",
    ".ts",
    ".m2ts",
    ".wmv",
    ".flv",
    ".webm",
    ".mpg",
    ".mpeg",
    ".divx",
    ".xvid",
}

_FOLDER_RE = re.compile(r"^(.+?)\s*\((\d{4})\)\s*$")
_SAMPLE_TOKEN = re.compile(r"(^|[.\-_ \[(])sample([.\-_ \])]|$)")


class LibraryRootError(RuntimeError):
    """Raised when the library root itself cannot be listed."""


@dataclass(slots=True)
class MovieFolder:
    folder_path: str
    folder_name: str
    parsed_title: str
    parsed_year: Optional[int]
    video_files: List[str] = field(default_factory=list)


def parse_folder_name(name: str) -> Tuple[str, Optional[int]]:
    """Split ``"Title (YYYY)"`` into its parts; other names keep the full text."""

    match = _FOLDER_RE.match(name)
    if match is None:
        return name, None
    return match.group(1).strip(), int(match.group(2))


def is_main_video_file(name: str) -> bool:
    suffix = os.path.splitext(name)[1].lower()
    if suffix not in VIDEO_EXTS:
        return False
    lowered = name.lower()
    if _SAMPLE_TOKEN.search(lowered):
        return False
    if "-trailer" in lowered or ".trailer." in lowered:
        return False
    return True


def _list_videos(folder: Path) -> List[str]:
    videos: List[str] = []
    with os.scandir(folder) as entries:
        for entry in sorted(entries, key=lambda item: item.name):
            try:
                if not entry.is_file():
                    continue
            except OSError:
                continue
            if is_main_video_file(entry.name):
                videos.append(entry.path)
    return videos


def walk_library(root: str | Path) -> Iterator[MovieFolder]:
    """Yield movie folders lazily; nothing below the first level is visited."""

    root_path = Path(root)
    try:
        with os.scandir(root_path) as it:
            entries = sorted(it, key=lambda item: item.name)
    except OSError as exc:
        raise LibraryRootError(f"Cannot read library root {root_path}: {exc}") from exc

    for entry in entries:
        if entry.name.startswith("."):
            continue
        try:
            if not entry.is_dir():
                continue
        except OSError:
            continue
        try:
            videos = _list_videos(Path(entry.path))
        except OSError as exc:
            LOGGER.debug("Skipping unreadable folder %s: %s", entry.path, exc)
            continue
        if not videos:
            continue
        title, year = parse_folder_name(entry.name)
        yield MovieFolder(
            folder_path=entry.path,
            folder_name=entry.name,
            parsed_title=title,
            parsed_year=year,
            video_files=videos,
        )


def count_movie_folders(root: str | Path) -> int:
    try:
        with os.scandir(root) as it:
            return sum(1 for entry in it if entry.is_dir() and not entry.name.startswith("."))
    except OSError:
        return 0


__all__ = [
    "LibraryRootError",
    "MovieFolder",
    "VIDEO_EXTS",
    "count_movie_folders",
    "is_main_video_file",
    "parse_folder_name",
    "walk_library",
]
