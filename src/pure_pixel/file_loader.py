"""Helpers for discovering image files on disk and reading them into memory."""

from __future__ import annotations

import io
import mimetypes
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Sequence

from PIL import Image, UnidentifiedImageError

from pure_pixel.errors import ReadError

DEFAULT_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".avif", ".gif", ".bmp", ".tif", ".tiff")


@dataclass(frozen=True)
class ImageFile:
    name: str
    mime: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


def sniff_mime(data: bytes, name: str) -> str:
    """Return MIME type from image content, falling back to the file name."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime = Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError, ValueError):
        mime = None
    if mime:
        return mime
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def read_image_file(path: Path | str) -> ImageFile:
    """Read one file into an ImageFile. Raises ReadError when it cannot be read."""
    file_path = Path(path)
    try:
        data = file_path.read_bytes()
    except OSError as e:
        raise ReadError(f"ファイルの読み取りに失敗しました: {file_path} ({e.strerror or e})") from e
    return ImageFile(name=file_path.name, mime=sniff_mime(data, file_path.name), data=data)


def dedupe_paths(paths: Iterable[Path]) -> List[Path]:
    """Deduplicate paths preserving order."""
    seen: set[str] = set()
    deduped: List[Path] = []
    for path in paths:
        marker = os.path.normcase(str(path.resolve()))
        if marker in seen:
            continue
        seen.add(marker)
        deduped.append(path)
    return deduped


def discover_image_files(
    paths: Iterable[Path | str],
    *,
    recursive: bool = False,
    extensions: Sequence[str] = DEFAULT_IMAGE_EXTENSIONS,
) -> List[Path]:
    """Expand files and directories into image file paths.

    Explicit file arguments are kept as given; directory contents are filtered
    by extension and sorted by name.
    """
    allowed = {ext.lower() for ext in extensions}
    found: List[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            candidates = path.rglob("*") if recursive else path.iterdir()
            found.extend(
                sorted(
                    (p for p in candidates if p.is_file() and p.suffix.lower() in allowed),
                    key=lambda p: str(p).lower(),
                )
            )
        elif path.is_file():
            found.append(path)
    return dedupe_paths(found)
