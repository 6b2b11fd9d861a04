"""Find poster images, read their dimensions and digest their bytes."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Iterable

from PIL import Image

from scheduler.diagnostics import Diagnostics, ImageTooLarge, MultiplePosters, PosterReadError

logger = logging.getLogger(__name__)

# preference order when guessing a poster from the event file name
IMAGE_EXTENSIONS = ("webp", "jpeg", "jpg", "png")
MAX_DIMENSION = 2048


@dataclass(frozen=True)
class PosterImage:
    path: Path
    width: int
    height: int
    sha256: bytes
    # the exact bytes the digest was taken from
    data: bytes = field(repr=False)


def guess_poster(event_path: Path, files: Iterable[Path], diagnostics: Diagnostics) -> Path | None:
    """Return the image sharing ``event_path``'s stem, preferring earlier extensions.

    Every additional match is reported as a :class:`MultiplePosters` warning.
    """
    available = set(files)
    found = None
    for extension in IMAGE_EXTENSIONS:
        candidate = event_path.with_suffix(f".{extension}")
        if candidate not in available:
            continue
        if found is None:
            found = candidate
        else:
            diagnostics.report(MultiplePosters(found, candidate))
    return found


def load_poster(path: Path) -> PosterImage:
    """Read ``path`` and return its dimensions and SHA-256 digest.

    Raises :class:`PosterReadError` when the file cannot be read or is not an
    image, and :class:`ImageTooLarge` when either side exceeds 2048 pixels.
    """
    try:
        data = path.read_bytes()
        with Image.open(BytesIO(data)) as image:
            width, height = image.size
    except (OSError, Image.DecompressionBombError) as exc:
        raise PosterReadError(path, exc) from exc
    if width > MAX_DIMENSION or height > MAX_DIMENSION:
        raise ImageTooLarge(path, width, height)
    logger.debug("Poster %s is %dx%d", path, width, height)
    return PosterImage(path, width, height, hashlib.sha256(data).digest(), data)
