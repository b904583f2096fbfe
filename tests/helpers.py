"""Helpers for writing small images in tests."""

from __future__ import annotations

import random
from pathlib import Path

from PIL import Image


def write_image(path: Path, fmt: str, size: tuple[int, int] = (48, 32), mode: str = "RGB") -> Path:
    """Write a noisy image so encoders have something to compress."""
    path.parent.mkdir(parents=True, exist_ok=True)
    rng = random.Random(str(path))
    img = Image.new(mode, size)
    channels = len(mode)
    img.putdata([tuple(rng.randrange(256) for _ in range(channels)) for _ in range(size[0] * size[1])])
    img.save(path, format=fmt)
    return path
