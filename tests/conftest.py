import io
from typing import Tuple

import numpy as np
import pytest
from PIL import Image


class PassthroughReducer:
    """Returns the resized pixels untouched so layout tests do not depend on Pillow's quantizer."""

    def __init__(self) -> None:
        self.calls = []

    def reduce_colors(self, rgba: bytes, width: int, height: int, colors: int) -> bytes:
        self.calls.append((width, height, colors))
        return rgba


def png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def split_image(size: Tuple[int, int], left: Tuple[int, int, int, int], right: Tuple[int, int, int, int]) -> Image.Image:
    width, height = size
    pixels = np.zeros((height, width, 4), dtype=np.uint8)
    pixels[:, : width // 2] = left
    pixels[:, width // 2 :] = right
    return Image.fromarray(pixels)


@pytest.fixture
def reducer() -> PassthroughReducer:
    return PassthroughReducer()


@pytest.fixture
def gradient_png() -> bytes:
    x = np.linspace(0, 255, 300, dtype=np.uint8)
    y = np.linspace(0, 255, 200, dtype=np.uint8)
    pixels = np.zeros((200, 300, 4), dtype=np.uint8)
    pixels[..., 0] = x[np.newaxis, :]
    pixels[..., 1] = y[:, np.newaxis]
    pixels[..., 2] = 96
    pixels[..., 3] = 255
    return png_bytes(Image.fromarray(pixels))


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    config_home = tmp_path / "config"
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    return config_home / "spray-wad" / "settings.ini"
