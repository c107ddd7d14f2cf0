import struct

import numpy as np
import pytest
from PIL import Image

from spray_wad import (
    TRANSPARENT_INDEX,
    ImageDecodeError,
    InvalidImageSizeError,
    encode_spray,
    encode_spray_image,
    load_source_image,
    write_spray,
)
from tests.conftest import png_bytes, split_image
from wad_inspect import read_spray_wad, verify_spray


def test_gradient_encodes_to_valid_spray(gradient_png):
    data = encode_spray(gradient_png)
    wad = read_spray_wad(data)
    assert (wad.width, wad.height) == (128, 80)
    assert verify_spray(wad) == []
    assert struct.unpack_from("<I", data, 8)[0] == len(data) - 32


def test_encoding_is_deterministic(gradient_png):
    assert encode_spray(gradient_png) == encode_spray(gradient_png)


def test_engine_budget_changes_size():
    data = png_bytes(Image.new("RGBA", (256, 256), (200, 40, 40, 255)))
    assert read_spray_wad(encode_spray(data, 12288)).width == 96
    assert read_spray_wad(encode_spray(data, 14336)).width == 112


def test_fully_transparent_image_is_all_key_index(reducer):
    data = png_bytes(Image.new("RGBA", (64, 40), (12, 34, 56, 0)))
    wad = read_spray_wad(encode_spray(data, reducer=reducer))
    for mip in wad.mips:
        assert set(mip) == {TRANSPARENT_INDEX}


def test_palette_reaches_file_in_first_seen_order(reducer):
    image = split_image((32, 32), (10, 20, 30, 255), (40, 50, 60, 255))
    wad = read_spray_wad(encode_spray_image(image, 1024, reducer))
    assert (wad.width, wad.height) == (32, 32)
    assert wad.palette[:2] == [(10, 20, 30), (40, 50, 60)]
    assert wad.palette[2] == (0, 0, 0)
    assert wad.palette[255] == (0, 0, 255)
    rows = np.frombuffer(wad.mips[0], dtype=np.uint8).reshape(32, 32)
    assert (rows[:, :16] == 0).all()
    assert (rows[:, 16:] == 1).all()


def test_rgb_source_is_accepted():
    data = png_bytes(Image.new("RGB", (48, 48), (0, 128, 255)))
    wad = read_spray_wad(encode_spray(data))
    assert verify_spray(wad) == []


def test_garbage_bytes_fail_to_decode():
    with pytest.raises(ImageDecodeError):
        load_source_image(b"definitely not an image")


def test_tiny_budget_is_rejected(gradient_png):
    with pytest.raises(InvalidImageSizeError):
        encode_spray(gradient_png, max_pixels=100)


def test_write_spray_creates_parent(tmp_path):
    target = tmp_path / "nested" / "tempdecal.wad"
    write_spray(target, b"WAD3")
    assert target.read_bytes() == b"WAD3"
