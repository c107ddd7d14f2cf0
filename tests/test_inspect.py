import struct

import pytest
from PIL import Image

import wad_inspect
from spray_wad import encode_spray
from tests.conftest import png_bytes, split_image
from wad_inspect import WadFormatError, mip_dimensions, mip_to_image, read_spray_wad, verify_spray


@pytest.fixture
def spray(reducer):
    image = split_image((64, 64), (200, 10, 10, 255), (0, 0, 0, 0))
    return encode_spray(png_bytes(image), 4096, reducer)


def test_read_spray_round_trips_header(spray):
    wad = read_spray_wad(spray)
    assert wad.name == "{LOGO"
    assert wad.lump_count == 1
    assert (wad.width, wad.height) == (64, 64)
    assert wad.mip_offsets == (40, 40 + 4096, 40 + 4096 + 1024, 40 + 4096 + 1024 + 256)
    assert [len(mip) for mip in wad.mips] == [4096, 1024, 256, 64]
    assert wad.entry.offset == 12
    assert wad.entry.name == b"{LOGO"


def test_mip_dimensions_round_up():
    assert mip_dimensions(20, 12, 3) == (3, 2)


def test_verify_accepts_encoded_spray(spray):
    assert verify_spray(read_spray_wad(spray)) == []


def test_verify_flags_shifted_mip_offset(spray):
    tampered = bytearray(spray)
    struct.pack_into("<I", tampered, 44, 40 + 4096 + 1024 + 1)
    problems = verify_spray(read_spray_wad(bytes(tampered)))
    assert any("Mip level 2 starts at" in problem for problem in problems)


def test_verify_flags_wrong_directory_sizes(spray):
    tampered = bytearray(spray)
    directory_offset = struct.unpack_from("<I", spray, 8)[0]
    struct.pack_into("<I", tampered, directory_offset + 4, 0)
    problems = verify_spray(read_spray_wad(bytes(tampered)))
    assert any("Directory sizes" in problem for problem in problems)


def test_bad_magic_is_rejected(spray):
    with pytest.raises(WadFormatError):
        read_spray_wad(b"WAD2" + spray[4:])


def test_truncated_file_is_rejected(spray):
    with pytest.raises(WadFormatError):
        read_spray_wad(spray[:-40])


def test_preview_makes_key_colour_transparent(spray):
    image = mip_to_image(read_spray_wad(spray), 1)
    assert image.size == (32, 32)
    assert image.mode == "RGBA"
    assert image.getpixel((0, 0)) == (200, 10, 10, 255)
    assert image.getpixel((31, 0))[3] == 0


def test_main_exports_png(spray, tmp_path):
    wad_path = tmp_path / "tempdecal.wad"
    wad_path.write_bytes(spray)
    png_path = tmp_path / "preview" / "mip2.png"
    assert wad_inspect.main([str(wad_path), "--png", str(png_path), "--level", "2"]) == 0
    with Image.open(png_path) as preview:
        assert preview.size == (16, 16)


def test_main_reports_unreadable_file(tmp_path):
    path = tmp_path / "junk.wad"
    path.write_bytes(b"junk")
    assert wad_inspect.main([str(path)]) == 1
