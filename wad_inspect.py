#!/usr/bin/env python3
"""Read spray WAD3 files back, check their layout and render mip levels to PNG."""
from __future__ import annotations

import argparse
import logging
import struct
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, Tuple

import numpy as np
from PIL import Image

from spray_wad import (
    ALIGNMENT,
    DIRECTORY_ENTRY_SIZE,
    HEADER_SIZE,
    MIP_DATA_START,
    MIP_LEVELS,
    MIPTEX_SIZE,
    PALETTE_MARKER,
    PALETTE_SIZE,
    TRANSPARENT_INDEX,
    TRANSPARENT_KEY,
    WAD_MAGIC,
    WadDirectoryEntry,
)


class WadFormatError(ValueError):
    """Raised when a file does not follow the spray WAD3 layout."""


@dataclass
class SprayWad:
    """Parsed view of a single-lump spray WAD3."""

    lump_count: int
    directory_offset: int
    entry: WadDirectoryEntry
    name: str
    width: int
    height: int
    mip_offsets: Tuple[int, int, int, int]
    mips: List[bytes] = field(default_factory=list)
    marker: bytes = b""
    palette: List[Tuple[int, int, int]] = field(default_factory=list)
    total_size: int = 0


def mip_dimensions(width: int, height: int, level: int) -> Tuple[int, int]:
    step = 1 << level
    return -(-width // step), -(-height // step)


def _read_cstr(raw: bytes) -> str:
    return raw.split(b"\x00", 1)[0].decode("ascii", errors="ignore")


def read_spray_wad(data: bytes) -> SprayWad:
    if len(data) < HEADER_SIZE + MIPTEX_SIZE:
        raise WadFormatError("File is too small to be a WAD3 spray.")
    magic, lump_count, directory_offset = struct.unpack_from("<4sII", data, 0)
    if magic != WAD_MAGIC:
        raise WadFormatError(f"Unsupported magic {magic!r}; expected {WAD_MAGIC!r}.")
    if lump_count < 1:
        raise WadFormatError("WAD3 file does not contain any lumps.")
    if directory_offset + DIRECTORY_ENTRY_SIZE > len(data):
        raise WadFormatError("Directory offset points past the end of the file.")

    offset, disk_size, size, lump_type, compression, _pad, raw_name = struct.unpack_from(
        "<IIIBBH16s", data, directory_offset
    )
    entry = WadDirectoryEntry(
        offset=offset,
        disk_size=disk_size,
        size=size,
        lump_type=lump_type,
        compression=compression,
        name=raw_name.rstrip(b"\x00"),
    )

    raw_tex_name = data[HEADER_SIZE : HEADER_SIZE + 16]
    width, height = struct.unpack_from("<II", data, HEADER_SIZE + 16)
    mip_offsets = struct.unpack_from("<4I", data, HEADER_SIZE + 24)
    if width <= 0 or height <= 0:
        raise WadFormatError(f"Invalid texture dimensions {width}x{height}.")

    mips: List[bytes] = []
    end = MIP_DATA_START
    for level, mip_offset in enumerate(mip_offsets):
        mip_w, mip_h = mip_dimensions(width, height, level)
        start = HEADER_SIZE + mip_offset
        end = start + mip_w * mip_h
        if end > directory_offset:
            raise WadFormatError(f"Mip level {level} runs past the lump data.")
        mips.append(data[start:end])

    palette_start = end + len(PALETTE_MARKER)
    palette_end = palette_start + PALETTE_SIZE * 3
    if palette_end > directory_offset:
        raise WadFormatError("Palette runs past the lump data.")
    raw = data[palette_start:palette_end]
    palette = [(raw[i], raw[i + 1], raw[i + 2]) for i in range(0, PALETTE_SIZE * 3, 3)]

    return SprayWad(
        lump_count=lump_count,
        directory_offset=directory_offset,
        entry=entry,
        name=_read_cstr(raw_tex_name),
        width=width,
        height=height,
        mip_offsets=tuple(mip_offsets),  # type: ignore[arg-type]
        mips=mips,
        marker=data[end:palette_start],
        palette=palette,
        total_size=len(data),
    )


def verify_spray(wad: SprayWad) -> List[str]:
    problems: List[str] = []
    if wad.width % ALIGNMENT or wad.height % ALIGNMENT:
        problems.append(f"Size {wad.width}x{wad.height} is not a multiple of {ALIGNMENT}.")
    if wad.directory_offset != wad.total_size - DIRECTORY_ENTRY_SIZE:
        problems.append(
            f"Directory offset {wad.directory_offset} does not point at the final entry "
            f"({wad.total_size - DIRECTORY_ENTRY_SIZE})."
        )
    if wad.directory_offset % 4:
        problems.append(f"Directory offset {wad.directory_offset} is not 4-byte aligned.")

    expected = MIP_DATA_START
    for level, (mip_offset, mip) in enumerate(zip(wad.mip_offsets, wad.mips)):
        if mip_offset != expected:
            problems.append(f"Mip level {level} starts at {mip_offset}, expected {expected}.")
        mip_w, mip_h = mip_dimensions(wad.width, wad.height, level)
        if len(mip) != mip_w * mip_h:
            problems.append(f"Mip level {level} holds {len(mip)} bytes, expected {mip_w * mip_h}.")
        expected += len(mip)

    if wad.marker != PALETTE_MARKER:
        problems.append(f"Unexpected palette marker {wad.marker.hex()}.")
    if tuple(wad.palette[TRANSPARENT_INDEX]) != TRANSPARENT_KEY[:3]:
        problems.append(f"Palette index {TRANSPARENT_INDEX} is {wad.palette[TRANSPARENT_INDEX]}, expected {TRANSPARENT_KEY[:3]}.")
    lump_size = wad.directory_offset - MIPTEX_SIZE
    if wad.entry.disk_size != lump_size or wad.entry.size != lump_size:
        problems.append(
            f"Directory sizes {wad.entry.disk_size}/{wad.entry.size} do not match lump size {lump_size}."
        )
    return problems


def mip_to_image(wad: SprayWad, level: int = 0) -> Image.Image:
    if not 0 <= level < MIP_LEVELS:
        raise ValueError(f"Mip level must be between 0 and {MIP_LEVELS - 1}.")
    mip_w, mip_h = mip_dimensions(wad.width, wad.height, level)
    indices = np.frombuffer(wad.mips[level], dtype=np.uint8).reshape(mip_h, mip_w)
    colors = np.zeros((PALETTE_SIZE, 4), dtype=np.uint8)
    colors[:, :3] = np.asarray(wad.palette, dtype=np.uint8)
    colors[:, 3] = 255
    if wad.name.startswith("{"):
        colors[TRANSPARENT_INDEX, 3] = 0
    return Image.fromarray(colors[indices])


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect a WAD3 spray and optionally export a mip level as PNG.")
    parser.add_argument("wad_path", type=Path, help="Spray .wad file to inspect.")
    parser.add_argument("--png", type=Path, help="Write the selected mip level to this PNG file.")
    parser.add_argument(
        "--level",
        type=int,
        default=0,
        choices=range(MIP_LEVELS),
        help="Mip level exported with --png (default: 0).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str]) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    try:
        wad = read_spray_wad(args.wad_path.read_bytes())
    except (OSError, WadFormatError) as exc:
        logging.error("Unable to read %s: %s", args.wad_path, exc)
        return 1

    logging.info("%s: texture %s, %dx%d, %d bytes", args.wad_path, wad.name, wad.width, wad.height, wad.total_size)
    for level, mip in enumerate(wad.mips):
        logging.debug("Mip %d: offset %d, %d bytes", level, wad.mip_offsets[level], len(mip))

    if args.png:
        args.png.parent.mkdir(parents=True, exist_ok=True)
        mip_to_image(wad, args.level).save(args.png, format="PNG")
        logging.info("Wrote mip level %d preview to %s", args.level, args.png)

    problems = verify_spray(wad)
    for problem in problems:
        logging.error(problem)
    return 1 if problems else 0


def cli() -> int:
    return main(sys.argv[1:])


if __name__ == "__main__":
    raise SystemExit(cli())
