import argparse
import configparser
import io
import logging
import math
import os
import struct
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

ALIGNMENT = 16
MIP_LEVELS = 4
PALETTE_SIZE = 256
MAX_IMAGE_COLORS = PALETTE_SIZE - 1
TRANSPARENT_INDEX = 255
ALPHA_CUTOFF = 128

TRANSPARENT_KEY: Tuple[int, int, int, int] = (0, 0, 255, 255)
PALETTE_FILLER: Tuple[int, int, int, int] = (0, 0, 0, 255)

WAD_MAGIC = b"WAD3"
TEXTURE_NAME = b"{LOGO"
HEADER_SIZE = 12
MIPTEX_SIZE = 40
MIPTEX_OFFSET = HEADER_SIZE
MIP_DATA_START = MIPTEX_SIZE
PALETTE_MARKER = bytes((0, 1, 0, 0))
DIRECTORY_ENTRY_SIZE = 32
LUMP_TYPE_MIPTEX = 0x43

DEFAULT_MAX_PIXELS = 12288
ENGINE_MAX_PIXELS: Dict[str, int] = {
    "goldsrc": 12288,
    "halflife": 12288,
    "cstrike": 12288,
    "svencoop": 14336,
}

CONFIG_SECTION = "spray"

PaletteEntry = Tuple[int, int, int, int]


class SprayError(RuntimeError):
    """Base class for failures that abort a spray encode."""


class InvalidImageError(SprayError):
    """Raised when the source image has no usable width or height."""


class InvalidImageSizeError(SprayError):
    """Raised when no aligned size fits inside the pixel budget."""


class ImageDecodeError(SprayError):
    """Raised when Pillow cannot decode or reduce the source image."""


@dataclass(frozen=True)
class TargetDimensions:
    width: int
    height: int

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass
class QuantizedImage:
    width: int
    height: int
    palette: List[PaletteEntry]
    indices: bytes


@dataclass
class MipLevel:
    level: int
    width: int
    height: int
    data: bytes

    @property
    def step(self) -> int:
        return 1 << self.level


@dataclass
class WadDirectoryEntry:
    offset: int
    disk_size: int
    size: int
    lump_type: int = LUMP_TYPE_MIPTEX
    compression: int = 0
    name: bytes = TEXTURE_NAME

    def pack(self) -> bytes:
        return struct.pack(
            "<IIIBBH16s",
            self.offset,
            self.disk_size,
            self.size,
            self.lump_type,
            self.compression,
            0,
            _pad_name(self.name),
        )


@dataclass
class SpraySettings:
    engine: Optional[str] = None
    max_pixels: Optional[int] = None
    output_dir: Optional[Path] = None


class ColorReducer(Protocol):
    def reduce_colors(self, rgba: bytes, width: int, height: int, colors: int) -> bytes:
        ...


def _resample_filter() -> Any:
    if hasattr(Image, "Resampling"):
        return Image.Resampling.LANCZOS  # type: ignore[attr-defined]
    return Image.LANCZOS  # type: ignore[attr-defined]


def _quantize_method() -> Any:
    if hasattr(Image, "Quantize"):
        return Image.Quantize.FASTOCTREE  # type: ignore[attr-defined]
    return Image.FASTOCTREE  # type: ignore[attr-defined]


def _dither_none() -> Any:
    if hasattr(Image, "Dither"):
        return Image.Dither.NONE  # type: ignore[attr-defined]
    return Image.NONE  # type: ignore[attr-defined]


class PillowColorReducer:
    """Nearest-colour palette reduction through Pillow's octree quantizer."""

    def reduce_colors(self, rgba: bytes, width: int, height: int, colors: int) -> bytes:
        try:
            image = Image.frombytes("RGBA", (width, height), rgba)
            reduced = image.quantize(colors=colors, method=_quantize_method(), dither=_dither_none())
            return reduced.convert("RGBA").tobytes()
        except (OSError, ValueError) as exc:
            raise ImageDecodeError(f"Unable to reduce image colours: {exc}") from exc


# --------- dimension planning ----------


def plan_dimensions(source_width: int, source_height: int, max_pixels: int, align: int = ALIGNMENT) -> TargetDimensions:
    if not source_width or not source_height or min(source_width, source_height) < 0:
        raise InvalidImageError("Invalid image")
    if max_pixels <= 0:
        raise InvalidImageSizeError("Invalid image size")

    # floor(side * sqrt(budget / area)) in exact integer arithmetic
    width = math.isqrt(max_pixels * source_width // source_height) // align * align
    height = math.isqrt(max_pixels * source_height // source_width) // align * align
    if width == 0:
        width = align
    if height == 0:
        height = align

    while width * height > max_pixels:
        if width >= height:
            width -= align
        else:
            height -= align
        if width <= 0 or height <= 0:
            raise InvalidImageSizeError("Invalid image size")

    logging.debug(
        "Planned %dx%d spray from %dx%d source (budget %d pixels)",
        width,
        height,
        source_width,
        source_height,
        max_pixels,
    )
    return TargetDimensions(width=width, height=height)


# --------- palette quantization ----------


def _pack_rgba(rgba: bytes) -> "np.ndarray":  # type: ignore[name-defined]
    pixels = np.frombuffer(rgba, dtype=np.uint8)
    if pixels.size % 4:
        raise ValueError("RGBA buffer length must be a multiple of 4")
    # big-endian view packs each pixel as 0xRRGGBBAA
    return pixels.reshape(-1, 4).view(">u4").ravel().astype(np.uint32)


def _unpack_key(key: int) -> PaletteEntry:
    return ((key >> 24) & 0xFF, (key >> 16) & 0xFF, (key >> 8) & 0xFF, key & 0xFF)


def build_palette(rgba: bytes) -> List[PaletteEntry]:
    keys = _pack_rgba(rgba)
    if keys.size:
        unique_keys, first_seen = np.unique(keys, return_index=True)
        ordered = unique_keys[np.argsort(first_seen, kind="stable")]
    else:
        ordered = keys
    colors = [_unpack_key(int(key)) for key in ordered]
    if len(colors) > MAX_IMAGE_COLORS:
        logging.warning(
            "Colour reducer returned %d colours; keeping the first %d",
            len(colors),
            MAX_IMAGE_COLORS,
        )
        colors = colors[:MAX_IMAGE_COLORS]

    palette = list(colors)
    palette.extend([PALETTE_FILLER] * (MAX_IMAGE_COLORS - len(palette)))
    palette.append(TRANSPARENT_KEY)
    return palette


def index_pixels(rgba: bytes, palette: Sequence[PaletteEntry]) -> bytes:
    lookup: Dict[PaletteEntry, int] = {}
    for index, color in enumerate(palette):
        lookup.setdefault(tuple(color), index)  # type: ignore[arg-type]

    keys = _pack_rgba(rgba)
    if not keys.size:
        return b""
    unique_keys, inverse = np.unique(keys, return_inverse=True)
    table = np.array(
        [lookup.get(_unpack_key(int(key)), TRANSPARENT_INDEX) for key in unique_keys],
        dtype=np.uint8,
    )
    indices = table[inverse.reshape(-1)]
    alpha = np.frombuffer(rgba, dtype=np.uint8)[3::4]
    indices[alpha <= ALPHA_CUTOFF] = TRANSPARENT_INDEX
    return indices.tobytes()


def resize_source(image: Image.Image, dims: TargetDimensions) -> bytes:
    rgba = image if image.mode == "RGBA" else image.convert("RGBA")
    if rgba.size != (dims.width, dims.height):
        rgba = rgba.resize((dims.width, dims.height), _resample_filter())
    return rgba.tobytes()


def quantize_image(
    image: Image.Image,
    dims: TargetDimensions,
    reducer: Optional[ColorReducer] = None,
) -> QuantizedImage:
    reducer = reducer or PillowColorReducer()
    resized = resize_source(image, dims)
    reduced = reducer.reduce_colors(resized, dims.width, dims.height, MAX_IMAGE_COLORS)
    expected = dims.area * 4
    if len(reduced) != expected:
        raise ImageDecodeError(f"Colour reducer returned {len(reduced)} bytes, expected {expected}")

    palette = build_palette(reduced)
    indices = index_pixels(reduced, palette)
    logging.debug("Quantized %dx%d spray", dims.width, dims.height)
    return QuantizedImage(width=dims.width, height=dims.height, palette=palette, indices=indices)


# --------- mip generation ----------


def generate_mips(indices: bytes, width: int, height: int, levels: int = MIP_LEVELS) -> List[MipLevel]:
    total = width * height
    grid = np.full(total, TRANSPARENT_INDEX, dtype=np.uint8)
    base = np.frombuffer(indices, dtype=np.uint8)[:total]
    grid[: base.size] = base
    grid = grid.reshape(height, width)

    mips: List[MipLevel] = []
    for level in range(levels):
        step = 1 << level
        sampled = grid[::step, ::step]
        mips.append(
            MipLevel(
                level=level,
                width=sampled.shape[1],
                height=sampled.shape[0],
                data=np.ascontiguousarray(sampled).tobytes(),
            )
        )
    return mips


# --------- WAD handling ----------


def _pad_name(name: bytes) -> bytes:
    return name[:16].ljust(16, b"\x00")


def required_padding(length: int, multiple: int) -> int:
    excess = length % multiple
    return 0 if excess == 0 else multiple - excess


def pack_palette(palette: Sequence[PaletteEntry]) -> bytes:
    if len(palette) != PALETTE_SIZE:
        raise ValueError(f"Palette must hold {PALETTE_SIZE} entries, got {len(palette)}")
    raw = bytearray()
    for r, g, b, _a in palette:
        raw.extend((r, g, b))
    return bytes(raw)


def serialize_wad3(palette: Sequence[PaletteEntry], mips: Sequence[MipLevel], width: int, height: int) -> bytes:
    if len(mips) != MIP_LEVELS:
        raise ValueError(f"Expected {MIP_LEVELS} mip levels, got {len(mips)}")
    palette_bytes = pack_palette(palette)

    mip_offsets: List[int] = []
    cursor = MIP_DATA_START
    for mip in mips:
        mip_offsets.append(cursor)
        cursor += len(mip.data)

    segments: List[bytes] = [
        WAD_MAGIC,
        struct.pack("<I", 1),
        struct.pack("<I", 0),  # directory offset, patched below
        _pad_name(TEXTURE_NAME),
        struct.pack("<II", width, height),
        struct.pack("<4I", *mip_offsets),
    ]
    segments.extend(mip.data for mip in mips)
    segments.append(PALETTE_MARKER)
    segments.append(palette_bytes)

    buffer = bytearray().join(segments)
    buffer.extend(b"\x00" * required_padding(len(buffer), 4))

    directory_offset = len(buffer)
    lump_size = directory_offset - MIPTEX_SIZE
    entry = WadDirectoryEntry(offset=MIPTEX_OFFSET, disk_size=lump_size, size=lump_size)
    buffer.extend(entry.pack())
    struct.pack_into("<I", buffer, 8, directory_offset)
    return bytes(buffer)


# --------- encode pipeline ----------


def load_source_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise ImageDecodeError(f"Unable to decode image: {exc}") from exc
    width, height = image.size
    if not width or not height:
        raise InvalidImageError("Invalid image")
    return image.convert("RGBA")


def encode_spray_image(
    image: Image.Image,
    max_pixels: int = DEFAULT_MAX_PIXELS,
    reducer: Optional[ColorReducer] = None,
) -> bytes:
    dims = plan_dimensions(image.width, image.height, max_pixels)
    quantized = quantize_image(image, dims, reducer)
    mips = generate_mips(quantized.indices, dims.width, dims.height)
    return serialize_wad3(quantized.palette, mips, dims.width, dims.height)


def encode_spray(
    data: bytes,
    max_pixels: int = DEFAULT_MAX_PIXELS,
    reducer: Optional[ColorReducer] = None,
) -> bytes:
    return encode_spray_image(load_source_image(data), max_pixels, reducer)


def write_spray(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
    logging.info("Wrote %s (%d bytes)", path, len(data))


# --------- configuration ----------


def _config_root() -> Path:
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "spray-wad"
    return Path.home() / ".config" / "spray-wad"


def default_config_path() -> Path:
    return _config_root() / "settings.ini"


def load_settings(path: Optional[Path] = None) -> SpraySettings:
    path = path or default_config_path()
    settings = SpraySettings()
    if not path.is_file():
        return settings

    parser = configparser.ConfigParser()
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as exc:
        logging.debug("Unable to read config file %s: %s", path, exc)
        return settings
    if not parser.has_section(CONFIG_SECTION):
        return settings

    section = parser[CONFIG_SECTION]
    value = section.get("engine")
    if value and value.strip():
        settings.engine = value.strip()
    try:
        settings.max_pixels = section.getint("max_pixels", fallback=None)
    except ValueError as exc:
        raise ValueError(f"Invalid max_pixels in {path}: {exc}") from exc
    value = section.get("output_dir")
    if value and value.strip():
        settings.output_dir = Path(value.strip()).expanduser()
    return settings


def engine_max_pixels(engine: str) -> int:
    key = engine.strip().lower().replace("-", "").replace(" ", "")
    if key not in ENGINE_MAX_PIXELS:
        raise ValueError(f"Unknown engine '{engine}'. Expected one of: {', '.join(sorted(ENGINE_MAX_PIXELS))}.")
    return ENGINE_MAX_PIXELS[key]


def resolve_max_pixels(
    engine: Optional[str] = None,
    max_pixels: Optional[int] = None,
    settings: Optional[SpraySettings] = None,
) -> int:
    settings = settings or SpraySettings()
    if max_pixels is not None:
        value = max_pixels
    elif engine:
        value = engine_max_pixels(engine)
    elif settings.max_pixels is not None:
        value = settings.max_pixels
    elif settings.engine:
        value = engine_max_pixels(settings.engine)
    else:
        value = DEFAULT_MAX_PIXELS
    if value < 1:
        raise ValueError(f"max_pixels must be at least 1, got {value}")
    return value


# --------- command line ----------


def build_output_name(source: Path, output_dir: Optional[Path] = None) -> Path:
    target_dir = output_dir if output_dir is not None else source.parent
    return target_dir / f"{source.stem}.wad"


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Convert an image into a WAD3 spray (decal) texture for Half-Life, Counter-Strike "
            "and Sven Co-op."
        )
    )
    parser.add_argument("input_path", type=Path, help="Image file to convert.")
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        help="Destination .wad path. Defaults to <input name>.wad next to the input.",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        help="Directory that receives the .wad file when --output is not given.",
    )
    parser.add_argument(
        "--engine",
        help=(
            "Engine preset that selects the pixel budget: "
            f"{', '.join(f'{name}={value}' for name, value in sorted(ENGINE_MAX_PIXELS.items()))}."
        ),
    )
    parser.add_argument(
        "--max-pixels",
        type=int,
        default=None,
        help=f"Maximum width*height of the spray. Overrides --engine. Default: {DEFAULT_MAX_PIXELS}.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help=f"Settings file with a [{CONFIG_SECTION}] section. Defaults to {default_config_path()}.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Decode the image and report the planned spray size without writing anything.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging.",
    )
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    input_path = args.input_path.resolve()
    if not input_path.is_file():
        logging.error("Source file does not exist: %s", input_path)
        return 1

    try:
        settings = load_settings(args.config)
        max_pixels = resolve_max_pixels(args.engine, args.max_pixels, settings)
    except ValueError as exc:
        logging.error(str(exc))
        return 1

    output_dir = args.output_dir or settings.output_dir
    output_path = args.output or build_output_name(input_path, output_dir)
    logging.info("Processing %s (budget %d pixels)", input_path, max_pixels)

    try:
        if args.dry_run:
            image = load_source_image(input_path.read_bytes())
            dims = plan_dimensions(image.width, image.height, max_pixels)
            logging.info(
                "Dry run: %dx%d source would become a %dx%d spray at %s",
                image.width,
                image.height,
                dims.width,
                dims.height,
                output_path,
            )
            return 0
        data = encode_spray(input_path.read_bytes(), max_pixels)
        write_spray(output_path, data)
    except (SprayError, OSError) as exc:
        logging.error("Failed to build spray: %s", exc)
        if args.verbose:
            raise
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
