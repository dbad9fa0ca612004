"""
Packed 4-bit board codec.

A board of ``width * height`` pixels is stored as ``ceil(width * height / 2)``
bytes. Pixel ``i = x + y * width`` lives in byte ``i // 2``: even pixels in
the high nibble, odd pixels in the low nibble. This is the exact byte layout
clients download and unpack, so it must never change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from numpy.typing import NDArray
from PIL import Image

from ..exceptions import MalformedBoardError, OutOfBoundsError, ValidationError
from ..models import Pixel

logger = logging.getLogger(__name__)

DEFAULT_BOARD_SIZE = 1000
PALETTE_SIZE = 16

HIGH_NIBBLE = 0xF0
LOW_NIBBLE = 0x0F


def packed_length(width: int, height: int) -> int:
    """Number of bytes needed to pack a ``width`` x ``height`` board."""
    return (width * height + 1) // 2


def unpack(blob: bytes, width: int = DEFAULT_BOARD_SIZE, height: int = DEFAULT_BOARD_SIZE) -> NDArray[np.uint8]:
    """Split a packed board into one color value (0-15) per pixel.

    Args:
        blob: Packed board bytes
        width: Board width in pixels
        height: Board height in pixels

    Returns:
        Array of ``width * height`` color values in linear pixel order

    Raises:
        MalformedBoardError: If ``blob`` is not exactly the packed length
    """
    expected = packed_length(width, height)
    if len(blob) != expected:
        raise MalformedBoardError(expected, len(blob))

    packed = np.frombuffer(bytes(blob), dtype=np.uint8)
    colors = np.empty(packed.size * 2, dtype=np.uint8)
    colors[0::2] = packed >> 4
    colors[1::2] = packed & LOW_NIBBLE
    return colors[: width * height]


def pack(colors: NDArray | list[int], width: int = DEFAULT_BOARD_SIZE, height: int = DEFAULT_BOARD_SIZE) -> bytes:
    """Pack one color value per pixel into the 4-bit board format.

    Color values are taken mod 16. For an odd pixel count the trailing
    low nibble is zero padding.

    Raises:
        ValidationError: If ``colors`` does not hold ``width * height`` values
    """
    grid = np.asarray(colors, dtype=np.int64).reshape(-1)
    if grid.size != width * height:
        raise ValidationError("colors", f"expected {width * height} values, got {grid.size}")

    grid = (grid % PALETTE_SIZE).astype(np.uint8)
    if grid.size % 2:
        grid = np.append(grid, np.uint8(0))
    return ((grid[0::2] << 4) | grid[1::2]).astype(np.uint8).tobytes()


class Board:
    """A mutable packed board.

    ``insert_pixel`` does a read-modify-write on a byte shared by two
    pixels. Callers folding pixels concurrently must serialize access
    (the compactor holds a lock for the whole pass).
    """

    def __init__(
        self,
        bitmap: bytes | bytearray,
        width: int = DEFAULT_BOARD_SIZE,
        height: int = DEFAULT_BOARD_SIZE,
    ):
        expected = packed_length(width, height)
        if len(bitmap) != expected:
            raise MalformedBoardError(expected, len(bitmap))
        self.width = width
        self.height = height
        self.bitmap = bitmap if isinstance(bitmap, bytearray) else bytearray(bitmap)

    @classmethod
    def blank(cls, width: int = DEFAULT_BOARD_SIZE, height: int = DEFAULT_BOARD_SIZE) -> Board:
        return cls(bytearray(packed_length(width, height)), width, height)

    def _linear_index(self, x: int, y: int) -> int:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise OutOfBoundsError(x, y, self.width, self.height)
        return x + y * self.width

    def insert_pixel(self, pixel: Pixel) -> None:
        """Set one pixel's nibble, leaving the neighbour in the same byte untouched.

        Raises:
            OutOfBoundsError: If the pixel is outside the board; nothing is written
        """
        index = self._linear_index(pixel.x, pixel.y)
        offset = index // 2
        color = pixel.color % PALETTE_SIZE
        current = self.bitmap[offset]

        if index % 2 == 0:
            self.bitmap[offset] = (current & LOW_NIBBLE) | (color << 4)
        else:
            self.bitmap[offset] = (current & HIGH_NIBBLE) | color

    def color_at(self, x: int, y: int) -> int:
        index = self._linear_index(x, y)
        value = self.bitmap[index // 2]
        return value >> 4 if index % 2 == 0 else value & LOW_NIBBLE

    def unpack(self) -> NDArray[np.uint8]:
        return unpack(self.bitmap, self.width, self.height)

    def to_bytes(self) -> bytes:
        return bytes(self.bitmap)


# =============================================================================
# Board generation
# =============================================================================


@dataclass(frozen=True)
class SolidFill:
    """Every pixel gets the same color."""

    color: int = 0


@dataclass(frozen=True)
class RandomFill:
    """Every pixel gets a random color; ``seed`` makes it reproducible."""

    seed: int | None = None


def red_predicate(rgb: tuple[int, int, int]) -> bool:
    """Pure-red-channel source pixels (no green, no blue)."""
    _, g, b = rgb
    return g == 0 and b == 0


@dataclass(frozen=True)
class ImageFill:
    """Seed the board by rasterizing a source image.

    Source pixels whose RGB color satisfies ``predicate`` become ``color``;
    every other board pixel becomes ``background``. The image is placed
    with its top-left corner at (``x_offset``, ``y_offset``) and clipped to
    the board.
    """

    image: Image.Image | str | Path
    predicate: Callable[[tuple[int, int, int]], bool] = red_predicate
    color: int = 5
    background: int = 3
    x_offset: int = 0
    y_offset: int = 0


FillMode = SolidFill | RandomFill | ImageFill


def _rasterize(fill: ImageFill, width: int, height: int) -> NDArray[np.uint8]:
    image = fill.image if isinstance(fill.image, Image.Image) else Image.open(fill.image)
    rgb = np.asarray(image.convert("RGB"), dtype=np.uint8)
    src_h, src_w = rgb.shape[:2]

    # Evaluate the predicate once per distinct source color
    colors, inverse = np.unique(rgb.reshape(-1, 3), axis=0, return_inverse=True)
    matches = np.array([bool(fill.predicate(tuple(int(c) for c in color))) for color in colors])
    mask = matches[inverse.reshape(-1)].reshape(src_h, src_w)

    grid = np.full((height, width), fill.background % PALETTE_SIZE, dtype=np.uint8)

    dx0, dy0 = max(fill.x_offset, 0), max(fill.y_offset, 0)
    dx1, dy1 = min(fill.x_offset + src_w, width), min(fill.y_offset + src_h, height)
    if dx0 >= dx1 or dy0 >= dy1:
        logger.warning("Source image lies entirely outside the board")
        return grid.reshape(-1)

    sx0, sy0 = dx0 - fill.x_offset, dy0 - fill.y_offset
    region_mask = mask[sy0 : sy0 + (dy1 - dy0), sx0 : sx0 + (dx1 - dx0)]
    grid[dy0:dy1, dx0:dx1][region_mask] = fill.color % PALETTE_SIZE
    return grid.reshape(-1)


def generate_board(
    fill: FillMode | None = None,
    width: int = DEFAULT_BOARD_SIZE,
    height: int = DEFAULT_BOARD_SIZE,
) -> Board:
    """Create a new packed board.

    Args:
        fill: How to initialise pixels (default: solid color 0)
        width: Board width in pixels
        height: Board height in pixels

    Returns:
        A new Board
    """
    fill = fill or SolidFill()

    if isinstance(fill, SolidFill):
        color = fill.color % PALETTE_SIZE
        packed = bytes([(color << 4) | color]) * packed_length(width, height)
        if (width * height) % 2:
            # Trailing pad nibble stays zero
            packed = packed[:-1] + bytes([color << 4])
        return Board(bytearray(packed), width, height)

    if isinstance(fill, RandomFill):
        rng = np.random.default_rng(fill.seed)
        colors = rng.integers(0, PALETTE_SIZE, size=width * height, dtype=np.uint8)
        return Board(bytearray(pack(colors, width, height)), width, height)

    if isinstance(fill, ImageFill):
        return Board(bytearray(pack(_rasterize(fill, width, height), width, height)), width, height)

    raise ValidationError("fill", f"unsupported fill mode {type(fill).__name__}")
