"""
Packed board representation and snapshot compaction.

The board is a 4-bit-per-pixel bitmap; the compactor folds the change log
into it and publishes the result as a blob for clients to download.
"""

from .codec import (
    DEFAULT_BOARD_SIZE,
    Board,
    FillMode,
    ImageFill,
    RandomFill,
    SolidFill,
    generate_board,
    pack,
    packed_length,
    red_predicate,
    unpack,
)
from .compactor import CompactionReport, Compactor

__all__ = [
    "Board",
    "DEFAULT_BOARD_SIZE",
    "FillMode",
    "SolidFill",
    "RandomFill",
    "ImageFill",
    "red_predicate",
    "generate_board",
    "pack",
    "unpack",
    "packed_length",
    "Compactor",
    "CompactionReport",
]
