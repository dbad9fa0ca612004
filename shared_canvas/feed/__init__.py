"""
Change log → live fan-out pipeline.

The reader polls the ordered log; the broadcaster pushes each batch to
every connected viewer in the wire format defined in ``wire``.
"""

from .broadcaster import DEFAULT_CHANNEL, Broadcaster
from .reader import ChangeLogReader, PollOutcome, ReaderState
from .wire import decode_entries, encode_entries, entry_from_document

__all__ = [
    "Broadcaster",
    "DEFAULT_CHANNEL",
    "ChangeLogReader",
    "PollOutcome",
    "ReaderState",
    "decode_entries",
    "encode_entries",
    "entry_from_document",
]
