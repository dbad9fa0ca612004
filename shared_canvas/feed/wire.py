"""
Change notification wire format.

Two payload shapes exist in the wild and both must be accepted:

- Shape A, the batch document:
  ``{"items": [{"x", "y", "color", ...}], "sequenceNumber": 17}``
- Shape B, the flat pixel record:
  ``{"x", "y", "color", "userId", "lastUpdated", "sequenceNumber": 17}``

Either shape may carry the sequence number as ``_lsn`` instead (the raw
Cosmos change feed property). Decoding normalizes everything to
``ChangeLogEntry`` immediately; encoding always produces shape A.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from ..exceptions import ValidationError
from ..models import ChangeLogEntry, Pixel

SEQUENCE_KEYS = ("sequenceNumber", "_lsn")


def _sequence_number(doc: dict[str, Any]) -> int:
    for key in SEQUENCE_KEYS:
        value = doc.get(key)
        if value is not None and not isinstance(value, bool):
            try:
                return int(value)
            except (TypeError, ValueError) as e:
                raise ValidationError(key, "sequence number must be an integer", str(value)) from e
    raise ValidationError("sequenceNumber", "missing sequence number")


def entry_from_document(doc: Any) -> ChangeLogEntry:
    """Decode one document of either shape into a ChangeLogEntry.

    Raises:
        ValidationError: If the document matches neither shape
    """
    if not isinstance(doc, dict):
        raise ValidationError("entry", f"expected an object, got {type(doc).__name__}")

    sequence = _sequence_number(doc)

    if "items" in doc:
        items = doc["items"]
        if not isinstance(items, list):
            raise ValidationError("items", "expected an array")
        return ChangeLogEntry(sequence_number=sequence, items=[Pixel.from_dict(i) for i in items])

    if {"x", "y", "color"} <= doc.keys():
        return ChangeLogEntry(sequence_number=sequence, items=[Pixel.from_dict(doc)])

    raise ValidationError("entry", "neither a batch document nor a pixel record")


def decode_entries(payload: str | bytes | list[Any] | dict[str, Any]) -> list[ChangeLogEntry]:
    """Decode a change notification into entries ordered as received.

    Args:
        payload: JSON text, or data already parsed from JSON. A single
            object is treated as a one-element array.

    Raises:
        ValidationError: If the payload is not valid JSON or an element
            matches neither shape
    """
    data: Any = payload
    if isinstance(payload, (str, bytes)):
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError("payload", f"invalid JSON: {e.msg}") from e
        except UnicodeDecodeError as e:
            raise ValidationError("payload", "not valid UTF-8") from e

    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValidationError("payload", "expected an array of entries")

    return [entry_from_document(doc) for doc in data]


def encode_entries(entries: Iterable[ChangeLogEntry]) -> str:
    """Serialize entries as one shape-A JSON array, preserving their order."""
    return json.dumps([entry.to_dict() for entry in entries], separators=(",", ":"))
