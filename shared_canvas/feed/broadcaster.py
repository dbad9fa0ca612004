"""Fan-out of change log entries to connected viewers."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..models import ChangeLogEntry
from ..protocol import PushTransport
from .wire import encode_entries

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "Changes"


class Broadcaster:
    """Turns a batch of entries into one push message for every viewer.

    Delivery is fire-and-forget: a viewer that is disconnected misses the
    message and catches up on its next full board refresh. Errors raised
    by the transport itself propagate so the caller can retry the batch.
    """

    def __init__(self, transport: PushTransport, channel: str = DEFAULT_CHANNEL):
        self.transport = transport
        self.channel = channel
        self.messages_sent = 0

    async def publish(self, entries: Sequence[ChangeLogEntry]) -> int:
        """Send ``entries`` as a single message, in sequence-number order.

        Returns:
            Number of pixel updates carried by the message (0 if nothing was sent)
        """
        if not entries:
            return 0

        ordered = sorted(entries, key=lambda entry: entry.sequence_number)
        payload = encode_entries(ordered)
        await self.transport.broadcast_all(self.channel, payload)

        self.messages_sent += 1
        pixel_count = sum(len(entry.items) for entry in ordered)
        logger.debug(
            "Published change batch",
            extra={
                "channel": self.channel,
                "entries": len(ordered),
                "pixels": pixel_count,
                "first_sequence": ordered[0].sequence_number,
                "last_sequence": ordered[-1].sequence_number,
            },
        )
        return pixel_count
