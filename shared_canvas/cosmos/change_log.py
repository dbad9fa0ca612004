"""
Pixel change log on a Cosmos DB container.

Each appended batch is one document ``{"id", "items": [...]}``. Reads go
through the container's change feed; the continuation token is the
feed's etag. Cosmos stamps every document with ``_lsn``, which serves as
the entry's sequence number.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from typing import Any

from azure.cosmos.exceptions import CosmosHttpResponseError

from ..feed.wire import entry_from_document
from ..models import FeedPage, Pixel
from ..protocol import UNBOUNDED_PAGE_SIZE, OrderedLogClient
from .client import CosmosClientWrapper, classify_cosmos_error

logger = logging.getLogger(__name__)


class CosmosChangeLog(OrderedLogClient):
    """OrderedLogClient over the Cosmos change feed."""

    def __init__(self, client: CosmosClientWrapper):
        self.client = client

    async def append_batch(self, items: Sequence[Pixel]) -> None:
        body = {"id": str(uuid.uuid4()), "items": [pixel.to_dict() for pixel in items]}
        container = self.client.pixels
        try:
            await self.client.call(lambda: container.create_item(body=body))
        except CosmosHttpResponseError as e:
            raise classify_cosmos_error(e) from e

    async def fetch_page(
        self,
        cursor: str | None,
        page_size_hint: int = UNBOUNDED_PAGE_SIZE,
        start_from_beginning: bool = True,
    ) -> FeedPage:
        container = self.client.pixels
        options: dict[str, Any] = {}
        if page_size_hint != UNBOUNDED_PAGE_SIZE:
            options["max_item_count"] = page_size_hint
        if cursor is not None:
            options["continuation"] = cursor
        else:
            options["start_time"] = "Beginning" if start_from_beginning else "Now"

        try:
            pages = container.query_items_change_feed(**options).by_page()
            documents: list[dict[str, Any]] = []
            # One page per call; the continuation resumes after it
            async for page in pages:
                async for document in page:
                    documents.append(document)
                break
        except CosmosHttpResponseError as e:
            raise classify_cosmos_error(e) from e

        token = getattr(pages, "continuation_token", None)
        if token is None:
            headers = container.client_connection.last_response_headers or {}
            token = headers.get("etag")

        logger.debug(f"Change feed returned {len(documents)} documents")
        return FeedPage(
            entries=[entry_from_document(document) for document in documents],
            continuation=token or cursor,
        )
