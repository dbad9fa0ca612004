"""User admission state on a Cosmos DB container."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from azure.core import MatchConditions
from azure.cosmos.exceptions import CosmosHttpResponseError, CosmosResourceNotFoundError

from ..exceptions import ConcurrencyConflictError
from ..models import UserState
from ..protocol import UserStore
from .client import CosmosClientWrapper, classify_cosmos_error

logger = logging.getLogger(__name__)

PRECONDITION_FAILED = 412
CONFLICT = 409


class CosmosUserStore(UserStore):
    """UserStore with etag-guarded replaces.

    Documents look like
    ``{"id", "lastInsert", "isAdmin", "isBlocked"}`` and are partitioned by id.
    """

    def __init__(self, client: CosmosClientWrapper):
        self.client = client

    async def get_or_create(self, user_id: str) -> UserState:
        container = self.client.users
        try:
            document = await self.client.call(
                lambda: container.read_item(item=user_id, partition_key=user_id)
            )
            return UserState.from_dict(document)
        except CosmosResourceNotFoundError:
            pass
        except CosmosHttpResponseError as e:
            raise classify_cosmos_error(e) from e

        user = UserState.new(user_id, datetime.now(UTC))
        try:
            document = await self.client.call(lambda: container.create_item(body=user.to_dict()))
        except CosmosHttpResponseError as e:
            if e.status_code != CONFLICT:
                raise classify_cosmos_error(e) from e
            # Created concurrently by another request
            document = await self.client.call(
                lambda: container.read_item(item=user_id, partition_key=user_id)
            )
        else:
            logger.info(f"Created user {user_id}")
        return UserState.from_dict(document)

    async def replace(self, user: UserState) -> UserState:
        container = self.client.users
        options = {}
        if user.etag:
            options = {"etag": user.etag, "match_condition": MatchConditions.IfNotModified}
        try:
            document = await self.client.call(
                lambda: container.replace_item(item=user.id, body=user.to_dict(), **options)
            )
        except CosmosHttpResponseError as e:
            if e.status_code == PRECONDITION_FAILED:
                raise ConcurrencyConflictError(user.id) from e
            raise classify_cosmos_error(e) from e
        return UserState.from_dict(document)
