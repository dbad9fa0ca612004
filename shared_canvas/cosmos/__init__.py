"""
Azure Cosmos DB backend for the pixel change log and user state.

Example:
    >>> config = CosmosConfig.from_env()
    >>> async with CosmosClientWrapper(config) as client:
    ...     log = CosmosChangeLog(client)
    ...     users = CosmosUserStore(client)
"""

from .change_log import CosmosChangeLog
from .client import (
    CosmosAuthMethod,
    CosmosClientWrapper,
    CosmosConfig,
    classify_cosmos_error,
)
from .users import CosmosUserStore

__all__ = [
    "CosmosAuthMethod",
    "CosmosChangeLog",
    "CosmosClientWrapper",
    "CosmosConfig",
    "CosmosUserStore",
    "classify_cosmos_error",
]
