"""
Cosmos DB client wrapper.

Provides the canvas with:
- Connection management (key or Azure AD credentials)
- Container access for the pixel change log and user documents
- Retries of throttled and server-side failures through retry_with_backoff
- Classification of Cosmos errors into StoreErrorKind
"""

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from azure.core.exceptions import AzureError
from azure.cosmos import PartitionKey
from azure.cosmos.aio import ContainerProxy, CosmosClient
from azure.cosmos.exceptions import CosmosHttpResponseError

from ..exceptions import (
    AuthenticationError,
    ConfigurationError,
    FatalStoreError,
    ServiceUnreachableError,
    StoreError,
    StoreErrorKind,
    TransientStoreError,
)
from ..resilience import RetryConfig, retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

PIXELS_CONTAINER = "pixels"
USERS_CONTAINER = "users"
DEFAULT_DATABASE = "canvas"

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # seconds

# 404 sub-status: the session token's LSN is ahead of the replica
READ_SESSION_NOT_AVAILABLE_SUBSTATUS = 1002
PAGE_TOO_LARGE_MESSAGE = "Reduce page size"
RETRY_AFTER_HEADER = "x-ms-retry-after-ms"
SUBSTATUS_HEADER = "x-ms-substatus"


class CosmosAuthMethod(Enum):
    """How to authenticate against the Cosmos account."""

    KEY = "key"
    DEFAULT_CREDENTIAL = "default_credential"


@dataclass
class CosmosConfig:
    """Configuration for the Cosmos DB connection.

    Attributes:
        endpoint: Cosmos DB account endpoint URL
        database_name: Name of the database to use
        pixels_container: Container holding the pixel change log
        users_container: Container holding per-user state
        auth_method: KEY or DEFAULT_CREDENTIAL
        key: Account key (KEY auth only)
        max_retries: Maximum attempts for transient failures
        retry_delay: Base delay between retries (seconds)
        preferred_locations: Regions to read from, in order
    """

    endpoint: str
    database_name: str = DEFAULT_DATABASE
    pixels_container: str = PIXELS_CONTAINER
    users_container: str = USERS_CONTAINER
    auth_method: CosmosAuthMethod = CosmosAuthMethod.DEFAULT_CREDENTIAL
    key: str | None = None
    max_retries: int = DEFAULT_MAX_RETRIES
    retry_delay: float = DEFAULT_RETRY_DELAY
    preferred_locations: list[str] = field(default_factory=list)

    @classmethod
    def from_env(cls) -> "CosmosConfig":
        """Create config from environment variables.

        Expected environment variables:
        - CANVAS_COSMOS_ENDPOINT: Cosmos DB account endpoint (required)
        - CANVAS_COSMOS_DATABASE: Database name (default: canvas)
        - CANVAS_COSMOS_PIXELS_CONTAINER / CANVAS_COSMOS_USERS_CONTAINER
        - CANVAS_COSMOS_AUTH_METHOD: key or default_credential (default)
        - CANVAS_COSMOS_KEY: Account key, required for key auth
        - CANVAS_COSMOS_PREFERRED_LOCATIONS: Comma-separated region list

        Raises:
            ConfigurationError: If the endpoint is missing or the auth method unknown
            AuthenticationError: If key auth is selected without a key
        """
        endpoint = os.environ.get("CANVAS_COSMOS_ENDPOINT")
        if not endpoint:
            raise ConfigurationError("CANVAS_COSMOS_ENDPOINT", "environment variable not set")

        method_name = os.environ.get("CANVAS_COSMOS_AUTH_METHOD", CosmosAuthMethod.DEFAULT_CREDENTIAL.value)
        try:
            auth_method = CosmosAuthMethod(method_name.lower())
        except ValueError as e:
            raise ConfigurationError("CANVAS_COSMOS_AUTH_METHOD", f"unknown method {method_name!r}") from e

        key = os.environ.get("CANVAS_COSMOS_KEY")
        if auth_method == CosmosAuthMethod.KEY and not key:
            raise AuthenticationError("CANVAS_COSMOS_KEY environment variable not set", endpoint)

        locations = os.environ.get("CANVAS_COSMOS_PREFERRED_LOCATIONS", "")
        return cls(
            endpoint=endpoint,
            database_name=os.environ.get("CANVAS_COSMOS_DATABASE", DEFAULT_DATABASE),
            pixels_container=os.environ.get("CANVAS_COSMOS_PIXELS_CONTAINER", PIXELS_CONTAINER),
            users_container=os.environ.get("CANVAS_COSMOS_USERS_CONTAINER", USERS_CONTAINER),
            auth_method=auth_method,
            key=key,
            preferred_locations=[loc.strip() for loc in locations.split(",") if loc.strip()],
        )


def _get_credential(config: CosmosConfig) -> Any:
    """Get the credential matching the configured auth method."""
    if config.auth_method == CosmosAuthMethod.KEY:
        if not config.key:
            raise AuthenticationError("key required for KEY authentication", config.endpoint)
        return config.key

    from azure.identity.aio import DefaultAzureCredential

    return DefaultAzureCredential()


def _header(error: CosmosHttpResponseError, name: str) -> str | None:
    headers = getattr(error, "headers", None)
    if not headers:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None) or {}
    return headers.get(name)


def classify_cosmos_error(error: CosmosHttpResponseError) -> StoreError:
    """Map a Cosmos HTTP error to a classified StoreError.

    - 404 → NOT_FOUND (fatal), or READ_SESSION_NOT_AVAILABLE with sub-status 1002
    - 410 → GONE
    - 429 → TOO_MANY_REQUESTS
    - 503 → SERVICE_UNAVAILABLE
    - "Reduce page size" in the message → PAGE_TOO_LARGE
    - anything else → OTHER

    ``x-ms-retry-after-ms`` becomes ``retry_after`` in seconds.
    """
    status = getattr(error, "status_code", None)
    sub_status = getattr(error, "sub_status", None)
    if sub_status is None:
        raw = _header(error, SUBSTATUS_HEADER)
        sub_status = int(raw) if raw and raw.isdigit() else None

    retry_after = None
    raw_retry = _header(error, RETRY_AFTER_HEADER)
    if raw_retry:
        try:
            retry_after = float(raw_retry) / 1000.0
        except ValueError:
            logger.debug(f"Ignoring unparsable {RETRY_AFTER_HEADER}: {raw_retry!r}")

    message = str(getattr(error, "message", None) or error)
    kwargs = {"message": message, "retry_after": retry_after, "sub_status": sub_status, "cause": error}

    if status == 404:
        if sub_status == READ_SESSION_NOT_AVAILABLE_SUBSTATUS:
            return TransientStoreError(StoreErrorKind.READ_SESSION_NOT_AVAILABLE, **kwargs)
        return FatalStoreError(StoreErrorKind.NOT_FOUND, **kwargs)
    if status == 410:
        return TransientStoreError(StoreErrorKind.GONE, **kwargs)
    if status == 429:
        return TransientStoreError(StoreErrorKind.TOO_MANY_REQUESTS, **kwargs)
    if status == 503:
        return TransientStoreError(StoreErrorKind.SERVICE_UNAVAILABLE, **kwargs)
    if PAGE_TOO_LARGE_MESSAGE.lower() in message.lower():
        return StoreError(StoreErrorKind.PAGE_TOO_LARGE, **kwargs)
    return StoreError(StoreErrorKind.OTHER, **kwargs)


class CosmosClientWrapper:
    """Owns the async Cosmos client and the two canvas containers.

    Both containers are partitioned on ``/id``: a pixel document is one
    appended batch, a user document is one user. Use as an async context
    manager, or call ``initialize``/``close`` around its lifetime.
    """

    def __init__(self, config: CosmosConfig):
        self.config = config
        self._client: CosmosClient | None = None
        self._credential: Any = None
        # Container name -> proxy; None until initialize() succeeds
        self._containers: dict[str, ContainerProxy] | None = None
        self._retry = RetryConfig(max_retries=max(config.max_retries - 1, 0), backoff_base=config.retry_delay)

    async def initialize(self) -> None:
        """Connect, creating the database and containers when absent."""
        if self._containers is not None:
            return

        self._credential = _get_credential(self.config)
        options = {"preferred_locations": self.config.preferred_locations} if self.config.preferred_locations else {}
        self._client = CosmosClient(self.config.endpoint, credential=self._credential, **options)
        try:
            database = await self._client.create_database_if_not_exists(id=self.config.database_name)
            containers = {}
            for name in (self.config.pixels_container, self.config.users_container):
                containers[name] = await database.create_container_if_not_exists(
                    id=name, partition_key=PartitionKey(path="/id")
                )
        except CosmosHttpResponseError as e:
            await self.close()
            if e.status_code in (401, 403):
                raise AuthenticationError(str(e), self.config.endpoint) from e
            raise ServiceUnreachableError(self.config.endpoint, e) from e
        except AzureError as e:
            await self.close()
            raise ServiceUnreachableError(self.config.endpoint, e) from e

        self._containers = containers
        logger.info(
            "Cosmos containers ready",
            extra={"endpoint": self.config.endpoint, "database": self.config.database_name},
        )

    async def close(self) -> None:
        """Release the client and, for Azure AD auth, the credential."""
        self._containers = None
        client, self._client = self._client, None
        credential, self._credential = self._credential, None
        if client is not None:
            await client.close()
        if credential is not None and not isinstance(credential, str):
            await credential.close()

    async def __aenter__(self) -> "CosmosClientWrapper":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _container(self, name: str) -> ContainerProxy:
        if self._containers is None:
            raise ServiceUnreachableError(self.config.endpoint, RuntimeError("client used before initialize()"))
        return self._containers[name]

    @property
    def pixels(self) -> ContainerProxy:
        return self._container(self.config.pixels_container)

    @property
    def users(self) -> ContainerProxy:
        return self._container(self.config.users_container)

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Await ``operation()``, retrying throttling and server-side failures.

        Client errors other than 429 escape unchanged so callers can act on
        404, 409 and 412. Once retries run out the failure surfaces as a
        classified ``StoreError``.
        """

        async def attempt() -> T:
            try:
                return await operation()
            except CosmosHttpResponseError as e:
                if e.status_code != 429 and e.status_code < 500:
                    raise
                classified = classify_cosmos_error(e)
                if not isinstance(classified, TransientStoreError):
                    classified = TransientStoreError(
                        classified.kind, classified.message, classified.retry_after, classified.sub_status, e
                    )
                raise classified from e

        return await retry_with_backoff(attempt, config=self._retry, context_msg="cosmos request")
