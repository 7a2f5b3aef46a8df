"""Client side of the server-of-record ``POST /sync`` contract.

``RemoteSyncService`` is the protocol the sync engine talks to.
``HttpSyncService`` implements it over HTTP with httpx and maps responses onto
the MoneySync error taxonomy:

- 404 means the entity does not exist remotely
- 409, or a ``conflicts`` entry for the pushed change, is a conflict
- other 4xx responses are permanent rejections
- 5xx responses, transport errors and timeouts are transient
"""

import logging
from datetime import datetime
from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from moneysync.errors import (
    EntityNotFoundError,
    PermanentRemoteError,
    RemoteConflictError,
    RemoteTimeoutError,
    TransientRemoteError,
    ValidationRejectedError,
)
from moneysync.sync.models import (
    ChangeRecord,
    EntitySnapshot,
    EntityType,
    RemoteChangeBatch,
)

logger = logging.getLogger(__name__)


class RemoteSyncService(Protocol):
    """Operations the sync engine needs from the server of record."""

    async def push_change(
        self, change: ChangeRecord, force: bool = False
    ) -> EntitySnapshot:
        """Apply one change remotely and return the resulting snapshot.

        Must be idempotent per ``change.id``. ``force`` applies the change even
        when the server holds a conflicting version.
        """
        ...

    async def fetch_changes(
        self, entity_type: EntityType, since: datetime | None, limit: int
    ) -> RemoteChangeBatch:
        """Return snapshots updated after ``since``, oldest first."""
        ...

    async def request_financial_sync(
        self, account_id: str, sync_type: Literal["full", "incremental"]
    ) -> None:
        """Ask the server to refresh an account from its institution."""
        ...


class WireSchema(BaseModel):
    """Base schema for camelCase JSON bodies."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class WireChange(WireSchema):
    id: str | None = None
    entity_id: str
    timestamp: datetime
    operation: Literal["CREATE", "UPDATE", "DELETE"]
    data: dict[str, Any] = Field(default_factory=dict)
    is_active: bool | None = None
    version: int = 0

    @classmethod
    def from_change(cls, change: ChangeRecord) -> "WireChange":
        return cls(
            id=change.id,
            entity_id=change.entity_id,
            timestamp=change.timestamp,
            operation=change.operation.value.upper(),  # type: ignore[arg-type]
            data=change.payload,
        )

    def to_snapshot(self, entity_type: EntityType) -> EntitySnapshot:
        is_active = self.is_active
        if is_active is None:
            is_active = self.operation != "DELETE"
        return EntitySnapshot(
            entity_type=entity_type,
            entity_id=self.entity_id,
            payload=self.data,
            updated_at=self.timestamp,
            is_active=is_active,
            version=self.version,
        )


class WireConflict(WireSchema):
    client_change: WireChange
    server_change: WireChange
    resolution: Literal["CLIENT_WIN", "SERVER_WIN", "MANUAL_REQUIRED"]


class SyncRequest(WireSchema):
    device_id: str
    last_sync_timestamp: datetime | None = None
    entity_type: EntityType
    changes: list[WireChange] = Field(default_factory=list)
    force: bool = False
    limit: int | None = None


class SyncResponse(WireSchema):
    success: bool = True
    timestamp: datetime
    changes: list[WireChange] = Field(default_factory=list)
    conflicts: list[WireConflict] = Field(default_factory=list)
    has_more: bool = False


class FinancialSyncRequest(WireSchema):
    account_id: str
    sync_type: Literal["full", "incremental"] = "incremental"


class HttpSyncService:
    """RemoteSyncService over ``POST /sync``."""

    def __init__(
        self,
        base_url: str,
        device_id: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the HTTP sync client.

        Args:
            base_url: Base URL of the sync API
            device_id: Device identifier sent with every request
            api_key: Optional bearer token
            timeout: Request timeout in seconds
            client: Preconfigured client (tests inject one with a mock transport)
        """
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.device_id = device_id
        self._client = client or httpx.AsyncClient(
            base_url=base_url, headers=headers, timeout=httpx.Timeout(timeout)
        )

    async def close(self) -> None:
        if not self._client.is_closed:
            await self._client.aclose()

    async def _post(self, body: WireSchema) -> dict[str, Any]:
        try:
            response = await self._client.post(
                "/sync", json=body.model_dump(mode="json", by_alias=True)
            )
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"Sync request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientRemoteError(f"Network error: {e}") from e

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransientRemoteError(f"Server error {status}: {response.text}")
        if status == 404:
            raise EntityNotFoundError(f"Not found: {response.text}")
        if status == 409:
            raise self._conflict_from_body(response, body)
        if status in (400, 422):
            raise ValidationRejectedError(f"Rejected ({status}): {response.text}")
        if status >= 400:
            raise PermanentRemoteError(f"API error {status}: {response.text}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientRemoteError(f"Malformed response body: {e}") from e

    def _conflict_from_body(
        self, response: httpx.Response, body: WireSchema
    ) -> RemoteConflictError | PermanentRemoteError:
        if not isinstance(body, SyncRequest):
            return PermanentRemoteError(f"Unexpected conflict: {response.text}")
        try:
            parsed = SyncResponse.model_validate(response.json())
        except (ValueError, ValidationError):
            return PermanentRemoteError(f"Conflict without server version: {response.text}")
        if parsed.conflicts:
            server_change = parsed.conflicts[0].server_change
            return RemoteConflictError(server_change.to_snapshot(body.entity_type))
        return PermanentRemoteError(f"Conflict without server version: {response.text}")

    @staticmethod
    def _parse(data: dict[str, Any]) -> SyncResponse:
        try:
            return SyncResponse.model_validate(data)
        except ValidationError as e:
            raise TransientRemoteError(f"Malformed sync response: {e}") from e

    async def push_change(
        self, change: ChangeRecord, force: bool = False
    ) -> EntitySnapshot:
        request = SyncRequest(
            device_id=change.device_id,
            entity_type=change.entity_type,
            changes=[WireChange.from_change(change)],
            force=force,
        )
        response = self._parse(await self._post(request))

        for conflict in response.conflicts:
            matches = conflict.client_change.id == change.id or (
                conflict.client_change.entity_id == change.entity_id
            )
            if matches and conflict.resolution != "CLIENT_WIN":
                raise RemoteConflictError(
                    conflict.server_change.to_snapshot(change.entity_type)
                )

        for server_change in response.changes:
            if server_change.entity_id == change.entity_id:
                return server_change.to_snapshot(change.entity_type)
        return change.to_snapshot()

    async def fetch_changes(
        self, entity_type: EntityType, since: datetime | None, limit: int
    ) -> RemoteChangeBatch:
        request = SyncRequest(
            device_id=self.device_id,
            last_sync_timestamp=since,
            entity_type=entity_type,
            limit=limit,
        )
        response = self._parse(await self._post(request))
        return RemoteChangeBatch(
            changes=[c.to_snapshot(entity_type) for c in response.changes],
            timestamp=response.timestamp,
            has_more=response.has_more,
        )

    async def request_financial_sync(
        self, account_id: str, sync_type: Literal["full", "incremental"]
    ) -> None:
        await self._post(FinancialSyncRequest(account_id=account_id, sync_type=sync_type))
        logger.info(f"Requested {sync_type} financial sync for account {account_id}")
