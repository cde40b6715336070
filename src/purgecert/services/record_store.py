"""Record-store interface consumed by the execution engine.

The engine never touches business data directly. It talks to a RecordStore:

    scan(scope, cursor, limit) -> ScanPage      candidate records, paginated
    get(ref) -> Record | None                   current state, for re-validation
    apply_action(ref, action) -> ActionResult   perform the deletion action

HttpRecordStore implements the interface against a REST record service.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from purgecert.db.models.base import DeletionAction

if TYPE_CHECKING:
    from datetime import datetime

    from purgecert.core.config import RecordStoreSettings

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


class RecordStoreError(Exception):
    """Base exception for record-store errors."""

    pass


class RecordStoreUnavailable(RecordStoreError):
    """The record store could not be reached or answered with a server error."""

    pass


class ActionFailure(RecordStoreError):
    """A deletion action failed for one record. Retryable."""

    def __init__(self, ref: RecordRef, action: DeletionAction, reason: str) -> None:
        super().__init__(f"{action.value} failed for {ref}: {reason}")
        self.ref = ref
        self.action = action
        self.reason = reason


@dataclass(frozen=True, slots=True)
class RecordRef:
    """Opaque reference to one business record."""

    entity_type: str
    record_id: str

    def __str__(self) -> str:
        return f"{self.entity_type}/{self.record_id}"


@dataclass(frozen=True, slots=True)
class Record:
    """A record as seen by retention evaluation: its reference and attributes."""

    ref: RecordRef
    attributes: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ScanScope:
    """What to scan for.

    include/exclude and older_than are hints the store may use to narrow
    the scan; the engine re-checks eligibility on every returned record.
    """

    entity_type: str
    include: dict[str, Any] = field(default_factory=dict)
    exclude: dict[str, Any] = field(default_factory=dict)
    timestamp_field: str = "created_at"
    older_than: datetime | None = None


@dataclass(frozen=True, slots=True)
class ScanPage:
    """One page of scan results. next_cursor is None on the last page."""

    records: list[Record]
    next_cursor: str | None


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Outcome reported by the store for one action."""

    success: bool
    detail: str | None = None


@runtime_checkable
class RecordStore(Protocol):
    """Interface to the external store holding business records."""

    async def scan(self, scope: ScanScope, cursor: str | None, limit: int) -> ScanPage: ...

    async def get(self, ref: RecordRef) -> Record | None: ...

    async def apply_action(self, ref: RecordRef, action: DeletionAction) -> ActionResult: ...


@dataclass(frozen=True)
class HttpRecordStoreConfig:
    """Configuration for the REST record store client."""

    base_url: str
    api_token: str | None = None
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_settings(cls, settings: RecordStoreSettings) -> HttpRecordStoreConfig:
        return cls(
            base_url=settings.base_url,
            api_token=settings.api_token.get_secret_value() if settings.api_token else None,
            timeout=settings.timeout_seconds,
        )


class HttpRecordStore:
    """RecordStore backed by a REST record service.

    Endpoints:
        POST /records/{entity_type}/scan
        GET  /records/{entity_type}/{record_id}
        POST /records/{entity_type}/{record_id}/actions

    Example usage:
        config = HttpRecordStoreConfig(base_url="http://records:8080")
        async with HttpRecordStore(config) as store:
            page = await store.scan(ScanScope(entity_type="reflection"), None, 100)
    """

    def __init__(
        self,
        config: HttpRecordStoreConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpRecordStore:
        headers = {}
        if self._config.api_token:
            headers["Authorization"] = f"Bearer {self._config.api_token}"
        self._client = httpx.AsyncClient(
            base_url=self._config.base_url,
            timeout=self._config.timeout,
            headers=headers,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get the HTTP client, raising if not in context."""
        if self._client is None:
            msg = "HttpRecordStore must be used as async context manager"
            raise RuntimeError(msg)
        return self._client

    @staticmethod
    def _collection_url(entity_type: str) -> str:
        return f"/records/{quote(entity_type, safe='')}"

    def _record_url(self, ref: RecordRef) -> str:
        return f"{self._collection_url(ref.entity_type)}/{quote(ref.record_id, safe='')}"

    @staticmethod
    def _parse_record(entity_type: str, data: dict[str, Any]) -> Record:
        return Record(
            ref=RecordRef(entity_type=entity_type, record_id=str(data["id"])),
            attributes=dict(data.get("attributes") or {}),
        )

    @staticmethod
    def _malformed(e: Exception) -> RecordStoreError:
        return RecordStoreError(f"Malformed record store response: {type(e).__name__}: {e}")

    async def scan(self, scope: ScanScope, cursor: str | None, limit: int) -> ScanPage:
        """Fetch one page of candidate records.

        Raises:
            RecordStoreUnavailable: On connection errors, timeouts or 5xx.
            RecordStoreError: If the response body is not a scan page.
        """
        client = self._get_client()
        body = {
            "include": scope.include,
            "exclude": scope.exclude,
            "timestamp_field": scope.timestamp_field,
            "older_than": scope.older_than.isoformat() if scope.older_than else None,
            "cursor": cursor,
            "limit": limit,
        }
        try:
            url = f"{self._collection_url(scope.entity_type)}/scan"
            response = await client.post(url, json=body)
            response.raise_for_status()
        except httpx.TransportError as e:
            raise RecordStoreUnavailable(f"Cannot reach record store: {e}") from e
        except httpx.HTTPStatusError as e:
            msg = f"Record store scan failed: {e.response.status_code}"
            raise RecordStoreUnavailable(msg) from e

        try:
            data = response.json()
            records = [
                self._parse_record(scope.entity_type, item) for item in data.get("records") or []
            ]
            next_cursor = data.get("next_cursor")
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise self._malformed(e) from e
        return ScanPage(
            records=records, next_cursor=str(next_cursor) if next_cursor is not None else None
        )

    async def get(self, ref: RecordRef) -> Record | None:
        """Fetch the current state of one record, None if it no longer exists."""
        client = self._get_client()
        try:
            response = await client.get(self._record_url(ref))
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.TransportError as e:
            raise RecordStoreUnavailable(f"Cannot reach record store: {e}") from e
        except httpx.HTTPStatusError as e:
            raise RecordStoreUnavailable(f"Record lookup failed: {e.response.status_code}") from e

        try:
            return self._parse_record(ref.entity_type, response.json())
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise self._malformed(e) from e

    async def apply_action(self, ref: RecordRef, action: DeletionAction) -> ActionResult:
        """Apply a deletion action to one record.

        Raises:
            ActionFailure: On any transport error or non-2xx response.
        """
        client = self._get_client()
        try:
            response = await client.post(
                f"{self._record_url(ref)}/actions",
                json={"action": action.value},
            )
            response.raise_for_status()
        except httpx.TransportError as e:
            raise ActionFailure(ref, action, f"transport error: {e}") from e
        except httpx.HTTPStatusError as e:
            raise ActionFailure(ref, action, f"HTTP {e.response.status_code}") from e

        try:
            data = response.json() if response.content else {}
            result = ActionResult(
                success=bool(data.get("success", True)), detail=data.get("detail")
            )
        except (ValueError, TypeError, AttributeError) as e:
            reason = f"malformed response: {type(e).__name__}: {e}"
            raise ActionFailure(ref, action, reason) from e
        if not result.success:
            raise ActionFailure(ref, action, result.detail or "rejected by record store")
        return result


RecordStoreFactory = Callable[[], AbstractAsyncContextManager[RecordStore]]


def http_record_store_factory(settings: RecordStoreSettings) -> RecordStoreFactory:
    """Factory returning a fresh HttpRecordStore context per use."""
    config = HttpRecordStoreConfig.from_settings(settings)
    return lambda: HttpRecordStore(config)
