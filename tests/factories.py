"""Test data factories for purgecert.

Builders for policy specs, policy versions and records, plus an in-memory
record store that the execution engine, previews and risk checks can run
against without a record service.
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from purgecert.db.models.base import DataCategory, DeletionAction, RetentionUnit
from purgecert.services.policies import PolicySpec, PolicyVersion, parse_timestamp
from purgecert.services.record_store import (
    ActionFailure,
    ActionResult,
    Record,
    RecordRef,
    RecordStoreUnavailable,
    ScanPage,
    ScanScope,
)

ENTITY_TYPE = "reflection"


def make_policy_spec(**overrides: Any) -> PolicySpec:
    """Create a valid policy spec: hard delete reflections after 90 days.

    Args:
        **overrides: Any PolicySpec field.
    """
    fields: dict[str, Any] = {
        "name": "Purge old reflections",
        "entity_type": ENTITY_TYPE,
        "retention_value": 90,
        "action": DeletionAction.HARD_DELETE,
        "schedule": "@daily",
    }
    fields.update(overrides)
    return PolicySpec(**fields)


def make_policy_version(**overrides: Any) -> PolicyVersion:
    """Create a detached policy version without touching the database."""
    fields: dict[str, Any] = {
        "policy_version_id": uuid.uuid4(),
        "policy_id": uuid.uuid4(),
        "version": 1,
        "name": "Purge old reflections",
        "description": None,
        "entity_type": ENTITY_TYPE,
        "include": {},
        "exclude": {},
        "retention_value": 90,
        "retention_unit": RetentionUnit.DAYS,
        "retention_from_field": "created_at",
        "action": DeletionAction.HARD_DELETE,
        "schedule": "@daily",
        "category": DataCategory.PERSONAL_DATA,
        "compliance_basis": None,
        "batch_size": None,
        "priority": 5,
        "is_active": True,
        "created_at": datetime.now(UTC),
        "created_by": "tester",
        "superseded_at": None,
    }
    fields.update(overrides)
    return PolicyVersion(**fields)


def make_record(
    record_id: str,
    *,
    days_old: float,
    now: datetime | None = None,
    entity_type: str = ENTITY_TYPE,
    **attributes: Any,
) -> Record:
    """Create a record whose created_at lies `days_old` days before `now`."""
    now = now or datetime.now(UTC)
    created_at = now - timedelta(days=days_old)
    return Record(
        ref=RecordRef(entity_type, record_id),
        attributes={"created_at": created_at.isoformat(), **attributes},
    )


def _matches(conditions: dict[str, Any], attributes: dict[str, Any]) -> bool:
    for name, expected in conditions.items():
        actual = attributes.get(name)
        if isinstance(expected, list):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class InMemoryRecordStore:
    """Record store backed by a dict, with failure injection.

    Attributes:
        records: record_id -> Record.
        applied: (record_id, action) for every successful action.
        action_failures: record_id -> remaining failures before success.
        get_overrides: record_id -> attributes returned by get() instead of
            the stored ones (None means the record vanished).
        unavailable: When True every call raises RecordStoreUnavailable.
        on_scan: Awaitable hook called with the 1-based scan call number.
    """

    def __init__(self, records: list[Record] | None = None) -> None:
        self.records: dict[str, Record] = {}
        self.applied: list[tuple[str, DeletionAction]] = []
        self.action_failures: dict[str, int] = {}
        self.get_overrides: dict[str, dict[str, Any] | None] = {}
        self.unavailable = False
        self.on_scan: Callable[[int], Awaitable[None]] | None = None
        self.scan_calls = 0
        for record in records or []:
            self.add(record)

    def add(self, record: Record) -> Record:
        self.records[record.ref.record_id] = record
        return record

    def applied_ids(self) -> list[str]:
        return [record_id for record_id, _ in self.applied]

    def _in_scope(self, scope: ScanScope, record: Record) -> bool:
        if record.ref.entity_type != scope.entity_type:
            return False
        if scope.include and not _matches(scope.include, record.attributes):
            return False
        if scope.exclude:
            for name, expected in scope.exclude.items():
                if name in record.attributes and _matches({name: expected}, record.attributes):
                    return False
        if scope.older_than is not None:
            stamp = parse_timestamp(record.attributes.get(scope.timestamp_field))
            if stamp is None or stamp > scope.older_than:
                return False
        return True

    async def scan(self, scope: ScanScope, cursor: str | None, limit: int) -> ScanPage:
        self.scan_calls += 1
        if self.on_scan is not None:
            await self.on_scan(self.scan_calls)
        if self.unavailable:
            raise RecordStoreUnavailable("record service is down")

        matching = sorted(
            (record for record in self.records.values() if self._in_scope(scope, record)),
            key=lambda record: record.ref.record_id,
        )
        if cursor is not None:
            matching = [record for record in matching if record.ref.record_id > cursor]
        page = matching[:limit]
        next_cursor = page[-1].ref.record_id if len(matching) > limit else None
        return ScanPage(records=page, next_cursor=next_cursor)

    async def get(self, ref: RecordRef) -> Record | None:
        if self.unavailable:
            raise RecordStoreUnavailable("record service is down")
        if ref.record_id in self.get_overrides:
            attributes = self.get_overrides[ref.record_id]
            return None if attributes is None else Record(ref=ref, attributes=attributes)
        return self.records.get(ref.record_id)

    async def apply_action(self, ref: RecordRef, action: DeletionAction) -> ActionResult:
        if self.unavailable:
            raise RecordStoreUnavailable("record service is down")
        remaining = self.action_failures.get(ref.record_id, 0)
        if remaining > 0:
            self.action_failures[ref.record_id] = remaining - 1
            raise ActionFailure(ref, action, "storage backend rejected the request")

        self.applied.append((ref.record_id, action))
        if action == DeletionAction.HARD_DELETE:
            self.records.pop(ref.record_id, None)
        return ActionResult(success=True, detail=f"{action.value} applied")
