"""Legal hold registry.

A legal hold suspends every retention action on the records it covers,
whatever the policy says. The registry is the single source of truth the
execution engine consults before each action.

Holds are never deleted. Releasing stamps released_at, so "was this record
held at time t" stays answerable and certificates already issued as
skipped_hold remain valid.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update

from purgecert.db.models.base import utcnow
from purgecert.db.models.holds import LegalHold
from purgecert.services.audit_log import AuditEventType, AuditLogService

if TYPE_CHECKING:
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from purgecert.services.policies import PolicyVersion
    from purgecert.services.record_store import RecordRef
    from purgecert.services.signing import KeyRing

logger = logging.getLogger(__name__)


class LegalHoldError(Exception):
    """Base exception for legal hold errors."""

    pass


class InvalidHoldError(LegalHoldError):
    """Raised when a hold definition is malformed."""

    pass


class HoldNotFoundError(LegalHoldError):
    """Raised when a requested hold does not exist."""

    pass


class HoldAlreadyReleasedError(LegalHoldError):
    """Raised when releasing a hold that was already released."""

    pass


def _value_overlaps(hold_value: Any, policy_value: Any) -> bool:
    hold_values = hold_value if isinstance(hold_value, list) else [hold_value]
    policy_values = policy_value if isinstance(policy_value, list) else [policy_value]
    return any(value in policy_values for value in hold_values)


@dataclass(frozen=True)
class HoldScope:
    """Which records a hold covers.

    Each non-empty field narrows the scope; all empty means every record.
    When the caller cannot supply the policy or the record attributes, the
    corresponding restriction is treated as satisfied (a hold errs towards
    covering).
    """

    entity_type: str | None = None
    record_ids: list[str] = field(default_factory=list)
    policy_ids: list[str] = field(default_factory=list)
    match: dict[str, Any] = field(default_factory=dict)

    @property
    def is_global(self) -> bool:
        return not (self.entity_type or self.record_ids or self.policy_ids or self.match)

    def matches(
        self,
        ref: RecordRef,
        *,
        policy_id: uuid.UUID | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> bool:
        if self.entity_type and self.entity_type != ref.entity_type:
            return False
        if self.record_ids and ref.record_id not in self.record_ids:
            return False
        if self.policy_ids and policy_id is not None and str(policy_id) not in self.policy_ids:
            return False
        if self.match and attributes is not None:
            for name, expected in self.match.items():
                actual = attributes.get(name)
                if isinstance(expected, list):
                    if actual not in expected:
                        return False
                elif actual != expected:
                    return False
        return True

    def overlaps_policy(self, policy: PolicyVersion) -> bool:
        """True unless the hold's scope provably excludes the policy's scope."""
        if self.entity_type and self.entity_type != policy.entity_type:
            return False
        if self.policy_ids and str(policy.policy_id) not in self.policy_ids:
            return False
        for name, expected in self.match.items():
            if name in policy.include and not _value_overlaps(expected, policy.include[name]):
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "record_ids": list(self.record_ids),
            "policy_ids": list(self.policy_ids),
            "match": dict(self.match),
        }


@dataclass(frozen=True, slots=True)
class HoldInfo:
    """Detached view of a legal hold."""

    hold_id: uuid.UUID
    scope: HoldScope
    reason: str
    created_by: str
    created_at: datetime
    starts_at: datetime
    ends_at: datetime | None
    released_at: datetime | None
    released_by: str | None

    @classmethod
    def from_model(cls, hold: LegalHold) -> HoldInfo:
        return cls(
            hold_id=hold.hold_id,
            scope=HoldScope(
                entity_type=hold.entity_type,
                record_ids=list(hold.record_ids or []),
                policy_ids=list(hold.policy_ids or []),
                match=dict(hold.match or {}),
            ),
            reason=hold.reason,
            created_by=hold.created_by,
            created_at=hold.created_at,
            starts_at=hold.starts_at,
            ends_at=hold.ends_at,
            released_at=hold.released_at,
            released_by=hold.released_by,
        )

    def is_active_at(self, at: datetime) -> bool:
        if self.starts_at > at:
            return False
        if self.ends_at is not None and self.ends_at <= at:
            return False
        return self.released_at is None or self.released_at > at

    def to_dict(self) -> dict[str, Any]:
        return {
            "hold_id": str(self.hold_id),
            "scope": self.scope.to_dict(),
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "starts_at": self.starts_at.isoformat(),
            "ends_at": self.ends_at.isoformat() if self.ends_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "released_by": self.released_by,
        }


class LegalHoldRegistry:
    """Service for creating, releasing and evaluating legal holds.

    Example:
        registry = LegalHoldRegistry(session, keyring)
        hold = await registry.create_hold(
            HoldScope(entity_type="reflection", record_ids=["r-42"]),
            "Litigation 2026-114",
            created_by="counsel@example.com",
        )
        assert await registry.is_held(RecordRef("reflection", "r-42"), utcnow())
    """

    def __init__(self, session: AsyncSession, keyring: KeyRing | None = None) -> None:
        self._session = session
        self._keyring = keyring

    def _audit(self) -> AuditLogService:
        if self._keyring is None:
            msg = "A key ring is required to change legal holds"
            raise LegalHoldError(msg)
        return AuditLogService(self._session, self._keyring)

    async def create_hold(
        self,
        scope: HoldScope,
        reason: str,
        *,
        created_by: str,
        starts_at: datetime | None = None,
        ends_at: datetime | None = None,
    ) -> HoldInfo:
        """Create a hold, effective from starts_at (default: now).

        Raises:
            InvalidHoldError: If the reason is empty or the window is inverted.
        """
        if not reason or not reason.strip():
            raise InvalidHoldError("reason must not be empty")
        now = utcnow()
        starts_at = starts_at or now
        if ends_at is not None and ends_at <= starts_at:
            raise InvalidHoldError("ends_at must be after starts_at")

        hold = LegalHold(
            hold_id=uuid.uuid4(),
            created_at=now,
            entity_type=scope.entity_type,
            record_ids=list(scope.record_ids),
            policy_ids=[str(policy_id) for policy_id in scope.policy_ids],
            match=dict(scope.match),
            reason=reason.strip(),
            created_by=created_by,
            starts_at=starts_at,
            ends_at=ends_at,
        )
        self._session.add(hold)
        await self._session.flush()

        info = HoldInfo.from_model(hold)
        logger.info(
            "Legal hold created: hold_id=%s scope=%s created_by=%s",
            info.hold_id,
            "global" if scope.is_global else scope.to_dict(),
            created_by,
        )
        await self._audit().record(
            AuditEventType.HOLD_CREATED,
            actor=created_by,
            resource_type="legal_hold",
            resource_id=str(info.hold_id),
            details={
                "scope": info.scope.to_dict(),
                "reason": info.reason,
                "starts_at": info.starts_at.isoformat(),
                "ends_at": info.ends_at.isoformat() if info.ends_at else None,
            },
        )
        return info

    async def release_hold(self, hold_id: uuid.UUID, *, released_by: str) -> HoldInfo:
        """Release a hold. The row is kept for audit.

        Raises:
            HoldNotFoundError: If the hold does not exist.
            HoldAlreadyReleasedError: If it was already released.
        """
        hold = await self._session.get(LegalHold, hold_id)
        if hold is None:
            raise HoldNotFoundError(f"Legal hold not found: {hold_id}")

        now = utcnow()
        result = await self._session.execute(
            update(LegalHold)
            .where(LegalHold.hold_id == hold_id, LegalHold.released_at.is_(None))
            .values(released_at=now, released_by=released_by)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise HoldAlreadyReleasedError(f"Legal hold already released: {hold_id}")
        await self._session.refresh(hold)

        logger.info("Legal hold released: hold_id=%s released_by=%s", hold_id, released_by)
        await self._audit().record(
            AuditEventType.HOLD_RELEASED,
            actor=released_by,
            resource_type="legal_hold",
            resource_id=str(hold_id),
            details={"released_at": now.isoformat()},
        )
        return HoldInfo.from_model(hold)

    async def get_hold(self, hold_id: uuid.UUID) -> HoldInfo:
        hold = await self._session.get(LegalHold, hold_id)
        if hold is None:
            raise HoldNotFoundError(f"Legal hold not found: {hold_id}")
        return HoldInfo.from_model(hold)

    async def active_holds(self, at: datetime, *, entity_type: str | None = None) -> list[HoldInfo]:
        """Holds in force at `at`, optionally limited to those that can cover entity_type."""
        query = select(LegalHold).where(
            LegalHold.starts_at <= at,
            or_(LegalHold.ends_at.is_(None), LegalHold.ends_at > at),
            or_(LegalHold.released_at.is_(None), LegalHold.released_at > at),
        )
        if entity_type is not None:
            query = query.where(
                or_(LegalHold.entity_type.is_(None), LegalHold.entity_type == entity_type)
            )
        query = query.order_by(LegalHold.starts_at)
        result = await self._session.execute(query)
        return [HoldInfo.from_model(hold) for hold in result.scalars().all()]

    async def list_holds(self, *, include_released: bool = False) -> list[HoldInfo]:
        query = select(LegalHold)
        if not include_released:
            query = query.where(LegalHold.released_at.is_(None))
        query = query.order_by(LegalHold.created_at.desc())
        result = await self._session.execute(query)
        return [HoldInfo.from_model(hold) for hold in result.scalars().all()]

    async def find_matching_holds(
        self,
        ref: RecordRef,
        at: datetime,
        *,
        policy_id: uuid.UUID | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> list[HoldInfo]:
        """Holds active at `at` whose scope covers the record."""
        candidates = await self.active_holds(at, entity_type=ref.entity_type)
        return [
            hold
            for hold in candidates
            if hold.scope.matches(ref, policy_id=policy_id, attributes=attributes)
        ]

    async def is_held(
        self,
        ref: RecordRef,
        at: datetime,
        *,
        policy_id: uuid.UUID | None = None,
        attributes: dict[str, Any] | None = None,
    ) -> bool:
        """True if any hold active at `at` covers the record."""
        holds = await self.find_matching_holds(
            ref, at, policy_id=policy_id, attributes=attributes
        )
        return bool(holds)

    async def holds_overlapping_policy(
        self, policy: PolicyVersion, at: datetime
    ) -> list[HoldInfo]:
        """Active holds that may suppress actions of this policy."""
        candidates = await self.active_holds(at, entity_type=policy.entity_type)
        return [hold for hold in candidates if hold.scope.overlaps_policy(policy)]
