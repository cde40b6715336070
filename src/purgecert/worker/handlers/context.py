"""Shared collaborators for job handlers.

Handlers are plain async functions taking (session, job, context); the
worker binds the context when registering them.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from purgecert.services.execution import ExecutionConfig
from purgecert.services.record_store import http_record_store_factory
from purgecert.services.signing import KeyRing

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from purgecert.core.config import RiskSettings, Settings
    from purgecert.services.record_store import RecordStoreFactory


@dataclass(frozen=True)
class HandlerContext:
    """Everything a handler needs beyond its own session and job.

    Attributes:
        session_factory: Factory for the short-lived sessions the execution
            engine opens per page.
        keyring: Signing keys for ledger appends.
        record_store_factory: Returns an async context manager yielding a
            RecordStore; entered once per job.
        execution: Execution engine limits.
        risk: Risk assessment thresholds.
        issuer: Issuer label recorded on certificates.
    """

    session_factory: async_sessionmaker[AsyncSession]
    keyring: KeyRing
    record_store_factory: RecordStoreFactory
    execution: ExecutionConfig
    risk: RiskSettings
    issuer: str | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> HandlerContext:
        return cls(
            session_factory=session_factory,
            keyring=KeyRing.from_settings(settings.signing),
            record_store_factory=http_record_store_factory(settings.record_store),
            execution=ExecutionConfig.from_settings(settings.execution),
            risk=settings.risk,
            issuer=settings.signing.issuer_name,
        )
