"""purgecert operator API.

FastAPI application exposing:
- policy, legal hold and run management for operators
- compliance policy templates
- certificate and audit browsing
- the risk report
- ledger verification, export and signing keys
- dead-lettered job retry and cancellation

create_app() builds a configured instance; tests pass their own session
factory, key ring and record store factory.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI

from purgecert.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from purgecert.api.routers import (
    audit_router,
    certificates_router,
    holds_router,
    jobs_router,
    ledger_router,
    policies_router,
    risk_router,
    runs_router,
    templates_router,
)
from purgecert.services.record_store import http_record_store_factory
from purgecert.services.signing import KeyRing

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from purgecert.core.config import Settings
    from purgecert.services.record_store import RecordStoreFactory

logger = logging.getLogger(__name__)

API_TITLE = "purgecert API"
API_DESCRIPTION = """
Retention policy enforcement with signed, hash-chained deletion certificates.

Mutating requests must carry an `X-Operator-Id` header naming the operator;
it is recorded on the audit stream with the change.

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""


def create_app(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    keyring: KeyRing | None = None,
    record_store_factory: RecordStoreFactory | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Settings to use. Defaults to the cached process settings.
        session_factory: Session factory. Defaults to one built from
            settings.database.
        keyring: Signing key ring. Defaults to one built from settings.signing.
        record_store_factory: Record store used by previews and the risk
            report. Defaults to the HTTP record store in settings.record_store.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        from purgecert.core.settings import get_settings

        settings = get_settings()
    if session_factory is None:
        from purgecert.db import create_engine_from_settings, create_session_factory

        session_factory = create_session_factory(create_engine_from_settings(settings.database))

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.keyring = keyring or KeyRing.from_settings(settings.signing)
    app.state.record_store_factory = record_store_factory or http_record_store_factory(
        settings.record_store
    )

    # Last added is outermost: the request ID is set before errors are rendered
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    for router in (
        policies_router,
        templates_router,
        holds_router,
        runs_router,
        certificates_router,
        audit_router,
        risk_router,
        ledger_router,
        jobs_router,
    ):
        app.include_router(router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    logger.info(
        "purgecert API application created (version=%s, environment=%s)",
        settings.app_version,
        settings.environment.value,
    )
    return app
