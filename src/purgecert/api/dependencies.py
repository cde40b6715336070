"""FastAPI dependencies shared by the routers.

Collaborators live on app.state (set by create_app) so tests can build an
app around their own session factory, key ring and record store.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from purgecert.api.middleware.errors import AuthenticationError
from purgecert.core.config import Settings
from purgecert.services.record_store import RecordStoreFactory
from purgecert.services.signing import KeyRing

OPERATOR_HEADER = "X-Operator-Id"


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Session for one request. Routes commit explicitly; anything else rolls back."""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def get_keyring(request: Request) -> KeyRing:
    return request.app.state.keyring


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_record_store_factory(request: Request) -> RecordStoreFactory:
    return request.app.state.record_store_factory


def require_operator(
    x_operator_id: Annotated[str | None, Header(alias=OPERATOR_HEADER)] = None,
) -> str:
    """Operator identity for mutating requests.

    Authentication happens in front of this service; the header names the
    operator that the ledger and audit trail attribute the change to.
    """
    if not x_operator_id or not x_operator_id.strip():
        raise AuthenticationError(f"{OPERATOR_HEADER} header is required")
    return x_operator_id.strip()


DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Keys = Annotated[KeyRing, Depends(get_keyring)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]
RecordStores = Annotated[RecordStoreFactory, Depends(get_record_store_factory)]
Operator = Annotated[str, Depends(require_operator)]
