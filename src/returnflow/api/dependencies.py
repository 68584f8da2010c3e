"""FastAPI dependencies shared by the routers.

Collaborators live on ``app.state`` (set up by the app lifespan, or injected
by tests); the lifecycle service is built per request around the request's
database session.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from returnflow.db import get_async_session
from returnflow.db.models.base import ActorType
from returnflow.services.lifecycle import Actor, CaseLifecycleService

# Identifies the UI surface (detail modal, list row, bot) issuing a command
CALLER_SURFACE_HEADER = "X-Caller-Surface"
DEFAULT_CALLER_SURFACE = "api"
MAX_ACTOR_REF_LENGTH = 255


async def get_db_session(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session from the app's session factory (process-wide by default)."""
    factory = getattr(request.app.state, "session_factory", None)
    async with get_async_session(factory) as session:
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


def _actor_ref(surface: str | None) -> str:
    ref = (surface or "").strip()[:MAX_ACTOR_REF_LENGTH]
    return ref or DEFAULT_CALLER_SURFACE


def get_actor(
    x_caller_surface: Annotated[str | None, Header(alias=CALLER_SURFACE_HEADER)] = None,
) -> Actor:
    """Customer actor named after the calling surface."""
    return Actor(ActorType.CUSTOMER, _actor_ref(x_caller_surface))


def get_system_actor(
    x_caller_surface: Annotated[str | None, Header(alias=CALLER_SURFACE_HEADER)] = None,
) -> Actor:
    """Actor for automated callbacks such as parcel tracking."""
    return Actor(ActorType.SYSTEM, _actor_ref(x_caller_surface or "parcel-tracking"))


def get_lifecycle_service(request: Request, session: DbSession) -> CaseLifecycleService:
    state = request.app.state
    tracking = state.parcel_tracking
    return CaseLifecycleService(
        session,
        tracking,
        tracking,
        publisher=state.case_events,
        idempotency_retention_hours=state.settings.idempotency.retention_hours,
    )


LifecycleService = Annotated[CaseLifecycleService, Depends(get_lifecycle_service)]
CustomerActor = Annotated[Actor, Depends(get_actor)]
SystemActor = Annotated[Actor, Depends(get_system_actor)]
