"""Shared FastAPI dependencies: DB sessions, the task runner and admin auth."""

import secrets
from typing import AsyncIterator, Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from src.config import settings
from src.db.session import AsyncSessionLocal
from src.worker.tasks import TaskRunner, task_runner


async def get_database() -> AsyncIterator[AsyncSession]:
    """One session per request; reporting routes only read."""
    async with AsyncSessionLocal() as session:
        yield session


def get_task_runner() -> TaskRunner:
    """The process-wide runner shared with APScheduler."""
    return task_runner


async def require_admin_api_key(
    x_admin_api_key: Optional[str] = Header(default=None, alias="X-Admin-API-Key"),
) -> None:
    """
    Guard for routes that change prices or spend marketplace quota.

    Raises:
        HTTPException: 503 if no key is configured, 401 if the header is
            missing, 403 if it does not match
    """
    if not settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API key not configured",
        )
    if x_admin_api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-API-Key header",
        )
    if not secrets.compare_digest(x_admin_api_key, settings.admin_api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key",
        )
