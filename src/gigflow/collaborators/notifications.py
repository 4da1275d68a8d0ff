"""User-facing notifications, deduplicated by key."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from gigflow.domain.job_protocol import utc_now
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import LedgerRepository
from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.infrastructure.database.orm_models import Notification

logger = get_logger(__name__)


class NotificationDispatcher:
    """Fire-and-log notification writer."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def dispatch(
        self,
        *,
        recipient_id: str,
        type: str,  # noqa: A002
        dedupe_key: str,
        title: str = "",
        body: str = "",
        data: dict | None = None,
    ) -> bool:
        """Store the notification. Returns False when the key was already used."""
        async with session_scope(self._session_factory) as session:
            inserted = await LedgerRepository(session).add_notification_if_absent(
                {
                    "id": uuid.uuid4(),
                    "recipient_id": recipient_id,
                    "type": type,
                    "title": title,
                    "body": body,
                    "data": data or {},
                    "dedupe_key": dedupe_key,
                    "read": False,
                    "created_at": self._clock(),
                }
            )
        if inserted:
            logger.info(
                "notification.dispatched",
                recipient_id=recipient_id,
                notification_type=type,
                dedupe_key=dedupe_key,
            )
        else:
            logger.debug("notification.duplicate_ignored", dedupe_key=dedupe_key)
        return inserted

    async def list_for(self, recipient_id: str) -> list[Notification]:
        async with self._session_factory() as session:
            return await LedgerRepository(session).get_notifications(recipient_id)
