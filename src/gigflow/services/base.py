"""Shared unit-of-work plumbing for the workflow services.

Every public operation runs its body inside one session_scope (one
transaction) and converts what can go wrong into an OperationResult:

    GigflowError            -> failure with the error's kind
    StaleDataError          -> CONFLICT_RETRY (version guard lost the race)
    OperationalError        -> CONFLICT_RETRY (lock wait, NOWAIT, busy database)
    LookupError             -> INVARIANT_VIOLATION (unknown enum value in the store)
    IntegrityError          -> mapped by the caller, re-raised otherwise

Anything else is a programming or infrastructure error and propagates.
Reads go through _read(): a malformed id or an undecodable row returns
the empty default (None, [] or False) instead of raising.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm.exc import StaleDataError

from gigflow.domain.exceptions import (
    ConflictRetryError,
    GigflowError,
    NotFoundError,
    UnknownStateError,
)
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.results import OperationResult
from gigflow.infrastructure.database.engine import session_scope
from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings

    Clock = Callable[[], datetime]

logger = get_logger(__name__)

T = TypeVar("T")

# lock_not_available, serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = frozenset({"55P03", "40001", "40P01"})


def is_lock_conflict(err: DBAPIError) -> bool:
    """Whether a driver error means another transaction holds the row."""
    if isinstance(err, OperationalError):
        return True
    sqlstate = getattr(err.orig, "sqlstate", None) or getattr(err.orig, "pgcode", None)
    return sqlstate in _RETRYABLE_SQLSTATES


def parse_id(entity: str, value: object) -> uuid.UUID:
    """Coerce a caller-supplied id; a malformed id cannot name an existing row."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as err:
        raise NotFoundError(entity, value) from err


def jsonable(context: dict[str, Any] | None) -> dict[str, Any]:
    """Copy a transition context into something the JSON column accepts."""
    if not context:
        return {}
    out: dict[str, Any] = {}
    for key, value in context.items():
        if value is None or isinstance(value, (str, int, float, bool, list, dict)):
            out[str(key)] = value
        else:
            out[str(key)] = str(value)
    return out


class TransactionalService:
    """Base class for services whose public operations never raise."""

    entity = "entity"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        clock: Clock = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        return self._clock()

    async def _run(
        self,
        operation: str,
        entity_id: object,
        work: Callable[[AsyncSession], Awaitable[OperationResult]],
        *,
        on_integrity_error: Callable[[IntegrityError], GigflowError] | None = None,
    ) -> OperationResult:
        """Run `work` in one transaction and translate failures into a result."""
        log = logger.bind(
            operation=f"{self.entity}.{operation}",
            entity_id=str(entity_id) if entity_id is not None else None,
        )
        try:
            async with session_scope(self._session_factory) as session:
                return await work(session)
        except GigflowError as err:
            log.warning(f"{self.entity}.refused", error=err.code, reason=err.message)
            return OperationResult.failure(err, entity_id)
        except StaleDataError as err:
            conflict = ConflictRetryError(self.entity, entity_id, detail="version changed")
            log.warning(f"{self.entity}.conflict", error=conflict.code, detail=str(err))
            return OperationResult.failure(conflict, entity_id)
        except IntegrityError as err:
            if on_integrity_error is None:
                log.error(f"{self.entity}.integrity_error", exc_info=True)
                raise
            mapped = on_integrity_error(err)
            log.warning(f"{self.entity}.refused", error=mapped.code, reason=mapped.message)
            return OperationResult.failure(mapped, entity_id)
        except DBAPIError as err:
            if not is_lock_conflict(err):
                log.error(f"{self.entity}.store_error", exc_info=True)
                raise
            conflict = ConflictRetryError(self.entity, entity_id, detail="row locked")
            log.warning(f"{self.entity}.conflict", error=conflict.code, detail=str(err.orig))
            return OperationResult.failure(conflict, entity_id)
        except LookupError as err:
            # SQLAlchemy's Enum raises a bare LookupError for unknown values
            if isinstance(err, (KeyError, IndexError)):
                raise
            unknown = UnknownStateError(self.entity, err.args[0] if err.args else None)
            log.error(f"{self.entity}.unknown_state", reason=unknown.message)
            return OperationResult.failure(unknown, entity_id)
        except SQLAlchemyError:
            log.error(f"{self.entity}.store_error", exc_info=True)
            raise

    async def _read(
        self,
        operation: str,
        entity_id: object,
        work: Callable[[AsyncSession], Awaitable[T]],
        default: T,
    ) -> T:
        """Run a read-only query; a bad id or an undecodable row yields `default`."""
        try:
            async with self._session_factory() as session:
                return await work(session)
        except GigflowError as err:
            logger.info(
                f"{self.entity}.read_refused",
                operation=operation,
                entity_id=str(entity_id),
                error=err.code,
                reason=err.message,
            )
            return default
        except LookupError as err:
            if isinstance(err, (KeyError, IndexError)):
                raise
            logger.error(
                f"{self.entity}.unknown_state",
                operation=operation,
                entity_id=str(entity_id),
                reason=str(err),
            )
            return default
