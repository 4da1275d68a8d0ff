"""Discriminated results returned by every public workflow operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gigflow.domain.enums import ErrorKind
    from gigflow.domain.exceptions import GigflowError


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a state machine or queue operation.

    Attributes:
        ok: Whether the operation was applied.
        entity_id: Id of the task, proof or job the operation acted on.
        previous_state: State before the operation (current state on failure).
        new_state: State after the operation (unchanged on failure).
        kind: ErrorKind of the refusal; None on success.
        message: Human-readable reason, e.g. "cannot complete: proof not yet accepted".
        data: Extra operation-specific values (quality tier, job ids, ...).
    """

    ok: bool
    entity_id: str | None = None
    previous_state: str | None = None
    new_state: str | None = None
    kind: ErrorKind | None = None
    message: str = ""
    data: dict = field(default_factory=dict)

    @classmethod
    def success(
        cls,
        entity_id: object,
        previous_state: str | None,
        new_state: str | None,
        **data: object,
    ) -> OperationResult:
        return cls(
            ok=True,
            entity_id=str(entity_id),
            previous_state=previous_state,
            new_state=new_state,
            data=dict(data),
        )

    @classmethod
    def failure(
        cls,
        error: GigflowError,
        entity_id: object | None = None,
        current_state: str | None = None,
    ) -> OperationResult:
        if current_state is None:
            current_state = getattr(error, "current_state", None)
        return cls(
            ok=False,
            entity_id=str(entity_id) if entity_id is not None else None,
            previous_state=current_state,
            new_state=current_state,
            kind=error.kind,
            message=error.message,
        )

    def to_dict(self) -> dict:
        """Serialize for logging or an outer API layer."""
        return {
            "ok": self.ok,
            "entity_id": self.entity_id,
            "previous_state": self.previous_state,
            "new_state": self.new_state,
            "error": self.kind.value if self.kind else None,
            "message": self.message,
            "data": self.data,
        }


@dataclass(frozen=True)
class DrainReport:
    """Summary of one JobQueue.drain() cycle."""

    claimed: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0
    # outcome not recorded (store error or claim lost); left for recover_stale
    unrecorded: int = 0
    job_ids: tuple[str, ...] = ()
