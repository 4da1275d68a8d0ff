"""Application services — the Task, Escrow and Proof state machines."""

from gigflow.services.escrow_service import EscrowService
from gigflow.services.proof_service import ProofService
from gigflow.services.task_service import TaskService

__all__ = ["EscrowService", "ProofService", "TaskService"]
