"""Payout transfers through an external payment processor.

The processor is behind a Protocol so production wiring can supply a real
gateway client; SimulatedPaymentProcessor generates fake transfer ids for
local runs and tests.

PayoutService.process() is the idempotent side effect behind the
process_payout job: one transfer per escrow, keyed by the escrow id both
at the processor and in the payout_transfers table.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from gigflow.domain.enums import EscrowState
from gigflow.domain.exceptions import SideEffectError
from gigflow.domain.job_protocol import utc_now
from gigflow.domain.money import split_payout
from gigflow.infrastructure.database.engine import session_scope
from gigflow.infrastructure.database.repositories import EscrowRepository, LedgerRepository
from gigflow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from gigflow.config import Settings

logger = get_logger(__name__)


@runtime_checkable
class PaymentProcessor(Protocol):
    """Outbound transfer initiation. Must be idempotent on idempotency_key."""

    async def create_transfer(
        self,
        *,
        destination: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> str:
        """Initiate a transfer and return the processor's transfer id."""
        ...


class SimulatedPaymentProcessor:
    """Generates fake transfer ids; repeats the id for a repeated key."""

    def __init__(self) -> None:
        self._transfers: dict[str, str] = {}
        self.calls = 0

    async def create_transfer(
        self,
        *,
        destination: str,
        amount_cents: int,
        idempotency_key: str,
    ) -> str:
        self.calls += 1
        transfer_id = self._transfers.get(idempotency_key)
        if transfer_id is None:
            transfer_id = "tr_sim_" + uuid.uuid4().hex[:24]
            self._transfers[idempotency_key] = transfer_id
            logger.info(
                "payment.transfer_simulated",
                transfer_id=transfer_id,
                amount_cents=amount_cents,
                destination=destination,
            )
        return transfer_id


@dataclass(frozen=True)
class PayoutOutcome:
    task_id: uuid.UUID
    transfer_id: str
    net_cents: int
    fee_cents: int
    already_paid: bool = False


class PayoutService:
    """Pays the worker their share of a released escrow."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        processor: PaymentProcessor,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._processor = processor
        self._clock = clock

    async def process(self, task_id: uuid.UUID, worker_id: str) -> PayoutOutcome:
        # Step 1: check the escrow and any transfer already recorded
        async with session_scope(self._session_factory) as session:
            escrow = await EscrowRepository(session).get_by_task(task_id)
            if escrow is None or escrow.state is not EscrowState.RELEASED:
                raise SideEffectError(f"Escrow for task {task_id} is not released")
            existing = await LedgerRepository(session).get_transfer(task_id)
            if existing is not None:
                logger.info("payment.payout_already_recorded", task_id=str(task_id))
                return PayoutOutcome(
                    task_id=task_id,
                    transfer_id=existing.transfer_id,
                    net_cents=existing.net_cents,
                    fee_cents=existing.fee_cents,
                    already_paid=True,
                )
            split = split_payout(escrow.amount_cents, self._settings.platform_fee_bps)

        # Step 2: call the processor outside any transaction
        transfer_id = await self._processor.create_transfer(
            destination=worker_id,
            amount_cents=split.net_cents,
            idempotency_key=str(task_id),
        )

        # Step 3: record the transfer on the ledger and the escrow lock
        async with session_scope(self._session_factory) as session:
            ledger = LedgerRepository(session)
            inserted = await ledger.add_transfer_if_absent(
                {
                    "id": uuid.uuid4(),
                    "escrow_id": task_id,
                    "worker_id": worker_id,
                    "gross_cents": split.gross_cents,
                    "fee_cents": split.fee_cents,
                    "net_cents": split.net_cents,
                    "transfer_id": transfer_id,
                    "created_at": self._clock(),
                }
            )
            escrow = await EscrowRepository(session).get_for_update(task_id)
            if escrow is not None and escrow.transfer_id is None:
                escrow.transfer_id = transfer_id

        logger.info(
            "payment.payout_recorded",
            task_id=str(task_id),
            worker_id=worker_id,
            transfer_id=transfer_id,
            net_cents=split.net_cents,
            fee_cents=split.fee_cents,
            inserted=inserted,
        )
        return PayoutOutcome(
            task_id=task_id,
            transfer_id=transfer_id,
            net_cents=split.net_cents,
            fee_cents=split.fee_cents,
            already_paid=not inserted,
        )
