"""Tests for ProofService: submission rules, review, expiry sweep."""

from __future__ import annotations

import uuid

from conftest import REVIEWER, WORKER, accepted_task

from gigflow.domain.enums import ErrorKind, ProofQuality, ProofState, TaskState
from gigflow.schemas.evidence import ProofEvidence

DETAILED = "Assembled, levelled and anchored to the wall; photos of every step attached."


class TestSubmit:
    async def test_submit_records_quality(self, workflow) -> None:
        task_id = await accepted_task(workflow)

        result = await workflow.proofs.submit(
            task_id,
            WORKER,
            ProofEvidence(
                description=DETAILED,
                media_urls=["s3://p/before.jpg", "s3://p/after.jpg"],
                has_before_after=True,
            ),
        )

        assert result.ok
        assert result.new_state == "pending"
        assert result.data["quality"] == "comprehensive"
        proof = await workflow.proofs.get_proof(result.entity_id)
        assert proof.quality is ProofQuality.COMPREHENSIVE
        assert proof.media_urls == ["s3://p/before.jpg", "s3://p/after.jpg"]
        assert proof.expires_at is not None
        history = await workflow.proofs.get_history(result.entity_id)
        assert [(h.from_state, h.to_state) for h in history] == [(None, "pending")]

    async def test_second_active_submission_is_refused(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        first = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})

        second = await workflow.proofs.submit(task_id, WORKER, {"description": "done!"})

        assert second.kind is ErrorKind.DUPLICATE_ACTIVE_PROOF
        latest = await workflow.proofs.get_task_proof(task_id)
        assert str(latest.id) == first.entity_id

    async def test_reviewing_submission_still_blocks(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        first = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
        assert (await workflow.proofs.start_review(first.entity_id, REVIEWER)).ok

        second = await workflow.proofs.submit(task_id, WORKER)

        assert second.kind is ErrorKind.DUPLICATE_ACTIVE_PROOF

    async def test_rejection_allows_resubmission(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        first = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
        rejected = await workflow.proofs.reject(first.entity_id, "no photos", REVIEWER)
        assert rejected.ok

        second = await workflow.proofs.submit(
            task_id, WORKER, {"description": "done", "media_urls": ["s3://p/1.jpg"]}
        )

        assert second.ok
        assert second.data["quality"] == "standard"
        latest = await workflow.proofs.get_task_proof(task_id)
        assert str(latest.id) == second.entity_id
        old = await workflow.proofs.get_proof(first.entity_id)
        assert old.state is ProofState.REJECTED
        assert old.rejection_reason == "no photos"
        assert old.reviewed_by == REVIEWER

    async def test_accepted_task_refuses_new_submissions(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        first = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
        await workflow.proofs.accept(first.entity_id, REVIEWER)

        again = await workflow.proofs.submit(task_id, WORKER, {"description": "more"})

        assert again.kind is ErrorKind.ALREADY_ACCEPTED
        assert await workflow.proofs.has_accepted_proof(task_id)

    async def test_terminal_task_refuses_submission(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        await workflow.tasks.transition(task_id, TaskState.CANCELLED)

        result = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})

        assert result.kind is ErrorKind.TERMINAL_STATE_VIOLATION

    async def test_only_assignee_may_submit(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        result = await workflow.proofs.submit(task_id, "worker-2", {"description": "me too"})
        assert result.kind is ErrorKind.INVARIANT_VIOLATION

    async def test_invalid_evidence(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        result = await workflow.proofs.submit(task_id, WORKER, {"media_urls": "not-a-list"})
        assert result.kind is ErrorKind.INVARIANT_VIOLATION
        assert await workflow.proofs.get_task_proof(task_id) is None

    async def test_unknown_task(self, workflow) -> None:
        result = await workflow.proofs.submit(uuid.uuid4(), WORKER)
        assert result.kind is ErrorKind.NOT_FOUND


class TestReview:
    async def test_reject_requires_reason(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        proof = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})

        result = await workflow.proofs.reject(proof.entity_id, "   ")

        assert result.kind is ErrorKind.INVARIANT_VIOLATION
        assert result.new_state == "pending"

    async def test_review_then_accept(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        proof = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})

        await workflow.proofs.start_review(proof.entity_id, REVIEWER)
        accepted = await workflow.proofs.accept(proof.entity_id, REVIEWER)

        assert accepted.ok
        assert accepted.previous_state == "reviewing"
        view = await workflow.proofs.get_proof(proof.entity_id)
        assert view.reviewed_by == REVIEWER
        states = [h.to_state for h in await workflow.proofs.get_history(proof.entity_id)]
        assert states == ["pending", "reviewing", "accepted"]

    async def test_reviewing_cannot_expire(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        proof = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
        await workflow.proofs.start_review(proof.entity_id)

        result = await workflow.proofs.expire(proof.entity_id)

        assert result.kind is ErrorKind.INVALID_TRANSITION

    async def test_accepted_is_final(self, workflow) -> None:
        task_id = await accepted_task(workflow)
        proof = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
        await workflow.proofs.accept(proof.entity_id)

        result = await workflow.proofs.reject(proof.entity_id, "changed my mind")

        assert result.kind is ErrorKind.TERMINAL_STATE_VIOLATION


class TestExpirySweep:
    async def test_expires_overdue_pending(self, workflow, clock) -> None:
        task_id = await accepted_task(workflow)
        proof = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})

        assert await workflow.proofs.expire_overdue() == 0

        clock.advance(hours=25)
        assert await workflow.proofs.expire_overdue() == 1

        view = await workflow.proofs.get_proof(proof.entity_id)
        assert view.state is ProofState.EXPIRED
        job = await workflow.queue.get_job(f"send_notification:proof_expired:{proof.entity_id}")
        assert job.payload["recipient_id"] == WORKER
        resubmitted = await workflow.proofs.submit(task_id, WORKER, {"description": "again"})
        assert resubmitted.ok

    async def test_reviewing_is_not_swept(self, workflow, clock) -> None:
        task_id = await accepted_task(workflow)
        proof = await workflow.proofs.submit(task_id, WORKER, {"description": "done"})
        await workflow.proofs.start_review(proof.entity_id)

        clock.advance(hours=25)

        assert await workflow.proofs.expire_overdue() == 0
