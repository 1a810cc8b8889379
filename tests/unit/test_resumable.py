"""Unit tests for ResumableOrchestrator entry points."""

import pytest

from devnet_upgrader.errors import (
    ActiveUpgradeExists,
    ChainUnavailable,
    InconsistentStateError,
    UpgradeInProgress,
    UpgradeNotFound,
)
from devnet_upgrader.models.status import PhaseEnum

from conftest import make_record


@pytest.mark.unit
class TestStart:

    @pytest.mark.asyncio
    async def test_start_runs_to_completion(self, services, spec, fake_devnet):
        record = await services.resumable.start(spec)

        assert record.phase == PhaseEnum.COMPLETED
        assert record.attempts == 1
        assert record.previous_attempt is None
        assert len(fake_devnet.submissions) == 1

    @pytest.mark.asyncio
    async def test_start_refused_while_active(self, services, spec, fake_devnet):
        await services.store.save(make_record(phase=PhaseEnum.AWAITING_HEIGHT, proposal_id=1))

        with pytest.raises(ActiveUpgradeExists, match="awaiting_height"):
            await services.resumable.start(spec)
        assert fake_devnet.submissions == []

    @pytest.mark.asyncio
    async def test_start_after_terminal_archives_previous(self, services, spec):
        previous = make_record(phase=PhaseEnum.VOTE_REJECTED, proposal_id=1)
        await services.store.save(previous)

        record = await services.resumable.start(spec)

        assert record.previous_attempt == previous.name
        history = await services.store.history(spec.devnet)
        assert [r.name for r in history] == [previous.name]


@pytest.mark.unit
class TestResume:

    @pytest.mark.asyncio
    async def test_resume_unknown_devnet(self, services, devnet_ref):
        with pytest.raises(UpgradeNotFound):
            await services.resumable.resume(devnet_ref)

    @pytest.mark.asyncio
    async def test_resume_terminal_is_noop(self, services):
        record = make_record(phase=PhaseEnum.COMPLETED, attempts=1)
        await services.store.save(record)

        result = await services.resumable.resume(record.ref)

        assert result == record
        assert (await services.store.load(record.ref)).attempts == 1

    @pytest.mark.asyncio
    async def test_resume_adopts_lost_proposal(self, services, fake_devnet):
        """Submission happened but its checkpoint was lost; no second proposal."""
        record = make_record(attempts=1)
        await services.store.save(record)
        await fake_devnet.submit_proposal(record.ref, fake_devnet.keys[0], "v2", "t", "d", 300, None)

        result = await services.resumable.resume(record.ref)

        assert result.phase == PhaseEnum.COMPLETED
        assert result.proposal_id == 1
        assert result.target_height == 300
        assert result.attempts == 2
        assert len(fake_devnet.submissions) == 1

    @pytest.mark.asyncio
    async def test_resume_behind_fails_record(self, services, fake_devnet):
        record = make_record(phase=PhaseEnum.VOTING, proposal_id=5)
        await services.store.save(record)

        with pytest.raises(InconsistentStateError):
            await services.resumable.resume(record.ref)

        persisted = await services.store.load(record.ref)
        assert persisted.phase == PhaseEnum.FAILED
        assert persisted.error_category == "inconsistent"

    @pytest.mark.asyncio
    async def test_resume_chain_down_keeps_checkpoint(self, services, fake_devnet):
        fake_devnet.chain_down = True
        record = make_record(phase=PhaseEnum.PROPOSED, proposal_id=1, attempts=1)
        await services.store.save(record)

        with pytest.raises(ChainUnavailable):
            await services.resumable.resume(record.ref)

        persisted = await services.store.load(record.ref)
        assert persisted.phase == PhaseEnum.PROPOSED
        assert persisted.attempts == 2
        assert persisted.last_error == "connection refused"

    @pytest.mark.asyncio
    async def test_resume_refused_while_held(self, services):
        record = make_record()
        await services.store.save(record)

        async with services.locks.hold(record.ref):
            with pytest.raises(UpgradeInProgress):
                await services.resumable.resume(record.ref)


@pytest.mark.unit
class TestRetryCancelStatus:

    @pytest.mark.asyncio
    async def test_retry_requires_terminal(self, services):
        await services.store.save(make_record(phase=PhaseEnum.VOTING, proposal_id=1))

        with pytest.raises(ActiveUpgradeExists):
            await services.resumable.retry(make_record().ref)

    @pytest.mark.asyncio
    async def test_retry_submits_new_proposal(self, services, fake_devnet):
        failed = make_record(phase=PhaseEnum.FAILED, proposal_id=1, attempts=3)
        await services.store.save(failed)
        await fake_devnet.submit_proposal(failed.ref, fake_devnet.keys[0], "v2", "t", "d", 300, None)

        result = await services.resumable.retry(failed.ref)

        assert result.phase == PhaseEnum.COMPLETED
        assert result.proposal_id == 2
        assert result.attempts == 1
        assert result.previous_attempt == failed.name
        assert len(fake_devnet.submissions) == 2
        history = await services.store.history(failed.ref)
        assert history[0].phase == PhaseEnum.FAILED

    @pytest.mark.asyncio
    async def test_cancel_idle_record(self, services):
        record = make_record(phase=PhaseEnum.AWAITING_HEIGHT, proposal_id=1)
        await services.store.save(record)

        result = await services.resumable.cancel(record.ref, "maintenance window closed")

        assert result.phase == PhaseEnum.CANCELLED
        persisted = await services.store.load(record.ref)
        assert persisted.phase == PhaseEnum.CANCELLED
        assert persisted.history[-1].reason == "maintenance window closed"
        assert persisted.completed_at is not None

    @pytest.mark.asyncio
    async def test_cancel_terminal_is_noop(self, services):
        record = make_record(phase=PhaseEnum.COMPLETED)
        await services.store.save(record)

        result = await services.resumable.cancel(record.ref)

        assert result.phase == PhaseEnum.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, services, devnet_ref):
        with pytest.raises(UpgradeNotFound):
            await services.resumable.cancel(devnet_ref)

    @pytest.mark.asyncio
    async def test_status(self, services, devnet_ref):
        with pytest.raises(UpgradeNotFound):
            await services.resumable.status(devnet_ref)

        record = make_record()
        await services.store.save(record)
        assert (await services.resumable.status(devnet_ref)).name == record.name
