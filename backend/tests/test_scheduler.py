"""
Tests for the cron scheduler: claiming, running, rescheduling and recovery.
"""
import asyncio
from datetime import timedelta

import pytest

from core.errors import Conflict, Forbidden
from db.stores import cronjobs as cron_store
from services.cron_service import CronScheduler
from services.gateway_client import GatewayClient
from utils.clock import to_ms


async def _job(session_factory, owner, clock, **fields):
    values = dict(
        owner_id=owner.id,
        name="daily digest",
        schedule_type="every",
        schedule_interval_ms=60000,
        payload_kind="agentTurn",
        message="Summarise my inbox",
        next_run_at=clock.now,
    )
    values.update(fields)
    async with session_factory() as db:
        job = await cron_store.create_cronjob(db, **values)
        await db.commit()
        return job


async def _reload(session_factory, job_id):
    async with session_factory() as db:
        return await cron_store.get_cronjob(db, job_id)


async def _executions(session_factory, job_id):
    async with session_factory() as db:
        items, _ = await cron_store.list_executions(db, job_id)
        return items


class TestTick:
    """One poll: claim, run, record, reschedule."""

    @pytest.mark.asyncio
    async def test_every_job_reschedules_from_start_on_success(self, scheduler, session_factory, make_user, clock, fake_gateway):
        owner = await make_user()
        job = await _job(session_factory, owner, clock)
        started = clock.now

        assert await scheduler.tick() == 1

        current = await _reload(session_factory, job.id)
        assert current.running_at is None
        assert current.last_status == "ok"
        assert current.last_run_at == started
        assert current.next_run_at == started + timedelta(milliseconds=60000)

        [execution] = await _executions(session_factory, job.id)
        assert execution.status == cron_store.EXECUTION_SUCCESS
        assert execution.trigger == "schedule"
        assert execution.output == "ran agentTurn"

        [call] = fake_gateway.calls
        assert call["kind"] == "agentTurn"
        assert call["target"].url == owner.gateway_url
        assert call["body"]["sessionKey"] == f"cron:{job.id}"
        assert execution.total_tokens is None

    @pytest.mark.asyncio
    async def test_reported_usage_is_recorded(self, scheduler, session_factory, make_user, clock, fake_gateway):
        owner = await make_user()
        fake_gateway.usage = {"input_tokens": 1200, "output_tokens": 300, "total_tokens": 1500}
        job = await _job(session_factory, owner, clock)

        await scheduler.tick()

        [execution] = await _executions(session_factory, job.id)
        assert (execution.input_tokens, execution.output_tokens, execution.total_tokens) == (1200, 300, 1500)

    @pytest.mark.asyncio
    async def test_every_job_reschedules_from_start_on_failure(self, scheduler, session_factory, make_user, clock, fake_gateway):
        owner = await make_user()
        fake_gateway.fail(owner.gateway_url, message="upstream exploded")
        job = await _job(session_factory, owner, clock)
        started = clock.now

        await scheduler.tick()

        current = await _reload(session_factory, job.id)
        assert current.last_status == "error"
        assert "upstream exploded" in current.last_error
        assert current.next_run_at == started + timedelta(milliseconds=60000)
        [execution] = await _executions(session_factory, job.id)
        assert execution.status == cron_store.EXECUTION_FAILURE
        assert "upstream exploded" in execution.error

    @pytest.mark.asyncio
    async def test_job_is_not_run_twice_in_one_slot(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        job = await _job(session_factory, owner, clock)

        await scheduler.tick()
        assert await scheduler.tick() == 0
        clock.advance(seconds=60)
        assert await scheduler.tick() == 1
        assert len(await _executions(session_factory, job.id)) == 2

    @pytest.mark.asyncio
    async def test_cron_job_reschedules_after_finish(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        job = await _job(
            session_factory,
            owner,
            clock,
            schedule_type="cron",
            schedule_interval_ms=None,
            schedule_expr="0 * * * *",
        )

        await scheduler.tick()

        current = await _reload(session_factory, job.id)
        assert current.next_run_at == clock.now.replace(minute=0, second=0) + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_one_shot_runs_once_and_is_deleted(self, scheduler, session_factory, make_user, clock, fake_gateway):
        owner = await make_user()
        job = await _job(
            session_factory,
            owner,
            clock,
            schedule_type="at",
            schedule_interval_ms=None,
            schedule_at_ms=to_ms(clock.now),
            payload_kind="systemEvent",
            message="Stand-up in five minutes",
            delete_after_run=True,
        )

        assert await scheduler.tick() == 1
        clock.advance(minutes=5)
        assert await scheduler.tick() == 0

        assert await _reload(session_factory, job.id) is None
        [execution] = await _executions(session_factory, job.id)
        assert execution.status == cron_store.EXECUTION_SUCCESS
        assert fake_gateway.calls[0]["body"] == {"text": "Stand-up in five minutes", "mode": "next-heartbeat"}

    @pytest.mark.asyncio
    async def test_one_shot_without_delete_is_spent(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        job = await _job(
            session_factory,
            owner,
            clock,
            schedule_type="at",
            schedule_interval_ms=None,
            schedule_at_ms=to_ms(clock.now),
        )

        await scheduler.tick()

        current = await _reload(session_factory, job.id)
        assert current.enabled is True
        assert current.next_run_at is None
        assert current.last_status == "ok"

    @pytest.mark.asyncio
    async def test_missing_gateway_is_recorded_as_failure(self, session_factory, make_user, clock):
        owner = await make_user(gateway=False)
        job = await _job(session_factory, owner, clock)
        scheduler = CronScheduler(session_factory=session_factory, gateway=GatewayClient(), clock=clock)

        await scheduler.tick()

        [execution] = await _executions(session_factory, job.id)
        assert execution.status == cron_store.EXECUTION_FAILURE
        assert "not_configured" in execution.error
        assert (await _reload(session_factory, job.id)).running_at is None


class TestIsolation:
    """One job's failure never affects another's."""

    @pytest.mark.asyncio
    async def test_gateway_failure_is_isolated(self, scheduler, session_factory, make_user, clock, fake_gateway):
        broken = await make_user()
        healthy = await make_user()
        fake_gateway.fail(broken.gateway_url, code="auth_failed", message="invalid api key", status=401)
        bad_job = await _job(session_factory, broken, clock)
        good_job = await _job(session_factory, healthy, clock)

        assert await scheduler.tick() == 2

        assert (await _reload(session_factory, bad_job.id)).last_status == "error"
        assert (await _reload(session_factory, good_job.id)).last_status == "ok"

    @pytest.mark.asyncio
    async def test_crash_releases_claim(self, scheduler, session_factory, make_user, clock, fake_gateway):
        crashing = await make_user()
        healthy = await make_user()
        fake_gateway.errors[crashing.gateway_url] = RuntimeError("bug in dispatcher")
        bad_job = await _job(session_factory, crashing, clock)
        good_job = await _job(session_factory, healthy, clock)

        await scheduler.tick()

        bad = await _reload(session_factory, bad_job.id)
        assert bad.running_at is None
        assert bad.last_status == "error"
        assert bad.next_run_at == clock.now + timedelta(minutes=1)
        [execution] = await _executions(session_factory, bad_job.id)
        assert execution.status == cron_store.EXECUTION_FAILURE
        assert "bug in dispatcher" in execution.error
        assert (await _reload(session_factory, good_job.id)).last_status == "ok"


class TestRecovery:
    @pytest.mark.asyncio
    async def test_stale_claim_is_recovered_and_job_runs(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        abandoned_at = clock.now - timedelta(minutes=10)
        job = await _job(session_factory, owner, clock, next_run_at=abandoned_at, running_at=abandoned_at)
        async with session_factory() as db:
            await cron_store.start_execution(db, job.id, abandoned_at)
            await db.commit()

        assert await scheduler.tick() == 1

        executions = await _executions(session_factory, job.id)
        assert [e.status for e in executions] == [cron_store.EXECUTION_SUCCESS, cron_store.EXECUTION_FAILURE]
        assert (await _reload(session_factory, job.id)).running_at is None

    @pytest.mark.asyncio
    async def test_recent_claim_is_left_alone(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        job = await _job(session_factory, owner, clock, running_at=clock.now - timedelta(seconds=30))

        assert await scheduler.tick() == 0
        assert (await _reload(session_factory, job.id)).running_at is not None

    @pytest.mark.asyncio
    async def test_old_executions_are_pruned(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        job = await _job(session_factory, owner, clock, next_run_at=None)
        async with session_factory() as db:
            old = clock.now - timedelta(days=90)
            execution = await cron_store.start_execution(db, job.id, old)
            await cron_store.complete_execution(db, execution.id, cron_store.EXECUTION_SUCCESS, old)
            await db.commit()

        await scheduler.tick()

        assert await _executions(session_factory, job.id) == []


class TestManualControl:
    @pytest.mark.asyncio
    async def test_run_now(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        next_run = clock.now + timedelta(hours=3)
        job = await _job(
            session_factory,
            owner,
            clock,
            schedule_type="at",
            schedule_interval_ms=None,
            schedule_at_ms=to_ms(next_run),
            next_run_at=next_run,
            delete_after_run=True,
        )

        execution = await scheduler.run_now(owner.id, job.id)

        assert execution.trigger == "manual"
        assert execution.status == cron_store.EXECUTION_SUCCESS
        # a manual run neither consumes nor deletes the one-shot
        current = await _reload(session_factory, job.id)
        assert current is not None
        assert current.next_run_at == next_run
        assert current.running_at is None

    @pytest.mark.asyncio
    async def test_run_now_keeps_recurring_phase(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        next_run = clock.now + timedelta(seconds=45)
        every = await _job(session_factory, owner, clock, next_run_at=next_run)
        cron = await _job(
            session_factory,
            owner,
            clock,
            schedule_type="cron",
            schedule_interval_ms=None,
            schedule_expr="0 * * * *",
            next_run_at=next_run,
        )

        clock.advance(seconds=10)
        for job in (every, cron):
            await scheduler.run_now(owner.id, job.id)
            current = await _reload(session_factory, job.id)
            assert current.next_run_at == next_run
            assert current.last_status == "ok"

    @pytest.mark.asyncio
    async def test_run_now_while_running(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        job = await _job(session_factory, owner, clock, running_at=clock.now)

        with pytest.raises(Conflict):
            await scheduler.run_now(owner.id, job.id)

    @pytest.mark.asyncio
    async def test_run_now_requires_ownership(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        stranger = await make_user()
        job = await _job(session_factory, owner, clock)

        with pytest.raises(Forbidden):
            await scheduler.run_now(stranger.id, job.id)
        execution = await scheduler.run_now(None, job.id, is_admin=True)
        assert execution.status == cron_store.EXECUTION_SUCCESS

    @pytest.mark.asyncio
    async def test_stop_run(self, scheduler, session_factory, make_user, clock, fake_gateway):
        owner = await make_user()
        idle = await _job(session_factory, owner, clock)
        busy = await _job(session_factory, owner, clock, running_at=clock.now)

        assert await scheduler.stop_run(owner.id, idle.id) is False
        assert await scheduler.stop_run(owner.id, busy.id) is True
        assert fake_gateway.stops == [f"cron:{busy.id}"]

    @pytest.mark.asyncio
    async def test_status(self, scheduler, session_factory, make_user, clock):
        owner = await make_user()
        await _job(session_factory, owner, clock)
        await scheduler.tick()

        status = scheduler.status()
        assert status.running is False
        assert status.last_tick_at == clock.now
        assert status.last_tick_claimed == 1
        assert status.active_runs == 0


class TestPollLoop:
    """The background loop fires ticks on an interval and never overlaps them."""

    def _scheduler(self, session_factory, clock, fake_gateway):
        return CronScheduler(
            session_factory=session_factory,
            gateway=fake_gateway,
            clock=clock,
            interval_seconds=0.05,
            execution_timeout=1,
        )

    @pytest.mark.asyncio
    async def test_ticks_repeat_until_stopped(self, session_factory, clock, fake_gateway):
        scheduler = self._scheduler(session_factory, clock, fake_gateway)
        ticks = []

        async def quick_tick():
            ticks.append(clock.now)
            return 0

        scheduler.tick = quick_tick
        await scheduler.start()
        await scheduler.start()
        assert scheduler.running is True
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert len(ticks) >= 2
        assert scheduler.running is False
        count = len(ticks)
        await asyncio.sleep(0.15)
        assert len(ticks) == count

    @pytest.mark.asyncio
    async def test_tick_in_flight_is_not_overlapped(self, session_factory, clock, fake_gateway):
        scheduler = self._scheduler(session_factory, clock, fake_gateway)
        started = []
        release = asyncio.Event()

        async def slow_tick():
            started.append(clock.now)
            await release.wait()
            return 0

        scheduler.tick = slow_tick
        await scheduler.start()
        await asyncio.sleep(0.4)

        assert len(started) == 1
        assert scheduler.status().tick_in_progress is True

        release.set()
        await scheduler.stop()
        assert scheduler.running is False
        assert scheduler.status().tick_in_progress is False

    @pytest.mark.asyncio
    async def test_failing_tick_does_not_stop_the_loop(self, session_factory, clock, fake_gateway):
        scheduler = self._scheduler(session_factory, clock, fake_gateway)
        attempts = []

        async def broken_tick():
            attempts.append(clock.now)
            raise RuntimeError("database went away")

        scheduler.tick = broken_tick
        await scheduler.start()
        await asyncio.sleep(0.3)
        assert scheduler.running is True
        await scheduler.stop()

        assert len(attempts) >= 2
