import asyncio
from datetime import timedelta

import pytest

from services.delay_scheduler_service import DelaySchedulerService
from models.response.execution_result import ExecutionResult

from flow_fixtures import ORG_ID, CONNECTION_ID, delay_graph


class _StubEngine:
    def __init__(self, status="completed", error=None):
        self.status = status
        self.error = error
        self.calls = []

    async def resume_from_timer(self, conversation_id, session_id, node_id):
        self.calls.append((conversation_id, session_id, node_id))
        if self.error is not None:
            raise self.error
        return ExecutionResult(status=self.status, session_id=session_id)


@pytest.fixture
def scheduler_for(log_util, flow_db, clock):
    def _build(engine):
        return DelaySchedulerService(log_util=log_util, flow_db=flow_db, flow_execution_service=engine, clock=clock)
    return _build


async def _schedule(scheduler, clock, seconds=0):
    return await scheduler.schedule_at(
        conversation_id="conv_1",
        session_id="session_1",
        flow_id="flow_1",
        node_id="wait",
        resume_at=clock.now + timedelta(seconds=seconds)
    )


async def test_due_job_is_delivered_and_marked(scheduler_for, flow_db, clock):
    engine = _StubEngine()
    scheduler = scheduler_for(engine)
    await _schedule(scheduler, clock, seconds=3)

    assert await scheduler.process_due_delays() == 0
    clock.advance(3)
    assert await scheduler.process_due_delays() == 1
    assert engine.calls == [("conv_1", "session_1", "wait")]
    assert await flow_db.get_pending_delays(clock.now) == []


async def test_conflicting_resume_stays_pending(scheduler_for, flow_db, clock):
    scheduler = scheduler_for(_StubEngine(status="conflict"))
    await _schedule(scheduler, clock)

    assert await scheduler.process_due_delays() == 0
    assert len(await flow_db.get_pending_delays(clock.now)) == 1


async def test_failing_resume_stays_pending(scheduler_for, flow_db, clock):
    scheduler = scheduler_for(_StubEngine(error=RuntimeError("store offline")))
    await _schedule(scheduler, clock)

    assert await scheduler.process_due_delays() == 0
    assert len(await flow_db.get_pending_delays(clock.now)) == 1


async def test_without_engine_nothing_is_processed(scheduler_for, flow_db, clock):
    scheduler = scheduler_for(None)
    await _schedule(scheduler, clock)
    assert await scheduler.process_due_delays() == 0


async def test_background_loop_resumes_session(engine, make_flow, clock, channel):
    await make_flow(*delay_graph(seconds=5))
    suspended = await engine.handle_inbound_message(ORG_ID, CONNECTION_ID, "conv_loop", "oi")
    assert suspended.status == "waiting_timer"

    clock.advance(5)
    scheduler = engine.delay_scheduler_service
    scheduler.check_interval_seconds = 0.01
    await scheduler.start()
    try:
        for _ in range(200):
            if channel.texts():
                break
            await asyncio.sleep(0.01)
    finally:
        await scheduler.stop()

    assert channel.texts() == ["Pronto"]
    assert scheduler._task is None
