import asyncio

import pytest

from webpilot.agent import events
from webpilot.agent.concurrency import AbortSignal, race_abort
from webpilot.agent.events import RunFinished, TaskBoardUpdated, emit
from webpilot.exceptions import RunAborted


class AsyncSink:
    def __init__(self, fail=False):
        self.fail = fail
        self.events = []

    async def emit(self, name, payload):
        await asyncio.sleep(0)
        if self.fail:
            raise ConnectionError('collector unreachable')
        self.events.append((name, payload))


@pytest.mark.asyncio
async def test_async_sink_is_scheduled_not_awaited():
    sink = AsyncSink()
    emit(sink, RunFinished(run_id='run_1', status='COMPLETED'))
    assert sink.events == []
    await asyncio.sleep(0.01)
    assert sink.events[0][0] == 'run.finished'
    assert sink.events[0][1]['status'] == 'COMPLETED'


@pytest.mark.asyncio
async def test_failing_async_sink_is_ignored():
    emit(AsyncSink(fail=True), TaskBoardUpdated(run_id='run_1'))
    await asyncio.sleep(0.01)


def test_missing_sink_is_a_noop():
    emit(None, RunFinished(run_id='run_1'))


@pytest.mark.asyncio
async def test_race_abort_returns_result_when_not_aborted():
    signal = AbortSignal()

    async def work():
        await asyncio.sleep(0)
        return 42

    assert await race_abort(work(), signal) == 42
    assert await race_abort(work(), None) == 42


@pytest.mark.asyncio
async def test_race_abort_cancels_work():
    signal = AbortSignal()
    cancelled = asyncio.Event()

    async def work():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    asyncio.get_running_loop().call_later(0.02, signal.abort, 'stop now')
    with pytest.raises(RunAborted, match='stop now'):
        await race_abort(work(), signal)
    assert cancelled.is_set()
    assert signal.reason == 'stop now'


def test_abort_is_one_shot():
    signal = AbortSignal()
    signal.abort('first')
    signal.abort('second')
    assert signal.aborted
    assert signal.reason == 'first'
    with pytest.raises(RunAborted):
        signal.raise_if_aborted()


@pytest.mark.asyncio
async def test_pending_sink_task_is_held_until_done():
    sink = AsyncSink()
    before = set(events._pending_sink_tasks)
    emit(sink, RunFinished(run_id='run_1'))
    pending = events._pending_sink_tasks - before
    assert len(pending) == 1
    await asyncio.sleep(0.01)
    assert not pending & events._pending_sink_tasks
    assert [name for name, _ in sink.events] == ['run.finished']
