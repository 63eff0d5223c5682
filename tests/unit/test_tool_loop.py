import asyncio

import pytest

from webpilot.agent.concurrency import AbortSignal
from webpilot.agent.orchestrator import StopInputs, ToolLoopEngine, _StopGuard, needs_state_check, resolve_url
from webpilot.agent.settings import AgentSettings
from webpilot.agent.state import AgentStatus, RunState
from webpilot.agent.views import ActionCallState, ExecutionPlan, ExecutionStep
from webpilot.controller.service import Controller
from webpilot.llm.messages import ToolMessage
from webpilot.llm.views import ChatInvokeUsage, ToolCallEmitted, ToolCallResult, ToolCallStarted, TurnFinished


class RecordingSink:
    def __init__(self):
        self.events = []

    def emit(self, name, payload):
        self.events.append((name, payload))

    def names(self):
        return [name for name, _ in self.events]


@pytest.fixture
def plan():
    return ExecutionPlan(objective='go to https://example.com', approach='a', steps=[{'step': 1, 'action': 'navigate', 'target': 'https://example.com'}])


@pytest.fixture
def registry(browser):
    registry = Controller(browser).registry

    @registry.action('Fails every time')
    async def flaky(params):
        raise RuntimeError('selector went stale')

    @registry.action('Hangs until cancelled')
    async def slow(params):
        await asyncio.sleep(30)

    return registry


def _inputs(**overrides):
    values = dict(
        turns_completed=1,
        max_steps=15,
        consecutive_failures=0,
        max_failures=3,
        repeated_navigations=0,
        max_repeated_navigations=3,
        total_tokens=0,
        max_total_tokens=None,
        turn_had_calls=True,
        continues=False,
    )
    values.update(overrides)
    return StopInputs(**values)


class TestStopGuard:
    def test_keeps_running_while_calls_are_made(self):
        assert _StopGuard().decide(_inputs()).stop is False

    def test_precedence(self):
        guard = _StopGuard()
        both = _inputs(consecutive_failures=3, repeated_navigations=3)
        assert guard.decide(both).reason == 'max_failures'
        assert guard.decide(_inputs(repeated_navigations=3, turn_had_calls=False)).reason == 'navigation_loop'
        assert guard.decide(_inputs(total_tokens=11, max_total_tokens=10)).reason == 'token_budget'
        assert guard.decide(_inputs(total_tokens=10, max_total_tokens=10)).stop is False
        assert guard.decide(_inputs(turn_had_calls=False, turns_completed=15)).status is AgentStatus.COMPLETED
        assert guard.decide(_inputs(turns_completed=15)).status is AgentStatus.MAX_STEPS_REACHED

    def test_continuation_signal_keeps_text_only_turn_going(self):
        assert _StopGuard().decide(_inputs(turn_had_calls=False, continues=True)).stop is False


def test_state_check_needed_unless_navigation_was_verified():
    settings = AgentSettings()
    assert needs_state_check(None, settings)
    assert needs_state_check([ExecutionStep(step=1, action='navigate', success=True)], settings)
    verified = [
        ExecutionStep(step=1, action='navigate', success=True),
        ExecutionStep(step=2, action='get_page_context', success=True),
    ]
    assert not needs_state_check(verified, settings)
    assert needs_state_check(verified + [ExecutionStep(step=3, action='navigate', success=True)], settings)


def test_resolve_url_order():
    assert resolve_url({'url': 'https://a'}, {'url': 'https://b'}) == 'https://a'
    assert resolve_url({}, {'url': 'https://b'}) == 'https://b'
    assert resolve_url(None, {'page_context': {'url': 'https://c'}}) == 'https://c'
    assert resolve_url(None, 'text') is None


class TestToolLoop:
    @pytest.mark.asyncio
    async def test_first_turn_pinned_to_state_check(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(text='Done.')])
        await ToolLoopEngine(llm).run(plan, 'system', registry)
        assert llm.stream_calls[0].tool_choice.mode == 'tool'
        assert llm.stream_calls[0].tool_choice.name == 'get_page_context'
        assert llm.stream_calls[1].tool_choice.mode == 'auto'
        assert 'navigate' in llm.stream_calls[1].tools

    @pytest.mark.asyncio
    async def test_no_pin_when_prior_steps_verified(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(text='Nothing to do.')])
        prior = [ExecutionStep(step=1, action='navigate', success=True), ExecutionStep(step=2, action='get_page_context', success=True)]
        await ToolLoopEngine(llm).run(plan, 'system', registry, prior_steps=prior)
        assert llm.stream_calls[0].tool_choice.mode == 'auto'

    @pytest.mark.asyncio
    async def test_trajectory_is_backfilled_and_final_state_set(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(
            turns=[
                turn(('get_page_context', {})),
                turn(('navigate', {'url': 'https://example.com'})),
                turn(('get_page_context', {})),
                turn(text='The page is open.'),
            ]
        )
        state = RunState(objective=plan.objective)
        result = await ToolLoopEngine(llm).run(plan, 'system', registry, run_state=state)

        assert [(s.step, s.action, s.success) for s in result.trajectory] == [
            (1, 'get_page_context', True),
            (2, 'navigate', True),
            (3, 'get_page_context', True),
        ]
        assert result.trajectory[1].target == 'https://example.com'
        assert result.trajectory[2].target == 'https://example.com'
        assert result.final_state == 'https://example.com'
        assert result.stop_reason == 'model_finished'
        assert result.text == 'The page is open.'
        assert state.status is AgentStatus.COMPLETED
        assert all(c.state.is_terminal for c in result.calls)

    @pytest.mark.asyncio
    async def test_tool_results_reach_the_next_turn(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('navigate', {'url': 'https://example.com'})), turn(text='ok')])
        prior = [ExecutionStep(step=1, action='navigate'), ExecutionStep(step=2, action='get_page_context')]
        await ToolLoopEngine(llm).run(plan, 'system', registry, prior_steps=prior)
        tool_messages = [m for m in llm.stream_calls[1].messages if isinstance(m, ToolMessage)]
        assert len(tool_messages) == 1
        assert '"url": "https://example.com"' in tool_messages[0].content

    @pytest.mark.asyncio
    async def test_calls_in_one_turn_run_in_emission_order(self, scripted_llm, turn, plan, registry, browser):
        llm = scripted_llm(
            turns=[
                turn(
                    ('navigate', {'url': 'https://example.com/a'}),
                    ('click', {'selector': '#one'}),
                    ('type', {'selector': '#q', 'text': 'pricing'}),
                    ('get_page_context', {}),
                ),
                turn(text='done'),
            ]
        )
        result = await ToolLoopEngine(llm).run(plan, 'system', registry)
        assert [s.action for s in result.trajectory] == ['navigate', 'click', 'type', 'get_page_context']
        assert browser.clicks == ['#one']
        assert browser.typed == [('#q', 'pricing', False)]
        assert result.final_state == 'https://example.com/a'

    @pytest.mark.asyncio
    async def test_prose_does_not_stop_a_turn_with_calls(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(
            turns=[
                turn(('get_page_context', {}), text='I have completed the task.'),
                turn(('scroll', {'direction': 'down'})),
                turn(text='Finished.'),
            ]
        )
        result = await ToolLoopEngine(llm).run(plan, 'system', registry)
        assert result.turns == 3
        assert len(result.trajectory) == 2

    @pytest.mark.asyncio
    async def test_continuation_flag_keeps_running(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(text='Thinking...', continues=True), turn(text='Done.')])
        result = await ToolLoopEngine(llm).run(plan, 'system', registry)
        assert result.turns == 3

    @pytest.mark.asyncio
    async def test_max_steps(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('scroll', {})) for _ in range(5)])
        state = RunState(objective='o')
        result = await ToolLoopEngine(llm, AgentSettings(max_steps=2)).run(plan, 'system', registry, run_state=state)
        assert result.turns == 2
        assert result.stop_reason == 'max_steps'
        assert state.status is AgentStatus.MAX_STEPS_REACHED

    @pytest.mark.asyncio
    async def test_max_consecutive_failures(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('get_page_context', {}))] + [turn(('flaky', {})) for _ in range(5)])
        state = RunState(objective='o')
        result = await ToolLoopEngine(llm, AgentSettings(max_failures=3)).run(plan, 'system', registry, run_state=state)
        assert result.stop_reason == 'max_failures'
        assert result.turns == 4
        assert state.status is AgentStatus.FAILED
        assert state.last_error.startswith('flaky failed: RuntimeError')

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(
            turns=[
                turn(('flaky', {})),
                turn(('flaky', {})),
                turn(('scroll', {})),
                turn(('flaky', {})),
                turn(('flaky', {})),
                turn(text='giving up'),
            ]
        )
        settings = AgentSettings(max_failures=3, state_check_action='scroll')
        result = await ToolLoopEngine(llm, settings).run(plan, 'system', registry)
        assert result.stop_reason == 'model_finished'

    @pytest.mark.asyncio
    async def test_navigation_loop(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(
            turns=[turn(('get_page_context', {}))] + [turn(('navigate', {'url': 'https://example.com'})) for _ in range(5)]
        )
        result = await ToolLoopEngine(llm).run(plan, 'system', registry)
        assert result.stop_reason == 'navigation_loop'
        assert result.turns == 4

    @pytest.mark.asyncio
    async def test_token_budget(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('get_page_context', {}), tokens=30) for _ in range(5)])
        result = await ToolLoopEngine(llm, AgentSettings(max_total_tokens=50)).run(plan, 'system', registry)
        assert result.stop_reason == 'token_budget'
        assert result.usage.total_tokens == 60

    @pytest.mark.asyncio
    async def test_unknown_tool_continues(self, scripted_llm, turn, plan, registry):
        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(('solve_captcha', {})), turn(text='stuck')])
        result = await ToolLoopEngine(llm).run(plan, 'system', registry)
        failed = [c for c in result.calls if c.name == 'solve_captcha'][0]
        assert failed.error_kind == 'unknown_tool'
        assert result.turns == 3

    @pytest.mark.asyncio
    async def test_provider_side_results_are_not_executed_again(self, scripted_llm, plan, registry, browser):
        events = [
            ToolCallStarted(call_id='p1', name='navigate'),
            ToolCallEmitted(call_id='p1', name='navigate', args={'url': 'https://example.com'}),
            ToolCallResult(call_id='p1', name='navigate', output={'url': 'https://example.com'}),
            TurnFinished('tool-calls', ChatInvokeUsage()),
        ]
        llm = scripted_llm(turns=[events])
        prior = [ExecutionStep(step=1, action='navigate'), ExecutionStep(step=2, action='get_page_context')]
        result = await ToolLoopEngine(llm, AgentSettings(max_steps=2)).run(plan, 'system', registry, prior_steps=prior)
        assert browser.visited == []
        assert result.trajectory[0].success

    @pytest.mark.asyncio
    async def test_incomplete_arguments_fail_the_call(self, scripted_llm, plan, registry):
        events = [ToolCallStarted(call_id='s1', name='click'), TurnFinished('length', ChatInvokeUsage())]
        llm = scripted_llm(turns=[events, []])
        prior = [ExecutionStep(step=1, action='navigate'), ExecutionStep(step=2, action='get_page_context')]
        result = await ToolLoopEngine(llm).run(plan, 'system', registry, prior_steps=prior)
        assert result.calls[0].error_kind == 'invalid_arguments'
        assert result.trajectory[0].success is False

    @pytest.mark.asyncio
    async def test_call_without_id_is_tracked_as_one_call(self, scripted_llm, plan, registry, browser):
        events = [
            ToolCallStarted(call_id='', name='navigate'),
            ToolCallEmitted(call_id='', name='navigate', args={'url': 'https://example.com'}),
            TurnFinished('tool-calls', ChatInvokeUsage()),
        ]
        llm = scripted_llm(turns=[events, []])
        prior = [ExecutionStep(step=1, action='navigate'), ExecutionStep(step=2, action='get_page_context')]
        result = await ToolLoopEngine(llm).run(plan, 'system', registry, prior_steps=prior)
        assert len(result.calls) == 1
        assert result.calls[0].id
        assert result.calls[0].state is ActionCallState.OUTPUT_AVAILABLE
        assert [(s.action, s.success) for s in result.trajectory] == [('navigate', True)]
        assert browser.visited == ['https://example.com']

    @pytest.mark.asyncio
    async def test_unfinished_call_keeps_its_place_in_the_trajectory(self, scripted_llm, plan, registry):
        events = [
            ToolCallStarted(call_id='s1', name='click'),
            ToolCallStarted(call_id='n1', name='navigate'),
            ToolCallEmitted(call_id='n1', name='navigate', args={'url': 'https://example.com'}),
            TurnFinished('length', ChatInvokeUsage()),
        ]
        llm = scripted_llm(turns=[events, []])
        prior = [ExecutionStep(step=1, action='navigate'), ExecutionStep(step=2, action='get_page_context')]
        result = await ToolLoopEngine(llm).run(plan, 'system', registry, prior_steps=prior)
        assert [(s.step, s.action, s.success) for s in result.trajectory] == [(1, 'click', False), (2, 'navigate', True)]
        assert [c.error_kind for c in result.calls] == ['invalid_arguments', None]

    @pytest.mark.asyncio
    async def test_repeated_emit_updates_arguments(self, scripted_llm, plan, registry, browser):
        events = [
            ToolCallStarted(call_id='c1', name='navigate'),
            ToolCallEmitted(call_id='c1', name='navigate', args={'url': 'https://example.com'}),
            ToolCallEmitted(call_id='c1', name='navigate', args={'url': 'https://example.org'}),
            TurnFinished('tool-calls', ChatInvokeUsage()),
        ]
        llm = scripted_llm(turns=[events, []])
        prior = [ExecutionStep(step=1, action='navigate'), ExecutionStep(step=2, action='get_page_context')]
        result = await ToolLoopEngine(llm).run(plan, 'system', registry, prior_steps=prior)
        assert len(result.calls) == 1
        assert result.calls[0].args == {'url': 'https://example.org'}
        assert browser.visited == ['https://example.org']
        assert [(s.target, s.success) for s in result.trajectory] == [('https://example.org', True)]

    @pytest.mark.asyncio
    async def test_events_are_emitted(self, scripted_llm, turn, plan, registry):
        sink = RecordingSink()
        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(text='ok')])
        await ToolLoopEngine(llm, event_sink=sink).run(plan, 'system', registry)
        assert sink.names() == ['action.resolved', 'turn.completed', 'turn.completed', 'run.finished']

    @pytest.mark.asyncio
    async def test_broken_sink_never_fails_the_run(self, scripted_llm, turn, plan, registry):
        class BrokenSink:
            def emit(self, name, payload):
                raise ConnectionError('telemetry offline')

        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(text='ok')])
        result = await ToolLoopEngine(llm, event_sink=BrokenSink()).run(plan, 'system', registry)
        assert result.stop_reason == 'model_finished'

    @pytest.mark.asyncio
    async def test_provider_exception_propagates(self, scripted_llm, plan, registry):
        llm = scripted_llm(turns=[[RuntimeError('stream reset')]])
        state = RunState(objective='o')
        with pytest.raises(RuntimeError, match='stream reset'):
            await ToolLoopEngine(llm).run(plan, 'system', registry, run_state=state)
        assert state.status is AgentStatus.FAILED

    @pytest.mark.asyncio
    async def test_transcript_saved_when_configured(self, scripted_llm, turn, plan, registry, tmp_path):
        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(text='ok')])
        state = RunState(objective='o')
        settings = AgentSettings(save_conversation_path=str(tmp_path))
        await ToolLoopEngine(llm, settings).run(plan, 'system', registry, run_state=state)
        saved = tmp_path / f'conversation_{state.run_id}.txt'
        assert saved.exists()
        assert '-> get_page_context' in saved.read_text(encoding='utf-8')


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_while_waiting_for_model(self, scripted_llm, turn, plan, registry, hang):
        signal = AbortSignal()
        llm = scripted_llm(turns=[turn(('get_page_context', {})), [hang]])
        asyncio.get_running_loop().call_later(0.05, signal.abort, 'user cancelled')
        state = RunState(objective='o')
        result = await asyncio.wait_for(
            ToolLoopEngine(llm).run(plan, 'system', registry, abort_signal=signal, run_state=state), timeout=5
        )
        assert result.aborted
        assert result.stop_reason == 'aborted'
        assert state.status is AgentStatus.ABORTED
        assert [s.success for s in result.trajectory] == [True]

    @pytest.mark.asyncio
    async def test_abort_during_executor(self, scripted_llm, turn, plan, registry):
        signal = AbortSignal()
        llm = scripted_llm(turns=[turn(('get_page_context', {})), turn(('slow', {}), ('scroll', {}))])
        asyncio.get_running_loop().call_later(0.05, signal.abort)
        result = await asyncio.wait_for(ToolLoopEngine(llm).run(plan, 'system', registry, abort_signal=signal), timeout=5)

        assert result.finish_reason == 'aborted'
        assert [(s.action, s.success) for s in result.trajectory] == [
            ('get_page_context', True),
            ('slow', False),
            ('scroll', False),
        ]
        assert [c.error_kind for c in result.calls[1:]] == ['aborted', 'aborted']
        assert all(c.state is ActionCallState.OUTPUT_ERROR for c in result.calls[1:])

    @pytest.mark.asyncio
    async def test_aborted_turn_counts_its_tokens(self, scripted_llm, turn, plan, registry):
        signal = AbortSignal()
        llm = scripted_llm(turns=[turn(('get_page_context', {}), tokens=10), turn(('slow', {}), tokens=25)])
        asyncio.get_running_loop().call_later(0.05, signal.abort)
        state = RunState(objective='o')
        result = await asyncio.wait_for(
            ToolLoopEngine(llm).run(plan, 'system', registry, abort_signal=signal, run_state=state), timeout=5
        )
        assert result.aborted
        assert result.usage.total_tokens == 35
        assert state.total_tokens == 35

    @pytest.mark.asyncio
    async def test_signal_aborted_before_start(self, scripted_llm, turn, plan, registry):
        signal = AbortSignal()
        signal.abort('never mind')
        llm = scripted_llm(turns=[turn(('get_page_context', {}))])
        result = await ToolLoopEngine(llm).run(plan, 'system', registry, abort_signal=signal)
        assert result.aborted
        assert result.trajectory == []
