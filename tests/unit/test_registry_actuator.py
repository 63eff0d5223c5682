import pytest
from pydantic import BaseModel

from webpilot.agent.actuator import ActionActuator, reported_failure
from webpilot.agent.views import ActionCall, ActionCallState, ActionResult
from webpilot.controller.registry import Registry
from webpilot.exceptions import AgentConfigurationError, ArgumentSchemaError, UnknownToolError


class Echo(BaseModel):
    text: str


@pytest.fixture
def registry():
    registry = Registry()

    @registry.action('Echo text back', param_model=Echo)
    async def echo(params: Echo):
        return {'success': True, 'echo': params.text}

    @registry.action('Always raises')
    async def explode(params):
        raise TimeoutError('page did not respond')

    @registry.action('Reports failure in its result')
    async def refuse(params):
        return ActionResult(success=False, error='element not found')

    return registry


class TestRegistry:
    def test_duplicate_names_are_rejected(self, registry):
        with pytest.raises(AgentConfigurationError):

            @registry.action('Again', param_model=Echo, name='echo')
            async def echo_again(params):
                return None

    def test_sync_executor_is_rejected(self, registry):
        with pytest.raises(AgentConfigurationError):

            @registry.action('Sync')
            def sync_action(params):
                return None

    def test_excluded_actions_are_skipped(self):
        registry = Registry(exclude_actions=['hidden'])

        @registry.action('Hidden')
        async def hidden(params):
            return None

        assert 'hidden' not in registry
        assert len(registry) == 0

    def test_unknown_lookup_raises(self, registry):
        with pytest.raises(UnknownToolError):
            registry.get('teleport')

    def test_tool_specs_and_prompt(self, registry):
        specs = {s.name: s for s in registry.tool_specs()}
        assert set(specs) == {'echo', 'explode', 'refuse'}
        assert specs['echo'].parameters['required'] == ['text']
        assert 'echo(text: string): Echo text back' in registry.get_prompt_description()

    def test_validate_args_accepts_json_text(self, registry):
        params = registry.get('echo').validate_args('{"text": "hi"}')
        assert params.text == 'hi'
        with pytest.raises(ArgumentSchemaError):
            registry.get('echo').validate_args('{"text": ')
        with pytest.raises(ArgumentSchemaError):
            registry.get('echo').validate_args(['hi'])


def _call(name, args):
    call = ActionCall(name=name, args=args)
    call.transition(ActionCallState.INPUT_AVAILABLE)
    return call


class TestActuator:
    @pytest.mark.asyncio
    async def test_success(self, registry):
        call = await ActionActuator(registry).execute(_call('echo', {'text': 'hi'}))
        assert call.state is ActionCallState.OUTPUT_AVAILABLE
        assert call.outcome.output == {'success': True, 'echo': 'hi'}

    @pytest.mark.asyncio
    async def test_unknown_tool_is_not_repaired(self, registry, scripted_llm):
        llm = scripted_llm(responses={'Echo': [{'text': 'never used'}]})
        call = await ActionActuator(registry, llm=llm).execute(_call('teleport', {'to': 'mars'}))
        assert call.state is ActionCallState.OUTPUT_ERROR
        assert call.error_kind == 'unknown_tool'
        assert llm.invoke_calls == []
        assert not call.repaired

    @pytest.mark.asyncio
    async def test_single_repair_fixes_arguments(self, registry, scripted_llm):
        llm = scripted_llm(responses={'Echo': [{'text': 'fixed'}]})
        call = await ActionActuator(registry, llm=llm).execute(_call('echo', {'txt': 'typo'}))
        assert call.succeeded
        assert call.repaired
        assert call.args == {'text': 'fixed'}
        assert llm.invoked_with('Echo') == 1

    @pytest.mark.asyncio
    async def test_second_schema_failure_is_invalid_arguments(self, registry, scripted_llm):
        llm = scripted_llm(responses={'Echo': [{'wrong': 1}, {'text': 'second repair would work'}]})
        call = await ActionActuator(registry, llm=llm).execute(_call('echo', {'txt': 'typo'}))
        assert call.error_kind == 'invalid_arguments'
        assert call.repaired
        assert llm.invoked_with('Echo') == 1

    @pytest.mark.asyncio
    async def test_repair_request_error_is_invalid_arguments(self, registry, scripted_llm):
        llm = scripted_llm(responses={'Echo': [RuntimeError('provider down')]})
        call = await ActionActuator(registry, llm=llm).execute(_call('echo', None))
        assert call.error_kind == 'invalid_arguments'

    @pytest.mark.asyncio
    async def test_no_model_means_no_repair(self, registry):
        call = await ActionActuator(registry).execute(_call('echo', {}))
        assert call.error_kind == 'invalid_arguments'
        assert not call.repaired

    @pytest.mark.asyncio
    async def test_executor_exception(self, registry):
        call = await ActionActuator(registry).execute(_call('explode', {}))
        assert call.error_kind == 'executor_error'
        assert 'TimeoutError: page did not respond' in call.outcome.message

    @pytest.mark.asyncio
    async def test_explicit_failure_result(self, registry):
        call = await ActionActuator(registry).execute(_call('refuse', {}))
        assert call.error_kind == 'reported_failure'
        assert call.outcome.message == 'element not found'
        assert call.outcome.output == {'success': False, 'error': 'element not found'}


def test_reported_failure_only_on_explicit_false():
    assert reported_failure({'success': False}) == 'action reported failure'
    assert reported_failure({'success': None, 'error': 'ignored'}) is None
    assert reported_failure('plain text output') is None
    assert reported_failure(ActionResult(success=False, error='nope')) == 'nope'
