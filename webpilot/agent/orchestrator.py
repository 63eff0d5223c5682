from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Union

from webpilot.agent.actuator import ActionActuator, reported_failure, to_jsonable
from webpilot.agent.concurrency import AbortSignal, anext_or_abort
from webpilot.agent.events import ActionResolved, EventSink, LoggingEventSink, RunFinished, TurnCompleted, emit
from webpilot.agent.message_manager.utils import save_conversation
from webpilot.agent.prompts import SystemPrompt
from webpilot.agent.settings import AgentSettings
from webpilot.agent.state import AgentStatus, RunState, agent_log
from webpilot.agent.step_summary import log_turn_summary
from webpilot.agent.views import (
    ActionCall,
    ActionCallState,
    ActionFailure,
    ActionSuccess,
    ExecutionPlan,
    ExecutionStep,
    LoopResult,
    UsageSummary,
    new_call_id,
)
from webpilot.exceptions import RunAborted
from webpilot.llm.messages import AssistantMessage, BaseMessage, ToolCallRef, ToolMessage, UserMessage, coerce_messages
from webpilot.llm.views import (
    ChatInvokeUsage,
    TextDelta,
    ToolCallEmitted,
    ToolCallResult,
    ToolCallStarted,
    ToolChoice,
    TurnFinished,
)
from webpilot.timing import now_utc_iso

if TYPE_CHECKING:
    from webpilot.agent.message_manager.service import ConversationStore
    from webpilot.controller.registry.service import Registry
    from webpilot.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


# --- Stop conditions ---


@dataclass(frozen=True)
class StopInputs:
    turns_completed: int
    max_steps: int
    consecutive_failures: int
    max_failures: int
    repeated_navigations: int
    max_repeated_navigations: int
    total_tokens: int
    max_total_tokens: Optional[int]
    turn_had_calls: bool
    continues: bool


@dataclass(frozen=True)
class StopDecision:
    stop: bool
    reason: Optional[str]
    status: AgentStatus


class _StopGuard:
    """Evaluates the run's stop conditions after every closed turn.

    Confident-sounding text alone never stops a run; only a turn with no calls and
    no continuation signal does.
    """

    def decide(self, inp: StopInputs) -> StopDecision:
        if inp.consecutive_failures >= inp.max_failures:
            return StopDecision(True, 'max_failures', AgentStatus.FAILED)
        if inp.repeated_navigations >= inp.max_repeated_navigations:
            return StopDecision(True, 'navigation_loop', AgentStatus.STOPPED)
        if inp.max_total_tokens is not None and inp.total_tokens > inp.max_total_tokens:
            return StopDecision(True, 'token_budget', AgentStatus.STOPPED)
        if not inp.turn_had_calls and not inp.continues:
            return StopDecision(True, 'model_finished', AgentStatus.COMPLETED)
        if inp.turns_completed >= inp.max_steps:
            return StopDecision(True, 'max_steps', AgentStatus.MAX_STEPS_REACHED)
        return StopDecision(False, None, AgentStatus.RUNNING)


# --- Target resolution ---


def _string_at(obj: Any, *keys: str) -> Optional[str]:
    if not isinstance(obj, dict):
        return None
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def resolve_url(args: Any, output: Any) -> Optional[str]:
    """URL a call acted on: args.url, then output.url, then output.page_context.url."""
    url = _string_at(args, 'url')
    if url:
        return url
    url = _string_at(output, 'url')
    if url:
        return url
    if isinstance(output, dict):
        context = output.get('page_context') or output.get('pageContext')
        return _string_at(context, 'url')
    return None


def resolve_target(args: Any, output: Any) -> Optional[str]:
    return resolve_url(args, output) or _string_at(args, 'target', 'selector', 'query')


def needs_state_check(prior_steps: Optional[list[ExecutionStep]], settings: AgentSettings) -> bool:
    """True unless the prior steps contain a navigation followed by a state check."""
    actions = [s.action for s in (prior_steps or [])]
    last_nav = max((i for i, a in enumerate(actions) if settings.is_navigation(a)), default=-1)
    if last_nav < 0:
        return True
    return not any(settings.is_state_check(a) for a in actions[last_nav + 1 :])


@dataclass
class _Turn:
    index: int
    text: str = ''
    calls: dict[str, ActionCall] = field(default_factory=dict)
    provider_results: dict[str, ToolCallResult] = field(default_factory=dict)
    finish_reason: str = 'stop'
    usage: ChatInvokeUsage = field(default_factory=ChatInvokeUsage)
    continues: bool = False


class ToolLoopEngine:
    """Drives one run's model-turn / action-call / action-result cycle."""

    def __init__(
        self,
        llm: 'BaseChatModel',
        settings: Optional[AgentSettings] = None,
        event_sink: Optional[EventSink] = None,
        conversation_store: Optional['ConversationStore'] = None,
    ):
        self.llm = llm
        self.settings = settings or AgentSettings()
        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self.conversation_store = conversation_store
        self._guard = _StopGuard()

    async def run(
        self,
        plan: ExecutionPlan,
        system_prompt: Union[str, SystemPrompt],
        registry: 'Registry',
        abort_signal: Optional[AbortSignal] = None,
        messages: Optional[list[Any]] = None,
        prior_steps: Optional[list[ExecutionStep]] = None,
        run_state: Optional[RunState] = None,
    ) -> LoopResult:
        state = run_state or RunState(objective=plan.objective)
        state.set_status(AgentStatus.RUNNING)
        system = system_prompt.text if isinstance(system_prompt, SystemPrompt) else system_prompt
        history: list[BaseMessage] = coerce_messages(messages or [UserMessage(content=plan.objective)])
        transcript: list[BaseMessage] = []
        trajectory: list[ExecutionStep] = []
        all_calls: list[ActionCall] = []
        usage = UsageSummary()
        texts: list[str] = []
        finish_reason = 'stop'
        stop_reason: Optional[str] = None
        actuator = ActionActuator(registry, llm=self.llm)
        tools = registry.tool_specs()
        pin_first = needs_state_check(prior_steps, self.settings)
        if pin_first and self.settings.state_check_action not in registry:
            logger.warning(f'State-check action {self.settings.state_check_action!r} is not registered; first turn is not pinned')
            pin_first = False

        if self.conversation_store is not None:
            self.conversation_store.push(AssistantMessage(content=''))

        agent_log(logging.INFO, state.run_id, 0, f'🚀 Tool loop started: {len(plan.steps)} planned step(s), {len(tools)} tool(s)')

        turn_index = 0
        try:
            while True:
                turn = _Turn(index=turn_index)
                choice = ToolChoice.pinned(self.settings.state_check_action) if turn_index == 0 and pin_first else ToolChoice.auto()
                try:
                    await self._stream_turn(turn, system, history, tools, choice, abort_signal, trajectory, all_calls)
                    await self._execute_pending(turn, actuator, abort_signal, trajectory, state)
                except RunAborted:
                    usage.add(turn.usage)
                    state.total_tokens = usage.total_tokens
                    self._abort_unresolved(turn, trajectory, state)
                    self._close_turn(turn, history, transcript, texts, state)
                    finish_reason = 'aborted'
                    stop_reason = 'aborted'
                    state.set_status(AgentStatus.ABORTED)
                    agent_log(logging.WARNING, state.run_id, turn_index + 1, '🛑 Run aborted by caller')
                    break

                finish_reason = turn.finish_reason
                usage.add(turn.usage)
                state.total_tokens = usage.total_tokens
                state.n_turns = turn_index + 1
                self._close_turn(turn, history, transcript, texts, state)

                decision = self._guard.decide(
                    StopInputs(
                        turns_completed=state.n_turns,
                        max_steps=self.settings.max_steps,
                        consecutive_failures=state.consecutive_failures,
                        max_failures=self.settings.max_failures,
                        repeated_navigations=state.repeated_navigation_count(),
                        max_repeated_navigations=self.settings.max_repeated_navigations,
                        total_tokens=state.total_tokens,
                        max_total_tokens=self.settings.max_total_tokens,
                        turn_had_calls=bool(turn.calls),
                        continues=turn.continues,
                    )
                )
                log_turn_summary(state.n_turns, list(turn.calls.values()), state, finish_reason, decision.reason)
                emit(
                    self.event_sink,
                    TurnCompleted(
                        run_id=state.run_id,
                        turn=state.n_turns,
                        calls=len(turn.calls),
                        finish_reason=finish_reason,
                        total_tokens=state.total_tokens,
                    ),
                )
                if decision.stop:
                    stop_reason = decision.reason
                    state.set_status(decision.status)
                    if decision.status is not AgentStatus.COMPLETED:
                        agent_log(logging.INFO, state.run_id, state.n_turns, f'⏹️ Stopping tool loop: {decision.reason}')
                    break
                turn_index += 1
        except Exception as e:
            state.set_status(AgentStatus.FAILED)
            state.last_error = f'{type(e).__name__}: {e}'
            agent_log(logging.ERROR, state.run_id, state.n_turns, f'❌ Tool loop failed: {state.last_error}')
            raise

        result = LoopResult(
            trajectory=trajectory,
            transcript=transcript,
            calls=all_calls,
            usage=usage,
            finish_reason=finish_reason,
            stop_reason=stop_reason,
            text='\n'.join(t for t in texts if t).strip(),
            final_state=state.final_state,
            turns=state.n_turns,
            tasks=list(state.tasks),
        )
        emit(
            self.event_sink,
            RunFinished(
                run_id=state.run_id,
                status=state.status.value,
                finish_reason=finish_reason,
                stop_reason=stop_reason,
                total_steps=len(trajectory),
            ),
        )
        await self._persist_conversation(state, history, result)
        return result

    async def _stream_turn(
        self,
        turn: _Turn,
        system: str,
        history: list[BaseMessage],
        tools: list[Any],
        choice: ToolChoice,
        abort_signal: Optional[AbortSignal],
        trajectory: list[ExecutionStep],
        all_calls: list[ActionCall],
    ) -> None:
        stream = self.llm.astream(system, list(history), tools, choice, abort_signal)
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    event = await anext_or_abort(iterator, abort_signal)
                except StopAsyncIteration:
                    break

                if isinstance(event, TextDelta):
                    turn.text += event.text
                elif isinstance(event, ToolCallStarted):
                    if not event.call_id or event.call_id not in turn.calls:
                        self._open_call(turn, event.call_id, event.name, trajectory, all_calls)
                elif isinstance(event, ToolCallEmitted):
                    call = self._find_call(turn, event.call_id)
                    if call is None:
                        call = self._open_call(turn, event.call_id, event.name, trajectory, all_calls)
                    call.name = event.name or call.name
                    call.args = event.args
                    if call.state is ActionCallState.INPUT_STREAMING:
                        call.transition(ActionCallState.INPUT_AVAILABLE)
                    # a repeated emit only refreshes the arguments
                    self._refresh_placeholder(call, trajectory)
                elif isinstance(event, ToolCallResult):
                    call_id = event.call_id or next(
                        (c.id for c in reversed(turn.calls.values()) if c.id not in turn.provider_results), ''
                    )
                    turn.provider_results[call_id] = event
                elif isinstance(event, TurnFinished):
                    turn.finish_reason = event.finish_reason or turn.finish_reason
                    turn.usage = event.usage or turn.usage
                    turn.continues = bool(event.continues)
        finally:
            aclose = getattr(iterator, 'aclose', None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug('Closing provider stream failed (ignored)', exc_info=True)

    @staticmethod
    def _find_call(turn: _Turn, call_id: str) -> Optional[ActionCall]:
        """Look a call up by id; an id-less event belongs to the latest call still streaming."""
        if call_id:
            return turn.calls.get(call_id)
        for call in reversed(turn.calls.values()):
            if call.state is ActionCallState.INPUT_STREAMING:
                return call
        return None

    def _open_call(
        self,
        turn: _Turn,
        call_id: str,
        name: str,
        trajectory: list[ExecutionStep],
        all_calls: list[ActionCall],
    ) -> ActionCall:
        call = ActionCall(id=call_id or new_call_id(), name=name)
        turn.calls[call.id] = call
        all_calls.append(call)
        self._record_placeholder(call, trajectory)
        return call

    @staticmethod
    def _record_placeholder(call: ActionCall, trajectory: list[ExecutionStep]) -> None:
        args = call.args if isinstance(call.args, dict) else None
        trajectory.append(
            ExecutionStep(
                step=len(trajectory) + 1,
                action=call.name,
                target=resolve_target(args, None),
                success=False,
                call_id=call.id,
            )
        )

    @staticmethod
    def _refresh_placeholder(call: ActionCall, trajectory: list[ExecutionStep]) -> None:
        args = call.args if isinstance(call.args, dict) else None
        for entry in trajectory:
            if entry.call_id == call.id:
                entry.action = call.name
                entry.target = resolve_target(args, None) or entry.target
                return

    async def _execute_pending(
        self,
        turn: _Turn,
        actuator: ActionActuator,
        abort_signal: Optional[AbortSignal],
        trajectory: list[ExecutionStep],
        state: RunState,
    ) -> None:
        """Resolve every call of the turn in emission order."""
        for call in turn.calls.values():
            if call.state is ActionCallState.INPUT_STREAMING:
                # Arguments never finished streaming
                actuator._fail(call, 'invalid_arguments', 'tool call arguments were incomplete when the turn ended')
            elif call.id in turn.provider_results:
                self._apply_provider_result(call, turn.provider_results[call.id])
            elif call.state is ActionCallState.INPUT_AVAILABLE:
                if abort_signal is not None:
                    abort_signal.raise_if_aborted()
                try:
                    await actuator.execute(call, abort_signal)
                except RunAborted:
                    self._after_call(call, trajectory, state)
                    raise
            self._after_call(call, trajectory, state)

    @staticmethod
    def _apply_provider_result(call: ActionCall, result: ToolCallResult) -> None:
        output = to_jsonable(result.output)
        error = reported_failure(result.output)
        if result.is_error or error is not None:
            call.transition(
                ActionCallState.OUTPUT_ERROR,
                ActionFailure(
                    error_kind='executor_error' if result.is_error else 'reported_failure',
                    message=error or str(result.output),
                    output=output,
                ),
            )
        else:
            call.transition(ActionCallState.OUTPUT_AVAILABLE, ActionSuccess(output=output))

    def _after_call(self, call: ActionCall, trajectory: list[ExecutionStep], state: RunState) -> None:
        """Backfill the trajectory entry and update stop-guard counters for a resolved call."""
        if not call.state.is_terminal:
            return
        output = call.outcome.output if call.outcome is not None else None
        args = call.args if isinstance(call.args, dict) else None
        url = resolve_url(args, output)
        for entry in trajectory:
            if entry.call_id == call.id:
                entry.success = call.succeeded
                entry.target = url or entry.target or resolve_target(args, output)
                break

        message = call.outcome.message if isinstance(call.outcome, ActionFailure) else None
        state.record_call(call.succeeded, message)
        if self.settings.is_navigation(call.name):
            state.record_navigation(resolve_url(args, None) or url)
        if call.succeeded and url:
            state.last_resolved_url = url
            if self.settings.is_state_check(call.name):
                state.final_state = url

        emit(
            self.event_sink,
            ActionResolved(
                run_id=state.run_id,
                call_id=call.id,
                action=call.name,
                state=call.state.value,
                error_kind=call.error_kind,
                duration=call.duration,
            ),
        )

    def _abort_unresolved(self, turn: _Turn, trajectory: list[ExecutionStep], state: RunState) -> None:
        recorded = {e.call_id for e in trajectory}
        for call in turn.calls.values():
            if call.state.is_terminal:
                continue
            if call.id not in recorded:
                self._record_placeholder(call, trajectory)
            ActionActuator._fail(call, 'aborted', 'run aborted before the call resolved')
            self._after_call(call, trajectory, state)

    def _close_turn(
        self,
        turn: _Turn,
        history: list[BaseMessage],
        transcript: list[BaseMessage],
        texts: list[str],
        state: RunState,
    ) -> None:
        """Append the turn's messages and flush the conversation store once."""
        refs = [
            ToolCallRef(id=c.id, name=c.name, args=c.args if isinstance(c.args, dict) else {})
            for c in turn.calls.values()
        ]
        turn_messages: list[BaseMessage] = []
        if turn.text or refs:
            turn_messages.append(AssistantMessage(content=turn.text, tool_calls=refs))
        for call in turn.calls.values():
            if isinstance(call.outcome, ActionFailure):
                payload: Any = {'success': False, 'error': call.outcome.message, 'error_kind': call.outcome.error_kind}
                turn_messages.append(ToolMessage.from_result(call.id, call.name, payload, is_error=True))
            elif isinstance(call.outcome, ActionSuccess):
                turn_messages.append(ToolMessage.from_result(call.id, call.name, call.outcome.output))
        history.extend(turn_messages)
        transcript.extend(turn_messages)
        if turn.text:
            texts.append(turn.text)

        if self.conversation_store is not None:
            text = '\n'.join(t for t in texts if t)
            tool_calls = [m for msg in transcript if isinstance(msg, AssistantMessage) for m in msg.tool_calls]

            def merge(message: Any) -> Any:
                if isinstance(message, AssistantMessage):
                    return message.model_copy(update={'content': text, 'tool_calls': tool_calls})
                if isinstance(message, dict):
                    return {**message, 'content': text, 'tool_calls': [r.model_dump() for r in tool_calls]}
                return message

            try:
                self.conversation_store.update_last(merge)
            except Exception:
                agent_log(logging.WARNING, state.run_id, turn.index + 1, 'Conversation store update failed (ignored)', exc_info=True)

    async def _persist_conversation(self, state: RunState, history: list[BaseMessage], result: LoopResult) -> Optional[Path]:
        target_dir = self.settings.save_conversation_path
        if not target_dir:
            return None
        target = Path(target_dir) / f'conversation_{state.run_id}.txt'
        try:
            return await save_conversation(
                history,
                target,
                header={
                    'run_id': state.run_id,
                    'saved_at': now_utc_iso(),
                    'status': state.status.value,
                    'finish_reason': result.finish_reason,
                    'stop_reason': result.stop_reason,
                },
            )
        except Exception:
            logger.debug('Conversation save failed (ignored)', exc_info=True)
            return None
