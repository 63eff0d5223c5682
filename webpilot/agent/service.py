from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from webpilot.agent.concurrency import race_abort
from webpilot.agent.events import EventSink, LoggingEventSink, RetryScheduled, RunStarted, emit
from webpilot.agent.orchestrator import ToolLoopEngine
from webpilot.agent.planner import PlanCache, Planner, build_fallback_plan
from webpilot.agent.prompts import SystemPrompt, format_plan_as_instructions
from webpilot.agent.recovery import RecoveryAgent
from webpilot.agent.settings import AgentSettings
from webpilot.agent.state import RunState, agent_log
from webpilot.agent.summarizer import Summarizer
from webpilot.agent.tasks.service import TaskBoard, register_task_board
from webpilot.agent.views import RETRY_MARKER, RunContext, RunOutcome, StateSnapshot
from webpilot.exceptions import RunAborted
from webpilot.llm.messages import UserMessage
from webpilot.timing import elapsed_since, monotonic_seconds

if TYPE_CHECKING:
    from webpilot.agent.message_manager.service import ConversationStore
    from webpilot.controller.registry.service import Registry
    from webpilot.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

StateProbe = Callable[[], Awaitable[Optional[StateSnapshot]]]


class RetryCoordinator:
    """Public entry point: plan, run the tool loop, summarize, and retry once when incomplete."""

    settings: AgentSettings

    def __init__(
        self,
        llm: 'BaseChatModel',
        registry: 'Registry',
        settings: Optional[AgentSettings] = None,
        planner_llm: Optional['BaseChatModel'] = None,
        event_sink: Optional[EventSink] = None,
        conversation_store: Optional['ConversationStore'] = None,
        plan_cache: Optional[PlanCache] = None,
        state_probe: Optional[StateProbe] = None,
    ):
        self.llm = llm
        self.registry = registry
        self.settings = settings or AgentSettings()
        self.event_sink = event_sink if event_sink is not None else LoggingEventSink()
        self.state_probe = state_probe
        self.planner = Planner(planner_llm or llm, self.settings, cache=plan_cache, event_sink=self.event_sink)
        self.engine = ToolLoopEngine(
            llm,
            self.settings,
            event_sink=self.event_sink,
            conversation_store=conversation_store,
        )
        self.summarizer = Summarizer(
            llm,
            navigation_actions=self.settings.navigation_actions,
            timeout_seconds=self.settings.summary_timeout_seconds,
        )
        self.recovery = RecoveryAgent(llm, timeout_seconds=self.settings.recovery_timeout_seconds)

    async def execute(self, objective: str, context: Optional[RunContext] = None) -> RunOutcome:
        context = context or RunContext()
        first = await self._run_once(objective, context, attempt=1)
        if not self._should_retry(objective, first, context):
            return first

        recovery = await self.recovery.build(
            objective,
            first.trajectory,
            first.summary,
            final_state=first.final_state,
            error=first.error,
        )
        logger.info(f'🔁 Objective not completed ({first.status}); retrying once: {recovery.adjusted_objective[:120]!r}')
        emit(
            self.event_sink,
            RetryScheduled(run_id='coordinator', adjusted_objective=recovery.adjusted_objective, rationale=recovery.rationale),
        )

        carried = StateSnapshot(url=first.final_state) if first.final_state else context.initial_state
        retry_context = RunContext(
            initial_state=carried,
            abort_signal=context.abort_signal,
            retry_depth=context.retry_depth + 1,
            conversation_id=context.conversation_id,
        )
        second = await self._run_once(recovery.adjusted_objective, retry_context, attempt=2)
        return second.model_copy(update={'is_retry': True, 'attempt': 2, 'recovery': recovery})

    def _should_retry(self, objective: str, outcome: RunOutcome, context: RunContext) -> bool:
        if not self.settings.enable_auto_retry or outcome.task_completed:
            return False
        if RETRY_MARKER in objective or context.retry_depth > 0:
            logger.debug('Retry suppressed: objective is already a retry')
            return False
        if outcome.finish_reason == 'aborted':
            logger.debug('Retry suppressed: run was aborted by the caller')
            return False
        return True

    async def _probe(self) -> Optional[StateSnapshot]:
        if self.state_probe is None:
            return None
        try:
            return await self.state_probe()
        except Exception:
            logger.debug('State probe failed (ignored)', exc_info=True)
            return None

    async def _run_once(self, objective: str, context: RunContext, attempt: int) -> RunOutcome:
        started = monotonic_seconds()
        state = RunState(objective=objective)
        initial = context.initial_state or await self._probe()

        if self.settings.use_planner:
            planning_call = self.planner.plan(objective, initial, run_id=state.run_id)
            try:
                planning = await race_abort(planning_call, context.abort_signal)
            except RunAborted:
                planning_call.close()
                # the tool loop observes the same signal and closes the run as aborted
                logger.debug('Planning interrupted by abort; continuing with the fallback plan')
                planning = build_fallback_plan(objective)
        else:
            planning = build_fallback_plan(objective)

        emit(
            self.event_sink,
            RunStarted(run_id=state.run_id, objective=objective, attempt=attempt, plan_steps=len(planning.plan.steps)),
        )

        registry = self.registry
        if self.settings.enable_task_board:
            board = TaskBoard(
                run_id=state.run_id,
                event_sink=self.event_sink,
                on_change=lambda tasks: setattr(state, 'tasks', [t.model_dump() for t in tasks]),
            )
            registry = register_task_board(self.registry, board)

        system_prompt = SystemPrompt(
            registry.get_prompt_description(),
            state_check_action=self.settings.state_check_action,
            extend_system_message=self.settings.extend_system_message,
            plan_instructions=format_plan_as_instructions(planning.plan),
        )
        messages = [UserMessage(content=objective)]
        if initial is not None and initial.url:
            messages.insert(0, UserMessage(content=f'Current page: {initial.url}' + (f' ({initial.title})' if initial.title else '')))

        loop = await self.engine.run(
            planning.plan,
            system_prompt,
            registry,
            abort_signal=context.abort_signal,
            messages=messages,
            prior_steps=context.prior_steps,
            run_state=state,
        )

        final_state = loop.final_state
        if final_state is None and not loop.aborted:
            probed = await self._probe()
            final_state = probed.url if probed is not None else None

        narrative = None
        if self.settings.generate_narrative and not loop.aborted:
            narrative = await self.summarizer.generate_narrative(objective, loop.trajectory, loop.text)

        duration = elapsed_since(started)
        report = self.summarizer.summarize(loop.trajectory, final_state, narrative=narrative, duration=duration)
        agent_log(
            logging.INFO,
            state.run_id,
            loop.turns,
            f'📄 Run {attempt} finished: {report.status} ({report.successful_steps}/{report.total_steps} steps ok, '
            f'stop={loop.stop_reason}, finish={loop.finish_reason})',
        )

        return RunOutcome(
            success=loop.finish_reason != 'aborted',
            status=report.status,
            summary=report.summary,
            task_completed=report.task_completed,
            plan=planning.plan,
            planning_confidence=planning.confidence,
            trajectory=loop.trajectory,
            usage=loop.usage,
            finish_reason=loop.finish_reason,
            duration=duration,
            final_state=final_state,
            error=state.last_error,
            attempt=attempt,
            tasks=loop.tasks,
            text=loop.text,
        )
