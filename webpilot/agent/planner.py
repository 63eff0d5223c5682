from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Optional, Protocol

from pydantic import ValidationError

from webpilot.agent.events import EventSink, PlanCreated, emit
from webpilot.agent.prompts import PlannerPrompt
from webpilot.agent.views import PLAN_ACTIONS, ExecutionPlan, PlanningResult, PlanStep, StateSnapshot
from webpilot.exceptions import PlanningFailure
from webpilot.llm.base import has_credentials

if TYPE_CHECKING:
    from webpilot.agent.settings import AgentSettings
    from webpilot.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

FALLBACK_ISSUE = 'Planning generation failed, using fallback'
DEFAULT_CONFIDENCE = 0.5

_ACTION_ALIASES = {
    'waitforelement': 'wait',
    'waitfor': 'wait',
    'wait_for_element': 'wait',
    'sleep': 'wait',
    'getpagecontext': 'get_page_context',
    'getcontext': 'get_page_context',
    'getpage': 'get_page_context',
    'get_context': 'get_page_context',
    'clickelement': 'click',
    'click_element': 'click',
    'typetext': 'type',
    'type_text': 'type',
    'input_text': 'type',
    'fill': 'type',
    'scrollpage': 'scroll',
    'scroll_page': 'scroll',
    'goto': 'navigate',
    'go_to_url': 'navigate',
    'open': 'navigate',
    'open_url': 'navigate',
}

_KEY_ALIASES = {
    'expectedOutcome': 'expected_outcome',
    'validationCriteria': 'validation_criteria',
    'fallbackAction': 'fallback_action',
    'criticalPaths': 'critical_paths',
    'estimatedSteps': 'estimated_steps',
    'complexityScore': 'complexity_score',
    'potentialIssues': 'potential_issues',
    'optimizedQuery': 'optimized_query',
}


class PlanCache(Protocol):
    def get(self, key: str) -> Optional[PlanningResult]: ...

    def set(self, key: str, value: PlanningResult) -> None: ...


class InMemoryPlanCache:
    """Process-local LRU cache with a per-entry TTL."""

    def __init__(self, max_entries: int = 128, ttl_seconds: float = 600.0):
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._entries: OrderedDict[str, tuple[float, PlanningResult]] = OrderedDict()

    def get(self, key: str) -> Optional[PlanningResult]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if time.monotonic() - stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: str, value: PlanningResult) -> None:
        self._entries[key] = (time.monotonic(), value)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


def plan_cache_key(objective: str, state: Optional[StateSnapshot]) -> str:
    raw = f'{objective.strip()}\x00{state.cache_key() if state else ""}'
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


def build_fallback_plan(objective: str) -> PlanningResult:
    """Single state-check step, used whenever planning cannot produce a valid plan."""
    plan = ExecutionPlan(
        objective=objective,
        approach='Sequential execution with validation',
        steps=[
            PlanStep(
                step=1,
                action='get_page_context',
                target='current_page',
                reasoning='Need to understand current page state before proceeding',
                expected_outcome='Page context retrieved (title, text, links, forms)',
                validation_criteria='Context object returned with title and URL',
            )
        ],
        critical_paths=[1],
        estimated_steps=1,
        complexity_score=0.5,
        potential_issues=[FALLBACK_ISSUE],
        optimizations=[],
    )
    return PlanningResult(plan=plan, confidence=0.3)


def is_fallback_plan(result: PlanningResult) -> bool:
    return FALLBACK_ISSUE in result.plan.potential_issues


def _normalize_action(value: Any) -> str:
    raw = str(value or '').strip()
    if raw in PLAN_ACTIONS:
        return raw
    key = raw.lower().replace('-', '_')
    if key in PLAN_ACTIONS:
        return key
    return _ACTION_ALIASES.get(key, _ACTION_ALIASES.get(key.replace('_', ''), 'wait'))


def _rename_keys(obj: dict[str, Any]) -> dict[str, Any]:
    return {_KEY_ALIASES.get(k, k): v for k, v in obj.items()}


def _clamp_unit(value: Any, default: float) -> float:
    try:
        return min(1.0, max(0.0, float(value)))
    except (TypeError, ValueError):
        return default


def repair_planning_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Fix the usual shape problems in a model-written planning response.

    - confidence nested inside the plan is moved to the root; absent confidence defaults to 0.5
    - unknown step actions are mapped onto the allowed set
    - nested fallbacks are flattened to a single level
    - missing step numbers are filled from position
    """
    data = _rename_keys(dict(payload))
    plan = data.get('plan')
    if not isinstance(plan, dict):
        return data
    plan = _rename_keys(dict(plan))

    if 'confidence' in plan:
        nested = plan.pop('confidence')
        if data.get('confidence') is None:
            data['confidence'] = nested
            logger.debug('Planner repair: moved confidence from plan to root')
    if data.get('confidence') is None:
        data['confidence'] = DEFAULT_CONFIDENCE
        logger.debug('Planner repair: added default confidence')
    data['confidence'] = _clamp_unit(data['confidence'], DEFAULT_CONFIDENCE)

    if 'complexity_score' in plan:
        plan['complexity_score'] = _clamp_unit(plan['complexity_score'], 0.5)

    steps = plan.get('steps')
    if isinstance(steps, list):
        repaired_steps = []
        for index, step in enumerate(steps[:100], start=1):
            if not isinstance(step, dict):
                continue
            step = _rename_keys(dict(step))
            step['action'] = _normalize_action(step.get('action'))
            step.setdefault('step', index)
            step['target'] = str(step.get('target') or 'current_page')
            fallback = step.get('fallback_action')
            if isinstance(fallback, dict):
                fallback = _rename_keys(fallback)
                step['fallback_action'] = {
                    'action': _normalize_action(fallback.get('action')),
                    'target': str(fallback.get('target') or '1'),
                    'reasoning': str(fallback.get('reasoning') or 'Fallback action'),
                }
            elif fallback is not None:
                step['fallback_action'] = None
            repaired_steps.append(step)
        plan['steps'] = repaired_steps
        if not plan.get('estimated_steps'):
            plan['estimated_steps'] = max(1, len(repaired_steps))

    data['plan'] = plan
    return data


def parse_planning_completion(completion: Any) -> PlanningResult:
    """Coerce a structured-generation reply into a PlanningResult or raise PlanningFailure."""
    if isinstance(completion, PlanningResult):
        return completion
    if completion is None:
        raise PlanningFailure('Model returned no plan')
    if hasattr(completion, 'model_dump'):
        completion = completion.model_dump()
    if isinstance(completion, str):
        text = completion.strip()
        if text.startswith('```'):
            text = text.strip('`')
            text = text[text.find('{') :] if '{' in text else text
        try:
            completion = json.loads(text)
        except json.JSONDecodeError as e:
            raise PlanningFailure(f'Plan is not valid JSON: {e.msg}') from e
    if not isinstance(completion, dict):
        raise PlanningFailure(f'Unexpected plan payload type {type(completion).__name__}')
    try:
        return PlanningResult.model_validate(repair_planning_payload(completion))
    except ValidationError as e:
        raise PlanningFailure(f'Plan failed validation: {e.error_count()} error(s)') from e


class Planner:
    """Produces a structured ExecutionPlan for an objective.

    Never raises: any planning problem yields the single-step fallback plan.
    """

    def __init__(
        self,
        llm: Optional['BaseChatModel'],
        settings: Optional['AgentSettings'] = None,
        cache: Optional[PlanCache] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.llm = llm
        self.cache = cache
        self.event_sink = event_sink
        self.max_retries = settings.planner_max_retries if settings else 1
        self.timeout_seconds = settings.planner_timeout_seconds if settings else 30.0
        self.last_used_fallback = False

    async def plan(
        self,
        objective: str,
        state_snapshot: Optional[StateSnapshot] = None,
        run_id: str = 'planner',
    ) -> PlanningResult:
        key = plan_cache_key(objective, state_snapshot)
        if self.cache is not None:
            try:
                cached = self.cache.get(key)
            except Exception:
                logger.debug('Plan cache lookup failed (ignored)', exc_info=True)
                cached = None
            if cached is not None:
                logger.debug(f'Plan cache hit for objective {objective[:60]!r}')
                self.last_used_fallback = False
                return cached

        result = await self._generate(objective, state_snapshot)
        self.last_used_fallback = result is None
        if result is None:
            result = build_fallback_plan(objective)
        elif self.cache is not None:
            try:
                self.cache.set(key, result)
            except Exception:
                logger.debug('Plan cache store failed (ignored)', exc_info=True)

        logger.info(
            f'📋 Plan ready: {len(result.plan.steps)} step(s), confidence {round(result.confidence * 100)}%'
            + (' (fallback)' if self.last_used_fallback else '')
        )
        emit(
            self.event_sink,
            PlanCreated(
                run_id=run_id,
                confidence=result.confidence,
                steps=len(result.plan.steps),
                fallback=self.last_used_fallback,
            ),
        )
        return result

    async def _generate(self, objective: str, state: Optional[StateSnapshot]) -> Optional[PlanningResult]:
        if not has_credentials(self.llm):
            logger.warning('Planner has no model or credential configured; using fallback plan')
            return None

        messages = PlannerPrompt(objective, state).get_messages()
        attempts = max(1, self.max_retries + 1)
        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self.llm.ainvoke(messages, output_format=PlanningResult),
                    timeout=self.timeout_seconds,
                )
                return parse_planning_completion(getattr(response, 'completion', response))
            except asyncio.TimeoutError:
                logger.warning(f'Planning call timed out after {self.timeout_seconds}s (attempt {attempt}/{attempts})')
            except PlanningFailure as e:
                logger.warning(f'Planning attempt {attempt}/{attempts} unusable: {e}')
            except Exception as e:
                logger.warning(f'Planning attempt {attempt}/{attempts} failed: {type(e).__name__}: {e}')
        return None
