from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing_extensions import Annotated

from webpilot.exceptions import InvalidStateTransition
from webpilot.llm.views import ChatInvokeUsage
from webpilot.timing import elapsed_since, monotonic_seconds

# Marker prefixed to every synthesized retry objective. A marked objective is never retried again.
RETRY_MARKER = '[AUTO-RETRY]'

PlanAction = Literal['navigate', 'click', 'type', 'scroll', 'wait', 'get_page_context']
PLAN_ACTIONS: tuple[str, ...] = ('navigate', 'click', 'type', 'scroll', 'wait', 'get_page_context')


# --- Planning ---


class FallbackAction(BaseModel):
    """Alternative for a plan step. Flat: a fallback never carries its own fallback."""

    action: PlanAction
    target: str
    reasoning: str = ''


class PlanStep(BaseModel):
    step: int = Field(..., ge=1, description='1-based position in the plan')
    action: PlanAction
    target: str = Field(..., description='URL, selector or element description the action applies to')
    reasoning: str = ''
    expected_outcome: str = ''
    validation_criteria: Optional[str] = None
    fallback_action: Optional[FallbackAction] = None


class ExecutionPlan(BaseModel):
    """Structured, ordered plan for one run. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    objective: str
    approach: str
    steps: list[PlanStep] = Field(..., min_length=1, max_length=100)
    critical_paths: list[int] = Field(default_factory=list, description='1-based indices of steps that must succeed')
    estimated_steps: int = Field(1, ge=1)
    complexity_score: float = Field(0.5, ge=0.0, le=1.0)
    potential_issues: list[str] = Field(default_factory=list)
    optimizations: list[str] = Field(default_factory=list)


class PlanningResult(BaseModel):
    plan: ExecutionPlan
    confidence: float = Field(..., ge=0.0, le=1.0)
    optimized_query: Optional[str] = None
    gaps: Optional[list[str]] = None


# --- Action calls ---


def new_call_id() -> str:
    return f'call_{uuid.uuid4().hex[:12]}'


class ActionCallState(str, Enum):
    INPUT_STREAMING = 'input-streaming'
    INPUT_AVAILABLE = 'input-available'
    OUTPUT_AVAILABLE = 'output-available'
    OUTPUT_ERROR = 'output-error'

    @property
    def is_terminal(self) -> bool:
        return self in (ActionCallState.OUTPUT_AVAILABLE, ActionCallState.OUTPUT_ERROR)


_ALLOWED_TRANSITIONS: dict[ActionCallState, frozenset[ActionCallState]] = {
    ActionCallState.INPUT_STREAMING: frozenset({ActionCallState.INPUT_AVAILABLE}),
    ActionCallState.INPUT_AVAILABLE: frozenset({ActionCallState.OUTPUT_AVAILABLE, ActionCallState.OUTPUT_ERROR}),
    ActionCallState.OUTPUT_AVAILABLE: frozenset(),
    ActionCallState.OUTPUT_ERROR: frozenset(),
}


ErrorKind = Literal['unknown_tool', 'invalid_arguments', 'executor_error', 'reported_failure', 'aborted']


class ActionSuccess(BaseModel):
    kind: Literal['success'] = 'success'
    output: Any = None


class ActionFailure(BaseModel):
    kind: Literal['failure'] = 'failure'
    error_kind: ErrorKind
    message: str = ''
    output: Any = None


ActionOutcome = Annotated[Union[ActionSuccess, ActionFailure], Field(discriminator='kind')]


class ActionCall(BaseModel):
    """One model-emitted invocation of an action, owned by the current run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(default_factory=new_call_id)
    name: str
    args: Any = None
    started_at: float = Field(default_factory=monotonic_seconds)
    state: ActionCallState = ActionCallState.INPUT_STREAMING
    duration: Optional[float] = None
    outcome: Optional[ActionOutcome] = None
    repaired: bool = False

    def transition(self, target: ActionCallState, outcome: Optional[ActionOutcome] = None) -> None:
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStateTransition(self.id, self.state.value, target.value)
        self.state = target
        if target.is_terminal:
            self.duration = elapsed_since(self.started_at)
            self.outcome = outcome

    @property
    def succeeded(self) -> bool:
        return self.state is ActionCallState.OUTPUT_AVAILABLE

    @property
    def error_kind(self) -> Optional[str]:
        if isinstance(self.outcome, ActionFailure):
            return self.outcome.error_kind
        return None


class ActionResult(BaseModel):
    """Result shape returned by action executors.

    Executors may also return plain dicts or any other value; only an explicit
    ``success=False`` marks a returned result as a failure.
    """

    model_config = ConfigDict(extra='allow')

    success: Optional[bool] = None
    error: Optional[str] = None
    url: Optional[str] = None
    extracted_content: Optional[str] = None
    page_context: Optional[dict[str, Any]] = None


# --- Trajectory and state ---


class ExecutionStep(BaseModel):
    """Trajectory entry, appended as a placeholder and backfilled once the call resolves."""

    step: int
    action: str
    target: Optional[str] = None
    success: bool = False
    call_id: Optional[str] = None


class StateSnapshot(BaseModel):
    """What the action surface currently shows (page URL, title, free-form extras)."""

    model_config = ConfigDict(extra='allow')

    url: Optional[str] = None
    title: Optional[str] = None

    def cache_key(self) -> str:
        return f'{self.url or ""}|{self.title or ""}'


class UsageSummary(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, usage: Optional[ChatInvokeUsage | 'UsageSummary']) -> 'UsageSummary':
        if usage is None:
            return self
        self.prompt_tokens += usage.prompt_tokens or 0
        self.completion_tokens += usage.completion_tokens or 0
        total = usage.total_tokens or ((usage.prompt_tokens or 0) + (usage.completion_tokens or 0))
        self.total_tokens += total
        return self


SummaryStatus = Literal['success', 'partial', 'failed']


class SummaryReport(BaseModel):
    summary: str
    status: SummaryStatus
    task_completed: bool
    total_steps: int
    successful_steps: int
    failed_steps: int

    @model_validator(mode='after')
    def _completed_iff_success(self) -> 'SummaryReport':
        if self.task_completed != (self.status == 'success'):
            raise ValueError('task_completed must be true exactly when status is success')
        return self


class RecoveryQuery(BaseModel):
    adjusted_objective: str
    rationale: str

    @field_validator('adjusted_objective')
    @classmethod
    def _ensure_marker(cls, v: str) -> str:
        v = (v or '').strip()
        if not v.startswith(RETRY_MARKER):
            v = f'{RETRY_MARKER} {v}'
        return v


class LoopResult(BaseModel):
    """Everything one ToolLoopEngine run produced."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    trajectory: list[ExecutionStep] = Field(default_factory=list)
    transcript: list[Any] = Field(default_factory=list)
    calls: list[ActionCall] = Field(default_factory=list)
    usage: UsageSummary = Field(default_factory=UsageSummary)
    finish_reason: str = 'stop'
    stop_reason: Optional[str] = None
    text: str = ''
    final_state: Optional[str] = None
    turns: int = 0
    tasks: list[Any] = Field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.finish_reason == 'aborted'


class RunOutcome(BaseModel):
    """Result of one RetryCoordinator.execute call (first run or its single retry)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    status: SummaryStatus
    summary: str
    task_completed: bool
    plan: Optional[ExecutionPlan] = None
    planning_confidence: Optional[float] = None
    trajectory: list[ExecutionStep] = Field(default_factory=list)
    usage: UsageSummary = Field(default_factory=UsageSummary)
    finish_reason: str = 'stop'
    duration: float = 0.0
    final_state: Optional[str] = None
    error: Optional[str] = None
    is_retry: bool = False
    attempt: int = 1
    recovery: Optional[RecoveryQuery] = None
    tasks: list[Any] = Field(default_factory=list)
    text: str = ''


class RunContext(BaseModel):
    """Caller-provided context for RetryCoordinator.execute."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    initial_state: Optional[StateSnapshot] = None
    prior_steps: list[ExecutionStep] = Field(default_factory=list)
    abort_signal: Optional[Any] = None
    retry_depth: int = Field(0, ge=0)
    conversation_id: Optional[str] = None
