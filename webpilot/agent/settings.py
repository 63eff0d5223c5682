from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from webpilot.config import CONFIG
from webpilot.exceptions import AgentConfigurationError


class AgentSettings(BaseModel):
    """Limits and switches for planning, the tool loop and the retry coordinator."""

    # Tool loop stop conditions
    max_steps: int = Field(15, description="Maximum model turns per run.")
    max_failures: int = Field(3, description="Stop after this many consecutive failed action calls.")
    max_repeated_navigations: int = Field(
        3,
        description="Stop when this many consecutive navigation calls target the same URL.",
    )
    max_total_tokens: Optional[int] = Field(None, description="Stop once cumulative token usage exceeds this budget.")

    # Action surface conventions
    state_check_action: str = Field(
        'get_page_context',
        description="Action that reports the current page; forced on the first turn of a run.",
    )
    navigation_actions: frozenset[str] = Field(
        frozenset({'navigate'}),
        description="Action names treated as navigation for loop detection and partial-success classification.",
    )

    # Pipeline switches
    use_planner: bool = Field(True, description="Ask the model for a structured plan before the loop.")
    enable_task_board: bool = Field(True, description="Expose the upsert_tasks action to the model.")
    enable_auto_retry: bool = Field(True, description="Run one recovery attempt when the first run does not complete.")
    generate_narrative: bool = Field(False, description="Ask the model for a short narrative in the summary report.")

    # Timeouts and retries for auxiliary model calls
    summary_timeout_seconds: float = Field(10.0, description="Timeout for the summary narrative call.")
    recovery_timeout_seconds: float = Field(30.0, description="Timeout for the recovery-query call.")
    planner_max_retries: int = Field(1, description="Extra attempts for the planning call before falling back.")
    planner_timeout_seconds: float = Field(30.0, description="Timeout for one planning call.")

    # Persistence
    save_conversation_path: Optional[str] = Field(
        None, description="Directory where each run's transcript is written as conversation_<run_id>.txt."
    )
    extend_system_message: Optional[str] = Field(None, description="Extra text appended to the execution system prompt.")

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator('navigation_actions', mode='before')
    @classmethod
    def _coerce_navigation_actions(cls, v: Any):
        if isinstance(v, str):
            return frozenset({v})
        return frozenset(v or ())

    @field_validator('max_steps', 'max_failures', 'max_repeated_navigations')
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError('must be >= 1')
        return v

    @field_validator('max_total_tokens')
    @classmethod
    def _positive_budget(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError('must be >= 1 when set')
        return v

    @model_validator(mode='after')
    def _check_surface(self) -> 'AgentSettings':
        if not self.state_check_action:
            raise AgentConfigurationError('state_check_action must name an action')
        return self

    @classmethod
    def from_env(cls, **overrides: Any) -> 'AgentSettings':
        """Settings with WEBPILOT_* environment overrides applied under explicit keyword overrides."""
        values: dict[str, Any] = {}
        if CONFIG.WEBPILOT_MAX_STEPS is not None:
            values['max_steps'] = CONFIG.WEBPILOT_MAX_STEPS
        if CONFIG.WEBPILOT_MAX_TOTAL_TOKENS is not None:
            values['max_total_tokens'] = CONFIG.WEBPILOT_MAX_TOTAL_TOKENS
        values.update(overrides)
        return cls(**values)

    def is_navigation(self, action: str) -> bool:
        return action in self.navigation_actions

    def is_state_check(self, action: str) -> bool:
        return action == self.state_check_action
