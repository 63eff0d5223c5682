from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from webpilot.agent.prompts import RecoveryPrompt
from webpilot.agent.views import RETRY_MARKER, ExecutionStep, RecoveryQuery
from webpilot.llm.base import has_credentials

if TYPE_CHECKING:
    from webpilot.llm.base import BaseChatModel

logger = logging.getLogger(__name__)


class RecoveryDraft(BaseModel):
    """Structured output requested from the model."""

    adjusted_objective: str = Field(..., min_length=1, max_length=5000)
    rationale: str = Field(..., min_length=1, max_length=4000)


def strip_marker(objective: str) -> str:
    text = objective.strip()
    while text.startswith(RETRY_MARKER):
        text = text[len(RETRY_MARKER) :].strip()
    return text


def fallback_recovery(objective: str, trajectory: list[ExecutionStep], final_state: Optional[str]) -> RecoveryQuery:
    """Deterministic adjusted objective used when the model cannot produce one."""
    failed = [s.action for s in trajectory if not s.success]
    hints = ['Navigate to the target page first, then read the page context before interacting with any element.']
    if failed:
        hints.append(f'The previous attempt failed at: {", ".join(dict.fromkeys(failed))}.')
    if final_state:
        hints.append(f'The previous attempt ended on {final_state}.')
    return RecoveryQuery(
        adjusted_objective=f'{RETRY_MARKER} {strip_marker(objective)}\n' + ' '.join(hints),
        rationale='Recovery model unavailable; retrying the original objective with explicit navigation and verification.',
    )


class RecoveryAgent:
    """Builds the single corrected objective for an automatic rerun."""

    def __init__(self, llm: Optional['BaseChatModel'] = None, timeout_seconds: float = 30.0):
        self.llm = llm
        self.timeout_seconds = timeout_seconds

    async def build(
        self,
        objective: str,
        trajectory: list[ExecutionStep],
        summary: str,
        final_state: Optional[str] = None,
        error: Optional[str] = None,
    ) -> RecoveryQuery:
        if not has_credentials(self.llm):
            return fallback_recovery(objective, trajectory, final_state)

        messages = RecoveryPrompt(strip_marker(objective), trajectory, summary, final_state, error).get_messages()
        try:
            response = await asyncio.wait_for(
                self.llm.ainvoke(messages, output_format=RecoveryDraft),
                timeout=self.timeout_seconds,
            )
            completion = getattr(response, 'completion', response)
            draft = completion if isinstance(completion, RecoveryDraft) else RecoveryDraft.model_validate(completion)
        except asyncio.TimeoutError:
            logger.warning(f'Recovery query timed out after {self.timeout_seconds}s; using fallback objective')
            return fallback_recovery(objective, trajectory, final_state)
        except Exception as e:
            logger.warning(f'Recovery query failed ({type(e).__name__}: {e}); using fallback objective')
            return fallback_recovery(objective, trajectory, final_state)

        return RecoveryQuery(
            adjusted_objective=f'{RETRY_MARKER} {strip_marker(draft.adjusted_objective)}',
            rationale=draft.rationale.strip(),
        )
