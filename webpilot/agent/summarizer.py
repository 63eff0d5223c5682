from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, Optional

from webpilot.agent.prompts import NarrativePrompt
from webpilot.agent.views import ExecutionStep, SummaryReport, SummaryStatus
from webpilot.llm.base import has_credentials

if TYPE_CHECKING:
    from webpilot.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

_STATUS_EMOJI = {'success': '✅', 'partial': '⚠️', 'failed': '❌'}

_NARRATIVES = {
    'success': 'Execution completed successfully and page context is available.',
    'partial': 'Execution partially completed. Some required steps were omitted or failed.',
    'failed': 'Execution did not complete as requested. Review the steps and retry.',
}

_NEXT_STEPS = {
    'success': (
        'Proceed with analysis or report consumption.',
        'Optionally capture a screenshot for audit.',
    ),
    'partial': (
        'Confirm the page context is gathered after navigation.',
        'Add an explicit verification step for the final report.',
        'Re-run with improved checks for required elements.',
    ),
    'failed': (
        'Verify the target URL and connectivity.',
        'Add error handling and a retry on navigation.',
        'Skip dependent steps when the page is not ready.',
        'Re-run the full flow after adjustments.',
    ),
}


@dataclass(frozen=True)
class OutcomeCounts:
    status: SummaryStatus
    total: int
    successful: int
    failed: int
    navigation_succeeded: bool
    final_state_present: bool


def classify(
    trajectory: Iterable[ExecutionStep],
    final_state: Optional[str],
    navigation_actions: Iterable[str] = ('navigate',),
) -> OutcomeCounts:
    """Deterministic outcome classification.

    success: final-state marker present and no failed entry.
    partial: otherwise, when a navigation succeeded or the marker is present.
    failed: everything else.
    """
    steps = list(trajectory)
    nav = set(navigation_actions)
    failed = sum(1 for s in steps if not s.success)
    successful = len(steps) - failed
    navigation_succeeded = any(s.success and s.action in nav for s in steps)
    marker = bool(final_state)

    if marker and failed == 0:
        status: SummaryStatus = 'success'
    elif navigation_succeeded or marker:
        status = 'partial'
    else:
        status = 'failed'
    return OutcomeCounts(status, len(steps), successful, failed, navigation_succeeded, marker)


def _format_duration(duration: Optional[float]) -> str:
    if duration is None:
        return 'N/A'
    return f'{duration:.2f}s'


class Summarizer:
    """Turns a trajectory into the fixed-shape summary report.

    The model is only used, optionally, for the narrative sentence; classification
    never depends on it.
    """

    def __init__(
        self,
        llm: Optional['BaseChatModel'] = None,
        navigation_actions: Iterable[str] = ('navigate',),
        timeout_seconds: float = 10.0,
    ):
        self.llm = llm
        self.navigation_actions = frozenset(navigation_actions)
        self.timeout_seconds = timeout_seconds

    def summarize(
        self,
        trajectory: list[ExecutionStep],
        final_state: Optional[str] = None,
        narrative: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> SummaryReport:
        counts = classify(trajectory, final_state, self.navigation_actions)
        status = counts.status
        lines = [
            '---',
            '## Summary & Next Steps',
            '',
            f'{_STATUS_EMOJI[status]} Status: {status.capitalize()}',
            f'Steps: {counts.total} total, {counts.successful} success, {counts.failed} failed',
            f'Final URL: {final_state or "N/A"}',
            f'Duration: {_format_duration(duration)}',
            '',
            (narrative or '').strip() or _NARRATIVES[status],
            '',
            'Next Steps:',
            *(f'- {item}' for item in _NEXT_STEPS[status]),
            '',
            f'TASK_COMPLETED: {"YES" if status == "success" else "NO"}',
        ]
        report = SummaryReport(
            summary='\n'.join(lines),
            status=status,
            task_completed=status == 'success',
            total_steps=counts.total,
            successful_steps=counts.successful,
            failed_steps=counts.failed,
        )
        logger.debug(f'Summary classified run as {status} ({counts.successful}/{counts.total} steps ok)')
        return report

    async def generate_narrative(
        self,
        objective: str,
        trajectory: list[ExecutionStep],
        outcome_text: Any = '',
    ) -> Optional[str]:
        """Short model-written narrative, or None on timeout, error or missing model."""
        if not has_credentials(self.llm):
            return None
        messages = NarrativePrompt(objective, trajectory, outcome_text).get_messages()
        try:
            response = await asyncio.wait_for(self.llm.ainvoke(messages), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f'Summary narrative timed out after {self.timeout_seconds}s; using templated text')
            return None
        except Exception as e:
            logger.warning(f'Summary narrative failed ({type(e).__name__}: {e}); using templated text')
            return None
        text = getattr(response, 'completion', response)
        if not isinstance(text, str) or not text.strip():
            return None
        return text.strip()
