from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from webpilot.agent.state import RunState
    from webpilot.agent.views import ActionCall

logger = logging.getLogger(__name__)


def build_turn_summary(
    turn: int,
    calls: list['ActionCall'],
    state: 'RunState',
    finish_reason: str,
    stop_reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Compact, structured per-turn record for operators.

    Includes the turn number, each call's name, terminal state, error kind and
    duration, the stop-guard counters and the provider's finish reason.
    """
    outcomes = []
    for call in calls:
        outcomes.append(
            {
                'id': call.id,
                'action': call.name,
                'state': call.state.value,
                'error_kind': call.error_kind,
                'duration_seconds': round(call.duration, 3) if call.duration is not None else None,
                'repaired': call.repaired,
            }
        )

    return {
        'run_id': state.run_id,
        'turn': turn,
        'finish_reason': finish_reason,
        'stop_reason': stop_reason,
        'calls': outcomes,
        'guard': {
            'consecutive_failures': state.consecutive_failures,
            'repeated_navigations': state.repeated_navigation_count(),
            'total_tokens': state.total_tokens,
        },
        'final_state': state.final_state,
        'tasks': len(state.tasks),
    }


def log_turn_summary(
    turn: int,
    calls: list['ActionCall'],
    state: 'RunState',
    finish_reason: str,
    stop_reason: Optional[str] = None,
) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    logger.debug("TURN_SUMMARY %s", build_turn_summary(turn, calls, state, finish_reason, stop_reason))
