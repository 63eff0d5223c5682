from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Optional

from pydantic import BaseModel

from webpilot.agent.concurrency import AbortSignal, race_abort
from webpilot.agent.views import ActionCall, ActionCallState, ActionFailure, ActionSuccess, ErrorKind
from webpilot.exceptions import ArgumentSchemaError, ExecutorError, RunAborted, UnknownToolError
from webpilot.llm.messages import SystemMessage, UserMessage

if TYPE_CHECKING:
    from webpilot.controller.registry.service import Registry
    from webpilot.controller.registry.views import RegisteredAction
    from webpilot.llm.base import BaseChatModel

logger = logging.getLogger(__name__)

_REPAIR_SYSTEM = (
    'A tool call had arguments that do not match the tool\'s parameter schema. '
    'Return corrected arguments that satisfy the schema and keep the caller\'s intent.'
)


def to_jsonable(value: Any) -> Any:
    """Best-effort conversion of executor output into JSON-friendly data."""
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)


def reported_failure(output: Any) -> Optional[str]:
    """Error text when an executor result explicitly says ``success=False``, else None."""
    if isinstance(output, dict):
        success = output.get('success')
        error = output.get('error')
    else:
        success = getattr(output, 'success', None)
        error = getattr(output, 'error', None)
    if success is False:
        return str(error or 'action reported failure')
    return None


class ActionActuator:
    """Executes one action call: lookup, validation, single repair, executor, outcome."""

    def __init__(
        self,
        registry: 'Registry',
        llm: Optional['BaseChatModel'] = None,
        repair_timeout_seconds: float = 20.0,
    ):
        self.registry = registry
        self.llm = llm
        self.repair_timeout_seconds = repair_timeout_seconds

    async def execute(self, call: ActionCall, abort_signal: Optional[AbortSignal] = None) -> ActionCall:
        """Drive ``call`` from input-available to an output state.

        Raises RunAborted (after marking the call aborted) when the signal fires mid-execution.
        """
        if call.state is ActionCallState.INPUT_STREAMING:
            call.transition(ActionCallState.INPUT_AVAILABLE)

        try:
            action = self.registry.get(call.name)
        except UnknownToolError as e:
            logger.warning(f'❌ Model called unknown tool {call.name!r}')
            return self._fail(call, 'unknown_tool', str(e))

        try:
            params = await self._validated_params(action, call, abort_signal)
        except ArgumentSchemaError as e:
            logger.warning(f'❌ {call.name}: arguments still invalid after repair: {e}')
            return self._fail(call, 'invalid_arguments', str(e))
        except RunAborted:
            self._fail(call, 'aborted', 'run aborted during argument repair')
            raise

        try:
            output = await race_abort(action.function(params), abort_signal)
        except RunAborted:
            self._fail(call, 'aborted', 'run aborted while the action was executing')
            raise
        except Exception as e:
            error = ExecutorError(call.name, f'{type(e).__name__}: {e}')
            logger.warning(f'❌ {error}')
            return self._fail(call, 'executor_error', str(error))

        payload = to_jsonable(output)
        error = reported_failure(output)
        if error is not None:
            logger.info(f'⚠️ {call.name} reported failure: {error}')
            return self._fail(call, 'reported_failure', error, output=payload)

        call.transition(ActionCallState.OUTPUT_AVAILABLE, ActionSuccess(output=payload))
        logger.debug(f'✅ {call.name} succeeded in {call.duration:.3f}s')
        return call

    async def _validated_params(
        self, action: 'RegisteredAction', call: ActionCall, abort_signal: Optional[AbortSignal]
    ) -> BaseModel:
        try:
            return action.validate_args(call.args)
        except ArgumentSchemaError as first_error:
            if self.llm is None:
                raise
            logger.info(f'🔧 Repairing arguments for {call.name}: {first_error}')
            repaired = await self._repair_arguments(action, call, first_error, abort_signal)
            call.repaired = True
            if repaired is None:
                raise first_error
            call.args = repaired
            return action.validate_args(repaired)

    async def _repair_arguments(
        self,
        action: 'RegisteredAction',
        call: ActionCall,
        error: ArgumentSchemaError,
        abort_signal: Optional[AbortSignal],
    ) -> Optional[dict[str, Any]]:
        """One structured request constrained to the action's parameter model. None when it fails."""
        raw = call.args if isinstance(call.args, str) else json.dumps(call.args, default=str)
        schema = json.dumps(action.param_model.model_json_schema(), ensure_ascii=False)
        messages = [
            SystemMessage(content=_REPAIR_SYSTEM),
            UserMessage(
                content=(
                    f'Tool: {action.name}\nDescription: {action.description}\n'
                    f'Parameter schema: {schema}\nOriginal arguments: {raw}\nValidation error: {error}'
                )
            ),
        ]
        try:
            response = await race_abort(
                asyncio.wait_for(
                    self.llm.ainvoke(messages, output_format=action.param_model),
                    timeout=self.repair_timeout_seconds,
                ),
                abort_signal,
            )
        except RunAborted:
            raise
        except Exception as e:
            logger.debug(f'Argument repair request failed: {type(e).__name__}: {e}')
            return None
        completion = getattr(response, 'completion', response)
        if isinstance(completion, BaseModel):
            return completion.model_dump()
        if isinstance(completion, dict):
            return completion
        if isinstance(completion, str):
            try:
                parsed = json.loads(completion)
            except json.JSONDecodeError:
                return None
            return parsed if isinstance(parsed, dict) else None
        return None

    @staticmethod
    def _fail(call: ActionCall, kind: ErrorKind, message: str, output: Any = None) -> ActionCall:
        if call.state is ActionCallState.INPUT_STREAMING:
            call.transition(ActionCallState.INPUT_AVAILABLE)
        call.transition(ActionCallState.OUTPUT_ERROR, ActionFailure(error_kind=kind, message=message, output=output))
        return call
