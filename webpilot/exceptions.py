from __future__ import annotations

from typing import Any, Optional


class WebPilotError(Exception):
	"""Base class for all webpilot errors."""


class AgentConfigurationError(WebPilotError):
	"""Settings or registry wiring that cannot produce a working run."""


class LLMException(WebPilotError):
	def __init__(self, status_code: int, message: str):
		self.status_code = status_code
		self.message = message
		super().__init__(f'Error {status_code}: {message}')


class PlanningFailure(WebPilotError):
	"""The planner could not obtain a usable plan from the model."""


class UnknownToolError(WebPilotError):
	def __init__(self, name: str):
		self.name = name
		super().__init__(f'Unknown tool: {name}')


class ArgumentSchemaError(WebPilotError):
	def __init__(self, name: str, message: str, args: Optional[Any] = None):
		self.name = name
		self.raw_args = args
		super().__init__(f'Invalid arguments for {name}: {message}')


class ExecutorError(WebPilotError):
	def __init__(self, name: str, message: str):
		self.name = name
		super().__init__(f'{name} failed: {message}')


class RunAborted(WebPilotError):
	"""Raised inside the tool loop when the caller's abort signal fires."""


class InvalidStateTransition(WebPilotError):
	def __init__(self, call_id: str, current: Any, target: Any):
		self.call_id = call_id
		self.current = current
		self.target = target
		super().__init__(f'Action call {call_id}: illegal transition {current} -> {target}')
